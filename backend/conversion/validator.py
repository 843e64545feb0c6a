from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set, Tuple

from backend.conversion.errors import ValidationError
from backend.conversion.models import ConversionPlan, ConversionTask, TaskKind, TaskStatus

logger = logging.getLogger(__name__)

ACCEPTED_INITIAL_STATUSES = {TaskStatus.PENDING, TaskStatus.SKIPPED}


@dataclass
class ValidatedPlan:
  plan: ConversionPlan
  order: List[str]
  dependents: Dict[str, List[str]]
  ancestors: Dict[str, Set[str]]
  initial_statuses: Dict[str, TaskStatus]
  warnings: List[str] = field(default_factory=list)

  @property
  def tasks(self) -> Dict[str, ConversionTask]:
    return self.plan.task_map()

  def descendants(self, task_id: str) -> Set[str]:
    seen: Set[str] = set()
    stack = list(self.dependents.get(task_id, []))
    while stack:
      current = stack.pop()
      if current in seen:
        continue
      seen.add(current)
      stack.extend(self.dependents.get(current, []))
    return seen


class PlanValidator:
  """Checks that a conversion plan is a well-formed, acyclic task graph."""

  def validate(self, plan: ConversionPlan) -> ValidatedPlan:
    tasks = list(plan.tasks)
    if not tasks:
      raise ValidationError('Conversion plan contains no tasks', code='EMPTY_PLAN')

    self._check_fields(tasks)
    task_map = {task.id: task for task in tasks}
    self._check_dependencies(tasks, task_map)

    cycle = self._find_cycle(tasks, task_map)
    if cycle:
      path = ' -> '.join(cycle)
      raise ValidationError(f'Circular dependency detected: {path}', task_ids=cycle[:-1], code='CIRCULAR_DEPENDENCY')

    warnings = list(plan.warnings)
    if not plan.feasible:
      warnings.append('Plan is marked as not feasible; execution may produce incomplete results')

    initial_statuses: Dict[str, TaskStatus] = {}
    for task in tasks:
      if not task.estimated_duration or task.estimated_duration <= 0:
        warnings.append(f'Task {task.id} has a non-positive estimated duration; weighting it as 1')
      if task.status in ACCEPTED_INITIAL_STATUSES:
        initial_statuses[task.id] = task.status
      else:
        status_label = task.status.value if isinstance(task.status, TaskStatus) else task.status
        warnings.append(f'Task {task.id} has initial status {status_label}; treating it as pending')
        initial_statuses[task.id] = TaskStatus.PENDING

    dependents: Dict[str, List[str]] = {task.id: [] for task in tasks}
    for task in tasks:
      for dependency in task.dependencies:
        dependents[dependency].append(task.id)

    order = self._topological_order(tasks, dependents)
    ancestors = self._ancestors(order, task_map)
    for message in warnings:
      logger.debug('Plan %s warning: %s', plan.id, message)
    return ValidatedPlan(
      plan=plan,
      order=order,
      dependents=dependents,
      ancestors=ancestors,
      initial_statuses=initial_statuses,
      warnings=warnings
    )

  def _check_fields(self, tasks: List[ConversionTask]) -> None:
    seen: Set[str] = set()
    for index, task in enumerate(tasks):
      if not task.id:
        raise ValidationError(f'Task at position {index} is missing an id', code='MISSING_FIELD')
      if not task.description:
        raise ValidationError(f'Task {task.id} is missing a description', task_ids=[task.id], code='MISSING_FIELD')
      if task.kind is None:
        raise ValidationError(f'Task {task.id} is missing a kind', task_ids=[task.id], code='MISSING_FIELD')
      if not isinstance(task.kind, TaskKind):
        raise ValidationError(f'Task {task.id} has unknown kind {task.kind!r}', task_ids=[task.id], code='INVALID_KIND')
      if task.id in seen:
        raise ValidationError(f'Duplicate task id {task.id}', task_ids=[task.id], code='DUPLICATE_TASK_ID')
      seen.add(task.id)

  def _check_dependencies(self, tasks: List[ConversionTask], task_map: Dict[str, ConversionTask]) -> None:
    for task in tasks:
      for dependency in task.dependencies:
        if dependency not in task_map:
          raise ValidationError(
            f'Task {task.id} depends on unknown task {dependency}',
            task_ids=[task.id, dependency],
            code='INVALID_DEPENDENCY'
          )

  def _find_cycle(self, tasks: List[ConversionTask], task_map: Dict[str, ConversionTask]) -> Optional[List[str]]:
    visited: Set[str] = set()
    on_stack: Set[str] = set()
    path: List[str] = []

    def visit(task_id: str) -> Optional[List[str]]:
      visited.add(task_id)
      on_stack.add(task_id)
      path.append(task_id)
      for dependency in task_map[task_id].dependencies:
        if dependency in on_stack:
          start = path.index(dependency)
          return path[start:] + [dependency]
        if dependency not in visited:
          found = visit(dependency)
          if found:
            return found
      on_stack.discard(task_id)
      path.pop()
      return None

    for task in tasks:
      if task.id not in visited:
        found = visit(task.id)
        if found:
          return found
    return None

  def _topological_order(self, tasks: List[ConversionTask], dependents: Dict[str, List[str]]) -> List[str]:
    remaining = {task.id: len(set(task.dependencies)) for task in tasks}
    priority = {task.id: (task.priority, task.id) for task in tasks}
    ready = sorted((task_id for task_id, count in remaining.items() if count == 0), key=priority.get)
    order: List[str] = []
    while ready:
      current = ready.pop(0)
      order.append(current)
      for child in dependents[current]:
        remaining[child] -= 1
        if remaining[child] == 0:
          ready.append(child)
      ready.sort(key=priority.get)
    return order

  def _ancestors(self, order: List[str], task_map: Dict[str, ConversionTask]) -> Dict[str, Set[str]]:
    ancestors: Dict[str, Set[str]] = {}
    for task_id in order:
      collected: Set[str] = set()
      for dependency in task_map[task_id].dependencies:
        collected.add(dependency)
        collected.update(ancestors[dependency])
      ancestors[task_id] = collected
    return ancestors


def describe_levels(validated: ValidatedPlan) -> List[Tuple[str, ...]]:
  """Group task ids into dependency levels; tasks in one level can run together."""
  task_map = validated.tasks
  depth: Dict[str, int] = {}
  for task_id in validated.order:
    dependencies = task_map[task_id].dependencies
    depth[task_id] = 1 + max((depth[dep] for dep in dependencies), default=-1)
  levels: Dict[int, List[str]] = {}
  for task_id, level in depth.items():
    levels.setdefault(level, []).append(task_id)
  return [tuple(sorted(levels[level])) for level in sorted(levels)]
