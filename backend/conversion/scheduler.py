from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Set

from backend.config import settings
from backend.conversion.errors import ErrorCategory
from backend.conversion.executor import TaskExecutor
from backend.conversion.models import TaskErrorInfo, TaskResult, TaskStatus
from backend.conversion.validator import ValidatedPlan
from backend.resources.monitor import ResourceMonitor

logger = logging.getLogger(__name__)

DEPENDENCY_READY_STATUSES = {TaskStatus.COMPLETED, TaskStatus.SKIPPED}


@dataclass
class SchedulerConfig:
  max_concurrent: int = 3
  max_retries: int = 3
  base_delay: float = 1.0
  max_delay: float = 30.0
  task_timeout: Optional[float] = 300.0
  hard_cancel_on_pause: bool = False
  throttle_on_load: bool = False
  throttle_sleep: float = 5.0

  @classmethod
  def from_settings(cls, **overrides: Any) -> 'SchedulerConfig':
    config = cls(
      max_concurrent=settings.max_concurrent,
      max_retries=settings.max_retries,
      base_delay=settings.retry_base_delay_seconds,
      max_delay=settings.retry_max_delay_seconds,
      task_timeout=settings.task_timeout_seconds,
      hard_cancel_on_pause=settings.hard_cancel_on_pause,
      throttle_on_load=settings.throttle_on_load,
      throttle_sleep=settings.throttle_sleep_seconds
    )
    for key, value in overrides.items():
      setattr(config, key, value)
    return config

  @property
  def max_attempts(self) -> int:
    return max(0, self.max_retries) + 1

  def backoff_delay(self, retry: int) -> float:
    """Delay before retry number ``retry`` (1 based)."""
    return min(self.base_delay * (2 ** max(0, retry - 1)), self.max_delay)


class SchedulerSink:
  """Receives everything the scheduler observes. The job manager implements it."""

  def dispatch_allowed(self, job_id: str) -> bool:
    raise NotImplementedError

  async def task_started(self, job_id: str, task_id: str, attempt: int) -> None:
    raise NotImplementedError

  async def task_retrying(self, job_id: str, result: TaskResult, delay: float) -> None:
    raise NotImplementedError

  async def task_finished(self, job_id: str, result: TaskResult, skipped: List[TaskResult]) -> bool:
    raise NotImplementedError

  async def task_interrupted(self, job_id: str, task_id: str) -> None:
    raise NotImplementedError

  async def dispatch_finished(self, job_id: str) -> None:
    raise NotImplementedError


class Scheduler:
  """Dispatch loop for one run of one job.

  Ready tasks (pending, every dependency completed or skipped, no backoff
  timer running) are started in (priority, id) order while fewer than
  ``max_concurrent`` are in flight. The loop exits once nothing is in flight
  and either dispatch is no longer allowed or no work is left.
  """

  def __init__(
    self,
    job_id: str,
    validated: ValidatedPlan,
    executor: TaskExecutor,
    sink: SchedulerSink,
    config: Optional[SchedulerConfig] = None,
    statuses: Optional[Dict[str, TaskStatus]] = None,
    attempts: Optional[Dict[str, int]] = None,
    outputs: Optional[Dict[str, Dict[str, Any]]] = None,
    shared_context: Optional[Dict[str, Any]] = None,
    resource_monitor: Optional[ResourceMonitor] = None
  ) -> None:
    self.job_id = job_id
    self.validated = validated
    self.tasks = validated.tasks
    self.executor = executor
    self.sink = sink
    self.config = config or SchedulerConfig.from_settings()
    self.statuses: Dict[str, TaskStatus] = dict(statuses or validated.initial_statuses)
    self.attempts: Dict[str, int] = {task_id: 0 for task_id in self.tasks}
    self.attempts.update(attempts or {})
    self.outputs: Dict[str, Dict[str, Any]] = dict(outputs or {})
    self.shared_context = dict(shared_context or {})
    self.resource_monitor = resource_monitor
    self.peak_in_flight = 0
    self._in_flight: Dict[asyncio.Task, str] = {}
    self._not_before: Dict[str, float] = {}
    self._wake = asyncio.Event()
    self._throttled_until = 0.0
    self.exit_reason: Optional[str] = None
    for task_id, status in self.statuses.items():
      if status == TaskStatus.RUNNING:
        self.statuses[task_id] = TaskStatus.PENDING

  @property
  def in_flight(self) -> Set[str]:
    return set(self._in_flight.values())

  def wake(self) -> None:
    self._wake.set()

  def cancel_in_flight(self) -> int:
    cancelled = 0
    for task in self._in_flight:
      if not task.done():
        task.cancel()
        cancelled += 1
    self._wake.set()
    return cancelled

  def ready_tasks(self) -> List[str]:
    now = time.monotonic()
    running = self.in_flight
    ready = []
    for task_id in self.validated.order:
      if self.statuses.get(task_id) != TaskStatus.PENDING or task_id in running:
        continue
      if self._not_before.get(task_id, 0.0) > now:
        continue
      task = self.tasks[task_id]
      if all(self.statuses.get(dep) in DEPENDENCY_READY_STATUSES for dep in task.dependencies):
        ready.append(task_id)
    ready.sort(key=lambda task_id: (self.tasks[task_id].priority, task_id))
    return ready

  def has_remaining_work(self) -> bool:
    return any(status in {TaskStatus.PENDING, TaskStatus.RUNNING} for status in self.statuses.values())

  async def run(self) -> None:
    try:
      while True:
        self._wake.clear()
        allowed = self.sink.dispatch_allowed(self.job_id)
        if allowed and not self._throttled():
          allowed = await self._dispatch_ready()

        if not self._in_flight:
          if not allowed or not self.has_remaining_work():
            self.exit_reason = 'drained' if allowed else 'stopped'
            break
          if not self.ready_tasks() and not self._not_before and not self._throttled():
            logger.error('Job %s has pending tasks that can never become ready', self.job_id)
            self.exit_reason = 'stalled'
            break

        await self._wait_for_activity()
    except asyncio.CancelledError:
      await self._abort_in_flight()
      raise
    await self.sink.dispatch_finished(self.job_id)

  async def _dispatch_ready(self) -> bool:
    allowed = True
    while allowed and len(self._in_flight) < self.config.max_concurrent:
      ready = self.ready_tasks()
      if not ready:
        break
      await self._dispatch(ready[0])
      allowed = self.sink.dispatch_allowed(self.job_id)
    return allowed

  async def _dispatch(self, task_id: str) -> None:
    task = self.tasks[task_id]
    attempt = self.attempts.get(task_id, 0) + 1
    self.attempts[task_id] = attempt
    self.statuses[task_id] = TaskStatus.RUNNING
    self._not_before.pop(task_id, None)
    runner = asyncio.create_task(
      self.executor.execute(task, self._context_for(task_id), timeout=self.config.task_timeout, attempt=attempt)
    )
    self._in_flight[runner] = task_id
    self.peak_in_flight = max(self.peak_in_flight, len(self._in_flight))
    logger.debug('Job %s dispatched task %s (attempt %s)', self.job_id, task_id, attempt)
    await self.sink.task_started(self.job_id, task_id, attempt)

  async def _wait_for_activity(self) -> None:
    waiter = asyncio.create_task(self._wake.wait())
    try:
      done, _ = await asyncio.wait(
        set(self._in_flight) | {waiter},
        timeout=self._next_deadline(),
        return_when=asyncio.FIRST_COMPLETED
      )
    finally:
      waiter.cancel()
    for runner in done:
      if runner is waiter:
        continue
      await self._handle_done(runner)

  def _next_deadline(self) -> Optional[float]:
    now = time.monotonic()
    deadlines = [value for value in self._not_before.values() if value > now]
    if self._throttled_until > now:
      deadlines.append(self._throttled_until)
    if not deadlines:
      return None
    return max(0.0, min(deadlines) - now)

  def _throttled(self) -> bool:
    if not (self.config.throttle_on_load and self.resource_monitor):
      return False
    now = time.monotonic()
    if self._throttled_until > now:
      return True
    if self.resource_monitor.is_overloaded():
      logger.info('Host under load; pausing dispatch for job %s for %.1fs', self.job_id, self.config.throttle_sleep)
      self._throttled_until = now + self.config.throttle_sleep
      return True
    return False

  async def _handle_done(self, runner: asyncio.Task) -> None:
    task_id = self._in_flight.pop(runner)
    if runner.cancelled():
      self.statuses[task_id] = TaskStatus.PENDING
      self.attempts[task_id] = max(0, self.attempts.get(task_id, 1) - 1)
      await self.sink.task_interrupted(self.job_id, task_id)
      return
    exc = runner.exception()
    if exc is not None:
      logger.error('Executor raised for task %s: %s', task_id, exc)
      result = TaskResult(
        task_id=task_id,
        status=TaskStatus.FAILED,
        error=TaskErrorInfo(ErrorCategory.INTERNAL, f'{type(exc).__name__}: {exc}', False),
        attempts=self.attempts.get(task_id, 1),
        finished_at=time.time()
      )
    else:
      result = runner.result()

    if result.succeeded:
      self.statuses[task_id] = TaskStatus.COMPLETED
      self.outputs[task_id] = result.outputs()
      await self.sink.task_finished(self.job_id, result, [])
      return

    attempt = self.attempts.get(task_id, 1)
    transient = bool(result.error and result.error.transient)
    if transient and attempt < self.config.max_attempts:
      delay = self.config.backoff_delay(attempt)
      self.statuses[task_id] = TaskStatus.PENDING
      self._not_before[task_id] = time.monotonic() + delay
      logger.info('Task %s failed transiently (attempt %s/%s); retrying in %.2fs', task_id, attempt, self.config.max_attempts, delay)
      await self.sink.task_retrying(self.job_id, result, delay)
      return

    self.statuses[task_id] = TaskStatus.FAILED
    skipped = self._skip_descendants(task_id)
    await self.sink.task_finished(self.job_id, result, skipped)

  def _skip_descendants(self, failed_id: str) -> List[TaskResult]:
    skipped: List[TaskResult] = []
    now = time.time()
    descendants = self.validated.descendants(failed_id)
    for task_id in self.validated.order:
      if task_id not in descendants:
        continue
      if self.statuses.get(task_id) not in {TaskStatus.PENDING, None}:
        continue
      self.statuses[task_id] = TaskStatus.SKIPPED
      self._not_before.pop(task_id, None)
      skipped.append(
        TaskResult(
          task_id=task_id,
          status=TaskStatus.SKIPPED,
          error=TaskErrorInfo(
            category=ErrorCategory.DEPENDENCY_FAILED,
            message=f'Skipped because dependency {failed_id} failed',
            transient=False
          ),
          attempts=self.attempts.get(task_id, 0),
          finished_at=now
        )
      )
    return skipped

  def _context_for(self, task_id: str) -> Dict[str, Any]:
    ancestors = self.validated.ancestors.get(task_id, set())
    dependencies = {ancestor: self.outputs[ancestor] for ancestor in sorted(ancestors) if ancestor in self.outputs}
    return {'shared': self.shared_context, 'dependencies': dependencies}

  async def _abort_in_flight(self) -> None:
    runners = list(self._in_flight)
    for runner in runners:
      runner.cancel()
    if runners:
      await asyncio.gather(*runners, return_exceptions=True)
    self._in_flight.clear()
