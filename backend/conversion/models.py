from __future__ import annotations

import copy
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from backend.conversion.errors import ErrorCategory, TaskError, ValidationError


class TaskKind(Enum):
  ANALYSIS = 'analysis'
  CODE_GENERATION = 'code_generation'
  DEPENDENCY_UPDATE = 'dependency_update'
  CONFIG_UPDATE = 'config_update'
  VALIDATION = 'validation'
  INTEGRATION = 'integration'


class TaskStatus(Enum):
  PENDING = 'pending'
  RUNNING = 'running'
  COMPLETED = 'completed'
  FAILED = 'failed'
  SKIPPED = 'skipped'


class JobStatus(Enum):
  PENDING = 'pending'
  RUNNING = 'running'
  PAUSED = 'paused'
  COMPLETED = 'completed'
  FAILED = 'failed'
  CANCELLED = 'cancelled'


class PlanComplexity(Enum):
  LOW = 'low'
  MEDIUM = 'medium'
  HIGH = 'high'


class ChangeType(Enum):
  CREATE = 'create'
  UPDATE = 'update'
  DELETE = 'delete'


TERMINAL_JOB_STATUSES = {JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED}
SETTLED_TASK_STATUSES = {TaskStatus.COMPLETED, TaskStatus.SKIPPED}


def _coerce_enum(enum_cls, value):
  # Unknown values are kept raw so the plan validator can name the offending task.
  if isinstance(value, enum_cls) or value is None:
    return value
  try:
    return enum_cls(value)
  except ValueError:
    pass
  # Hyphenated spellings such as 'code-generation' are accepted as aliases.
  if isinstance(value, str) and '-' in value:
    try:
      return enum_cls(value.replace('-', '_'))
    except ValueError:
      pass
  return value


@dataclass
class WebhookConfig:
  url: str
  headers: Dict[str, str] = field(default_factory=dict)
  events: List[str] = field(default_factory=lambda: ['job.started', 'job.completed', 'job.failed', 'job.cancelled'])
  secret_token: Optional[str] = None

  def should_fire(self, event_name: str) -> bool:
    if not self.events:
      return True
    normalized = event_name.lower()
    return any(event.lower() == normalized for event in self.events)

  def as_dict(self) -> Dict[str, Any]:
    return {
      'url': self.url,
      'headers': self.headers,
      'events': self.events,
      'secret_token': self.secret_token
    }


@dataclass(frozen=True)
class ConversionTask:
  id: str
  kind: TaskKind
  description: str
  input_files: Tuple[str, ...] = ()
  output_files: Tuple[str, ...] = ()
  dependencies: Tuple[str, ...] = ()
  priority: int = 0
  status: TaskStatus = TaskStatus.PENDING
  estimated_duration: float = 1.0
  context: Dict[str, Any] = field(default_factory=dict)
  required: bool = True

  def __post_init__(self) -> None:
    object.__setattr__(self, 'input_files', tuple(self.input_files))
    object.__setattr__(self, 'output_files', tuple(self.output_files))
    object.__setattr__(self, 'dependencies', tuple(self.dependencies))
    object.__setattr__(self, 'kind', _coerce_enum(TaskKind, self.kind))
    object.__setattr__(self, 'status', _coerce_enum(TaskStatus, self.status))

  @property
  def weight(self) -> float:
    return self.estimated_duration if self.estimated_duration and self.estimated_duration > 0 else 1.0

  @classmethod
  def from_dict(cls, data: Dict[str, Any]) -> 'ConversionTask':
    for key in ('input_files', 'inputFiles', 'output_files', 'outputFiles', 'dependencies'):
      if data.get(key) and not isinstance(data[key], (list, tuple)):
        raise TypeError(f'{key} must be a list')
    return cls(
      id=str(data.get('id') or ''),
      kind=data.get('kind') or data.get('type'),
      description=data.get('description') or '',
      input_files=data.get('input_files') or data.get('inputFiles') or (),
      output_files=data.get('output_files') or data.get('outputFiles') or (),
      dependencies=data.get('dependencies') or (),
      priority=int(data.get('priority', 0) or 0),
      status=data.get('status') or TaskStatus.PENDING,
      estimated_duration=float(data.get('estimated_duration', data.get('estimatedDuration', 1.0)) or 0.0),
      context=dict(data.get('context') or {}),
      required=bool(data.get('required', True))
    )

  def to_dict(self) -> Dict[str, Any]:
    return {
      'id': self.id,
      'kind': self.kind.value if isinstance(self.kind, TaskKind) else self.kind,
      'description': self.description,
      'input_files': list(self.input_files),
      'output_files': list(self.output_files),
      'dependencies': list(self.dependencies),
      'priority': self.priority,
      'status': self.status.value if isinstance(self.status, TaskStatus) else self.status,
      'estimated_duration': self.estimated_duration,
      'context': self.context,
      'required': self.required
    }


@dataclass(frozen=True)
class ConversionPlan:
  """Immutable task graph describing one conversion."""

  tasks: Tuple[ConversionTask, ...]
  project_id: str = ''
  id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
  complexity: PlanComplexity = PlanComplexity.MEDIUM
  feasible: bool = True
  warnings: Tuple[str, ...] = ()
  source_stack: Dict[str, Any] = field(default_factory=dict)
  target_stack: Dict[str, Any] = field(default_factory=dict)
  created_at: float = field(default_factory=time.time)

  def __post_init__(self) -> None:
    object.__setattr__(self, 'tasks', tuple(self.tasks))
    object.__setattr__(self, 'warnings', tuple(self.warnings))
    object.__setattr__(self, 'complexity', _coerce_enum(PlanComplexity, self.complexity) or PlanComplexity.MEDIUM)

  @property
  def estimated_duration(self) -> float:
    return sum(task.estimated_duration for task in self.tasks)

  def task_map(self) -> Dict[str, ConversionTask]:
    return {task.id: task for task in self.tasks}

  @classmethod
  def from_dict(cls, data: Dict[str, Any]) -> 'ConversionPlan':
    """Build a plan from loose JSON; shape errors surface as MALFORMED_PLAN."""
    if not isinstance(data, dict):
      raise ValidationError('Conversion plan must be a JSON object', code='MALFORMED_PLAN')
    entries = data.get('tasks') or []
    if not isinstance(entries, (list, tuple)):
      raise ValidationError('Plan tasks must be a list of task objects', code='MALFORMED_PLAN')

    tasks: List[ConversionTask] = []
    for index, entry in enumerate(entries):
      if not isinstance(entry, dict):
        raise ValidationError(f'Task at position {index} is not an object', code='MALFORMED_PLAN')
      task_id = str(entry.get('id') or f'#{index}')
      try:
        tasks.append(ConversionTask.from_dict(entry))
      except (ValueError, TypeError) as exc:
        raise ValidationError(f'Task {task_id} is malformed: {exc}', task_ids=[task_id], code='MALFORMED_PLAN') from exc

    try:
      kwargs: Dict[str, Any] = {
        'tasks': tuple(tasks),
        'project_id': str(data.get('project_id') or data.get('projectId') or ''),
        'complexity': data.get('complexity') or PlanComplexity.MEDIUM,
        'feasible': bool(data.get('feasible', True)),
        'warnings': tuple(data.get('warnings') or ()),
        'source_stack': dict(data.get('source_stack') or data.get('sourceTechStack') or {}),
        'target_stack': dict(data.get('target_stack') or data.get('targetTechStack') or {})
      }
      if data.get('id'):
        kwargs['id'] = str(data['id'])
      if data.get('created_at'):
        kwargs['created_at'] = float(data['created_at'])
    except (ValueError, TypeError) as exc:
      raise ValidationError(f'Conversion plan is malformed: {exc}', code='MALFORMED_PLAN') from exc
    return cls(**kwargs)

  def to_dict(self) -> Dict[str, Any]:
    return {
      'id': self.id,
      'project_id': self.project_id,
      'tasks': [task.to_dict() for task in self.tasks],
      'complexity': self.complexity.value if isinstance(self.complexity, PlanComplexity) else self.complexity,
      'feasible': self.feasible,
      'warnings': list(self.warnings),
      'source_stack': self.source_stack,
      'target_stack': self.target_stack,
      'estimated_duration': self.estimated_duration,
      'created_at': self.created_at
    }


@dataclass
class FileChange:
  path: str
  change_type: ChangeType = ChangeType.UPDATE
  content: Optional[str] = None
  old_content: Optional[str] = None

  @classmethod
  def from_dict(cls, data: Dict[str, Any]) -> 'FileChange':
    raw_type = data.get('change_type') or data.get('type') or ChangeType.UPDATE.value
    return cls(
      path=str(data['path']),
      change_type=ChangeType(raw_type),
      content=data.get('content'),
      old_content=data.get('old_content', data.get('oldContent'))
    )

  def to_dict(self) -> Dict[str, Any]:
    return {
      'path': self.path,
      'change_type': self.change_type.value,
      'content': self.content,
      'old_content': self.old_content
    }


@dataclass
class TaskErrorInfo:
  category: ErrorCategory
  message: str
  transient: bool = False

  @classmethod
  def from_exception(cls, exc: TaskError) -> 'TaskErrorInfo':
    return cls(category=exc.category, message=exc.message, transient=exc.transient)

  @classmethod
  def from_dict(cls, data: Dict[str, Any]) -> 'TaskErrorInfo':
    return cls(
      category=ErrorCategory(data.get('category', ErrorCategory.INTERNAL.value)),
      message=data.get('message', ''),
      transient=bool(data.get('transient', False))
    )

  def to_dict(self) -> Dict[str, Any]:
    return {'category': self.category.value, 'message': self.message, 'transient': self.transient}


@dataclass
class TaskResult:
  task_id: str
  status: TaskStatus
  files: List[FileChange] = field(default_factory=list)
  warnings: List[str] = field(default_factory=list)
  suggestions: List[str] = field(default_factory=list)
  confidence: Optional[float] = None
  error: Optional[TaskErrorInfo] = None
  attempts: int = 0
  started_at: Optional[float] = None
  finished_at: Optional[float] = None

  @property
  def succeeded(self) -> bool:
    return self.status == TaskStatus.COMPLETED

  @property
  def duration_seconds(self) -> Optional[float]:
    if self.started_at is None or self.finished_at is None:
      return None
    return max(0.0, self.finished_at - self.started_at)

  def outputs(self) -> Dict[str, Any]:
    """Summary handed to downstream tasks as dependency context."""
    return {
      'files': [change.to_dict() for change in self.files],
      'warnings': list(self.warnings),
      'suggestions': list(self.suggestions),
      'confidence': self.confidence
    }

  @classmethod
  def from_dict(cls, data: Dict[str, Any]) -> 'TaskResult':
    return cls(
      task_id=data['task_id'],
      status=TaskStatus(data['status']),
      files=[FileChange.from_dict(entry) for entry in data.get('files', [])],
      warnings=list(data.get('warnings', [])),
      suggestions=list(data.get('suggestions', [])),
      confidence=data.get('confidence'),
      error=TaskErrorInfo.from_dict(data['error']) if data.get('error') else None,
      attempts=int(data.get('attempts', 0)),
      started_at=data.get('started_at'),
      finished_at=data.get('finished_at')
    )

  def to_dict(self) -> Dict[str, Any]:
    return {
      'task_id': self.task_id,
      'status': self.status.value,
      'files': [change.to_dict() for change in self.files],
      'warnings': self.warnings,
      'suggestions': self.suggestions,
      'confidence': self.confidence,
      'error': self.error.to_dict() if self.error else None,
      'attempts': self.attempts,
      'started_at': self.started_at,
      'finished_at': self.finished_at,
      'duration_seconds': self.duration_seconds
    }


@dataclass
class TaskState:
  status: TaskStatus = TaskStatus.PENDING
  attempts: int = 0
  started_at: Optional[float] = None
  finished_at: Optional[float] = None
  last_error: Optional[str] = None

  @classmethod
  def from_dict(cls, data: Dict[str, Any]) -> 'TaskState':
    return cls(
      status=TaskStatus(data.get('status', TaskStatus.PENDING.value)),
      attempts=int(data.get('attempts', 0)),
      started_at=data.get('started_at'),
      finished_at=data.get('finished_at'),
      last_error=data.get('last_error')
    )

  def to_dict(self) -> Dict[str, Any]:
    return {
      'status': self.status.value,
      'attempts': self.attempts,
      'started_at': self.started_at,
      'finished_at': self.finished_at,
      'last_error': self.last_error
    }


@dataclass
class ConversionJob:
  project_id: str
  plan: ConversionPlan
  id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
  status: JobStatus = JobStatus.PENDING
  progress: int = 0
  current_activity: Optional[str] = None
  results: List[TaskResult] = field(default_factory=list)
  task_states: Dict[str, TaskState] = field(default_factory=dict)
  shared_context: Dict[str, Any] = field(default_factory=dict)
  webhooks: List[WebhookConfig] = field(default_factory=list)
  created_at: float = field(default_factory=time.time)
  started_at: Optional[float] = None
  completed_at: Optional[float] = None
  updated_at: float = field(default_factory=time.time)
  error_message: Optional[str] = None

  @property
  def is_terminal(self) -> bool:
    return self.status in TERMINAL_JOB_STATUSES

  def task_status(self, task_id: str) -> TaskStatus:
    return self.task_states[task_id].status

  def results_for(self, task_id: str) -> List[TaskResult]:
    return [result for result in self.results if result.task_id == task_id]

  def snapshot(self) -> 'ConversionJob':
    return copy.deepcopy(self)

  def counts(self) -> Dict[str, int]:
    counts = {status.value: 0 for status in TaskStatus}
    for state in self.task_states.values():
      counts[state.status.value] += 1
    return counts

  @classmethod
  def from_dict(cls, data: Dict[str, Any]) -> 'ConversionJob':
    return cls(
      id=data['id'],
      project_id=data['project_id'],
      plan=ConversionPlan.from_dict(data['plan']),
      status=JobStatus(data['status']),
      progress=int(data.get('progress', 0)),
      current_activity=data.get('current_activity'),
      results=[TaskResult.from_dict(entry) for entry in data.get('results', [])],
      task_states={key: TaskState.from_dict(value) for key, value in data.get('task_states', {}).items()},
      shared_context=dict(data.get('shared_context') or {}),
      webhooks=[WebhookConfig(**entry) for entry in data.get('webhooks', [])],
      created_at=data.get('created_at') or time.time(),
      started_at=data.get('started_at'),
      completed_at=data.get('completed_at'),
      updated_at=data.get('updated_at') or time.time(),
      error_message=data.get('error_message')
    )

  def to_dict(self, include_plan: bool = True, include_context: bool = True) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
      'id': self.id,
      'project_id': self.project_id,
      'status': self.status.value,
      'progress': self.progress,
      'current_activity': self.current_activity,
      'results': [result.to_dict() for result in self.results],
      'task_states': {key: state.to_dict() for key, state in self.task_states.items()},
      'webhooks': [hook.as_dict() for hook in self.webhooks],
      'created_at': self.created_at,
      'started_at': self.started_at,
      'completed_at': self.completed_at,
      'updated_at': self.updated_at,
      'error_message': self.error_message
    }
    if include_plan:
      payload['plan'] = self.plan.to_dict()
    if include_context:
      payload['shared_context'] = self.shared_context
    return payload


@dataclass
class ProgressEvent:
  job_id: str
  sequence: int
  status: JobStatus
  progress: int
  current_activity: Optional[str] = None
  task_id: Optional[str] = None
  task_status: Optional[TaskStatus] = None
  message: Optional[str] = None
  timestamp: float = field(default_factory=time.time)

  @property
  def is_terminal(self) -> bool:
    return self.status in TERMINAL_JOB_STATUSES

  def to_dict(self) -> Dict[str, Any]:
    return {
      'job_id': self.job_id,
      'sequence': self.sequence,
      'status': self.status.value,
      'progress': self.progress,
      'current_activity': self.current_activity,
      'task_id': self.task_id,
      'task_status': self.task_status.value if self.task_status else None,
      'message': self.message,
      'timestamp': self.timestamp
    }
