from __future__ import annotations

from enum import Enum
from typing import Iterable, List, Optional


class ErrorCategory(Enum):
  RATE_LIMITED = 'rate_limited'
  UNAVAILABLE = 'unavailable'
  TIMEOUT = 'timeout'
  NETWORK = 'network'
  MALFORMED_OUTPUT = 'malformed_output'
  INVALID_INPUT = 'invalid_input'
  INTERNAL = 'internal'
  DEPENDENCY_FAILED = 'dependency_failed'


TRANSIENT_CATEGORIES = {
  ErrorCategory.RATE_LIMITED,
  ErrorCategory.UNAVAILABLE,
  ErrorCategory.TIMEOUT,
  ErrorCategory.NETWORK
}


class ConversionEngineError(Exception):
  """Base class for every error raised by the workflow engine."""


class ValidationError(ConversionEngineError):
  """Raised when a plan is malformed or cyclic. Never retried."""

  def __init__(self, message: str, task_ids: Optional[Iterable[str]] = None, code: str = 'INVALID_PLAN') -> None:
    super().__init__(message)
    self.message = message
    self.task_ids: List[str] = list(task_ids or [])
    self.code = code

  def to_dict(self) -> dict:
    return {'code': self.code, 'message': self.message, 'task_ids': self.task_ids}


class InvalidStateTransition(ConversionEngineError):
  def __init__(self, job_id: str, action: str, current_status: str) -> None:
    super().__init__(f'Cannot {action} job {job_id} while it is {current_status}')
    self.job_id = job_id
    self.action = action
    self.current_status = current_status


class JobNotFound(ConversionEngineError):
  def __init__(self, job_id: str) -> None:
    super().__init__(f'Conversion job {job_id} not found')
    self.job_id = job_id


class TaskError(ConversionEngineError):
  """Classified failure of a single task execution."""

  transient: Optional[bool] = None

  def __init__(self, category: ErrorCategory, message: str) -> None:
    super().__init__(message)
    self.category = category
    self.message = message
    if self.transient is None:
      self.transient = category in TRANSIENT_CATEGORIES


class TransientTaskError(TaskError):
  """Network, timeout or rate-limit failure. Retried with backoff."""

  transient = True


class PermanentTaskError(TaskError):
  """Malformed output or unrecoverable input. Fails the task immediately."""

  transient = False
