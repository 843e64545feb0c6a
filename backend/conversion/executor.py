from __future__ import annotations

import asyncio
import fnmatch
import logging
import time
from typing import Any, Dict, List, Optional

from backend.ai.converter import BaseConverter, ConversionRequest
from backend.config import settings
from backend.conversion.errors import ErrorCategory, TaskError
from backend.conversion.models import ConversionTask, TaskErrorInfo, TaskResult, TaskStatus

logger = logging.getLogger(__name__)


class TaskExecutor:
  """Runs a single conversion task against the AI capability.

  The executor never touches job or plan state. Every failure is returned as
  a failed TaskResult carrying a classified error; only cancellation of the
  awaiting coroutine propagates.
  """

  def __init__(self, converter: BaseConverter, max_excerpt_chars: Optional[int] = None) -> None:
    self.converter = converter
    self.max_excerpt_chars = max_excerpt_chars or settings.max_excerpt_chars

  async def execute(
    self,
    task: ConversionTask,
    context: Dict[str, Any],
    timeout: Optional[float] = None,
    attempt: int = 1
  ) -> TaskResult:
    started = time.time()
    request = self.build_request(task, context)
    try:
      if timeout and timeout > 0:
        response = await asyncio.wait_for(self.converter.convert(request), timeout=timeout)
      else:
        response = await self.converter.convert(request)
    except asyncio.TimeoutError:
      return self._failure(task, started, attempt, ErrorCategory.TIMEOUT, f'Task {task.id} exceeded timeout of {timeout}s', True)
    except TaskError as exc:
      return self._failure(task, started, attempt, exc.category, exc.message, exc.transient)
    except Exception as exc:  # noqa: BLE001
      logger.exception('Unexpected error while executing task %s', task.id)
      return self._failure(task, started, attempt, ErrorCategory.INTERNAL, f'{type(exc).__name__}: {exc}', False)

    if response.confidence is not None and not 0.0 <= response.confidence <= 1.0:
      return self._failure(
        task,
        started,
        attempt,
        ErrorCategory.MALFORMED_OUTPUT,
        f'Confidence {response.confidence} is outside 0..1',
        False
      )

    return TaskResult(
      task_id=task.id,
      status=TaskStatus.COMPLETED,
      files=list(response.files),
      warnings=list(response.warnings),
      suggestions=list(response.suggestions),
      confidence=response.confidence,
      attempts=attempt,
      started_at=started,
      finished_at=time.time()
    )

  def build_request(self, task: ConversionTask, context: Dict[str, Any]) -> ConversionRequest:
    shared = context.get('shared') or {}
    return ConversionRequest(
      task_id=task.id,
      kind=task.kind,
      description=task.description,
      source_stack=dict(shared.get('source_stack') or {}),
      target_stack=dict(shared.get('target_stack') or {}),
      source_excerpt=self._source_excerpt(task, shared),
      input_files=list(task.input_files),
      output_files=list(task.output_files),
      context={'dependencies': context.get('dependencies') or {}, 'task': dict(task.context)}
    )

  def _source_excerpt(self, task: ConversionTask, shared: Dict[str, Any]) -> str:
    sources: Dict[str, str] = shared.get('source_files') or {}
    sections: List[str] = []
    if sources and task.input_files:
      for path in sorted(sources):
        if any(fnmatch.fnmatch(path, pattern) for pattern in task.input_files):
          sections.append(f'// File: {path}\n{sources[path]}')
    excerpt = '\n\n'.join(sections) if sections else str(task.context.get('source_excerpt') or '')
    if len(excerpt) > self.max_excerpt_chars:
      logger.debug('Truncating source excerpt for task %s to %s characters', task.id, self.max_excerpt_chars)
      excerpt = excerpt[:self.max_excerpt_chars]
    return excerpt

  def _failure(
    self,
    task: ConversionTask,
    started: float,
    attempt: int,
    category: ErrorCategory,
    message: str,
    transient: bool
  ) -> TaskResult:
    logger.debug('Task %s attempt %s failed (%s): %s', task.id, attempt, category.value, message)
    return TaskResult(
      task_id=task.id,
      status=TaskStatus.FAILED,
      error=TaskErrorInfo(category=category, message=message, transient=transient),
      attempts=attempt,
      started_at=started,
      finished_at=time.time()
    )
