"""Shared fakes and builders for the engine tests."""

import asyncio
from typing import Any, Dict, List, Optional

from backend.ai.converter import BaseConverter, ConversionRequest, ConversionResponse
from backend.conversion.errors import ErrorCategory, PermanentTaskError, TransientTaskError
from backend.conversion.events import ProgressChannel
from backend.conversion.job_store import MemoryJobStore
from backend.conversion.manager import JobManager
from backend.conversion.models import ChangeType, ConversionPlan, ConversionTask, FileChange, TaskKind
from backend.conversion.scheduler import SchedulerConfig


class ScriptedConverter(BaseConverter):
  """Fake AI capability driven by per-task scripts.

  A script is a list of outcomes consumed one per attempt: ``'ok'``,
  ``'transient'``, ``'permanent'`` or an Exception instance. Tasks without a
  script always succeed. ``gates`` holds events a task waits on before
  answering, which lets tests keep a task in flight.
  """

  def __init__(self, delay: float = 0.0, scripts: Optional[Dict[str, List[Any]]] = None) -> None:
    self.delay = delay
    self.scripts = {key: list(value) for key, value in (scripts or {}).items()}
    self.gates: Dict[str, asyncio.Event] = {}
    self.calls: List[str] = []
    self.requests: Dict[str, ConversionRequest] = {}
    self.started: List[str] = []
    self.finished: List[str] = []
    self.active = 0
    self.max_active = 0
    self.closed = False

  def gate(self, task_id: str) -> asyncio.Event:
    event = asyncio.Event()
    self.gates[task_id] = event
    return event

  async def convert(self, request: ConversionRequest) -> ConversionResponse:
    self.calls.append(request.task_id)
    self.requests[request.task_id] = request
    self.started.append(request.task_id)
    self.active += 1
    self.max_active = max(self.max_active, self.active)
    try:
      if request.task_id in self.gates:
        await self.gates[request.task_id].wait()
      if self.delay:
        await asyncio.sleep(self.delay)
      outcome = 'ok'
      script = self.scripts.get(request.task_id)
      if script:
        outcome = script.pop(0)
      if isinstance(outcome, Exception):
        raise outcome
      if outcome == 'transient':
        raise TransientTaskError(ErrorCategory.UNAVAILABLE, f'{request.task_id} temporarily unavailable')
      if outcome == 'permanent':
        raise PermanentTaskError(ErrorCategory.MALFORMED_OUTPUT, f'{request.task_id} produced garbage')
      return ConversionResponse(
        files=[FileChange(path=f'out/{request.task_id}.py', change_type=ChangeType.CREATE, content=f'# {request.task_id}')],
        confidence=0.9,
        warnings=[],
        suggestions=[f'review {request.task_id}']
      )
    finally:
      self.active -= 1
      self.finished.append(request.task_id)

  async def aclose(self) -> None:
    self.closed = True


def make_task(task_id: str, deps=(), duration: float = 10.0, kind: TaskKind = TaskKind.CODE_GENERATION, **kwargs) -> ConversionTask:
  return ConversionTask(
    id=task_id,
    kind=kind,
    description=f'Convert {task_id}',
    dependencies=tuple(deps),
    estimated_duration=duration,
    **kwargs
  )


def make_plan(*tasks: ConversionTask, **kwargs) -> ConversionPlan:
  return ConversionPlan(tasks=tasks, project_id=kwargs.pop('project_id', 'proj-1'), **kwargs)


def fast_config(**overrides) -> SchedulerConfig:
  config = SchedulerConfig(
    max_concurrent=2,
    max_retries=3,
    base_delay=0.01,
    max_delay=0.05,
    task_timeout=5.0
  )
  for key, value in overrides.items():
    setattr(config, key, value)
  return config


def build_manager(converter: BaseConverter, **kwargs) -> JobManager:
  config = kwargs.pop('config', None) or fast_config()
  return JobManager(
    converter=converter,
    store=kwargs.pop('store', None) or MemoryJobStore(),
    channel=kwargs.pop('channel', None) or ProgressChannel(coalesce_seconds=0.0),
    config=config,
    save_interval=0.0,
    cleanup_interval=None,
    **kwargs
  )


