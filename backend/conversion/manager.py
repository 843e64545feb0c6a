from __future__ import annotations

import asyncio
import itertools
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

from backend.ai.converter import BaseConverter
from backend.config import settings
from backend.conversion.errors import InvalidStateTransition, JobNotFound, ValidationError
from backend.conversion.events import ALL_JOBS, ProgressCallback, ProgressChannel
from backend.conversion.executor import TaskExecutor
from backend.conversion.job_store import JobStore, MemoryJobStore
from backend.conversion.models import (
  ConversionJob,
  ConversionPlan,
  JobStatus,
  ProgressEvent,
  TaskResult,
  TaskState,
  TaskStatus,
  WebhookConfig
)
from backend.conversion.progress import ProgressTracker
from backend.conversion.queue import JobQueue, QueueMessage
from backend.conversion.scheduler import Scheduler, SchedulerConfig, SchedulerSink
from backend.conversion.validator import PlanValidator, ValidatedPlan
from backend.conversion.webhooks import WebhookManager, parse_webhooks
from backend.logging.event_logger import EventLogger
from backend.resources.monitor import ResourceMonitor

logger = logging.getLogger(__name__)

RESUMABLE_ON_RESTART = (JobStatus.PENDING, JobStatus.RUNNING, JobStatus.PAUSED)
ACTIVITY_LABELS = {
  JobStatus.PENDING: 'Waiting to start',
  JobStatus.RUNNING: 'Running',
  JobStatus.PAUSED: 'Paused',
  JobStatus.COMPLETED: 'Conversion completed',
  JobStatus.FAILED: 'Conversion failed',
  JobStatus.CANCELLED: 'Cancelled'
}

_ordinal = itertools.count(1)


@dataclass
class JobRuntime:
  job: ConversionJob
  validated: ValidatedPlan
  tracker: ProgressTracker
  lock: asyncio.Lock = field(default_factory=asyncio.Lock)
  settled: asyncio.Event = field(default_factory=asyncio.Event)
  scheduler: Optional[Scheduler] = None
  runner: Optional[asyncio.Task] = None
  sequence: int = 0
  last_save: float = 0.0
  ordinal: int = field(default_factory=lambda: next(_ordinal))

  @property
  def weights(self) -> Dict[str, float]:
    return {task.id: task.weight for task in self.validated.plan.tasks}

  def runner_active(self) -> bool:
    return self.runner is not None and not self.runner.done()


class JobManager(SchedulerSink):
  """Owns conversion job lifecycle and is the only writer of job state."""

  def __init__(
    self,
    converter: BaseConverter,
    store: Optional[JobStore] = None,
    channel: Optional[ProgressChannel] = None,
    queue: Optional[JobQueue] = None,
    config: Optional[SchedulerConfig] = None,
    event_logger: Optional[EventLogger] = None,
    webhook_manager: Optional[WebhookManager] = None,
    resource_monitor: Optional[ResourceMonitor] = None,
    save_interval: Optional[float] = None,
    retention_hours: Optional[float] = None,
    cleanup_interval: Optional[float] = 3600.0
  ) -> None:
    self.converter = converter
    self.executor = TaskExecutor(converter)
    self.validator = PlanValidator()
    self.store = store or MemoryJobStore()
    self.channel = channel or ProgressChannel(settings.progress_coalesce_seconds)
    self.queue = queue
    self.config = config or SchedulerConfig.from_settings()
    self.event_logger = event_logger
    self.webhook_manager = webhook_manager or WebhookManager()
    self.resource_monitor = resource_monitor
    self.save_interval = settings.save_interval_seconds if save_interval is None else save_interval
    self.retention_hours = settings.job_retention_hours if retention_hours is None else retention_hours
    self.cleanup_interval = cleanup_interval
    self._jobs: Dict[str, JobRuntime] = {}
    self._background: set = set()
    self._cleanup_task: Optional[asyncio.Task] = None
    if self.queue:
      self.queue.on_message(self._handle_queue_message)

  # ------------------------------------------------------------------ lifecycle

  async def start(self, recover: bool = True) -> None:
    if recover:
      await self.recover_jobs()
    if self.queue:
      await self.queue.start()
    if self.cleanup_interval and self._cleanup_task is None:
      self._cleanup_task = asyncio.create_task(self._cleanup_loop())
    logger.info('Job manager started with max_concurrent=%s max_retries=%s', self.config.max_concurrent, self.config.max_retries)

  async def shutdown(self) -> None:
    if self._cleanup_task:
      self._cleanup_task.cancel()
      await asyncio.gather(self._cleanup_task, return_exceptions=True)
      self._cleanup_task = None
    if self.queue:
      await self.queue.stop()
    runners = [runtime.runner for runtime in self._jobs.values() if runtime.runner_active()]
    for runner in runners:
      runner.cancel()
    if runners:
      await asyncio.gather(*runners, return_exceptions=True)
    for runtime in self._jobs.values():
      self._persist(runtime, force=True)
    if self._background:
      await asyncio.gather(*list(self._background), return_exceptions=True)
    await self.channel.close()
    await self.converter.aclose()
    logger.info('Job manager stopped')

  # ------------------------------------------------------------------ operations

  async def create_job(
    self,
    project_id: str,
    plan: Union[ConversionPlan, Dict[str, Any]],
    shared_context: Optional[Dict[str, Any]] = None,
    webhooks: Optional[Iterable[object]] = None
  ) -> ConversionJob:
    if isinstance(plan, dict):
      plan = ConversionPlan.from_dict(plan)
    validated = self.validator.validate(plan)

    context = dict(shared_context or {})
    context.setdefault('source_stack', dict(plan.source_stack))
    context.setdefault('target_stack', dict(plan.target_stack))
    job = ConversionJob(
      project_id=project_id or plan.project_id,
      plan=plan,
      shared_context=context,
      webhooks=parse_webhooks(webhooks),
      task_states={task_id: TaskState(status=status) for task_id, status in validated.initial_statuses.items()},
      current_activity=ACTIVITY_LABELS[JobStatus.PENDING]
    )
    runtime = self._register(job, validated)
    self._persist(runtime, force=True)
    self._audit('job_created', 'Conversion job created', {
      'job_id': job.id,
      'project_id': job.project_id,
      'tasks': len(plan.tasks),
      'warnings': validated.warnings
    })
    self._publish(runtime, message='Job created')
    logger.info('Created conversion job %s for project %s (%s tasks)', job.id, job.project_id, len(plan.tasks))
    return job.snapshot()

  def validate_plan(self, plan: Union[ConversionPlan, Dict[str, Any]]) -> ValidatedPlan:
    if isinstance(plan, dict):
      plan = ConversionPlan.from_dict(plan)
    return self.validator.validate(plan)

  async def start_job(self, job_id: str) -> ConversionJob:
    runtime = self._runtime(job_id)
    async with runtime.lock:
      job = runtime.job
      if job.status != JobStatus.PENDING:
        raise InvalidStateTransition(job_id, 'start', job.status.value)
      job.status = JobStatus.RUNNING
      job.started_at = job.started_at or time.time()
      job.current_activity = 'Starting conversion'
      runtime.settled.clear()
      self._persist(runtime, force=True)
      self._publish(runtime, message='Job started')
      self._audit('job_started', 'Conversion job started', {'job_id': job_id})
      self._notify(runtime, 'job.started')
      await self._launch(runtime)
      logger.info('Started conversion job %s', job_id)
      return job.snapshot()

  async def pause_job(self, job_id: str) -> ConversionJob:
    runtime = self._runtime(job_id)
    async with runtime.lock:
      job = runtime.job
      if job.status != JobStatus.RUNNING:
        raise InvalidStateTransition(job_id, 'pause', job.status.value)
      job.status = JobStatus.PAUSED
      job.current_activity = ACTIVITY_LABELS[JobStatus.PAUSED]
      self._persist(runtime, force=True)
      self._publish(runtime, message='Job paused')
      self._audit('job_paused', 'Conversion job paused', {'job_id': job_id})
      self._notify(runtime, 'job.paused')
      if runtime.scheduler:
        if self.config.hard_cancel_on_pause:
          interrupted = runtime.scheduler.cancel_in_flight()
          logger.info('Interrupted %s in-flight tasks while pausing job %s', interrupted, job_id)
        else:
          runtime.scheduler.wake()
      return job.snapshot()

  async def resume_job(self, job_id: str) -> ConversionJob:
    runtime = self._runtime(job_id)
    async with runtime.lock:
      job = runtime.job
      if job.status != JobStatus.PAUSED:
        raise InvalidStateTransition(job_id, 'resume', job.status.value)
      job.status = JobStatus.RUNNING
      job.current_activity = 'Resuming conversion'
      runtime.settled.clear()
      self._persist(runtime, force=True)
      self._publish(runtime, message='Job resumed')
      self._audit('job_resumed', 'Conversion job resumed', {'job_id': job_id})
      self._notify(runtime, 'job.resumed')
      if runtime.runner_active() and runtime.scheduler:
        runtime.scheduler.wake()
      else:
        await self._launch(runtime)
      return job.snapshot()

  async def cancel_job(self, job_id: str) -> ConversionJob:
    runtime = self._runtime(job_id)
    async with runtime.lock:
      self._cancel_locked(runtime)
      return runtime.job.snapshot()

  async def retry_job(self, job_id: str) -> ConversionJob:
    runtime = self._runtime(job_id)
    async with runtime.lock:
      job = runtime.job
      if job.status != JobStatus.FAILED:
        raise InvalidStateTransition(job_id, 'retry', job.status.value)
      reset: List[str] = []
      for task_id, state in job.task_states.items():
        if runtime.validated.initial_statuses.get(task_id) == TaskStatus.SKIPPED:
          continue
        if state.status in {TaskStatus.FAILED, TaskStatus.SKIPPED, TaskStatus.RUNNING}:
          job.task_states[task_id] = TaskState()
          reset.append(task_id)
      job.results = [result for result in job.results if result.task_id not in reset]
      job.status = JobStatus.PENDING
      job.error_message = None
      job.completed_at = None
      job.current_activity = ACTIVITY_LABELS[JobStatus.PENDING]
      runtime.tracker = ProgressTracker.for_tasks(runtime.weights, self._statuses(job))
      job.progress = runtime.tracker.value
      runtime.settled.clear()
      self._persist(runtime, force=True)
      self._publish(runtime, message=f'Job reset for retry ({len(reset)} tasks re-opened)')
      self._audit('job_retry', 'Failed conversion job reset for retry', {'job_id': job_id, 'tasks': reset})
      return job.snapshot()

  async def delete_job(self, job_id: str) -> None:
    runtime = self._jobs.get(job_id)
    if runtime is None:
      if not self.store.delete(job_id):
        raise JobNotFound(job_id)
      self._audit('job_deleted', 'Conversion job deleted', {'job_id': job_id})
      return

    async with runtime.lock:
      if runtime.job.status in {JobStatus.RUNNING, JobStatus.PAUSED}:
        self._cancel_locked(runtime)
    runner = runtime.runner
    if runner is not None and not runner.done():
      await asyncio.wait({runner}, timeout=5.0)
      if not runner.done():
        runner.cancel()
        await asyncio.gather(runner, return_exceptions=True)
    self._jobs.pop(job_id, None)
    self.store.delete(job_id)
    self.channel.close_job(job_id)
    self._audit('job_deleted', 'Conversion job deleted', {'job_id': job_id})
    logger.info('Deleted conversion job %s', job_id)

  async def get_job_status(self, job_id: str) -> ConversionJob:
    runtime = self._jobs.get(job_id)
    if runtime:
      return runtime.job.snapshot()
    job = self.store.find(job_id)
    if job is None:
      raise JobNotFound(job_id)
    return job

  async def list_jobs(self, project_id: Optional[str] = None, status: Optional[JobStatus] = None) -> List[ConversionJob]:
    stored = self.store.find_by_project(project_id) if project_id else self.store.find_all()
    merged: Dict[str, ConversionJob] = {job.id: job for job in stored}
    ordinals: Dict[str, int] = {}
    for job_id, runtime in self._jobs.items():
      if project_id and runtime.job.project_id != project_id:
        continue
      merged[job_id] = runtime.job.snapshot()
      ordinals[job_id] = runtime.ordinal
    jobs = [job for job in merged.values() if status is None or job.status == status]
    return sorted(jobs, key=lambda job: (job.created_at, ordinals.get(job.id, 0)), reverse=True)

  def subscribe_progress(self, job_id: str, callback: ProgressCallback) -> Callable[[], None]:
    if job_id != ALL_JOBS and job_id not in self._jobs and self.store.find(job_id) is None:
      raise JobNotFound(job_id)
    return self.channel.subscribe(job_id, callback)

  def job_summary(self, job_id: str) -> Dict[str, Any]:
    runtime = self._runtime(job_id)
    summary = runtime.tracker.summary()
    summary['in_flight'] = sorted(runtime.scheduler.in_flight) if runtime.scheduler and runtime.runner_active() else []
    summary['status'] = runtime.job.status.value
    return summary

  async def wait_for_job(self, job_id: str, timeout: Optional[float] = None) -> ConversionJob:
    """Block until the job is completed, failed or cancelled."""
    runtime = self._runtime(job_id)
    await asyncio.wait_for(runtime.settled.wait(), timeout=timeout)
    return runtime.job.snapshot()

  async def wait_until_idle(self, job_id: str, timeout: Optional[float] = None) -> ConversionJob:
    """Block until no dispatch loop is running for the job."""
    runtime = self._runtime(job_id)
    deadline = None if timeout is None else time.monotonic() + timeout
    while runtime.runner_active():
      remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
      done, _ = await asyncio.wait({runtime.runner}, timeout=remaining)
      if not done:
        raise asyncio.TimeoutError(f'Job {job_id} still dispatching')
    return runtime.job.snapshot()

  async def recover_jobs(self) -> List[str]:
    recovered: List[str] = []
    for job in self.store.find_by_status(RESUMABLE_ON_RESTART):
      if job.id in self._jobs:
        continue
      if job.status == JobStatus.RUNNING:
        job.status = JobStatus.FAILED
        job.completed_at = time.time()
        job.error_message = job.error_message or 'Interrupted by process restart'
        job.current_activity = ACTIVITY_LABELS[JobStatus.FAILED]
        for state in job.task_states.values():
          if state.status == TaskStatus.RUNNING:
            state.status = TaskStatus.PENDING
      try:
        validated = self.validator.validate(job.plan)
      except ValidationError as exc:
        logger.error('Stored job %s has an invalid plan and cannot be recovered: %s', job.id, exc)
        continue
      runtime = self._register(job, validated)
      self._persist(runtime, force=True)
      recovered.append(job.id)
      self._audit('job_recovered', 'Conversion job recovered after restart', {'job_id': job.id, 'status': job.status.value})
    if recovered:
      logger.info('Recovered %s conversion jobs from the store', len(recovered))
    return recovered

  async def cleanup_expired(self, retention_hours: Optional[float] = None) -> List[str]:
    hours = self.retention_hours if retention_hours is None else retention_hours
    cutoff = time.time() - hours * 3600
    removed: List[str] = []
    for job in await self.list_jobs():
      if job.is_terminal and job.completed_at and job.completed_at < cutoff:
        await self.delete_job(job.id)
        removed.append(job.id)
    if removed:
      logger.info('Removed %s expired conversion jobs', len(removed))
    return removed

  # ------------------------------------------------------------------ scheduler sink

  def dispatch_allowed(self, job_id: str) -> bool:
    runtime = self._jobs.get(job_id)
    return runtime is not None and runtime.job.status == JobStatus.RUNNING

  async def task_started(self, job_id: str, task_id: str, attempt: int) -> None:
    runtime = self._jobs.get(job_id)
    if runtime is None:
      return
    async with runtime.lock:
      job = runtime.job
      if job.is_terminal:
        return
      state = job.task_states[task_id]
      state.status = TaskStatus.RUNNING
      state.attempts = attempt
      state.started_at = time.time()
      state.finished_at = None
      task = runtime.validated.tasks[task_id]
      job.current_activity = f'Running {task_id}: {task.description}'
      self._persist(runtime)
      self._publish(runtime, task_id=task_id, task_status=TaskStatus.RUNNING)

  async def task_retrying(self, job_id: str, result: TaskResult, delay: float) -> None:
    runtime = self._jobs.get(job_id)
    if runtime is None:
      return
    async with runtime.lock:
      job = runtime.job
      if job.is_terminal:
        return
      state = job.task_states[result.task_id]
      state.status = TaskStatus.PENDING
      state.finished_at = result.finished_at
      state.last_error = result.error.message if result.error else None
      job.current_activity = f'Retrying {result.task_id} in {delay:.1f}s'
      self._persist(runtime)
      self._publish(runtime, task_id=result.task_id, task_status=TaskStatus.PENDING, message=state.last_error)
      self._audit('task_retry', 'Task failed transiently and will be retried', {
        'job_id': job_id,
        'task_id': result.task_id,
        'attempt': result.attempts,
        'delay_seconds': delay,
        'error': result.error.to_dict() if result.error else None
      })

  async def task_finished(self, job_id: str, result: TaskResult, skipped: List[TaskResult]) -> bool:
    runtime = self._jobs.get(job_id)
    if runtime is None:
      return False
    async with runtime.lock:
      job = runtime.job
      if job.is_terminal:
        logger.debug('Discarding result of task %s for %s job %s', result.task_id, job.status.value, job_id)
        return False
      self._record_result(runtime, result)
      if result.status == TaskStatus.FAILED:
        task = runtime.validated.tasks[result.task_id]
        message = result.error.message if result.error else 'unknown error'
        if task.required and not job.error_message:
          job.error_message = f'Task {result.task_id} failed: {message}'
        self._audit('task_failed', 'Task failed', {
          'job_id': job_id,
          'task_id': result.task_id,
          'required': task.required,
          'error': result.error.to_dict() if result.error else None,
          'skipped': [entry.task_id for entry in skipped]
        })
      for entry in skipped:
        self._record_result(runtime, entry)
      job.progress = runtime.tracker.value
      if result.succeeded:
        job.current_activity = f'Completed {result.task_id}'
      else:
        job.current_activity = f'Task {result.task_id} failed'
      self._persist(runtime, force=result.status == TaskStatus.FAILED)
      self._publish(runtime, task_id=result.task_id, task_status=result.status)
      return True

  async def task_interrupted(self, job_id: str, task_id: str) -> None:
    runtime = self._jobs.get(job_id)
    if runtime is None:
      return
    async with runtime.lock:
      if runtime.job.is_terminal:
        return
      state = runtime.job.task_states[task_id]
      state.status = TaskStatus.PENDING
      state.attempts = max(0, state.attempts - 1)
      state.started_at = None
      self._persist(runtime)
      self._publish(runtime, task_id=task_id, task_status=TaskStatus.PENDING, message='Task interrupted')

  async def dispatch_finished(self, job_id: str) -> None:
    runtime = self._jobs.get(job_id)
    if runtime is None:
      return
    async with runtime.lock:
      job = runtime.job
      if job.status == JobStatus.RUNNING:
        states = job.task_states.values()
        unfinished = any(state.status in {TaskStatus.PENDING, TaskStatus.RUNNING} for state in states)
        if unfinished and runtime.scheduler and runtime.scheduler.exit_reason == 'stalled':
          self._finalize(runtime, JobStatus.FAILED, 'Dispatcher stalled with tasks that can never become ready')
        elif unfinished:
          logger.debug('Job %s resumed while its dispatcher was draining; restarting dispatch', job_id)
          self._spawn_runner(runtime)
        else:
          self._finalize(runtime, self._outcome(runtime))
      elif job.status == JobStatus.PAUSED:
        job.current_activity = ACTIVITY_LABELS[JobStatus.PAUSED]
        self._persist(runtime, force=True)
        self._publish(runtime, message='In-flight tasks drained')

  # ------------------------------------------------------------------ internals

  def _register(self, job: ConversionJob, validated: ValidatedPlan) -> JobRuntime:
    tracker = ProgressTracker.for_tasks(
      {task.id: task.weight for task in validated.plan.tasks},
      self._statuses(job),
      floor=job.progress
    )
    if job.status in {JobStatus.COMPLETED, JobStatus.FAILED}:
      tracker.finalize(job.status)
    job.progress = tracker.value
    runtime = JobRuntime(job=job, validated=validated, tracker=tracker)
    if job.is_terminal:
      runtime.settled.set()
    self._jobs[job.id] = runtime
    return runtime

  def _runtime(self, job_id: str) -> JobRuntime:
    runtime = self._jobs.get(job_id)
    if runtime:
      return runtime
    job = self.store.find(job_id)
    if job is None:
      raise JobNotFound(job_id)
    return self._register(job, self.validator.validate(job.plan))

  @staticmethod
  def _statuses(job: ConversionJob) -> Dict[str, TaskStatus]:
    return {task_id: state.status for task_id, state in job.task_states.items()}

  def _record_result(self, runtime: JobRuntime, result: TaskResult) -> None:
    state = runtime.job.task_states[result.task_id]
    state.status = result.status
    state.attempts = max(state.attempts, result.attempts)
    state.finished_at = result.finished_at or time.time()
    state.last_error = result.error.message if result.error else None
    runtime.job.results.append(result)
    runtime.tracker.update(result.task_id, result.status)

  def _outcome(self, runtime: JobRuntime) -> JobStatus:
    tasks = runtime.validated.tasks
    for task_id, state in runtime.job.task_states.items():
      if state.status == TaskStatus.FAILED and tasks[task_id].required:
        return JobStatus.FAILED
    return JobStatus.COMPLETED

  def _finalize(self, runtime: JobRuntime, status: JobStatus, error_message: Optional[str] = None) -> None:
    job = runtime.job
    job.status = status
    job.completed_at = time.time()
    job.current_activity = ACTIVITY_LABELS[status]
    if status == JobStatus.FAILED and not job.error_message:
      job.error_message = error_message or 'One or more required tasks failed'
    job.progress = runtime.tracker.finalize(status)
    runtime.settled.set()
    self._persist(runtime, force=True)
    self._publish(runtime, message=job.error_message if status == JobStatus.FAILED else None)
    counts = job.counts()
    self._audit(f'job_{status.value}', f'Conversion job {status.value}', {
      'job_id': job.id,
      'progress': job.progress,
      'counts': counts,
      'error': job.error_message
    })
    self._notify(runtime, f'job.{status.value}')
    logger.info('Conversion job %s finished as %s (%s)', job.id, status.value, counts)

  def _cancel_locked(self, runtime: JobRuntime) -> None:
    job = runtime.job
    if job.status not in {JobStatus.RUNNING, JobStatus.PAUSED}:
      raise InvalidStateTransition(job.id, 'cancel', job.status.value)
    job.status = JobStatus.CANCELLED
    job.completed_at = time.time()
    job.current_activity = ACTIVITY_LABELS[JobStatus.CANCELLED]
    for state in job.task_states.values():
      if state.status == TaskStatus.RUNNING:
        state.status = TaskStatus.PENDING
        state.started_at = None
    runtime.settled.set()
    self._persist(runtime, force=True)
    self._publish(runtime, message='Job cancelled')
    self._audit('job_cancelled', 'Conversion job cancelled', {'job_id': job.id, 'progress': job.progress})
    self._notify(runtime, 'job.cancelled')
    if runtime.scheduler:
      runtime.scheduler.cancel_in_flight()
    logger.info('Cancelled conversion job %s', job.id)

  async def _launch(self, runtime: JobRuntime) -> None:
    if self.queue:
      await self.queue.enqueue(runtime.job.id)
      return
    self._spawn_runner(runtime)

  def _spawn_runner(self, runtime: JobRuntime) -> None:
    job = runtime.job
    outputs = {result.task_id: result.outputs() for result in job.results if result.succeeded}
    scheduler = Scheduler(
      job_id=job.id,
      validated=runtime.validated,
      executor=self.executor,
      sink=self,
      config=self.config,
      statuses=self._statuses(job),
      attempts={task_id: state.attempts for task_id, state in job.task_states.items()},
      outputs=outputs,
      shared_context=job.shared_context,
      resource_monitor=self.resource_monitor
    )
    runtime.scheduler = scheduler
    runtime.runner = asyncio.create_task(self._run_scheduler(runtime, scheduler))

  async def _run_scheduler(self, runtime: JobRuntime, scheduler: Scheduler) -> None:
    try:
      await scheduler.run()
    except asyncio.CancelledError:
      raise
    except Exception as exc:  # noqa: BLE001
      logger.exception('Dispatcher for job %s crashed', runtime.job.id)
      async with runtime.lock:
        if not runtime.job.is_terminal:
          self._finalize(runtime, JobStatus.FAILED, f'Dispatcher crashed: {exc}')

  async def _handle_queue_message(self, message: QueueMessage) -> None:
    runtime = self._jobs.get(message.job_id)
    if runtime is None or runtime.job.status != JobStatus.RUNNING:
      await self.queue.ack(message)
      return
    async with runtime.lock:
      if not runtime.runner_active():
        self._spawn_runner(runtime)
    while runtime.runner_active():
      await asyncio.wait({runtime.runner})
    await self.queue.ack(message)

  async def _cleanup_loop(self) -> None:
    while True:
      await asyncio.sleep(self.cleanup_interval)
      try:
        await self.cleanup_expired()
      except Exception:  # noqa: BLE001
        logger.exception('Expired job cleanup failed')

  def _persist(self, runtime: JobRuntime, force: bool = False) -> None:
    job = runtime.job
    now = time.time()
    job.updated_at = now
    if not force and now - runtime.last_save < self.save_interval:
      return
    try:
      self.store.save(job)
      runtime.last_save = now
    except Exception as exc:  # noqa: BLE001
      logger.exception('Failed to persist conversion job %s', job.id)
      if self.event_logger:
        self.event_logger.log_error('job_save_failed', {'job_id': job.id, 'error': str(exc)})

  def _publish(
    self,
    runtime: JobRuntime,
    task_id: Optional[str] = None,
    task_status: Optional[TaskStatus] = None,
    message: Optional[str] = None
  ) -> None:
    runtime.sequence += 1
    job = runtime.job
    event = ProgressEvent(
      job_id=job.id,
      sequence=runtime.sequence,
      status=job.status,
      progress=job.progress,
      current_activity=job.current_activity,
      task_id=task_id,
      task_status=task_status,
      message=message
    )
    self.channel.publish(job.id, event)

  def _notify(self, runtime: JobRuntime, event_name: str) -> None:
    job = runtime.job
    if not job.webhooks:
      return
    payload = {
      'job_id': job.id,
      'project_id': job.project_id,
      'status': job.status.value,
      'progress': job.progress,
      'error_message': job.error_message,
      'counts': job.counts()
    }
    task = asyncio.create_task(self._deliver_webhooks(list(job.webhooks), event_name, payload))
    self._background.add(task)
    task.add_done_callback(self._background.discard)

  async def _deliver_webhooks(self, hooks: List[WebhookConfig], event_name: str, payload: Dict[str, Any]) -> None:
    results = await self.webhook_manager.dispatch(hooks, event_name, payload)
    expected = sum(1 for hook in hooks if hook.should_fire(event_name))
    if len(results) < expected and self.event_logger:
      self.event_logger.log_error('webhook_failed', {
        'job_id': payload['job_id'],
        'event': event_name,
        'delivered': len(results),
        'expected': expected
      })

  def _audit(self, category: str, message: str, payload: Dict[str, Any]) -> None:
    if self.event_logger:
      self.event_logger.log_event(category, message, payload)
