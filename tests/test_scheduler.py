import asyncio
from typing import Dict, List, Tuple

import pytest

from backend.conversion.errors import ErrorCategory
from backend.conversion.executor import TaskExecutor
from backend.conversion.models import JobStatus, TaskResult, TaskStatus
from backend.conversion.scheduler import Scheduler, SchedulerConfig, SchedulerSink
from backend.conversion.validator import PlanValidator
from helpers import ScriptedConverter, fast_config, make_plan, make_task


class RecordingSink(SchedulerSink):
  def __init__(self) -> None:
    self.status = JobStatus.RUNNING
    self.started: List[Tuple[str, int]] = []
    self.retries: List[Tuple[str, float]] = []
    self.finished: Dict[str, TaskResult] = {}
    self.skipped: Dict[str, TaskResult] = {}
    self.interrupted: List[str] = []
    self.dispatch_done = asyncio.Event()

  def dispatch_allowed(self, job_id):
    return self.status == JobStatus.RUNNING

  async def task_started(self, job_id, task_id, attempt):
    self.started.append((task_id, attempt))

  async def task_retrying(self, job_id, result, delay):
    self.retries.append((result.task_id, delay))

  async def task_finished(self, job_id, result, skipped):
    self.finished[result.task_id] = result
    for entry in skipped:
      self.skipped[entry.task_id] = entry
    return True

  async def task_interrupted(self, job_id, task_id):
    self.interrupted.append(task_id)

  async def dispatch_finished(self, job_id):
    self.dispatch_done.set()


def build_scheduler(plan, converter, sink, config=None) -> Scheduler:
  validated = PlanValidator().validate(plan)
  return Scheduler(
    job_id='job-1',
    validated=validated,
    executor=TaskExecutor(converter),
    sink=sink,
    config=config or fast_config()
  )


@pytest.mark.asyncio
async def test_fan_out_after_root_completes():
  plan = make_plan(make_task('T1'), make_task('T2', deps=['T1']), make_task('T3', deps=['T1']))
  converter = ScriptedConverter(delay=0.02)
  sink = RecordingSink()
  scheduler = build_scheduler(plan, converter, sink, fast_config(max_concurrent=2))

  await asyncio.wait_for(scheduler.run(), timeout=5)

  assert converter.started[0] == 'T1'
  assert converter.finished[0] == 'T1'
  assert set(converter.started[1:]) == {'T2', 'T3'}
  assert converter.max_active == 2
  assert all(result.succeeded for result in sink.finished.values())
  assert sink.dispatch_done.is_set()


@pytest.mark.asyncio
async def test_concurrency_never_exceeds_limit():
  plan = make_plan(*[make_task(f'T{index}') for index in range(8)])
  converter = ScriptedConverter(delay=0.02)
  sink = RecordingSink()
  scheduler = build_scheduler(plan, converter, sink, fast_config(max_concurrent=3))

  await asyncio.wait_for(scheduler.run(), timeout=5)

  assert converter.max_active == 3
  assert scheduler.peak_in_flight == 3
  assert len(sink.finished) == 8


@pytest.mark.asyncio
async def test_dependencies_finish_before_dependents_start():
  plan = make_plan(
    make_task('a'),
    make_task('b', deps=['a']),
    make_task('c', deps=['a']),
    make_task('d', deps=['b', 'c']),
    make_task('e', deps=['d'])
  )
  converter = ScriptedConverter(delay=0.01)
  scheduler = build_scheduler(plan, converter, RecordingSink(), fast_config(max_concurrent=4))

  await asyncio.wait_for(scheduler.run(), timeout=5)

  for task in plan.tasks:
    for dependency in task.dependencies:
      assert converter.finished.index(dependency) < converter.started.index(task.id)


@pytest.mark.asyncio
async def test_ready_tasks_follow_priority_then_id():
  plan = make_plan(make_task('c', priority=2), make_task('b', priority=1), make_task('a', priority=2))
  converter = ScriptedConverter()
  scheduler = build_scheduler(plan, converter, RecordingSink(), fast_config(max_concurrent=1))

  await asyncio.wait_for(scheduler.run(), timeout=5)

  assert converter.started == ['b', 'a', 'c']


@pytest.mark.asyncio
async def test_permanent_failure_skips_dependents_only():
  plan = make_plan(
    make_task('T1'),
    make_task('T2', deps=['T1']),
    make_task('T3', deps=['T2']),
    make_task('side')
  )
  converter = ScriptedConverter(scripts={'T1': ['permanent']})
  sink = RecordingSink()
  scheduler = build_scheduler(plan, converter, sink)

  await asyncio.wait_for(scheduler.run(), timeout=5)

  assert sink.finished['T1'].status == TaskStatus.FAILED
  assert sink.finished['side'].succeeded
  assert set(sink.skipped) == {'T2', 'T3'}
  assert sink.skipped['T2'].error.category == ErrorCategory.DEPENDENCY_FAILED
  assert 'T2' not in converter.calls
  assert 'T3' not in converter.calls
  assert converter.calls.count('T1') == 1


@pytest.mark.asyncio
async def test_transient_failures_are_retried_with_backoff():
  plan = make_plan(make_task('T1'))
  converter = ScriptedConverter(scripts={'T1': ['transient', 'transient', 'ok']})
  sink = RecordingSink()
  config = fast_config(base_delay=0.01, max_delay=1.0)
  scheduler = build_scheduler(plan, converter, sink, config)

  await asyncio.wait_for(scheduler.run(), timeout=5)

  result = sink.finished['T1']
  assert result.succeeded
  assert result.attempts == 3
  assert [attempt for task_id, attempt in sink.started] == [1, 2, 3]
  assert [delay for _, delay in sink.retries] == [0.01, 0.02]


@pytest.mark.asyncio
async def test_retries_exhausted_fail_the_task():
  plan = make_plan(make_task('T1'))
  converter = ScriptedConverter(scripts={'T1': ['transient'] * 10})
  sink = RecordingSink()
  scheduler = build_scheduler(plan, converter, sink, fast_config(max_retries=2))

  await asyncio.wait_for(scheduler.run(), timeout=5)

  assert converter.calls.count('T1') == 3
  assert sink.finished['T1'].status == TaskStatus.FAILED
  assert sink.finished['T1'].error.transient is True


@pytest.mark.asyncio
async def test_backoff_does_not_block_other_ready_tasks():
  plan = make_plan(make_task('flaky'), make_task('steady'), make_task('after', deps=['steady']))
  converter = ScriptedConverter(scripts={'flaky': ['transient', 'ok']})
  sink = RecordingSink()
  config = fast_config(max_concurrent=2, base_delay=0.2, max_delay=0.2)
  scheduler = build_scheduler(plan, converter, sink, config)

  await asyncio.wait_for(scheduler.run(), timeout=5)

  assert converter.finished.index('after') < len(converter.finished) - 1
  assert converter.finished[-1] == 'flaky'


def test_backoff_delay_is_capped():
  config = SchedulerConfig(base_delay=1.0, max_delay=5.0)
  assert [config.backoff_delay(retry) for retry in range(1, 6)] == [1.0, 2.0, 4.0, 5.0, 5.0]
  assert config.max_attempts == 4


@pytest.mark.asyncio
async def test_context_carries_ancestor_outputs():
  plan = make_plan(make_task('a'), make_task('b', deps=['a']), make_task('c', deps=['b']))
  converter = ScriptedConverter()
  validated = PlanValidator().validate(plan)
  scheduler = Scheduler(
    job_id='job-1',
    validated=validated,
    executor=TaskExecutor(converter),
    sink=RecordingSink(),
    config=fast_config(),
    shared_context={'target_stack': {'language': 'python'}}
  )

  await asyncio.wait_for(scheduler.run(), timeout=5)

  dependencies = converter.requests['c'].dependency_outputs
  assert set(dependencies) == {'a', 'b'}
  assert dependencies['a']['files'][0]['path'] == 'out/a.py'
  assert converter.requests['c'].target_stack == {'language': 'python'}
  assert converter.requests['a'].dependency_outputs == {}


@pytest.mark.asyncio
async def test_stopping_dispatch_lets_in_flight_finish():
  plan = make_plan(make_task('T1'), make_task('T2', deps=['T1']))
  converter = ScriptedConverter()
  gate = converter.gate('T1')
  sink = RecordingSink()
  scheduler = build_scheduler(plan, converter, sink)
  runner = asyncio.create_task(scheduler.run())

  while 'T1' not in converter.started:
    await asyncio.sleep(0.005)
  sink.status = JobStatus.PAUSED
  scheduler.wake()
  gate.set()
  await asyncio.wait_for(runner, timeout=5)

  assert sink.finished['T1'].succeeded
  assert 'T2' not in converter.calls
  assert scheduler.statuses['T2'] == TaskStatus.PENDING
  assert scheduler.exit_reason == 'stopped'


@pytest.mark.asyncio
async def test_cancel_in_flight_returns_task_to_pending():
  plan = make_plan(make_task('T1'))
  converter = ScriptedConverter()
  converter.gate('T1')
  sink = RecordingSink()
  scheduler = build_scheduler(plan, converter, sink)
  runner = asyncio.create_task(scheduler.run())

  while 'T1' not in converter.started:
    await asyncio.sleep(0.005)
  sink.status = JobStatus.PAUSED
  assert scheduler.cancel_in_flight() == 1
  await asyncio.wait_for(runner, timeout=5)

  assert sink.interrupted == ['T1']
  assert scheduler.statuses['T1'] == TaskStatus.PENDING
  assert scheduler.attempts['T1'] == 0
