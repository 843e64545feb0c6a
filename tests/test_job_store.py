import sqlite3

import pytest

from backend.conversion.job_store import MemoryJobStore, SqliteJobStore
from backend.conversion.models import (
  ChangeType,
  ConversionJob,
  FileChange,
  JobStatus,
  TaskErrorInfo,
  TaskResult,
  TaskState,
  TaskStatus,
  WebhookConfig
)
from backend.conversion.errors import ErrorCategory
from helpers import make_plan, make_task


def build_job(project_id='proj-1', status=JobStatus.PENDING, created_at=None):
  plan = make_plan(make_task('T1'), make_task('T2', deps=['T1']), project_id=project_id)
  job = ConversionJob(
    project_id=project_id,
    plan=plan,
    status=status,
    task_states={'T1': TaskState(status=TaskStatus.COMPLETED, attempts=2), 'T2': TaskState(status=TaskStatus.FAILED)},
    webhooks=[WebhookConfig(url='https://hooks.example.test/a', secret_token='s3')],
    shared_context={'target_stack': {'language': 'python'}}
  )
  if created_at is not None:
    job.created_at = created_at
  job.results.append(
    TaskResult(
      task_id='T1',
      status=TaskStatus.COMPLETED,
      files=[FileChange(path='app/models.py', change_type=ChangeType.CREATE, content='class User: ...')],
      confidence=0.8,
      attempts=2
    )
  )
  job.results.append(
    TaskResult(
      task_id='T2',
      status=TaskStatus.FAILED,
      error=TaskErrorInfo(ErrorCategory.MALFORMED_OUTPUT, 'bad json', False)
    )
  )
  return job


@pytest.fixture(params=['memory', 'sqlite'])
def store(request, tmp_path):
  if request.param == 'memory':
    return MemoryJobStore()
  return SqliteJobStore(tmp_path / 'jobs.db')


def test_saved_job_is_restored_intact(store):
  job = build_job()
  store.save(job)

  restored = store.find(job.id)

  assert restored is not job
  assert restored.id == job.id
  assert restored.plan.task_map()['T2'].dependencies == ('T1',)
  assert restored.task_states['T1'].attempts == 2
  assert restored.task_status('T2') == TaskStatus.FAILED
  assert restored.results[0].files[0].change_type == ChangeType.CREATE
  assert restored.results[1].error.category == ErrorCategory.MALFORMED_OUTPUT
  assert restored.webhooks[0].secret_token == 's3'
  assert restored.shared_context == {'target_stack': {'language': 'python'}}


def test_save_overwrites_existing_row(store):
  job = build_job()
  store.save(job)
  job.status = JobStatus.FAILED
  job.progress = 100
  job.error_message = 'Task T2 failed: bad json'
  store.save(job)

  restored = store.find(job.id)

  assert restored.status == JobStatus.FAILED
  assert restored.progress == 100
  assert restored.error_message == 'Task T2 failed: bad json'
  assert len(store.find_all()) == 1


def test_queries_by_project_and_status(store):
  older = build_job('alpha', JobStatus.COMPLETED, created_at=100.0)
  newer = build_job('alpha', JobStatus.RUNNING, created_at=200.0)
  other = build_job('beta', JobStatus.PAUSED, created_at=150.0)
  for job in (older, newer, other):
    store.save(job)

  assert [job.id for job in store.find_by_project('alpha')] == [newer.id, older.id]
  assert [job.id for job in store.find_all()] == [newer.id, other.id, older.id]
  assert {job.id for job in store.find_by_status([JobStatus.RUNNING, JobStatus.PAUSED])} == {newer.id, other.id}
  assert store.find_by_status([]) == []


def test_delete_reports_whether_a_row_existed(store):
  job = build_job()
  store.save(job)

  assert store.delete(job.id) is True
  assert store.delete(job.id) is False
  assert store.find(job.id) is None


def test_memory_store_hands_out_copies():
  store = MemoryJobStore()
  job = build_job()
  store.save(job)

  job.status = JobStatus.CANCELLED
  loaded = store.find(job.id)
  loaded.progress = 99

  assert store.find(job.id).status == JobStatus.PENDING
  assert store.find(job.id).progress == 0


def test_sqlite_statistics_and_legacy_schema(tmp_path):
  db_path = tmp_path / 'legacy.db'
  with sqlite3.connect(db_path) as conn:
    conn.execute(
      'CREATE TABLE conversion_jobs (id TEXT PRIMARY KEY, project_id TEXT NOT NULL, status TEXT NOT NULL, '
      'progress INTEGER NOT NULL, payload_json TEXT NOT NULL, created_at REAL NOT NULL, updated_at REAL NOT NULL)'
    )
    conn.commit()

  store = SqliteJobStore(db_path)
  store.save(build_job(status=JobStatus.COMPLETED))
  store.save(build_job(status=JobStatus.COMPLETED))
  store.save(build_job(status=JobStatus.FAILED))

  stats = store.statistics()

  assert stats['total_jobs'] == 3
  assert stats['by_status'] == {'completed': 2, 'failed': 1}
