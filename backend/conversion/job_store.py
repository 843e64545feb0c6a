from __future__ import annotations

import copy
import json
import sqlite3
import threading
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from backend.conversion.models import ConversionJob, JobStatus


def _connect(db_path: Path) -> sqlite3.Connection:
  connection = sqlite3.connect(db_path)
  connection.row_factory = sqlite3.Row
  return connection


class JobStore:
  """Persistence contract for conversion jobs."""

  def save(self, job: ConversionJob) -> None:
    raise NotImplementedError

  def find(self, job_id: str) -> Optional[ConversionJob]:
    raise NotImplementedError

  def find_by_project(self, project_id: str) -> List[ConversionJob]:
    raise NotImplementedError

  def find_by_status(self, statuses: Iterable[JobStatus]) -> List[ConversionJob]:
    raise NotImplementedError

  def find_all(self) -> List[ConversionJob]:
    raise NotImplementedError

  def delete(self, job_id: str) -> bool:
    raise NotImplementedError


class MemoryJobStore(JobStore):
  def __init__(self) -> None:
    self._jobs: Dict[str, ConversionJob] = {}
    self._lock = threading.Lock()

  def save(self, job: ConversionJob) -> None:
    with self._lock:
      self._jobs[job.id] = copy.deepcopy(job)

  def find(self, job_id: str) -> Optional[ConversionJob]:
    with self._lock:
      job = self._jobs.get(job_id)
      return copy.deepcopy(job) if job else None

  def find_by_project(self, project_id: str) -> List[ConversionJob]:
    return [job for job in self.find_all() if job.project_id == project_id]

  def find_by_status(self, statuses: Iterable[JobStatus]) -> List[ConversionJob]:
    wanted = set(statuses)
    return [job for job in self.find_all() if job.status in wanted]

  def find_all(self) -> List[ConversionJob]:
    with self._lock:
      jobs = [copy.deepcopy(job) for job in self._jobs.values()]
    return sorted(jobs, key=lambda job: job.created_at, reverse=True)

  def delete(self, job_id: str) -> bool:
    with self._lock:
      return self._jobs.pop(job_id, None) is not None


class SqliteJobStore(JobStore):
  def __init__(self, db_path: Path) -> None:
    self.db_path = Path(db_path)
    self.db_path.parent.mkdir(parents=True, exist_ok=True)
    self._init_schema()

  def _init_schema(self) -> None:
    with _connect(self.db_path) as conn:
      conn.execute(
        """
        CREATE TABLE IF NOT EXISTS conversion_jobs (
          id TEXT PRIMARY KEY,
          project_id TEXT NOT NULL,
          status TEXT NOT NULL,
          progress INTEGER NOT NULL,
          payload_json TEXT NOT NULL,
          created_at REAL NOT NULL,
          updated_at REAL NOT NULL
        );
        """
      )
      conn.execute('CREATE INDEX IF NOT EXISTS idx_conversion_jobs_project ON conversion_jobs(project_id)')
      conn.execute('CREATE INDEX IF NOT EXISTS idx_conversion_jobs_status ON conversion_jobs(status)')
      for column, definition in (
        ('completed_at', 'REAL'),
        ('error_message', 'TEXT')
      ):
        self._ensure_column(conn, column, definition)
      conn.commit()

  def save(self, job: ConversionJob) -> None:
    payload = {
      'id': job.id,
      'project_id': job.project_id,
      'status': job.status.value,
      'progress': job.progress,
      'payload_json': json.dumps(job.to_dict(), default=str),
      'created_at': job.created_at,
      'updated_at': job.updated_at,
      'completed_at': job.completed_at,
      'error_message': job.error_message
    }
    with _connect(self.db_path) as conn:
      conn.execute(
        """
        INSERT INTO conversion_jobs (
          id, project_id, status, progress, payload_json, created_at, updated_at, completed_at, error_message
        )
        VALUES (
          :id, :project_id, :status, :progress, :payload_json, :created_at, :updated_at, :completed_at, :error_message
        )
        ON CONFLICT(id) DO UPDATE SET
          project_id=excluded.project_id,
          status=excluded.status,
          progress=excluded.progress,
          payload_json=excluded.payload_json,
          updated_at=excluded.updated_at,
          completed_at=excluded.completed_at,
          error_message=excluded.error_message;
        """,
        payload
      )
      conn.commit()

  def find(self, job_id: str) -> Optional[ConversionJob]:
    with _connect(self.db_path) as conn:
      row = conn.execute('SELECT payload_json FROM conversion_jobs WHERE id = ?', (job_id,)).fetchone()
    if not row:
      return None
    return _load_job(row['payload_json'])

  def find_by_project(self, project_id: str) -> List[ConversionJob]:
    with _connect(self.db_path) as conn:
      rows = conn.execute(
        'SELECT payload_json FROM conversion_jobs WHERE project_id = ? ORDER BY created_at DESC',
        (project_id,)
      ).fetchall()
    return [_load_job(row['payload_json']) for row in rows]

  def find_by_status(self, statuses: Iterable[JobStatus]) -> List[ConversionJob]:
    values = [status.value for status in statuses]
    if not values:
      return []
    placeholders = ', '.join('?' for _ in values)
    with _connect(self.db_path) as conn:
      rows = conn.execute(
        f'SELECT payload_json FROM conversion_jobs WHERE status IN ({placeholders}) ORDER BY created_at DESC',
        values
      ).fetchall()
    return [_load_job(row['payload_json']) for row in rows]

  def find_all(self) -> List[ConversionJob]:
    with _connect(self.db_path) as conn:
      rows = conn.execute('SELECT payload_json FROM conversion_jobs ORDER BY created_at DESC').fetchall()
    return [_load_job(row['payload_json']) for row in rows]

  def delete(self, job_id: str) -> bool:
    with _connect(self.db_path) as conn:
      cursor = conn.execute('DELETE FROM conversion_jobs WHERE id = ?', (job_id,))
      conn.commit()
      return cursor.rowcount > 0

  def statistics(self) -> Dict[str, Any]:
    with _connect(self.db_path) as conn:
      rows = conn.execute('SELECT status, COUNT(*) AS total FROM conversion_jobs GROUP BY status').fetchall()
    by_status = {row['status']: row['total'] for row in rows}
    return {'total_jobs': sum(by_status.values()), 'by_status': by_status}

  def _ensure_column(self, conn: sqlite3.Connection, column: str, definition: str) -> None:
    info = conn.execute('PRAGMA table_info(conversion_jobs)').fetchall()
    if not any(row['name'] == column for row in info):
      conn.execute(f'ALTER TABLE conversion_jobs ADD COLUMN {column} {definition}')


def _load_job(payload_json: str) -> ConversionJob:
  return ConversionJob.from_dict(json.loads(payload_json))
