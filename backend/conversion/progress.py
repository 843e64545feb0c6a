from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Dict, Optional

from backend.conversion.models import JobStatus, SETTLED_TASK_STATUSES, TaskStatus


@dataclass
class ProgressTracker:
  """Duration weighted progress over the tasks of one job.

  Completed and skipped tasks count as settled. Failed tasks join them once
  the job reaches a completed or failed state. The reported value never goes
  down; a cancelled job keeps its last value.
  """

  weights: Dict[str, float]
  statuses: Dict[str, TaskStatus] = field(default_factory=dict)
  started_at: float = field(default_factory=time.time)
  updated_at: float = field(default_factory=time.time)
  value: int = 0
  include_failed: bool = False

  @classmethod
  def for_tasks(cls, weights: Dict[str, float], statuses: Dict[str, TaskStatus], floor: int = 0) -> 'ProgressTracker':
    tracker = cls(weights=dict(weights), statuses=dict(statuses), value=floor)
    tracker.recompute()
    return tracker

  @property
  def total_weight(self) -> float:
    return sum(self.weights.values())

  def update(self, task_id: str, status: TaskStatus) -> int:
    self.statuses[task_id] = status
    self.updated_at = time.time()
    return self.recompute()

  def finalize(self, job_status: JobStatus) -> int:
    if job_status in {JobStatus.COMPLETED, JobStatus.FAILED}:
      self.include_failed = True
    return self.recompute()

  def recompute(self) -> int:
    self.value = max(self.value, self._raw_percentage())
    return self.value

  def _settled(self, status: TaskStatus) -> bool:
    if status in SETTLED_TASK_STATUSES:
      return True
    return self.include_failed and status == TaskStatus.FAILED

  def _raw_percentage(self) -> int:
    total = self.total_weight
    if total <= 0:
      return 0
    settled = sum(weight for task_id, weight in self.weights.items() if self._settled(self.statuses.get(task_id, TaskStatus.PENDING)))
    return min(100, int(round(100 * settled / total)))

  def estimated_seconds_remaining(self) -> Optional[float]:
    if self.value <= 0 or self.value >= 100:
      return None
    elapsed = time.time() - self.started_at
    return (elapsed / (self.value / 100.0)) * (1.0 - self.value / 100.0)

  def summary(self) -> Dict[str, object]:
    counts = {status.value: 0 for status in TaskStatus}
    for task_id in self.weights:
      counts[self.statuses.get(task_id, TaskStatus.PENDING).value] += 1
    return {
      'progress': self.value,
      'total_tasks': len(self.weights),
      'counts': counts,
      'elapsed_seconds': round(time.time() - self.started_at, 3),
      'estimated_seconds_remaining': self.estimated_seconds_remaining()
    }
