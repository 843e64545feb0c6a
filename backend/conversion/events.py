from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Awaitable, Callable, Dict, List, Optional, Union

from backend.conversion.models import ProgressEvent

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[ProgressEvent], Union[None, Awaitable[None]]]
ALL_JOBS = '*'


class ProgressChannel:
  """Last-value-wins progress delivery with per-job coalescing.

  publish() never blocks the caller. Events for one job published within
  the coalescing window collapse into the newest one. New subscribers get
  the latest known event replayed immediately.
  """

  def __init__(self, coalesce_seconds: float = 0.1) -> None:
    self.coalesce_seconds = max(0.0, coalesce_seconds)
    self._subscribers: Dict[str, List[ProgressCallback]] = {}
    self._latest: Dict[str, ProgressEvent] = {}
    self._delivered: Dict[str, int] = {}
    self._drains: Dict[str, asyncio.Task] = {}

  def subscribe(self, job_id: str, callback: ProgressCallback) -> Callable[[], None]:
    self._subscribers.setdefault(job_id, []).append(callback)
    replay = self._latest.get(job_id) if job_id != ALL_JOBS else None
    # An undelivered latest event reaches the new subscriber through the drain.
    if replay is not None and replay.sequence <= self._delivered.get(job_id, 0):
      self._schedule(self._invoke(callback, replay))

    def unsubscribe() -> None:
      callbacks = self._subscribers.get(job_id)
      if callbacks and callback in callbacks:
        callbacks.remove(callback)
        if not callbacks:
          self._subscribers.pop(job_id, None)

    return unsubscribe

  def publish(self, job_id: str, event: ProgressEvent) -> None:
    current = self._latest.get(job_id)
    if current is not None and current.sequence >= event.sequence:
      return
    self._latest[job_id] = event
    drain = self._drains.get(job_id)
    if drain is None or drain.done():
      self._drains[job_id] = self._schedule(self._drain(job_id))

  def latest(self, job_id: str) -> Optional[ProgressEvent]:
    return self._latest.get(job_id)

  def subscriber_count(self, job_id: str) -> int:
    return len(self._subscribers.get(job_id, []))

  async def flush(self, job_id: Optional[str] = None) -> None:
    drains = [self._drains[job_id]] if job_id in self._drains else ([] if job_id else list(self._drains.values()))
    if drains:
      await asyncio.gather(*drains, return_exceptions=True)

  def close_job(self, job_id: str) -> None:
    drain = self._drains.pop(job_id, None)
    if drain and not drain.done():
      drain.cancel()
    self._latest.pop(job_id, None)
    self._delivered.pop(job_id, None)
    self._subscribers.pop(job_id, None)

  async def close(self) -> None:
    drains = list(self._drains.values())
    self._drains.clear()
    for drain in drains:
      drain.cancel()
    if drains:
      await asyncio.gather(*drains, return_exceptions=True)

  async def _drain(self, job_id: str) -> None:
    while True:
      if self.coalesce_seconds:
        await asyncio.sleep(self.coalesce_seconds)
      event = self._latest.get(job_id)
      if event is None or event.sequence <= self._delivered.get(job_id, 0):
        return
      self._delivered[job_id] = event.sequence
      callbacks = list(self._subscribers.get(job_id, [])) + list(self._subscribers.get(ALL_JOBS, []))
      for callback in callbacks:
        await self._invoke(callback, event)
      if not self.coalesce_seconds:
        latest = self._latest.get(job_id)
        if latest is None or latest.sequence <= self._delivered.get(job_id, 0):
          return

  async def _invoke(self, callback: ProgressCallback, event: ProgressEvent) -> None:
    try:
      outcome = callback(event)
      if inspect.isawaitable(outcome):
        await outcome
    except Exception:  # noqa: BLE001
      logger.exception('Progress subscriber failed for job %s', event.job_id)

  @staticmethod
  def _schedule(coro) -> asyncio.Task:
    return asyncio.get_running_loop().create_task(coro)
