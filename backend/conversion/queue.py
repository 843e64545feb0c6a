from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)


@dataclass
class QueueMessage:
  job_id: str
  id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
  deliveries: int = 0
  enqueued_at: float = field(default_factory=time.time)


MessageHandler = Callable[[QueueMessage], Awaitable[None]]


class JobQueue:
  """Durable hand-off of job dispatch work. Handlers must ack or nack."""

  async def enqueue(self, job_id: str) -> QueueMessage:
    raise NotImplementedError

  def on_message(self, handler: MessageHandler) -> None:
    raise NotImplementedError

  async def ack(self, message: QueueMessage) -> None:
    raise NotImplementedError

  async def nack(self, message: QueueMessage, requeue: bool = True) -> None:
    raise NotImplementedError

  async def start(self) -> None:
    return None

  async def stop(self) -> None:
    return None


class InProcessQueue(JobQueue):
  """asyncio queue for single process deployments.

  Each delivered message is handled in its own task so several jobs can be
  dispatched in parallel. Messages stay in flight until acked or nacked.
  """

  def __init__(self, max_deliveries: int = 3) -> None:
    self.max_deliveries = max(1, max_deliveries)
    self._queue: asyncio.Queue = asyncio.Queue()
    self._handler: Optional[MessageHandler] = None
    self._in_flight: Dict[str, QueueMessage] = {}
    self._handlers: Dict[str, asyncio.Task] = {}
    self._dead_letters: List[QueueMessage] = []
    self._worker: Optional[asyncio.Task] = None
    self._running = False

  @property
  def dead_letters(self) -> List[QueueMessage]:
    return list(self._dead_letters)

  def pending_count(self) -> int:
    return self._queue.qsize()

  def in_flight_count(self) -> int:
    return len(self._in_flight)

  def on_message(self, handler: MessageHandler) -> None:
    self._handler = handler

  async def enqueue(self, job_id: str) -> QueueMessage:
    message = QueueMessage(job_id=job_id)
    await self._queue.put(message)
    logger.debug('Queued job %s as message %s', job_id, message.id)
    return message

  async def ack(self, message: QueueMessage) -> None:
    self._in_flight.pop(message.id, None)

  async def nack(self, message: QueueMessage, requeue: bool = True) -> None:
    self._in_flight.pop(message.id, None)
    if requeue and message.deliveries < self.max_deliveries:
      await self._queue.put(message)
      return
    logger.warning('Dropping message %s for job %s after %s deliveries', message.id, message.job_id, message.deliveries)
    self._dead_letters.append(message)

  async def start(self) -> None:
    if self._running:
      return
    if self._handler is None:
      raise RuntimeError('InProcessQueue.start() called before on_message()')
    self._running = True
    self._worker = asyncio.create_task(self._worker_loop())

  async def stop(self) -> None:
    self._running = False
    if self._worker:
      self._worker.cancel()
      try:
        await self._worker
      except asyncio.CancelledError:
        pass
      self._worker = None
    handlers = list(self._handlers.values())
    for task in handlers:
      task.cancel()
    if handlers:
      await asyncio.gather(*handlers, return_exceptions=True)
    self._handlers.clear()

  async def _worker_loop(self) -> None:
    while self._running:
      message = await self._queue.get()
      message.deliveries += 1
      self._in_flight[message.id] = message
      task = asyncio.create_task(self._handle(message))
      self._handlers[message.id] = task
      task.add_done_callback(lambda _, message_id=message.id: self._handlers.pop(message_id, None))

  async def _handle(self, message: QueueMessage) -> None:
    try:
      await self._handler(message)
    except asyncio.CancelledError:
      raise
    except Exception:  # noqa: BLE001
      logger.exception('Queue handler failed for job %s', message.job_id)
      if message.id in self._in_flight:
        await self.nack(message, requeue=True)
