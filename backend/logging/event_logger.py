from __future__ import annotations

import json
import logging
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


class EventLogger:
  """Append-only JSON lines audit trail of job lifecycle events."""

  def __init__(self, base_dir: Path, max_bytes: int = 5 * 1024 * 1024) -> None:
    self.base_dir = Path(base_dir)
    self.base_dir.mkdir(parents=True, exist_ok=True)
    self.log_file = self.base_dir / 'events.log'
    self.max_bytes = max_bytes
    self._lock = threading.Lock()

  def log_event(self, category: str, message: str, payload: Optional[Dict[str, Any]] = None) -> None:
    entry = {
      'timestamp': datetime.now(timezone.utc).isoformat(),
      'category': category,
      'message': message,
      'payload': payload or {}
    }
    line = json.dumps(entry, default=str) + '\n'
    with self._lock:
      self._rotate_if_needed()
      with self.log_file.open('a', encoding='utf-8') as handle:
        handle.write(line)

  def log_error(self, message: str, payload: Optional[Dict[str, Any]] = None) -> None:
    self.log_event('error', message, payload)

  def recent(self, limit: int = 200) -> List[Dict[str, Any]]:
    if not self.log_file.exists():
      return []
    with self._lock:
      lines = self.log_file.read_text(encoding='utf-8').splitlines()[-limit:]
    entries = []
    for line in lines:
      try:
        entries.append(json.loads(line))
      except json.JSONDecodeError:
        logger.warning('Malformed log line: %s', line)
    return entries

  def for_job(self, job_id: str, limit: int = 200) -> List[Dict[str, Any]]:
    matching = [entry for entry in self.recent(limit=10_000) if entry.get('payload', {}).get('job_id') == job_id]
    return matching[-limit:]

  def _rotate_if_needed(self) -> None:
    if not self.log_file.exists() or self.log_file.stat().st_size < self.max_bytes:
      return
    rotated = self.log_file.with_suffix('.log.1')
    if rotated.exists():
      rotated.unlink()
    self.log_file.rename(rotated)
