from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional

import psutil


@dataclass
class Thresholds:
  cpu_percent: float = 85.0
  memory_percent: float = 90.0
  disk_free_gb: float = 1.0


class ResourceMonitor:
  """Host load probe used to hold back dispatch while the machine is saturated."""

  def __init__(self, thresholds: Optional[Thresholds] = None, path: str = '.') -> None:
    self.thresholds = thresholds or Thresholds()
    self.path = path

  def snapshot(self, minimal: bool = False) -> Dict[str, Any]:
    cpu_percent = psutil.cpu_percent(interval=None)
    virtual_mem = psutil.virtual_memory()
    disk_usage = psutil.disk_usage(self.path)

    payload = {
      'cpu': {'percent': round(cpu_percent, 1), 'count': psutil.cpu_count()},
      'memory': {
        'percent': round(virtual_mem.percent, 1),
        'used_gb': round(virtual_mem.used / (1024**3), 2),
        'total_gb': round(virtual_mem.total / (1024**3), 2)
      },
      'disk': {
        'percent': round(disk_usage.percent, 1),
        'free_gb': round(disk_usage.free / (1024**3), 2),
        'total_gb': round(disk_usage.total / (1024**3), 2)
      },
      'flags': {
        'cpu_high': cpu_percent >= self.thresholds.cpu_percent,
        'memory_high': virtual_mem.percent >= self.thresholds.memory_percent,
        'disk_low': (disk_usage.free / (1024**3)) <= self.thresholds.disk_free_gb
      }
    }
    return payload if not minimal else {'cpu': payload['cpu'], 'memory': payload['memory']}

  def is_overloaded(self) -> bool:
    flags = self.snapshot()['flags']
    return bool(flags['cpu_high'] or flags['memory_high'])
