from typing import Any, Dict, Optional
import platform
import sys

from fastapi import APIRouter, Depends

from backend.api.globals import event_logger, resources
from backend.api.utils import get_manager
from backend.conversion.manager import JobManager
from backend.conversion.models import JobStatus

router = APIRouter()

@router.get('/health')
async def health(manager: JobManager = Depends(get_manager)) -> Dict[str, Any]:
  jobs = await manager.list_jobs()
  return {
    'status': 'ok',
    'jobs': {status.value: sum(1 for job in jobs if job.status == status) for status in JobStatus},
    'max_concurrent': manager.config.max_concurrent,
    'resources': resources.snapshot(minimal=True)
  }

@router.get('/resources')
async def resource_snapshot() -> Dict[str, Any]:
  return resources.snapshot()

@router.get('/events')
async def recent_events(limit: int = 200, job_id: Optional[str] = None) -> Dict[str, Any]:
  entries = event_logger.for_job(job_id, limit=limit) if job_id else event_logger.recent(limit=limit)
  return {'events': entries}

@router.get('/system/info')
async def system_info() -> Dict[str, Any]:
  return {
    'os': platform.system(),
    'machine': platform.machine(),
    'python_version': sys.version,
    'platform': platform.platform()
  }
