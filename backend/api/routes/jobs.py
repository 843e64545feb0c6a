import asyncio
import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect
from pydantic import BaseModel, Field

from backend.api.utils import get_manager, get_ws_manager, serialize_job, serialize_validation
from backend.conversion.errors import JobNotFound
from backend.conversion.manager import JobManager
from backend.conversion.models import JobStatus

logger = logging.getLogger(__name__)

router = APIRouter()

class WebhookConfigPayload(BaseModel):
  url: str
  headers: Dict[str, str] = Field(default_factory=dict)
  events: Optional[List[str]] = Field(default=None, description='Job events to deliver; all job events when omitted.')
  secret_token: Optional[str] = None

class PlanPayload(BaseModel):
  plan: Dict[str, Any] = Field(..., description='Conversion plan with a list of tasks.')

class CreateJobPayload(PlanPayload):
  project_id: str = Field(..., min_length=1)
  source_files: Optional[Dict[str, str]] = Field(default=None, description='Source file contents keyed by relative path.')
  shared_context: Optional[Dict[str, Any]] = None
  webhooks: Optional[List[WebhookConfigPayload]] = None
  auto_start: bool = False

@router.post('/jobs/validate')
async def validate_plan(payload: PlanPayload, manager: JobManager = Depends(get_manager)) -> Dict[str, Any]:
  return serialize_validation(manager.validate_plan(payload.plan))

@router.post('/jobs', status_code=201)
async def create_job(payload: CreateJobPayload, manager: JobManager = Depends(get_manager)) -> Dict[str, Any]:
  context = dict(payload.shared_context or {})
  if payload.source_files:
    context['source_files'] = payload.source_files
  webhooks = [hook.model_dump(exclude_none=True) for hook in payload.webhooks] if payload.webhooks else None
  job = await manager.create_job(payload.project_id, payload.plan, shared_context=context, webhooks=webhooks)
  if payload.auto_start:
    job = await manager.start_job(job.id)
  return {'job': serialize_job(job)}

@router.get('/jobs')
async def list_jobs(
  project_id: Optional[str] = None,
  status: Optional[JobStatus] = None,
  manager: JobManager = Depends(get_manager)
) -> Dict[str, Any]:
  jobs = await manager.list_jobs(project_id=project_id, status=status)
  return {'jobs': [serialize_job(job) for job in jobs]}

@router.get('/jobs/{job_id}')
async def job_status(job_id: str, manager: JobManager = Depends(get_manager)) -> Dict[str, Any]:
  job = await manager.get_job_status(job_id)
  return {'job': serialize_job(job, summary=manager.job_summary(job_id))}

@router.get('/jobs/{job_id}/results')
async def job_results(job_id: str, manager: JobManager = Depends(get_manager)) -> Dict[str, Any]:
  job = await manager.get_job_status(job_id)
  return {'job_id': job.id, 'status': job.status.value, 'results': [result.to_dict() for result in job.results]}

@router.post('/jobs/{job_id}/start')
async def start_job(job_id: str, manager: JobManager = Depends(get_manager)) -> Dict[str, Any]:
  return {'job': serialize_job(await manager.start_job(job_id))}

@router.post('/jobs/{job_id}/pause')
async def pause_job(job_id: str, manager: JobManager = Depends(get_manager)) -> Dict[str, Any]:
  return {'job': serialize_job(await manager.pause_job(job_id))}

@router.post('/jobs/{job_id}/resume')
async def resume_job(job_id: str, manager: JobManager = Depends(get_manager)) -> Dict[str, Any]:
  return {'job': serialize_job(await manager.resume_job(job_id))}

@router.post('/jobs/{job_id}/cancel')
async def cancel_job(job_id: str, manager: JobManager = Depends(get_manager)) -> Dict[str, Any]:
  return {'job': serialize_job(await manager.cancel_job(job_id))}

@router.post('/jobs/{job_id}/retry')
async def retry_job(job_id: str, manager: JobManager = Depends(get_manager)) -> Dict[str, Any]:
  return {'job': serialize_job(await manager.retry_job(job_id))}

@router.delete('/jobs/{job_id}')
async def delete_job(job_id: str, manager: JobManager = Depends(get_manager)) -> Dict[str, Any]:
  await manager.delete_job(job_id)
  return {'deleted': job_id}

@router.websocket('/jobs/{job_id}/progress')
async def progress_stream(websocket: WebSocket, job_id: str) -> None:
  manager = get_ws_manager(websocket)
  try:
    snapshot = await manager.get_job_status(job_id)
  except JobNotFound:
    await websocket.close(code=4404)
    return

  await websocket.accept()
  events: asyncio.Queue = asyncio.Queue()
  unsubscribe = manager.subscribe_progress(job_id, events.put_nowait)
  connected = True
  try:
    await websocket.send_json({'type': 'snapshot', 'job': serialize_job(snapshot)})
    if snapshot.is_terminal:
      return
    while True:
      event = await events.get()
      await websocket.send_json({'type': 'progress', 'event': event.to_dict()})
      if event.is_terminal:
        break
  except WebSocketDisconnect:
    connected = False
    logger.debug('Progress stream for job %s disconnected', job_id)
  finally:
    unsubscribe()
    if connected:
      await websocket.close()
