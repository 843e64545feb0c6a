from typing import Any, Dict, Optional

from fastapi import Request, WebSocket

from backend.conversion.manager import JobManager
from backend.conversion.models import ConversionJob
from backend.conversion.validator import ValidatedPlan, describe_levels


def get_manager(request: Request) -> JobManager:
  return request.app.state.manager


def get_ws_manager(websocket: WebSocket) -> JobManager:
  return websocket.app.state.manager


def serialize_job(job: ConversionJob, include_results: bool = False, summary: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
  payload = {
    'id': job.id,
    'project_id': job.project_id,
    'plan_id': job.plan.id,
    'status': job.status.value,
    'progress': job.progress,
    'current_activity': job.current_activity,
    'error_message': job.error_message,
    'created_at': job.created_at,
    'started_at': job.started_at,
    'completed_at': job.completed_at,
    'updated_at': job.updated_at,
    'estimated_duration': job.plan.estimated_duration,
    'counts': job.counts(),
    'tasks': {
      task.id: {
        'kind': task.kind.value,
        'description': task.description,
        'dependencies': list(task.dependencies),
        **job.task_states[task.id].to_dict()
      }
      for task in job.plan.tasks
      if task.id in job.task_states
    }
  }
  if include_results:
    payload['results'] = [result.to_dict() for result in job.results]
  if summary is not None:
    payload['summary'] = summary
  return payload


def serialize_validation(validated: ValidatedPlan) -> Dict[str, Any]:
  return {
    'valid': True,
    'plan_id': validated.plan.id,
    'task_count': len(validated.plan.tasks),
    'estimated_duration': validated.plan.estimated_duration,
    'order': validated.order,
    'levels': [list(level) for level in describe_levels(validated)],
    'warnings': validated.warnings
  }
