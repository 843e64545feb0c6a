from __future__ import annotations

import argparse
import asyncio
import fnmatch
import json
import logging
import sys
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from backend.config import settings

logging.basicConfig(level=getattr(logging, settings.log_level.upper(), logging.INFO))
logger = logging.getLogger(__name__)

MAX_SOURCE_FILE_BYTES = 256 * 1024


def build_manager(dry_run: bool = False):
  from backend.ai.converter import build_default_converter
  from backend.conversion.job_store import SqliteJobStore
  from backend.conversion.manager import JobManager
  from backend.logging.event_logger import EventLogger
  from backend.resources.monitor import ResourceMonitor

  return JobManager(
    converter=build_default_converter(dry_run=dry_run),
    store=SqliteJobStore(settings.db_path),
    event_logger=EventLogger(settings.data_dir / 'logs'),
    resource_monitor=ResourceMonitor(),
    cleanup_interval=None
  )


def parse_global_args() -> argparse.ArgumentParser:
  parser = argparse.ArgumentParser(prog='stackconv', description='Tech stack conversion engine CLI')
  sub = parser.add_subparsers(dest='command', required=True)

  p_validate = sub.add_parser('validate', help='Validate a conversion plan')
  p_validate.add_argument('--plan', required=True, help='Path to a plan JSON file')
  p_validate.add_argument('--json', action='store_true')

  p_run = sub.add_parser('run', help='Run a conversion plan and wait for completion')
  p_run.add_argument('--plan', required=True)
  p_run.add_argument('--project', required=True, help='Project identifier')
  p_run.add_argument('--source-dir', help='Directory whose files feed task input patterns')
  p_run.add_argument('--max-concurrent', type=int, default=settings.max_concurrent)
  p_run.add_argument('--dry-run', action='store_true', help='Use the offline echo converter')
  p_run.add_argument('--json', action='store_true')

  p_jobs = sub.add_parser('jobs', help='List stored jobs')
  p_jobs.add_argument('--project')
  p_jobs.add_argument('--json', action='store_true')

  p_show = sub.add_parser('show', help='Show a stored job')
  p_show.add_argument('job_id')
  p_show.add_argument('--json', action='store_true')

  return parser


def _load_plan(path: str) -> Optional[dict]:
  plan_path = Path(path).expanduser()
  if not plan_path.is_file():
    print(f'Plan file not found: {plan_path}', file=sys.stderr)
    return None
  try:
    return json.loads(plan_path.read_text(encoding='utf-8'))
  except json.JSONDecodeError as exc:
    print(f'Plan file is not valid JSON: {exc}', file=sys.stderr)
    return None


def collect_source_files(source_dir: Path, patterns: Iterable[str]) -> Dict[str, str]:
  wanted = [pattern for pattern in patterns if pattern]
  collected: Dict[str, str] = {}
  for path in sorted(source_dir.rglob('*')):
    if not path.is_file() or path.stat().st_size > MAX_SOURCE_FILE_BYTES:
      continue
    relative = path.relative_to(source_dir).as_posix()
    if wanted and not any(fnmatch.fnmatch(relative, pattern) for pattern in wanted):
      continue
    try:
      collected[relative] = path.read_text(encoding='utf-8')
    except UnicodeDecodeError:
      logger.debug('Skipping binary file %s', relative)
  return collected


def cmd_validate(plan_path: str, as_json: bool) -> int:
  from backend.conversion.errors import ValidationError
  from backend.conversion.models import ConversionPlan
  from backend.conversion.validator import PlanValidator, describe_levels

  data = _load_plan(plan_path)
  if data is None:
    return 2
  try:
    validated = PlanValidator().validate(ConversionPlan.from_dict(data))
  except ValidationError as exc:
    if as_json:
      print(json.dumps({'valid': False, 'error': exc.to_dict()}, indent=2))
    else:
      print(f'Invalid plan [{exc.code}]: {exc.message}', file=sys.stderr)
    return 1
  levels = describe_levels(validated)
  if as_json:
    print(json.dumps({
      'valid': True,
      'order': validated.order,
      'levels': [list(level) for level in levels],
      'warnings': validated.warnings
    }, indent=2))
  else:
    print(f'Plan is valid: {len(validated.order)} tasks in {len(levels)} levels')
    for index, level in enumerate(levels, start=1):
      print(f'  level {index}: {", ".join(level)}')
    for warning in validated.warnings:
      print(f'  warning: {warning}')
  return 0


def _print_progress(event, as_json: bool) -> None:
  if as_json:
    print(json.dumps(event.to_dict()))
    return
  bar = int(event.progress / 2)
  activity = (event.current_activity or '')[:40]
  print(f"[{('#' * bar).ljust(50)}] {event.progress:3d}%  {event.status.value:<9} {activity:<40}", end='\r', flush=True)


async def _run(ns: argparse.Namespace) -> int:
  from backend.conversion.errors import ValidationError
  from backend.conversion.models import ConversionPlan, JobStatus

  data = _load_plan(ns.plan)
  if data is None:
    return 2
  plan = ConversionPlan.from_dict(data)
  shared: Dict[str, object] = {}
  if ns.source_dir:
    source_dir = Path(ns.source_dir).expanduser().resolve()
    if not source_dir.is_dir():
      print('Source directory does not exist or is not a directory.', file=sys.stderr)
      return 2
    patterns: List[str] = [pattern for task in plan.tasks for pattern in task.input_files]
    shared['source_files'] = collect_source_files(source_dir, patterns)

  manager = build_manager(dry_run=ns.dry_run)
  manager.config.max_concurrent = max(1, ns.max_concurrent)
  await manager.start(recover=False)
  try:
    try:
      job = await manager.create_job(ns.project, plan, shared_context=shared)
    except ValidationError as exc:
      print(f'Invalid plan [{exc.code}]: {exc.message}', file=sys.stderr)
      return 1
    manager.subscribe_progress(job.id, lambda event: _print_progress(event, ns.json))
    await manager.start_job(job.id)
    job = await manager.wait_for_job(job.id)
    await manager.channel.flush(job.id)
  finally:
    await manager.shutdown()
  if not ns.json:
    print()
  payload = {
    'job_id': job.id,
    'status': job.status.value,
    'progress': job.progress,
    'counts': job.counts(),
    'error': job.error_message
  }
  print(json.dumps(payload, indent=2))
  return 0 if job.status == JobStatus.COMPLETED else 1


def cmd_jobs(project: Optional[str], as_json: bool) -> int:
  manager = build_manager(dry_run=True)
  jobs = asyncio.run(manager.list_jobs(project_id=project))
  if as_json:
    print(json.dumps([job.to_dict(include_plan=False, include_context=False) for job in jobs], indent=2))
    return 0
  for job in jobs:
    print(f'{job.id}  {job.project_id:<20} {job.status.value:<9} {job.progress:3d}%  {job.error_message or ""}')
  return 0


def cmd_show(job_id: str, as_json: bool) -> int:
  from backend.conversion.errors import JobNotFound

  manager = build_manager(dry_run=True)
  try:
    job = asyncio.run(manager.get_job_status(job_id))
  except JobNotFound:
    print('Job not found.', file=sys.stderr)
    return 2
  if as_json:
    print(json.dumps(job.to_dict(include_context=False), indent=2))
    return 0
  print(f'Job {job.id} ({job.project_id}): {job.status.value} {job.progress}%')
  if job.error_message:
    print(f'Error: {job.error_message}')
  for task in job.plan.tasks:
    state = job.task_states.get(task.id)
    if state is None:
      continue
    print(f'  {task.id:<16} {state.status.value:<9} attempts={state.attempts}  {state.last_error or ""}')
  return 0


def main() -> int:
  parser = parse_global_args()
  ns = parser.parse_args()
  if ns.command == 'validate':
    return cmd_validate(ns.plan, ns.json)
  if ns.command == 'run':
    return asyncio.run(_run(ns))
  if ns.command == 'jobs':
    return cmd_jobs(ns.project, ns.json)
  if ns.command == 'show':
    return cmd_show(ns.job_id, ns.json)
  return 1


if __name__ == '__main__':
  raise SystemExit(main())
