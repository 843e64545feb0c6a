import argparse
import logging
from typing import List, Optional

import uvicorn

from backend.config import settings

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
  parser = argparse.ArgumentParser(prog='stackconv-server', description='Serve the conversion job API over HTTP and websockets.')
  parser.add_argument('--host', default=settings.backend_host)
  parser.add_argument('--port', type=int, default=settings.backend_port)
  parser.add_argument(
    '--max-concurrent',
    type=int,
    default=settings.max_concurrent,
    help='Tasks dispatched in parallel per job. Ignored by --reload workers.'
  )
  parser.add_argument('--log-level', default=settings.log_level)
  parser.add_argument('--reload', action='store_true', help='Restart on code changes (development only).')
  return parser


def main(argv: Optional[List[str]] = None) -> None:
  args = build_parser().parse_args(argv)
  # The job manager reads settings when backend.api.globals is first imported.
  settings.max_concurrent = max(1, args.max_concurrent)
  logging.basicConfig(level=getattr(logging, args.log_level.upper(), logging.INFO))
  logger.info('Serving conversion engine on %s:%s (max_concurrent=%s)', args.host, args.port, settings.max_concurrent)
  uvicorn.run('backend.api.app:app', host=args.host, port=args.port, log_level=args.log_level.lower(), reload=args.reload)


if __name__ == '__main__':
  main()
