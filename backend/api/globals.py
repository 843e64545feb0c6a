from backend.ai.converter import build_default_converter
from backend.config import settings
from backend.conversion.job_store import SqliteJobStore
from backend.conversion.manager import JobManager
from backend.conversion.queue import InProcessQueue
from backend.logging.event_logger import EventLogger
from backend.resources.monitor import ResourceMonitor

# Initialize globals
resources = ResourceMonitor()
event_logger = EventLogger(settings.data_dir / 'logs')
job_store = SqliteJobStore(settings.db_path)
job_manager = JobManager(
  converter=build_default_converter(),
  store=job_store,
  queue=InProcessQueue(),
  event_logger=event_logger,
  resource_monitor=resources
)
