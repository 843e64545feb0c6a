from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional


@dataclass
class Settings:
  """Global backend configuration derived from environment variables."""

  backend_host: str = os.getenv('BACKEND_HOST', '127.0.0.1')
  backend_port: int = int(os.getenv('BACKEND_PORT', '6110'))
  log_level: str = os.getenv('BACKEND_LOG_LEVEL', 'info')
  data_dir: Path = Path(os.getenv('CONVERTER_DATA_DIR', './data')).resolve()
  db_path: Path = Path(os.getenv('CONVERTER_DB_PATH', './data/jobs.db')).resolve()
  max_concurrent: int = int(os.getenv('CONVERTER_MAX_CONCURRENT', '3'))
  max_retries: int = int(os.getenv('CONVERTER_MAX_RETRIES', '3'))
  retry_base_delay_seconds: float = float(os.getenv('CONVERTER_RETRY_BASE_DELAY', '1.0'))
  retry_max_delay_seconds: float = float(os.getenv('CONVERTER_RETRY_MAX_DELAY', '30'))
  task_timeout_seconds: float = float(os.getenv('CONVERTER_TASK_TIMEOUT', '300'))
  hard_cancel_on_pause: bool = os.getenv('CONVERTER_HARD_CANCEL_ON_PAUSE', 'false').lower() == 'true'
  progress_coalesce_seconds: float = float(os.getenv('CONVERTER_PROGRESS_COALESCE', '0.1'))
  save_interval_seconds: float = float(os.getenv('CONVERTER_SAVE_INTERVAL', '5'))
  job_retention_hours: float = float(os.getenv('CONVERTER_JOB_RETENTION_HOURS', '24'))
  max_excerpt_chars: int = int(os.getenv('CONVERTER_MAX_EXCERPT_CHARS', str(48 * 1024)))
  throttle_on_load: bool = os.getenv('CONVERTER_THROTTLE_ON_LOAD', 'false').lower() == 'true'
  throttle_sleep_seconds: float = float(os.getenv('CONVERTER_THROTTLE_SLEEP', '5'))
  openrouter_api_key: Optional[str] = os.getenv('OPENROUTER_API_KEY')
  openrouter_base_url: str = os.getenv('OPENROUTER_BASE_URL', 'https://openrouter.ai/api/v1')
  openrouter_model: str = os.getenv('OPENROUTER_MODEL', 'zhipuai/glm-4.5-air')
  request_timeout_seconds: float = float(os.getenv('CONVERTER_REQUEST_TIMEOUT', '60'))
  ai_temperature: float = float(os.getenv('CONVERTER_AI_TEMPERATURE', '0.1'))
  ai_max_tokens: int = int(os.getenv('CONVERTER_AI_MAX_TOKENS', '8192'))

  def ensure_directories(self) -> None:
    self.data_dir.mkdir(parents=True, exist_ok=True)
    if not self.db_path.parent.exists():
      self.db_path.parent.mkdir(parents=True, exist_ok=True)


settings = Settings()
settings.ensure_directories()
