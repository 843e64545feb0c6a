"""Pytest configuration and fixtures."""

import os
import tempfile

# Point the data directory at a scratch location before backend.config is imported.
os.environ.setdefault('CONVERTER_DATA_DIR', tempfile.mkdtemp(prefix='stackconv-data-'))
os.environ.setdefault('CONVERTER_DB_PATH', os.path.join(os.environ['CONVERTER_DATA_DIR'], 'jobs.db'))
os.environ.pop('OPENROUTER_API_KEY', None)

import pytest

from backend.conversion.models import ConversionPlan, TaskKind
from helpers import ScriptedConverter, make_plan, make_task


@pytest.fixture
def converter() -> ScriptedConverter:
  return ScriptedConverter()


@pytest.fixture
def diamond_plan() -> ConversionPlan:
  return make_plan(
    make_task('analyze', kind=TaskKind.ANALYSIS, duration=10),
    make_task('models', deps=['analyze'], duration=20),
    make_task('views', deps=['analyze'], duration=20),
    make_task('verify', deps=['models', 'views'], kind=TaskKind.VALIDATION, duration=10)
  )
