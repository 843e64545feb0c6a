import asyncio

import pytest

from backend.ai.converter import BaseConverter, ConversionResponse
from backend.conversion.errors import ErrorCategory, TaskError
from backend.conversion.executor import TaskExecutor
from backend.conversion.models import TaskStatus
from helpers import ScriptedConverter, make_task


class SlowConverter(BaseConverter):
  async def convert(self, request):
    await asyncio.sleep(10)
    return ConversionResponse()


class BrokenConverter(BaseConverter):
  async def convert(self, request):
    raise KeyError('choices')


class OverconfidentConverter(BaseConverter):
  async def convert(self, request):
    return ConversionResponse(confidence=1.7)


@pytest.mark.asyncio
async def test_successful_execution_returns_completed_result(converter):
  executor = TaskExecutor(converter)
  result = await executor.execute(make_task('t1'), {'shared': {}, 'dependencies': {}}, timeout=1.0)

  assert result.status == TaskStatus.COMPLETED
  assert result.error is None
  assert result.attempts == 1
  assert result.files[0].path == 'out/t1.py'
  assert result.confidence == 0.9
  assert result.finished_at >= result.started_at


@pytest.mark.asyncio
async def test_timeout_is_transient():
  executor = TaskExecutor(SlowConverter())
  result = await executor.execute(make_task('slow'), {}, timeout=0.05)

  assert result.status == TaskStatus.FAILED
  assert result.error.category == ErrorCategory.TIMEOUT
  assert result.error.transient is True


@pytest.mark.asyncio
async def test_classified_errors_pass_through():
  converter = ScriptedConverter(scripts={'t1': ['transient'], 't2': ['permanent']})
  executor = TaskExecutor(converter)

  transient = await executor.execute(make_task('t1'), {}, timeout=1.0)
  permanent = await executor.execute(make_task('t2'), {}, timeout=1.0, attempt=2)

  assert transient.error.category == ErrorCategory.UNAVAILABLE
  assert transient.error.transient is True
  assert permanent.error.category == ErrorCategory.MALFORMED_OUTPUT
  assert permanent.error.transient is False
  assert permanent.attempts == 2


@pytest.mark.asyncio
async def test_unknown_exception_is_permanent_internal_error():
  result = await TaskExecutor(BrokenConverter()).execute(make_task('t1'), {}, timeout=1.0)

  assert result.status == TaskStatus.FAILED
  assert result.error.category == ErrorCategory.INTERNAL
  assert result.error.transient is False
  assert 'KeyError' in result.error.message


@pytest.mark.asyncio
async def test_confidence_out_of_range_is_malformed():
  result = await TaskExecutor(OverconfidentConverter()).execute(make_task('t1'), {}, timeout=1.0)
  assert result.error.category == ErrorCategory.MALFORMED_OUTPUT


def test_request_collects_matching_source_files(converter):
  executor = TaskExecutor(converter)
  task = make_task('models', input_files=('src/models/*.js',))
  context = {
    'shared': {
      'source_files': {
        'src/models/user.js': 'class User {}',
        'src/views/home.js': 'render()',
        'src/models/post.js': 'class Post {}'
      },
      'source_stack': {'language': 'javascript'},
      'target_stack': {'language': 'python'}
    },
    'dependencies': {'analyze': {'warnings': ['legacy callbacks']}}
  }

  request = executor.build_request(task, context)

  assert '// File: src/models/post.js' in request.source_excerpt
  assert '// File: src/models/user.js' in request.source_excerpt
  assert 'render()' not in request.source_excerpt
  assert request.source_stack == {'language': 'javascript'}
  assert request.target_stack == {'language': 'python'}
  assert request.dependency_outputs == {'analyze': {'warnings': ['legacy callbacks']}}


def test_request_falls_back_to_task_excerpt_and_truncates(converter):
  executor = TaskExecutor(converter, max_excerpt_chars=10)
  task = make_task('t1', context={'source_excerpt': 'x' * 50})

  request = executor.build_request(task, {'shared': {}})

  assert request.source_excerpt == 'x' * 10


class CategorizedConverter(BaseConverter):
  def __init__(self, category):
    self.category = category

  async def convert(self, request):
    raise TaskError(self.category, f'{self.category.value} from provider')


@pytest.mark.asyncio
@pytest.mark.parametrize('category, transient', [
  (ErrorCategory.RATE_LIMITED, True),
  (ErrorCategory.NETWORK, True),
  (ErrorCategory.INVALID_INPUT, False),
  (ErrorCategory.MALFORMED_OUTPUT, False)
])
async def test_plain_task_error_is_transient_by_category(category, transient):
  result = await TaskExecutor(CategorizedConverter(category)).execute(make_task('t1'), {}, timeout=1.0)

  assert result.error.category == category
  assert result.error.transient is transient
