from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import httpx

from backend.ai.prompts import build_system_prompt, build_task_prompt
from backend.config import settings
from backend.conversion.errors import ConversionEngineError, ErrorCategory, PermanentTaskError, TransientTaskError
from backend.conversion.models import ChangeType, FileChange, TaskKind

logger = logging.getLogger(__name__)

_FENCE_PATTERN = re.compile(r'```(?:json)?\s*(.*?)```', re.DOTALL)


@dataclass
class ConversionRequest:
  task_id: str
  kind: TaskKind
  description: str
  source_stack: Dict[str, Any] = field(default_factory=dict)
  target_stack: Dict[str, Any] = field(default_factory=dict)
  source_excerpt: str = ''
  input_files: List[str] = field(default_factory=list)
  output_files: List[str] = field(default_factory=list)
  context: Dict[str, Any] = field(default_factory=dict)

  @property
  def dependency_outputs(self) -> Dict[str, Any]:
    return self.context.get('dependencies', {})


@dataclass
class ConversionResponse:
  files: List[FileChange] = field(default_factory=list)
  confidence: Optional[float] = None
  warnings: List[str] = field(default_factory=list)
  suggestions: List[str] = field(default_factory=list)


class BaseConverter:
  """Opaque AI capability that turns one task request into file changes."""

  async def convert(self, request: ConversionRequest) -> ConversionResponse:
    raise NotImplementedError

  async def aclose(self) -> None:
    return None


def parse_response_text(text: str) -> ConversionResponse:
  if not text or not text.strip():
    raise PermanentTaskError(ErrorCategory.MALFORMED_OUTPUT, 'AI response was empty')
  candidate = text.strip()
  match = _FENCE_PATTERN.search(candidate)
  if match:
    candidate = match.group(1).strip()
  try:
    payload = json.loads(candidate)
  except json.JSONDecodeError as exc:
    raise PermanentTaskError(ErrorCategory.MALFORMED_OUTPUT, f'AI response is not valid JSON: {exc}') from exc
  if not isinstance(payload, dict):
    raise PermanentTaskError(ErrorCategory.MALFORMED_OUTPUT, 'AI response must be a JSON object')

  files: List[FileChange] = []
  for entry in payload.get('files') or []:
    if not isinstance(entry, dict) or not entry.get('path'):
      raise PermanentTaskError(ErrorCategory.MALFORMED_OUTPUT, 'AI response contains a file without a path')
    try:
      files.append(FileChange.from_dict(entry))
    except ValueError as exc:
      raise PermanentTaskError(ErrorCategory.MALFORMED_OUTPUT, f'Unknown change type in AI response: {exc}') from exc

  confidence = payload.get('confidence')
  if confidence is not None and not isinstance(confidence, (int, float)):
    raise PermanentTaskError(ErrorCategory.MALFORMED_OUTPUT, f'Confidence {confidence!r} is not a number')
  return ConversionResponse(
    files=files,
    confidence=float(confidence) if confidence is not None else None,
    warnings=[str(item) for item in payload.get('warnings') or []],
    suggestions=[str(item) for item in payload.get('suggestions') or []]
  )


class OpenRouterConverter(BaseConverter):
  """Chat-completions converter for OpenRouter or any OpenAI compatible endpoint."""

  def __init__(
    self,
    api_key: Optional[str] = None,
    base_url: Optional[str] = None,
    model: Optional[str] = None,
    timeout: Optional[float] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None
  ) -> None:
    self.api_key = api_key or settings.openrouter_api_key
    if not self.api_key:
      raise ConversionEngineError('OPENROUTER_API_KEY is not configured.')
    self.base_url = (base_url or settings.openrouter_base_url).rstrip('/')
    self.model = model or settings.openrouter_model
    self.temperature = settings.ai_temperature
    self.max_tokens = settings.ai_max_tokens
    self.headers = {
      'Authorization': f'Bearer {self.api_key}',
      'Content-Type': 'application/json',
      'HTTP-Referer': 'https://ai-tech-stack-converter.com',
      'X-Title': 'AI Tech Stack Converter'
    }
    self._client = httpx.AsyncClient(
      timeout=timeout or settings.request_timeout_seconds,
      transport=transport
    )

  def _build_payload(self, request: ConversionRequest) -> Dict[str, Any]:
    prompt = build_task_prompt(
      kind=request.kind,
      description=request.description,
      source_stack=request.source_stack,
      target_stack=request.target_stack,
      source_excerpt=request.source_excerpt,
      input_files=request.input_files,
      output_files=request.output_files,
      dependency_outputs=request.dependency_outputs
    )
    return {
      'model': self.model,
      'temperature': self.temperature,
      'max_tokens': self.max_tokens,
      'messages': [
        {'role': 'system', 'content': build_system_prompt()},
        {'role': 'user', 'content': prompt}
      ]
    }

  async def convert(self, request: ConversionRequest) -> ConversionResponse:
    endpoint = f'{self.base_url}/chat/completions'
    payload = self._build_payload(request)
    try:
      resp = await self._client.post(endpoint, headers=self.headers, json=payload)
    except httpx.TimeoutException as exc:
      raise TransientTaskError(ErrorCategory.TIMEOUT, f'AI request timed out for task {request.task_id}') from exc
    except httpx.TransportError as exc:
      raise TransientTaskError(ErrorCategory.NETWORK, f'AI network error: {exc}') from exc

    self._raise_for_status(resp)
    try:
      data = resp.json()
      content = data['choices'][0]['message']['content']
    except (ValueError, KeyError, IndexError, TypeError) as exc:
      raise PermanentTaskError(ErrorCategory.MALFORMED_OUTPUT, 'AI response had no message content') from exc
    logger.debug('Task %s received %s characters from %s', request.task_id, len(content or ''), self.model)
    return parse_response_text(content or '')

  def _raise_for_status(self, resp: httpx.Response) -> None:
    status = resp.status_code
    if status < 400:
      return
    detail = self._error_detail(resp)
    if status == 429:
      raise TransientTaskError(ErrorCategory.RATE_LIMITED, f'AI provider rate limited the request: {detail}')
    if status in {408, 504}:
      raise TransientTaskError(ErrorCategory.TIMEOUT, f'AI provider timed out ({status}): {detail}')
    if status >= 500:
      raise TransientTaskError(ErrorCategory.UNAVAILABLE, f'AI provider unavailable ({status}): {detail}')
    raise PermanentTaskError(ErrorCategory.INVALID_INPUT, f'AI provider rejected the request ({status}): {detail}')

  @staticmethod
  def _error_detail(resp: httpx.Response) -> str:
    try:
      data = resp.json()
    except ValueError:
      return resp.text[:200]
    if isinstance(data, dict) and isinstance(data.get('error'), dict):
      return str(data['error'].get('message') or data['error'])
    return resp.text[:200]

  async def aclose(self) -> None:
    await self._client.aclose()


class EchoConverter(BaseConverter):
  """Offline converter that copies inputs through unchanged; used for dry runs."""

  async def convert(self, request: ConversionRequest) -> ConversionResponse:
    files = [
      FileChange(path=path, change_type=ChangeType.UPDATE, content=request.source_excerpt or None)
      for path in request.output_files
      if not any(char in path for char in '*?[')
    ]
    return ConversionResponse(
      files=files,
      confidence=1.0,
      warnings=[] if files else [f'Dry run produced no concrete files for task {request.task_id}']
    )


def build_default_converter(dry_run: bool = False) -> BaseConverter:
  if dry_run:
    return EchoConverter()
  if settings.openrouter_api_key:
    return OpenRouterConverter()
  logger.warning('OPENROUTER_API_KEY is not set; jobs will run with the offline echo converter')
  return EchoConverter()
