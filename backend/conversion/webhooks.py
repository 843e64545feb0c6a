from __future__ import annotations

import asyncio
import hashlib
import hmac
import json
import logging
import time
from typing import Dict, Iterable, List, Optional

import httpx

from backend.conversion.models import WebhookConfig

logger = logging.getLogger(__name__)

JOB_EVENTS = (
  'job.started',
  'job.paused',
  'job.resumed',
  'job.completed',
  'job.failed',
  'job.cancelled'
)


class WebhookDeliveryError(Exception):
  """Raised when a webhook fails after all retry attempts."""


def sign_payload(secret: str, payload: Dict[str, object]) -> str:
  serialized = json.dumps(payload, sort_keys=True, default=str).encode('utf-8')
  return hmac.new(secret.encode('utf-8'), serialized, hashlib.sha256).hexdigest()


class WebhookManager:
  """Posts job lifecycle notifications with retry and linear backoff."""

  def __init__(
    self,
    timeout_seconds: float = 12.0,
    max_attempts: int = 3,
    backoff_seconds: float = 2.5,
    transport: Optional[httpx.AsyncBaseTransport] = None
  ) -> None:
    self.timeout_seconds = timeout_seconds
    self.max_attempts = max_attempts
    self.backoff_seconds = backoff_seconds
    self.transport = transport

  async def dispatch(
    self,
    targets: Iterable[WebhookConfig],
    event_name: str,
    payload: Dict[str, object]
  ) -> List[Dict[str, object]]:
    results: List[Dict[str, object]] = []
    sends = [
      self._send_with_retry(config, event_name, payload)
      for config in targets
      if config.should_fire(event_name)
    ]
    if not sends:
      return results
    responses = await asyncio.gather(*sends, return_exceptions=True)
    for response in responses:
      if isinstance(response, Exception):
        logger.warning('Webhook dispatch failed: %s', response)
        continue
      results.append(response)
    return results

  async def _send_with_retry(
    self,
    config: WebhookConfig,
    event_name: str,
    payload: Dict[str, object]
  ) -> Dict[str, object]:
    headers = {'Content-Type': 'application/json', 'X-Webhook-Event': event_name}
    headers.update({key: value for key, value in config.headers.items() if value is not None})
    signature: Optional[str] = None
    if config.secret_token:
      signature = sign_payload(config.secret_token, payload)
      headers['X-Webhook-Signature'] = signature

    attempt = 0
    async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self.transport) as client:
      while attempt < self.max_attempts:
        attempt += 1
        try:
          response = await client.post(
            config.url,
            json={
              'event': event_name,
              'timestamp': time.time(),
              'payload': payload,
              'attempt': attempt,
              'signature': signature
            },
            headers=headers
          )
          response.raise_for_status()
          logger.debug('Webhook %s delivered (attempt %s)', config.url, attempt)
          return {'url': config.url, 'status': response.status_code, 'attempts': attempt}
        except httpx.HTTPError as exc:
          logger.warning('Webhook delivery attempt %s failed for %s: %s', attempt, config.url, exc)
          if attempt >= self.max_attempts:
            raise WebhookDeliveryError(f'{config.url} failed after {attempt} attempts') from exc
          await asyncio.sleep(self.backoff_seconds * attempt)
    raise WebhookDeliveryError(f'{config.url} failed unexpectedly')


def parse_webhooks(webhooks: Optional[Iterable[object]]) -> List[WebhookConfig]:
  parsed: List[WebhookConfig] = []
  for entry in webhooks or []:
    if isinstance(entry, WebhookConfig):
      parsed.append(entry)
      continue
    if isinstance(entry, dict):
      url = entry.get('url')
      if not url:
        continue
      parsed.append(
        WebhookConfig(
          url=url,
          headers=entry.get('headers') or {},
          events=entry.get('events') or list(JOB_EVENTS),
          secret_token=entry.get('secret_token')
        )
      )
      continue
    if isinstance(entry, str) and entry.strip():
      parsed.append(WebhookConfig(url=entry.strip()))
  return parsed
