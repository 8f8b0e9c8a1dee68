# cadcore/infra/webhook_transport.py
"""
Webhook fanout transport.

POSTs every published event as JSON to one receiver (typically a
message-bus bridge).  Delivery is at-least-once: the ``X-Event-Id``
header is stable across retries so the receiver can de-duplicate.
"""
from __future__ import annotations

import asyncio
from typing import Optional

import aiohttp

from cadcore.config import settings
from cadcore.core.domain import DispatchEvent
from cadcore.infra.http_client import get_webhook_session
from cadcore.infra.logging_config import get_logger
from cadcore.infra.metrics import inc_counter

logger = get_logger(__name__)

# 4xx other than these means the receiver rejected the event itself
_RETRYABLE_CLIENT_STATUSES = {408, 425, 429}


class WebhookDeliveryError(Exception):
    def __init__(self, message: str, *, status: Optional[int] = None, retryable: bool = True):
        self.status = status
        self.retryable = retryable
        super().__init__(message)


class WebhookFanoutTransport:
    name = "webhook"

    def __init__(
        self,
        url: str,
        *,
        token: Optional[str] = None,
        max_attempts: Optional[int] = None,
        retry_delay: Optional[float] = None,
    ) -> None:
        self._url = url
        self._token = token
        self._max_attempts = max_attempts if max_attempts is not None else settings.fanout_webhook_max_attempts
        self._retry_delay = retry_delay if retry_delay is not None else settings.fanout_webhook_retry_delay_seconds

    @classmethod
    def from_settings(cls) -> Optional["WebhookFanoutTransport"]:
        if not settings.fanout_webhook_url:
            return None
        return cls(settings.fanout_webhook_url, token=settings.fanout_webhook_token)

    def _headers(self, event: DispatchEvent) -> dict[str, str]:
        headers = {"X-Event-Id": event.id, "X-Event-Type": event.event_type}
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        return headers

    async def publish(self, event: DispatchEvent) -> None:
        """
        Deliver one event, retrying transient failures.

        Raises:
            WebhookDeliveryError: every attempt failed or the receiver
                rejected the event; the fanout logs and counts it.
        """
        _extra = {"event_type": event.event_type, "entity_type": event.entity_type, "entity_id": event.entity_id}

        last_error: Optional[WebhookDeliveryError] = None
        for attempt in range(1, self._max_attempts + 1):
            try:
                await self._post(event)
                inc_counter("webhook_deliveries_total", status="sent")
                return
            except WebhookDeliveryError as exc:
                last_error = exc
            except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
                last_error = WebhookDeliveryError(f"{type(exc).__name__}: {exc}")

            if not last_error.retryable or attempt == self._max_attempts:
                break
            logger.warning(
                "Webhook delivery failed (attempt=%d/%d), retrying in %.1fs: %s",
                attempt, self._max_attempts, self._retry_delay, last_error,
                extra=_extra,
            )
            await asyncio.sleep(self._retry_delay)

        inc_counter("webhook_deliveries_total", status="failed")
        if last_error is None:
            last_error = WebhookDeliveryError("no delivery attempts configured", retryable=False)
        raise last_error

    async def _post(self, event: DispatchEvent) -> None:
        session = get_webhook_session()
        async with session.post(self._url, json=event.to_dict(), headers=self._headers(event)) as resp:
            if 200 <= resp.status < 300:
                return
            body = (await resp.text())[:200]
            retryable = resp.status >= 500 or resp.status in _RETRYABLE_CLIENT_STATUSES
            raise WebhookDeliveryError(
                f"webhook returned {resp.status}: {body}", status=resp.status, retryable=retryable,
            )
