# tests/test_webhook_transport.py
"""Tests for WebhookFanoutTransport retry and error classification."""
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import aiohttp
import pytest

from cadcore.core.domain import Audience, DispatchEvent
from cadcore.infra.metrics import get_metrics_collector
from cadcore.infra.webhook_transport import WebhookDeliveryError, WebhookFanoutTransport


def _event():
    return DispatchEvent(
        id="evt-1",
        event_type="BackupRequested",
        entity_type="backup_request",
        entity_id="b1",
        payload={"urgency": "EMERGENCY"},
        audience=Audience.dispatchers_only(),
        actor="1A-01",
        occurred_at=datetime(2024, 3, 1, tzinfo=timezone.utc),
    )


def _session_returning(status: int, text: str = ""):
    resp = MagicMock()
    resp.status = status
    resp.text = AsyncMock(return_value=text)
    ctx = MagicMock()
    ctx.__aenter__ = AsyncMock(return_value=resp)
    ctx.__aexit__ = AsyncMock(return_value=False)
    session = MagicMock()
    session.post = MagicMock(return_value=ctx)
    return session


# ---------------------------------------------------------------------------
# HTTP round trip
# ---------------------------------------------------------------------------

class TestWebhookPost:
    """Request shape and status handling."""

    @pytest.mark.asyncio
    async def test_success_sends_event_headers(self):
        session = _session_returning(204)
        transport = WebhookFanoutTransport("https://bus.example/hook", token="s3cret", max_attempts=1)

        with patch("cadcore.infra.webhook_transport.get_webhook_session", return_value=session):
            await transport.publish(_event())

        _, kwargs = session.post.call_args
        assert kwargs["json"]["id"] == "evt-1"
        assert kwargs["headers"]["X-Event-Id"] == "evt-1"
        assert kwargs["headers"]["X-Event-Type"] == "BackupRequested"
        assert kwargs["headers"]["Authorization"] == "Bearer s3cret"
        assert get_metrics_collector().get_counter("webhook_deliveries_total", status="sent") == 1

    @pytest.mark.asyncio
    async def test_no_token_no_auth_header(self):
        session = _session_returning(200)
        transport = WebhookFanoutTransport("https://bus.example/hook", max_attempts=1)
        with patch("cadcore.infra.webhook_transport.get_webhook_session", return_value=session):
            await transport.publish(_event())
        assert "Authorization" not in session.post.call_args[1]["headers"]

    @pytest.mark.asyncio
    async def test_client_error_not_retried(self):
        session = _session_returning(400, "bad payload")
        transport = WebhookFanoutTransport("https://bus.example/hook", max_attempts=3, retry_delay=0)

        with patch("cadcore.infra.webhook_transport.get_webhook_session", return_value=session):
            with pytest.raises(WebhookDeliveryError) as exc_info:
                await transport.publish(_event())

        assert exc_info.value.status == 400
        assert exc_info.value.retryable is False
        assert session.post.call_count == 1
        assert get_metrics_collector().get_counter("webhook_deliveries_total", status="failed") == 1

    @pytest.mark.asyncio
    async def test_server_error_retried_until_exhausted(self):
        session = _session_returning(503)
        transport = WebhookFanoutTransport("https://bus.example/hook", max_attempts=3, retry_delay=0)

        with patch("cadcore.infra.webhook_transport.get_webhook_session", return_value=session):
            with pytest.raises(WebhookDeliveryError):
                await transport.publish(_event())

        assert session.post.call_count == 3


# ---------------------------------------------------------------------------
# Retry loop
# ---------------------------------------------------------------------------

class TestWebhookRetry:
    """publish() retry behaviour with _post mocked."""

    @pytest.mark.asyncio
    async def test_recovers_after_transient_failure(self):
        transport = WebhookFanoutTransport("https://bus.example/hook", max_attempts=3, retry_delay=0)
        transport._post = AsyncMock(side_effect=[aiohttp.ClientConnectionError("reset"), None])

        await transport.publish(_event())

        assert transport._post.await_count == 2

    @pytest.mark.asyncio
    async def test_rate_limited_is_retryable(self):
        transport = WebhookFanoutTransport("https://bus.example/hook", max_attempts=2, retry_delay=0)
        transport._post = AsyncMock(side_effect=[WebhookDeliveryError("429", status=429, retryable=True), None])
        await transport.publish(_event())
        assert transport._post.await_count == 2

    @pytest.mark.asyncio
    async def test_zero_attempts(self):
        transport = WebhookFanoutTransport("https://bus.example/hook", max_attempts=0)
        with pytest.raises(WebhookDeliveryError):
            await transport.publish(_event())


class TestFromSettings:
    """Optional transport construction."""

    def test_disabled_without_url(self):
        with patch("cadcore.infra.webhook_transport.settings") as mock_settings:
            mock_settings.fanout_webhook_url = None
            assert WebhookFanoutTransport.from_settings() is None

    def test_enabled_with_url(self):
        with patch("cadcore.infra.webhook_transport.settings") as mock_settings:
            mock_settings.fanout_webhook_url = "https://bus.example/hook"
            mock_settings.fanout_webhook_token = "t"
            mock_settings.fanout_webhook_max_attempts = 2
            mock_settings.fanout_webhook_retry_delay_seconds = 0.5
            transport = WebhookFanoutTransport.from_settings()
        assert transport is not None
        assert transport.name == "webhook"
