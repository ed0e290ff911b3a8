"""
Tests for health checks.
"""
from unittest.mock import AsyncMock, MagicMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from payflow.database.models import WebhookDelivery
from payflow.monitoring.health import HealthCheck
from payflow.monitoring.logging import redact_secrets


def _redis(mocker, ping):
    client = MagicMock()
    client.ping = ping
    client.aclose = AsyncMock()
    mocker.patch("payflow.monitoring.health.aioredis.from_url", return_value=client)
    return client


class TestHealthCheck:
    """Test suite for HealthCheck."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_all_dependencies_healthy(self, session_factory, test_settings, mocker) -> None:
        """Test overall status when database and Redis respond."""
        client = _redis(mocker, AsyncMock(return_value=True))

        result = await HealthCheck(session_factory, test_settings).check_all()

        assert result["status"] == "healthy"
        assert result["checks"]["database"]["status"] == "healthy"
        assert result["checks"]["redis"]["status"] == "healthy"
        client.aclose.assert_awaited_once()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_redis_down_is_unhealthy(self, session_factory, test_settings, mocker) -> None:
        """Test that one failing dependency makes readiness fail."""
        _redis(mocker, AsyncMock(side_effect=RedisConnectionError("refused")))

        result = await HealthCheck(session_factory, test_settings).readiness()

        assert result["status"] == "unhealthy"
        assert result["checks"]["database"]["status"] == "healthy"
        assert "refused" in result["checks"]["redis"]["error"]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_liveness_has_no_dependencies(self, test_settings) -> None:
        """Test liveness never touches external services."""
        result = await HealthCheck(settings=test_settings).liveness()

        assert result["status"] == "alive"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_abandoned_deliveries_mark_backlog_degraded(
        self, session_factory, test_settings, mocker
    ) -> None:
        """Test the backlog check reports abandoned deliveries without failing readiness."""
        _redis(mocker, AsyncMock(return_value=True))
        async with session_factory() as db:
            for status in ("failed", "abandoned", "delivered"):
                db.add(
                    WebhookDelivery(
                        event_id=f"evt_{status}",
                        event_type="payment.succeeded",
                        payload={},
                        raw_payload="{}",
                        status=status,
                        attempts=1,
                    )
                )
            await db.commit()

        result = await HealthCheck(session_factory, test_settings).check_all()

        backlog = result["checks"]["webhook_backlog"]
        assert result["status"] == "healthy"
        assert backlog["status"] == "degraded"
        assert backlog["awaiting_retry"] == 1
        assert backlog["abandoned"] == 1
        assert backlog["stale_idempotency_locks"] == 0


class TestLogRedaction:
    """Test masking of credentials in log events."""

    @pytest.mark.unit
    def test_secrets_masked_and_signature_truncated(self) -> None:
        """Test that only a correlation prefix of the signature survives."""
        event = redact_secrets(
            None,
            "info",
            {
                "event": "webhook_received",
                "signature": "sha256=" + "ab" * 32,
                "webhook_secret": "whsec_test_secret",
                "event_id": "evt_1",
            },
        )

        assert event["signature"] == "sha256=ababababa..."
        assert event["webhook_secret"] == "***"
        assert event["event_id"] == "evt_1"
