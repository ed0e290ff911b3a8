"""
Readiness and liveness health checks.

Readiness requires the database and Redis (retry sweep lease backend).
The webhook backlog check is informational: a pile of abandoned deliveries
or stuck idempotency locks marks the service ``degraded`` without failing
readiness.
"""
from datetime import timedelta
from typing import Any, Awaitable, Callable, Dict, Optional

import redis.asyncio as aioredis
import structlog
from sqlalchemy import func, select, text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from payflow.config import Settings, get_settings
from payflow.database.connection import get_session_factory
from payflow.database.models import IdempotencyKey, WebhookDelivery, utcnow

logger = structlog.get_logger(__name__)


class HealthCheckError(Exception):
    """Raised when a required dependency is unreachable."""


class HealthCheck:
    """Checks the store, the lease backend and the delivery backlog."""

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self._session_factory = session_factory

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        return self._session_factory or get_session_factory()

    async def check_database(self) -> Dict[str, Any]:
        """
        Run ``SELECT 1`` against the store.

        Raises:
            HealthCheckError: If the query fails
        """
        try:
            async with self.session_factory() as db:
                (await db.execute(text("SELECT 1"))).scalar()
        except Exception as e:
            logger.error("database_health_check_failed", error=str(e))
            raise HealthCheckError(f"Database health check failed: {e}") from e
        return {"status": "healthy", "service": "database"}

    async def check_redis(self) -> Dict[str, Any]:
        """
        Ping the Redis instance holding the retry sweep lease.

        Raises:
            HealthCheckError: If the ping fails
        """
        client: Optional[aioredis.Redis] = None
        try:
            client = aioredis.from_url(self.settings.redis_url, decode_responses=True)
            await client.ping()
        except Exception as e:
            logger.error("redis_health_check_failed", error=str(e))
            raise HealthCheckError(f"Redis health check failed: {e}") from e
        finally:
            if client is not None:
                await client.aclose()
        return {"status": "healthy", "service": "redis"}

    async def check_webhook_backlog(self) -> Dict[str, Any]:
        """Count deliveries awaiting retry, abandoned deliveries and stale locks."""
        stale_before = utcnow() - timedelta(
            seconds=self.settings.idempotency_lock_stale_after_seconds
        )
        async with self.session_factory() as db:
            by_status = dict(
                (
                    await db.execute(
                        select(WebhookDelivery.status, func.count())
                        .where(WebhookDelivery.status.in_(("failed", "abandoned")))
                        .group_by(WebhookDelivery.status)
                    )
                ).all()
            )
            stale_locks = (
                await db.execute(
                    select(func.count())
                    .select_from(IdempotencyKey)
                    .where(IdempotencyKey.locked.is_(True), IdempotencyKey.locked_at < stale_before)
                )
            ).scalar_one()

        abandoned = by_status.get("abandoned", 0)
        return {
            "status": "degraded" if abandoned or stale_locks else "healthy",
            "service": "webhook_backlog",
            "awaiting_retry": by_status.get("failed", 0),
            "abandoned": abandoned,
            "stale_idempotency_locks": stale_locks,
        }

    async def check_all(self) -> Dict[str, Any]:
        """
        Run every check.

        Returns:
            Dict[str, Any]: ``healthy`` only when all required checks pass
        """
        required: Dict[str, Callable[[], Awaitable[Dict[str, Any]]]] = {
            "database": self.check_database,
            "redis": self.check_redis,
        }
        checks: Dict[str, Any] = {}
        all_healthy = True

        for name, check in required.items():
            try:
                checks[name] = await check()
            except HealthCheckError as e:
                checks[name] = {"status": "unhealthy", "service": name, "error": str(e)}
                all_healthy = False

        if checks["database"]["status"] == "healthy":
            checks["webhook_backlog"] = await self.check_webhook_backlog()

        return {"status": "healthy" if all_healthy else "unhealthy", "checks": checks}

    async def liveness(self) -> Dict[str, Any]:
        """Liveness check; touches no dependency."""
        return {"status": "alive", "app": self.settings.app_name}

    async def readiness(self) -> Dict[str, Any]:
        return await self.check_all()
