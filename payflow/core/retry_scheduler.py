"""
Persistent webhook delivery retries with exponential backoff.

Failed deliveries are re-sent on a fixed-interval sweep. Each attempt either
delivers, schedules the next attempt ``min(2**attempts * base, cap)`` seconds
out, or abandons the delivery once ``webhook_max_attempts`` is reached.
Sweeps never overlap: a sweep that cannot take the lease is skipped.
"""
import asyncio
import time
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

import redis.asyncio as aioredis
import structlog
from redis.exceptions import LockError
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from payflow.config import Settings, get_settings
from payflow.core.audit import AuditSink
from payflow.core.exceptions import TerminalDeliveryError, TransientDeliveryError
from payflow.database.models import WebhookDelivery, utcnow
from payflow.integrations.delivery_client import WebhookDeliveryClient
from payflow.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


def backoff_delay(
    attempts: int, base_seconds: int = 60, cap_seconds: int = 3600
) -> timedelta:
    """
    Delay before the next attempt after ``attempts`` attempts.

    >>> backoff_delay(1).total_seconds(), backoff_delay(4).total_seconds()
    (120.0, 960.0)
    """
    return timedelta(seconds=min((2 ** attempts) * base_seconds, cap_seconds))


def next_attempt_at(
    attempts: int,
    now: datetime,
    base_seconds: int = 60,
    cap_seconds: int = 3600,
) -> datetime:
    """Absolute time of the next attempt."""
    return now + backoff_delay(attempts, base_seconds, cap_seconds)


@dataclass
class RetrySweepResult:
    """Counts for one sweep; ``processed == succeeded + failed + abandoned``."""

    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    abandoned: int = 0
    skipped: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class LocalSweepLease:
    """In-process lease; enough for a single scheduler process and for tests."""

    def __init__(self) -> None:
        self._lock = asyncio.Lock()

    async def try_acquire(self) -> bool:
        if self._lock.locked():
            return False
        await self._lock.acquire()
        return True

    async def release(self) -> None:
        if self._lock.locked():
            self._lock.release()


class RedisSweepLease:
    """
    Distributed lease backed by a Redis lock.

    The TTL bounds how long a crashed sweeper can block the others.
    """

    def __init__(
        self,
        redis_client: Optional[aioredis.Redis] = None,
        settings: Optional[Settings] = None,
        name: str = "payflow:retry-sweep",
    ):
        self.settings = settings or get_settings()
        self.redis_client = redis_client
        self.name = name
        self._lock: Any = None

    def _ensure_redis(self) -> aioredis.Redis:
        if self.redis_client is None:
            self.redis_client = aioredis.from_url(
                self.settings.redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
        return self.redis_client

    async def try_acquire(self) -> bool:
        lock = self._ensure_redis().lock(
            self.name,
            timeout=self.settings.retry_sweep_lease_seconds,
            blocking=False,
        )
        acquired = await lock.acquire(blocking=False)
        if acquired:
            self._lock = lock
        return bool(acquired)

    async def release(self) -> None:
        if self._lock is None:
            return
        try:
            await self._lock.release()
        except LockError:
            logger.warning("retry_sweep_lease_expired", lease=self.name)
        finally:
            self._lock = None

    async def close(self) -> None:
        if self.redis_client is not None:
            await self.redis_client.aclose()
            self.redis_client = None


class RetryScheduler:
    """
    Re-delivers failed webhook deliveries.

    Every delivery is claimed, attempted and committed in its own
    transaction, so one bad delivery never blocks the rest of the batch.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        delivery_client: Optional[WebhookDeliveryClient] = None,
        audit_sink: Optional[AuditSink] = None,
        settings: Optional[Settings] = None,
        lease: Any = None,
    ):
        self.session_factory = session_factory
        self.settings = settings or get_settings()
        self.delivery_client = delivery_client or WebhookDeliveryClient(self.settings)
        self.audit_sink = audit_sink
        self.lease = lease or LocalSweepLease()
        self._running = False

        logger.info(
            "retry_scheduler_initialized",
            batch_size=self.settings.retry_batch_size,
            max_attempts=self.settings.webhook_max_attempts,
            interval=self.settings.retry_interval_seconds,
        )

    def _next_attempt_at(self, attempts: int, now: datetime) -> datetime:
        return next_attempt_at(
            attempts,
            now,
            self.settings.webhook_backoff_base_seconds,
            self.settings.webhook_backoff_cap_seconds,
        )

    async def _due_delivery_ids(self, now: datetime) -> list:
        async with self.session_factory() as db:
            stmt = (
                select(WebhookDelivery.id)
                .where(
                    WebhookDelivery.status == "failed",
                    WebhookDelivery.next_attempt_at <= now,
                )
                .order_by(WebhookDelivery.created_at)
                .limit(self.settings.retry_batch_size)
            )
            result = await db.execute(stmt)
            return list(result.scalars().all())

    async def _claim(self, delivery_id: Any, now: datetime) -> Optional[WebhookDelivery]:
        """
        Take a due delivery for one attempt.

        The claim pushes ``next_attempt_at`` out by the lease TTL with a
        compare-and-swap on ``(status, attempts, next_attempt_at <= now)``, so a
        sweep holding a stale id list loses the row instead of re-sending it.
        A sweeper that dies mid-attempt leaves the row due again after the TTL.
        """
        async with self.session_factory() as db:
            delivery = await db.get(WebhookDelivery, delivery_id)
            if delivery is None or delivery.status != "failed":
                return None
            claimed = await db.execute(
                update(WebhookDelivery)
                .where(
                    WebhookDelivery.id == delivery_id,
                    WebhookDelivery.status == "failed",
                    WebhookDelivery.attempts == delivery.attempts,
                    WebhookDelivery.next_attempt_at <= now,
                )
                .values(
                    next_attempt_at=now
                    + timedelta(seconds=self.settings.retry_sweep_lease_seconds),
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            await db.commit()
        return delivery if claimed.rowcount == 1 else None

    async def _retry_delivery(self, delivery_id: Any, now: datetime) -> Optional[str]:
        """
        Attempt one delivery.

        Returns:
            Optional[str]: succeeded, failed or abandoned; None if the row was
            not due or another sweep claimed it first
        """
        delivery = await self._claim(delivery_id, now)
        if delivery is None:
            return None

        attempts = delivery.attempts
        try:
            await self.delivery_client.deliver(delivery.raw_payload, delivery.signature)
        except TransientDeliveryError as e:
            attempts += 1
            error: Optional[str] = e.message
            if attempts >= self.settings.webhook_max_attempts:
                outcome = "abandoned"
                values: Dict[str, Any] = {"status": "abandoned", "next_attempt_at": None}
            else:
                outcome = "failed"
                values = {"status": "failed", "next_attempt_at": self._next_attempt_at(attempts, now)}
        else:
            error = None
            outcome = "succeeded"
            values = {"status": "delivered", "delivered_at": now, "next_attempt_at": None}

        async with self.session_factory() as db:
            # Guarded on the attempt count read at claim time
            await db.execute(
                update(WebhookDelivery)
                .where(
                    WebhookDelivery.id == delivery_id,
                    WebhookDelivery.attempts == delivery.attempts,
                )
                .values(attempts=attempts, error=error, updated_at=now, **values)
            )
            await db.commit()

        snapshot = {
            "event_id": delivery.event_id,
            "event_type": delivery.event_type,
            "attempts": attempts,
            "error": error,
        }

        if outcome == "abandoned":
            terminal = TerminalDeliveryError(
                f"Delivery {delivery_id} abandoned after {snapshot['attempts']} attempts"
            )
            logger.error(
                "webhook_delivery_abandoned",
                delivery_id=str(delivery_id),
                event_id=snapshot["event_id"],
                attempts=snapshot["attempts"],
                error=snapshot["error"],
            )
            if self.audit_sink is not None:
                await self.audit_sink.record(
                    "webhook.abandoned",
                    "webhook_delivery",
                    str(delivery_id),
                    new_values={**snapshot, "reason": terminal.to_dict()},
                )
        else:
            logger.info(
                "webhook_delivery_retried",
                delivery_id=str(delivery_id),
                outcome=outcome,
                attempts=snapshot["attempts"],
            )
        return outcome

    async def run_once(self, now: Optional[datetime] = None) -> RetrySweepResult:
        """
        Run one sweep over due deliveries.

        Returns:
            RetrySweepResult: Outcome counts, ``skipped`` if another sweep holds the lease
        """
        if not await self.lease.try_acquire():
            logger.info("retry_sweep_skipped")
            metrics.record_retry_sweep_skipped()
            return RetrySweepResult(skipped=True)

        start_time = time.time()
        result = RetrySweepResult()
        try:
            now = now or utcnow()
            for delivery_id in await self._due_delivery_ids(now):
                outcome = await self._retry_delivery(delivery_id, now)
                if outcome is None:
                    continue
                result.processed += 1
                setattr(result, outcome, getattr(result, outcome) + 1)
        finally:
            await self.lease.release()

        duration = time.time() - start_time
        metrics.record_retry_sweep(result.succeeded, result.failed, result.abandoned, duration)
        logger.info("retry_sweep_completed", duration_seconds=duration, **result.to_dict())

        if result.processed and self.audit_sink is not None:
            await self.audit_sink.record(
                "webhook.retry_run",
                "webhook_delivery",
                "bulk",
                new_values=result.to_dict(),
            )
        return result

    async def start(self) -> None:
        """
        Run sweeps every ``retry_interval_seconds`` until stopped.

        A failing sweep is logged and the loop continues.
        """
        self._running = True
        logger.info("retry_scheduler_started")

        try:
            while self._running:
                try:
                    await self.run_once()
                except Exception as e:
                    logger.error("retry_sweep_error", error=str(e))
                await asyncio.sleep(self.settings.retry_interval_seconds)
        finally:
            logger.info("retry_scheduler_stopped")

    def stop(self) -> None:
        """Stop the scheduler loop after the current sweep."""
        self._running = False
        logger.info("retry_scheduler_stop_requested")
