"""
Webhook retry background worker.

Runs the retry sweep on a fixed interval under a Redis lease, and performs
idempotency ledger housekeeping on the same cadence.
"""
import asyncio
import signal
import sys
from datetime import datetime
from typing import Any, Optional

import structlog

from payflow.config import get_settings
from payflow.core.audit import DatabaseAuditSink
from payflow.core.idempotency import IdempotencyLedger
from payflow.core.retry_scheduler import RedisSweepLease, RetryScheduler, RetrySweepResult
from payflow.database.connection import close_db, get_session_factory
from payflow.monitoring.logging import setup_logging

logger = structlog.get_logger(__name__)


class RetryWorker(RetryScheduler):
    """Retry scheduler that also releases stale idempotency locks and purges old keys."""

    def __init__(self, ledger: IdempotencyLedger, **kwargs: Any):
        super().__init__(**kwargs)
        self.ledger = ledger

    async def run_once(self, now: Optional[datetime] = None) -> RetrySweepResult:
        result = await super().run_once(now)
        if not result.skipped:
            try:
                await self.ledger.release_stale_locks(now)
                await self.ledger.purge_expired(now)
            except Exception as e:
                logger.error("idempotency_housekeeping_failed", error=str(e))
        return result


async def start_retry_worker() -> None:
    """
    Start the retry worker.

    Runs continuously until stopped.
    """
    setup_logging()
    settings = get_settings()
    session_factory = get_session_factory()

    logger.info(
        "retry_worker_starting",
        interval=settings.retry_interval_seconds,
        batch_size=settings.retry_batch_size,
    )

    lease = RedisSweepLease(settings=settings)
    worker = RetryWorker(
        ledger=IdempotencyLedger(session_factory, settings),
        session_factory=session_factory,
        audit_sink=DatabaseAuditSink(session_factory),
        settings=settings,
        lease=lease,
    )

    # Setup signal handlers for graceful shutdown
    def signal_handler(sig: int, frame: Any) -> None:
        logger.info("retry_worker_shutdown_signal_received", signal=sig)
        worker.stop()
        sys.exit(0)

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        await worker.start()
    except Exception as e:
        logger.error("retry_worker_error", error=str(e))
        raise
    finally:
        await worker.delivery_client.close()
        await lease.close()
        await close_db()
        logger.info("retry_worker_stopped")


def main() -> None:
    """Console entry point."""
    asyncio.run(start_retry_worker())


if __name__ == "__main__":
    main()
