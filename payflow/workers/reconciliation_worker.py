"""
Reconciliation background worker.

Matches every scope's unmatched records on a fixed interval.
"""
import asyncio
import signal
from typing import Any, Optional

import structlog

from payflow.config import get_settings
from payflow.core.audit import DatabaseAuditSink
from payflow.core.reconciliation import ReconciliationEngine
from payflow.database.connection import close_db, get_session_factory
from payflow.monitoring.logging import setup_logging

logger = structlog.get_logger(__name__)


async def run_reconciliation(engine: ReconciliationEngine) -> None:
    """
    Run one reconciliation pass over every scope.
    """
    logger.info("scheduled_reconciliation_started")

    results = await engine.match_all()
    matched = sum(summary.matched for summary in results.values())
    unmatched = sum(summary.unmatched for summary in results.values())
    manual_review = sum(len(summary.manual_review) for summary in results.values())

    logger.info(
        "scheduled_reconciliation_completed",
        scopes=len(results),
        matched=matched,
        unmatched=unmatched,
        manual_review=manual_review,
    )

    if manual_review:
        logger.warning("reconciliation_manual_review_pending", count=manual_review)


async def start_reconciliation_worker(interval_seconds: Optional[float] = None) -> None:
    """
    Start the reconciliation worker.

    Args:
        interval_seconds: Seconds between runs (default from settings)
    """
    setup_logging()
    settings = get_settings()
    interval = interval_seconds or settings.reconciliation_interval_seconds
    session_factory = get_session_factory()
    engine = ReconciliationEngine(session_factory, DatabaseAuditSink(session_factory))

    logger.info("reconciliation_worker_starting", interval_seconds=interval)

    running = True

    def signal_handler(sig: int, frame: Any) -> None:
        nonlocal running
        logger.info("reconciliation_worker_shutdown_signal_received", signal=sig)
        running = False

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        while running:
            try:
                await run_reconciliation(engine)
            except Exception as e:
                logger.error("reconciliation_execution_error", error=str(e))
                # Continue running even if one reconciliation fails

            # Wait for the next run with periodic checks for shutdown signal
            remaining = interval
            while remaining > 0 and running:
                sleep_time = min(remaining, 60)
                await asyncio.sleep(sleep_time)
                remaining -= sleep_time

    finally:
        await close_db()
        logger.info("reconciliation_worker_stopped")


def main() -> None:
    """Console entry point."""
    import argparse

    parser = argparse.ArgumentParser(description="Reconciliation worker")
    parser.add_argument(
        "--interval", type=float, default=None, help="Seconds between reconciliation runs"
    )
    args = parser.parse_args()

    asyncio.run(start_reconciliation_worker(interval_seconds=args.interval))


if __name__ == "__main__":
    main()
