"""
Tests for background worker passes and the database audit sink.
"""
import json
from datetime import timedelta

import httpx
import pytest
from sqlalchemy import select

from payflow.core.audit import DatabaseAuditSink
from payflow.core.idempotency import Proceed
from payflow.database.models import AuditLog, IdempotencyKey, utcnow
from payflow.integrations.delivery_client import WebhookDeliveryClient
from payflow.workers.reconciliation_worker import run_reconciliation
from payflow.workers.retry_worker import RetryWorker


class TestRetryWorker:
    """Test the retry worker's housekeeping."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_sweep_releases_stale_idempotency_locks(
        self, ledger, session_factory, test_settings, audit_sink
    ) -> None:
        """Test that a sweep also frees keys abandoned by crashed requests."""
        outcome = await ledger.acquire(
            "crashed", "hash-a", now=utcnow() - timedelta(seconds=600)
        )
        assert isinstance(outcome, Proceed)

        worker = RetryWorker(
            ledger=ledger,
            session_factory=session_factory,
            delivery_client=WebhookDeliveryClient(
                test_settings,
                client=httpx.AsyncClient(
                    transport=httpx.MockTransport(lambda request: httpx.Response(200))
                ),
            ),
            audit_sink=audit_sink,
            settings=test_settings,
        )

        result = await worker.run_once()

        assert result.skipped is False
        async with session_factory() as db:
            record = await db.get(IdempotencyKey, "crashed")
        assert record.locked is False


class TestReconciliationWorker:
    """Test one scheduled reconciliation pass."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_run_reconciliation_matches_all_scopes(
        self, reconciliation_engine, processor, sample_payment_data
    ) -> None:
        """Test the scheduled pass delegates to match_all."""
        created = await processor.create_payment("key-1", sample_payment_data)
        external_id = json.loads(created.body)["external_payment_id"]
        await reconciliation_engine.import_records(
            "user_123",
            [{"external_transaction_id": external_id, "amount": 10000}],
            "nightly.csv",
        )

        await run_reconciliation(reconciliation_engine)

        assert (await reconciliation_engine.summarize("user_123"))["matched"] == 1


class TestDatabaseAuditSink:
    """Test audit persistence."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_records_are_appended(self, session_factory) -> None:
        """Test an audit record is written in its own session."""
        sink = DatabaseAuditSink(session_factory)

        await sink.record(
            "payment.created",
            "payment",
            "p1",
            user_id="user_1",
            new_values={"status": "pending"},
        )

        async with session_factory() as db:
            logs = (await db.execute(select(AuditLog))).scalars().all()
        assert len(logs) == 1
        assert logs[0].action == "payment.created"
        assert logs[0].new_values == {"status": "pending"}

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_write_failure_is_swallowed(self, engine, session_factory) -> None:
        """Test that an audit failure never propagates to the caller."""
        sink = DatabaseAuditSink(session_factory)
        async with engine.begin() as conn:
            await conn.run_sync(AuditLog.__table__.drop)

        await sink.record("payment.created", "payment", "p1")
