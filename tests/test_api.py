"""
Integration tests for the HTTP API.
"""
import uuid
from datetime import timedelta

import pytest
from sqlalchemy import func, select, update

from payflow.database.models import Payment, WebhookDelivery, utcnow

INTERNAL_HEADERS = {"X-API-Key": "internal-test-key"}


async def _payment_count(session_factory):
    async with session_factory() as db:
        return (await db.execute(select(func.count()).select_from(Payment))).scalar_one()


class TestPaymentEndpoints:
    """Test payment intake over HTTP."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_end_to_end_payment_webhook_and_replay(
        self, client, session_factory, signed_event
    ) -> None:
        """
        Test create -> webhook -> replay for key K1.

        The replay returns the original bytes and creates no new payment.
        """
        request_body = {"amountMinorUnits": 10000, "currency": "USD"}

        created = await client.post(
            "/payments", json=request_body, headers={"Idempotency-Key": "K1"}
        )
        assert created.status_code == 201
        payment = created.json()
        assert payment["status"] == "succeeded"
        assert payment["amount_minor_units"] == 10000
        assert "Idempotent-Replayed" not in created.headers

        body, signature = signed_event(
            "evt_k1",
            "payment.succeeded",
            {"payment_id": payment["external_payment_id"], "gateway_id": "gw_webhook"},
        )
        webhook = await client.post(
            "/webhooks",
            content=body,
            headers={"x-webhook-signature": signature, "Content-Type": "application/json"},
        )
        assert webhook.status_code == 200
        assert webhook.json()["status"] == "processed"

        status_response = await client.get(f"/payments/{payment['id']}")
        assert status_response.status_code == 200
        assert status_response.json()["status"] == "succeeded"
        assert status_response.json()["gateway_ref"] == "gw_webhook"

        replay = await client.post(
            "/payments", json=request_body, headers={"Idempotency-Key": "K1"}
        )
        assert replay.status_code == created.status_code
        assert replay.content == created.content
        assert replay.headers["Idempotent-Replayed"] == "true"
        assert await _payment_count(session_factory) == 1

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_key_reuse_with_different_body_is_409(self, client, session_factory) -> None:
        """Test conflict response shape."""
        await client.post(
            "/payments",
            json={"amountMinorUnits": 10000, "currency": "USD"},
            headers={"Idempotency-Key": "K2"},
        )

        response = await client.post(
            "/payments",
            json={"amountMinorUnits": 20000, "currency": "USD"},
            headers={"Idempotency-Key": "K2"},
        )

        assert response.status_code == 409
        assert response.json() == {
            "error": "idempotency key conflict",
            "message": "Key used with different request body",
        }
        assert await _payment_count(session_factory) == 1

    @pytest.mark.integration
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "headers, body",
        [
            ({}, {"amountMinorUnits": 100, "currency": "USD"}),
            ({"Idempotency-Key": "K3"}, {"amountMinorUnits": 0, "currency": "USD"}),
            ({"Idempotency-Key": "K3"}, {"amountMinorUnits": "100", "currency": "USD"}),
            ({"Idempotency-Key": "K3"}, {"amountMinorUnits": 100, "currency": "ZZZ"}),
            ({"Idempotency-Key": "K3"}, {"currency": "USD"}),
        ],
    )
    async def test_invalid_requests_are_400(self, client, session_factory, headers, body) -> None:
        """Test validation errors share the error body shape."""
        response = await client.post("/payments", json=body, headers=headers)

        assert response.status_code == 400
        assert response.json()["error"] == "validation error"
        assert await _payment_count(session_factory) == 0

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_unknown_payment_is_404(self, client) -> None:
        """Test payment lookup miss."""
        response = await client.get(f"/payments/{uuid.uuid4()}")

        assert response.status_code == 404
        assert response.json()["error"] == "not found"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_request_id_is_echoed(self, client) -> None:
        """Test tracing header propagation."""
        response = await client.get("/", headers={"X-Request-ID": "req-123"})

        assert response.status_code == 200
        assert response.headers["X-Request-ID"] == "req-123"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_metrics_count_requests_by_route(self, client) -> None:
        """Test Prometheus exposition includes per-route request counters."""
        await client.get("/payments/00000000-0000-0000-0000-000000000000")

        response = await client.get("/metrics")

        assert response.status_code == 200
        assert 'route="/payments/{payment_id}"' in response.text


class TestWebhookEndpoints:
    """Test webhook ingestion and retry sweeps over HTTP."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_bad_signature_is_401(self, client, signed_event) -> None:
        """Test signature rejection body."""
        body, _ = signed_event("evt_1", "payment.succeeded", {"payment_id": "pay_1"})

        response = await client.post(
            "/webhooks", content=body, headers={"x-webhook-signature": "sha256=" + "0" * 64}
        )

        assert response.status_code == 401
        assert response.json()["error"] == "invalid signature"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_failed_event_is_delivered_by_retry_sweep(
        self, client, session_factory, signed_event
    ) -> None:
        """Test a handler failure followed by a successful scheduled retry."""
        body, signature = signed_event("evt_late", "payment.succeeded", {"payment_id": "pay_late"})

        first = await client.post(
            "/webhooks", content=body, headers={"x-webhook-signature": signature}
        )
        assert first.status_code == 500
        assert first.json()["error"] == "processing failed"

        async with session_factory() as db:
            db.add(
                Payment(
                    idempotency_key="key-late",
                    amount_minor_units=500,
                    currency="USD",
                    status="pending",
                    external_payment_id="pay_late",
                )
            )
            await db.execute(
                update(WebhookDelivery)
                .where(WebhookDelivery.event_id == "evt_late")
                .values(next_attempt_at=utcnow() - timedelta(seconds=1))
            )
            await db.commit()

        sweep = await client.post("/retry-webhooks", headers=INTERNAL_HEADERS)

        assert sweep.status_code == 200
        assert sweep.json() == {
            "processed": 1,
            "succeeded": 1,
            "failed": 0,
            "abandoned": 0,
            "skipped": False,
        }
        async with session_factory() as db:
            payment = (
                await db.execute(select(Payment).where(Payment.external_payment_id == "pay_late"))
            ).scalar_one()
            delivery = (
                await db.execute(
                    select(WebhookDelivery).where(WebhookDelivery.event_id == "evt_late")
                )
            ).scalar_one()
        assert payment.status == "succeeded"
        assert delivery.status == "delivered"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_retry_sweep_requires_internal_key(self, client) -> None:
        """Test the internal endpoint guard."""
        response = await client.post("/retry-webhooks", headers={"X-API-Key": "wrong"})

        assert response.status_code == 401
        assert response.json() == {"error": "unauthorized", "message": "Invalid API key"}


class TestReconciliationEndpoints:
    """Test reconciliation over HTTP."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_upload_match_and_summary(self, client) -> None:
        """Test upload, exact match and summary for one user."""
        created = await client.post(
            "/payments",
            json={"amountMinorUnits": 10000, "currency": "USD", "userId": "user_1"},
            headers={"Idempotency-Key": "K-rec"},
        )
        external_id = created.json()["external_payment_id"]
        scope = {"X-User-Id": "user_1"}

        upload = await client.post(
            "/reconciliation/records",
            json={
                "fileName": "statement.csv",
                "records": [
                    {"external_transaction_id": external_id, "amount": 10000, "currency": "USD"},
                    {"external_transaction_id": external_id, "amount": 9999, "currency": "USD"},
                ],
            },
            headers=scope,
        )
        assert upload.status_code == 201
        assert upload.json() == {"imported": 2}

        matched = await client.post("/reconciliation/match", headers=scope)
        assert matched.status_code == 200
        assert matched.json()["matched"] == 1
        assert matched.json()["matchRate"] == 50.0

        summary = await client.get("/reconciliation/summary", headers=scope)
        assert summary.json() == {
            "total": 2,
            "unmatched": 1,
            "matched": 1,
            "disputed": 0,
            "matchRate": 50.0,
        }

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_user_scope_header_required(self, client) -> None:
        """Test per-user isolation requires an identity."""
        response = await client.post("/reconciliation/match")

        assert response.status_code == 401
        assert response.json() == {"error": "unauthorized", "message": "X-User-Id header required"}
