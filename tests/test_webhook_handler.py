"""
Tests for inbound webhook verification, deduplication and routing.
"""
import json
from datetime import timedelta

import pytest
from sqlalchemy import select

from payflow.core.exceptions import AuthenticationError, ValidationError, WebhookProcessingError
from payflow.database.models import Payment, WebhookDelivery, WebhookEvent, utcnow
from payflow.integrations.webhook_handler import WebhookDispatcher
from payflow.integrations.webhook_verifier import sign_payload


async def _insert_payment(session_factory, external_id="pay_1", status="pending", user_id="user_1"):
    async with session_factory() as db:
        payment = Payment(
            idempotency_key=f"key-{external_id}",
            user_id=user_id,
            amount_minor_units=10000,
            currency="USD",
            status=status,
            external_payment_id=external_id,
            payment_metadata={"order_id": "o1"},
        )
        db.add(payment)
        await db.commit()
        return payment.id


async def _payment(session_factory, payment_id):
    async with session_factory() as db:
        return await db.get(Payment, payment_id)


async def _delivery(session_factory, event_id):
    async with session_factory() as db:
        return (
            await db.execute(select(WebhookDelivery).where(WebhookDelivery.event_id == event_id))
        ).scalar_one()


async def _event(session_factory, event_id):
    async with session_factory() as db:
        return (
            await db.execute(select(WebhookEvent).where(WebhookEvent.event_id == event_id))
        ).scalar_one_or_none()


class TestWebhookDispatcher:
    """Test suite for WebhookDispatcher."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_succeeded_event_updates_payment(
        self, dispatcher, session_factory, audit_sink, signed_event
    ) -> None:
        """Test a verified payment.succeeded event moves the payment to succeeded."""
        payment_id = await _insert_payment(session_factory)
        body, signature = signed_event(
            "evt_1", "payment.succeeded", {"payment_id": "pay_1", "gateway_id": "gw_abc"}
        )

        result = await dispatcher.dispatch(body, signature)

        assert result.status == "processed"
        assert result.to_dict()["event_id"] == "evt_1"
        payment = await _payment(session_factory, payment_id)
        assert payment.status == "succeeded"
        assert payment.gateway_ref == "gw_abc"
        assert payment.payment_metadata["order_id"] == "o1"

        delivery = await _delivery(session_factory, "evt_1")
        assert delivery.status == "delivered"
        assert delivery.attempts == 1
        assert delivery.raw_payload == body.decode()
        assert delivery.signature == signature
        assert (await _event(session_factory, "evt_1")).processed is True

        assert audit_sink.actions() == ["payment.succeeded"]
        assert audit_sink.records[0]["old_values"] == {"status": "pending"}

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_duplicate_event_is_not_reapplied(
        self, dispatcher, session_factory, audit_sink, signed_event
    ) -> None:
        """Test that re-delivering an event id never applies it twice."""
        payment_id = await _insert_payment(session_factory)
        body, signature = signed_event("evt_1", "payment.succeeded", {"payment_id": "pay_1"})
        await dispatcher.dispatch(body, signature)
        first_update = (await _payment(session_factory, payment_id)).updated_at

        result = await dispatcher.dispatch(body, signature)

        assert result.status == "duplicate"
        assert result.message == "Event already processed"
        assert (await _payment(session_factory, payment_id)).updated_at == first_update
        assert audit_sink.actions() == ["payment.succeeded"]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_failed_event_records_error(self, dispatcher, session_factory, signed_event) -> None:
        """Test payment.failed stores the failure reason."""
        payment_id = await _insert_payment(session_factory)
        body, signature = signed_event(
            "evt_2", "payment.failed", {"payment_id": "pay_1", "error": "card_declined"}
        )

        await dispatcher.dispatch(body, signature)

        payment = await _payment(session_factory, payment_id)
        assert payment.status == "failed"
        assert payment.error_message == "card_declined"

    @pytest.mark.unit
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "signature",
        [None, "", "sha256=" + "0" * 64, sign_payload(b"something else", "whsec_test_secret")],
    )
    async def test_bad_signature_is_rejected_before_storage(
        self, dispatcher, session_factory, signed_event, signature
    ) -> None:
        """Test that unsigned or mis-signed events are rejected and nothing is stored."""
        body, _ = signed_event("evt_1", "payment.succeeded", {"payment_id": "pay_1"})

        with pytest.raises(AuthenticationError):
            await dispatcher.dispatch(body, signature)

        assert await _event(session_factory, "evt_1") is None

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_missing_secret_fails_closed(
        self, session_factory, test_settings, signed_event
    ) -> None:
        """Test that a dispatcher without a configured secret rejects everything."""
        dispatcher = WebhookDispatcher(
            session_factory, settings=test_settings.model_copy(update={"webhook_secret": None})
        )
        body, signature = signed_event("evt_1", "payment.succeeded", {"payment_id": "pay_1"})

        with pytest.raises(AuthenticationError):
            await dispatcher.dispatch(body, signature)

    @pytest.mark.unit
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "raw",
        [
            b"not json",
            b"[1, 2, 3]",
            json.dumps({"event_type": "payment.succeeded"}).encode(),
            json.dumps({"event_id": "evt_1"}).encode(),
            json.dumps({"event_id": "evt_1", "event_type": "x", "data": [1]}).encode(),
        ],
    )
    async def test_malformed_payload_is_validation_error(self, dispatcher, raw) -> None:
        """Test correctly signed but malformed payloads."""
        with pytest.raises(ValidationError):
            await dispatcher.dispatch(raw, sign_payload(raw, "whsec_test_secret"))

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unknown_event_type_is_acknowledged(
        self, dispatcher, session_factory, signed_event
    ) -> None:
        """Test events with no handler are recorded and marked processed."""
        body, signature = signed_event("evt_9", "customer.created", {"id": "c1"})

        result = await dispatcher.dispatch(body, signature)

        assert result.status == "unhandled"
        assert "customer.created" in result.message
        assert (await _event(session_factory, "evt_9")).processed is True

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_handler_failure_schedules_retry(
        self, dispatcher, session_factory, signed_event
    ) -> None:
        """Test that a failing handler marks the delivery failed with backoff."""
        body, signature = signed_event("evt_1", "payment.succeeded", {"payment_id": "pay_missing"})
        before = utcnow()

        with pytest.raises(WebhookProcessingError):
            await dispatcher.dispatch(body, signature)

        delivery = await _delivery(session_factory, "evt_1")
        assert delivery.status == "failed"
        assert delivery.attempts == 1
        assert "pay_missing" in delivery.error
        assert before + timedelta(seconds=120) <= delivery.next_attempt_at
        assert delivery.next_attempt_at <= utcnow() + timedelta(seconds=120)
        assert (await _event(session_factory, "evt_1")).processed is False

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_redelivery_of_failed_event_runs_handler(
        self, dispatcher, session_factory, signed_event
    ) -> None:
        """Test that an event that failed earlier is processed when it arrives again."""
        body, signature = signed_event("evt_1", "payment.succeeded", {"payment_id": "pay_1"})
        with pytest.raises(WebhookProcessingError):
            await dispatcher.dispatch(body, signature)

        payment_id = await _insert_payment(session_factory)
        result = await dispatcher.dispatch(body, signature)

        assert result.status == "processed"
        assert (await _payment(session_factory, payment_id)).status == "succeeded"
        assert (await _event(session_factory, "evt_1")).processed is True

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_redelivery_success_marks_delivery_delivered(
        self, dispatcher, session_factory, signed_event
    ) -> None:
        """Test that the failed delivery row is settled once a redelivery succeeds."""
        body, signature = signed_event("evt_late", "payment.refunded", {"payment_id": "pay_late"})
        with pytest.raises(WebhookProcessingError):
            await dispatcher.dispatch(body, signature)
        assert (await _delivery(session_factory, "evt_late")).status == "failed"

        await _insert_payment(session_factory, external_id="pay_late", status="succeeded")
        result = await dispatcher.dispatch(body, signature)

        delivery = await _delivery(session_factory, "evt_late")
        assert result.status == "processed"
        assert delivery.status == "delivered"
        assert delivery.delivered_at is not None
        assert delivery.error is None
        assert delivery.next_attempt_at is None
        assert delivery.attempts == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_failure_at_max_attempts_abandons(
        self, session_factory, audit_sink, test_settings, signed_event
    ) -> None:
        """Test that a failure with no attempts left abandons the delivery."""
        dispatcher = WebhookDispatcher(
            session_factory,
            audit_sink,
            test_settings.model_copy(update={"webhook_max_attempts": 1}),
        )
        body, signature = signed_event("evt_1", "payment.succeeded", {"payment_id": "pay_missing"})

        with pytest.raises(WebhookProcessingError):
            await dispatcher.dispatch(body, signature)

        delivery = await _delivery(session_factory, "evt_1")
        assert delivery.status == "abandoned"
        assert delivery.next_attempt_at is None
        assert audit_sink.actions() == ["webhook.abandoned"]
        assert audit_sink.records[0]["new_values"]["reason"]["error"] == "delivery abandoned"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_registered_handler_runs_in_dispatch_transaction(
        self, dispatcher, session_factory, signed_event
    ) -> None:
        """Test custom handlers receive the event data."""
        seen = []

        async def handle(data, db):
            seen.append(data)
            return None

        dispatcher.register_handler("payout.paid", handle)
        body, signature = signed_event("evt_5", "payout.paid", {"payout_id": "po_1"})

        result = await dispatcher.dispatch(body, signature)

        assert result.status == "processed"
        assert seen == [{"payout_id": "po_1"}]
