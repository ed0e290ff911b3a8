"""
Inbound webhook handler with signature verification and event deduplication.

Implements:
- HMAC signature verification over the raw body
- Event deduplication on the unique ``event_id`` column
- Event type routing to payment status handlers
- Delivery tracking and retry scheduling for failed events
"""
import json
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, Union

import structlog
from sqlalchemy import and_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from payflow.config import Settings, get_settings
from payflow.core.audit import AuditSink
from payflow.core.exceptions import (
    AuthenticationError,
    NotFoundError,
    TerminalDeliveryError,
    ValidationError,
    WebhookProcessingError,
)
from payflow.core.retry_scheduler import next_attempt_at
from payflow.database.models import Payment, WebhookDelivery, WebhookEvent, utcnow
from payflow.integrations.webhook_verifier import verify_signature
from payflow.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

EventHandler = Callable[[Dict[str, Any], AsyncSession], Awaitable[Optional[Dict[str, Any]]]]


@dataclass(frozen=True)
class DispatchResult:
    """Outcome of one inbound webhook: processed, duplicate or unhandled."""

    status: str
    event_id: str
    event_type: str
    message: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "event_id": self.event_id,
            "event_type": self.event_type,
            "message": self.message,
        }


def payment_status_handler(status: str) -> EventHandler:
    """
    Build a handler that moves the correlated payment to ``status``.

    The payment row is locked for the duration of the caller's transaction,
    so two events for the same payment apply one after the other.
    """

    async def handle(data: Dict[str, Any], db: AsyncSession) -> Dict[str, Any]:
        external_id = data.get("payment_id")
        if not external_id:
            raise ValidationError("Event data has no payment_id")

        stmt = (
            select(Payment)
            .where(Payment.external_payment_id == external_id)
            .with_for_update()
        )
        payment = (await db.execute(stmt)).scalar_one_or_none()
        if payment is None:
            raise NotFoundError(f"No payment with external id {external_id}")

        old_status = payment.status
        payment.status = status
        if data.get("gateway_id"):
            payment.gateway_ref = data["gateway_id"]
        if status == "failed":
            payment.error_message = data.get("error") or data.get("failure_reason")
        payment.payment_metadata = {**(payment.payment_metadata or {}), **data}
        payment.updated_at = utcnow()

        return {
            "payment_id": str(payment.id),
            "user_id": payment.user_id,
            "old_status": old_status,
            "new_status": status,
        }

    return handle


class WebhookDispatcher:
    """
    Verifies, deduplicates and routes inbound webhook events.

    Features:
    - Fails closed on missing signature or secret
    - First delivery of an ``event_id`` records the event and a delivery row
      in one transaction
    - Redelivery of a processed event is a no-op; redelivery of a failed
      event re-runs the handler and marks its delivery rows delivered
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        audit_sink: Optional[AuditSink] = None,
        settings: Optional[Settings] = None,
    ):
        self.session_factory = session_factory
        self.audit_sink = audit_sink
        self.settings = settings or get_settings()
        self.event_handlers: Dict[str, EventHandler] = {}

        for event_type, status in (
            ("payment.succeeded", "succeeded"),
            ("payment.failed", "failed"),
            ("payment.refunded", "refunded"),
            ("payment.cancelled", "cancelled"),
        ):
            self.register_handler(event_type, payment_status_handler(status))

    def register_handler(self, event_type: str, handler: EventHandler) -> None:
        """
        Register a handler for a specific event type.

        Args:
            event_type: Event type (e.g., 'payment.succeeded')
            handler: Async callable ``(data, db)``; runs inside the dispatch transaction
        """
        self.event_handlers[event_type] = handler
        logger.debug("webhook_handler_registered", event_type=event_type)

    @staticmethod
    def _parse(raw_payload: bytes) -> Dict[str, Any]:
        try:
            event = json.loads(raw_payload)
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise ValidationError(f"Malformed webhook payload: {e}") from e

        if not isinstance(event, dict):
            raise ValidationError("Webhook payload must be a JSON object")
        if not event.get("event_id") or not event.get("event_type"):
            raise ValidationError("Webhook payload requires event_id and event_type")
        if event.get("data") is not None and not isinstance(event["data"], dict):
            raise ValidationError("Webhook data must be an object")
        return event

    async def _find_event(self, event_id: str) -> Optional[WebhookEvent]:
        async with self.session_factory() as db:
            result = await db.execute(select(WebhookEvent).where(WebhookEvent.event_id == event_id))
            return result.scalar_one_or_none()

    async def _record_event(
        self, event: Dict[str, Any], raw_text: str, signature: Optional[str]
    ) -> Optional[Any]:
        """Insert event and delivery together; None if the event already exists."""
        async with self.session_factory() as db:
            delivery = WebhookDelivery(
                event_id=event["event_id"],
                event_type=event["event_type"],
                payload=event,
                raw_payload=raw_text,
                signature=signature,
                status="processing",
                attempts=1,
            )
            db.add(
                WebhookEvent(
                    event_id=event["event_id"],
                    event_type=event["event_type"],
                    payload=event,
                    signature=signature,
                )
            )
            db.add(delivery)
            try:
                await db.commit()
            except IntegrityError:
                await db.rollback()
                return None
            return delivery.id

    async def dispatch(
        self, raw_payload: Union[bytes, str], signature: Optional[str]
    ) -> DispatchResult:
        """
        Process one inbound webhook.

        Args:
            raw_payload: Request body exactly as received
            signature: ``x-webhook-signature`` header value

        Returns:
            DispatchResult: processed, duplicate or unhandled

        Raises:
            AuthenticationError: Signature missing or invalid
            ValidationError: Malformed payload
            WebhookProcessingError: Handler failed; the event will be retried
        """
        start_time = time.time()
        raw_bytes = raw_payload.encode("utf-8") if isinstance(raw_payload, str) else raw_payload

        if not verify_signature(raw_bytes, signature, self.settings.webhook_secret):
            metrics.record_signature_failure()
            logger.warning("webhook_signature_verification_failed")
            raise AuthenticationError()

        event = self._parse(raw_bytes)
        event_id = str(event["event_id"])
        event_type = str(event["event_type"])
        log = logger.bind(event_id=event_id, event_type=event_type)

        existing = await self._find_event(event_id)
        delivery_id = None
        if existing is not None and existing.processed:
            return self._finish(event_id, event_type, "duplicate", start_time)

        if existing is None:
            delivery_id = await self._record_event(
                event, raw_bytes.decode("utf-8"), signature
            )
            if delivery_id is None:
                # Lost an insert race with a concurrent delivery of the same event
                return self._finish(event_id, event_type, "duplicate", start_time)
        else:
            log.info("webhook_event_redelivered")

        handler = self.event_handlers.get(event_type)
        now = utcnow()
        try:
            async with self.session_factory() as db:
                # Claim the event; rolled back with the handler's changes on failure
                claimed = await db.execute(
                    update(WebhookEvent)
                    .where(WebhookEvent.event_id == event_id, WebhookEvent.processed.is_(False))
                    .values(processed=True, processed_at=now)
                )
                duplicate = claimed.rowcount != 1
                result = None
                if not duplicate and handler is not None:
                    result = await handler(event.get("data") or {}, db)

                if delivery_id is not None:
                    settled = WebhookDelivery.id == delivery_id
                elif not duplicate:
                    # Redelivery: settle the rows earlier failed attempts left behind
                    settled = and_(
                        WebhookDelivery.event_id == event_id,
                        WebhookDelivery.status != "delivered",
                    )
                else:
                    settled = None
                if settled is not None:
                    await db.execute(
                        update(WebhookDelivery)
                        .where(settled)
                        .values(
                            status="delivered",
                            delivered_at=now,
                            error=None,
                            next_attempt_at=None,
                            updated_at=now,
                        )
                    )
                await db.commit()

        except Exception as e:
            log.error("webhook_event_processing_failed", error=str(e))
            await self._record_failure(delivery_id, event_id, event_type, str(e), now)
            metrics.record_webhook_event(event_type, "failed", time.time() - start_time)
            raise WebhookProcessingError(f"Failed to process event {event_id}: {e}") from e

        if duplicate:
            # Processed by a concurrent delivery of the same event
            return self._finish(event_id, event_type, "duplicate", start_time)

        if handler is None:
            log.warning("webhook_no_handler")
            return self._finish(event_id, event_type, "unhandled", start_time)

        if result and result.get("new_status") and self.audit_sink is not None:
            await self.audit_sink.record(
                f"payment.{result['new_status']}",
                "payment",
                result.get("payment_id"),
                user_id=result.get("user_id"),
                old_values={"status": result.get("old_status")},
                new_values={"status": result["new_status"], "event_id": event_id},
            )

        return self._finish(event_id, event_type, "processed", start_time)

    async def _record_failure(
        self,
        delivery_id: Optional[Any],
        event_id: str,
        event_type: str,
        error: str,
        now: Any,
    ) -> None:
        """Mark the delivery failed (with its next attempt) or abandoned."""
        if delivery_id is None:
            # Redelivery: attempts are counted by whoever re-sent it
            return

        async with self.session_factory() as db:
            delivery = await db.get(WebhookDelivery, delivery_id)
            if delivery is None:
                return
            delivery.error = error
            delivery.updated_at = now
            if delivery.attempts < self.settings.webhook_max_attempts:
                delivery.status = "failed"
                delivery.next_attempt_at = next_attempt_at(
                    delivery.attempts,
                    now,
                    self.settings.webhook_backoff_base_seconds,
                    self.settings.webhook_backoff_cap_seconds,
                )
                abandoned = False
            else:
                delivery.status = "abandoned"
                delivery.next_attempt_at = None
                abandoned = True
            attempts = delivery.attempts
            await db.commit()

        if abandoned:
            logger.error(
                "webhook_delivery_abandoned",
                delivery_id=str(delivery_id),
                event_id=event_id,
                attempts=attempts,
            )
            if self.audit_sink is not None:
                await self.audit_sink.record(
                    "webhook.abandoned",
                    "webhook_delivery",
                    str(delivery_id),
                    new_values={
                        "event_id": event_id,
                        "event_type": event_type,
                        "attempts": attempts,
                        "error": error,
                        "reason": TerminalDeliveryError().to_dict(),
                    },
                )

    @staticmethod
    def _finish(event_id: str, event_type: str, status: str, start_time: float) -> DispatchResult:
        messages = {
            "processed": "Webhook processed successfully",
            "duplicate": "Event already processed",
            "unhandled": f"No handler registered for event type: {event_type}",
        }
        metrics.record_webhook_event(event_type, status, time.time() - start_time)
        logger.info("webhook_event_dispatched", event_id=event_id, event_type=event_type, status=status)
        return DispatchResult(
            status=status,
            event_id=event_id,
            event_type=event_type,
            message=messages[status],
        )
