"""
Payment intake with exactly-once-effect idempotency.

Orchestrates the complete payment flow:
1. Validate input
2. Hash the request and acquire the idempotency ledger
3. Create the payment record
4. Call the gateway
5. Record the gateway outcome and a transaction row
6. Store the response in the ledger and commit everything together
7. Audit after commit
"""
import secrets
import time
import uuid
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from payflow.config import Settings, get_settings
from payflow.core.audit import AuditSink
from payflow.core.exceptions import (
    ConflictError,
    GatewayError,
    NotFoundError,
    PaymentSystemError,
    RequestInProgressError,
    StorageError,
    ValidationError,
)
from payflow.core.idempotency import (
    Conflict,
    IdempotencyLedger,
    LockToken,
    Replay,
    compute_request_hash,
    serialize_response,
)
from payflow.database.models import Payment, Transaction, utcnow
from payflow.integrations.gateway import GatewayClient
from payflow.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class IntakeResult:
    """
    HTTP-shaped outcome of a payment request.

    ``body`` is the serialized response text; replays return the stored text
    unchanged.
    """

    status_code: int
    body: str
    payment_id: Optional[str] = None
    replayed: bool = False


def generate_external_payment_id() -> str:
    """Correlation id shared with the gateway: ``pay_<epoch ms>_<random>``."""
    return f"pay_{int(time.time() * 1000)}_{secrets.token_hex(5)}"


def payment_response(payment: Payment) -> Dict[str, Any]:
    """Public representation of a payment."""
    return {
        "id": str(payment.id),
        "external_payment_id": payment.external_payment_id,
        "status": payment.status,
        "amount_minor_units": payment.amount_minor_units,
        "currency": payment.currency,
        "created_at": payment.created_at.isoformat(),
    }


class PaymentProcessor:
    """
    Main payment processing orchestrator.

    The ledger acquire commits on its own; the payment insert, gateway
    outcome, transaction row and ledger release commit in one transaction.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        ledger: Optional[IdempotencyLedger] = None,
        gateway: Optional[GatewayClient] = None,
        audit_sink: Optional[AuditSink] = None,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or get_settings()
        self.session_factory = session_factory
        self.ledger = ledger or IdempotencyLedger(session_factory, self.settings)
        self.gateway = gateway or GatewayClient(settings=self.settings)
        self.audit_sink = audit_sink

        logger.info("payment_processor_initialized")

    def _validate_payment_request(
        self, idempotency_key: Optional[str], request: Mapping[str, Any]
    ) -> None:
        """
        Validate payment request parameters.

        Raises:
            ValidationError: If validation fails
        """
        if not idempotency_key or not idempotency_key.strip():
            raise ValidationError("Idempotency-Key header is required")

        amount = request.get("amount_minor_units")
        if isinstance(amount, bool) or not isinstance(amount, int):
            raise ValidationError("amount_minor_units must be an integer")
        if amount <= 0:
            raise ValidationError("amount_minor_units must be positive")

        currency = request.get("currency")
        if not isinstance(currency, str) or currency.upper() not in self.settings.get_supported_currencies():
            raise ValidationError(f"Unsupported currency: {currency}")

    async def create_payment(
        self, idempotency_key: Optional[str], request: Mapping[str, Any]
    ) -> IntakeResult:
        """
        Create a payment exactly once per idempotency key.

        Args:
            idempotency_key: Client-supplied key
            request: Request body (snake_case field names)

        Returns:
            IntakeResult: New (201), replayed or stored-error response

        Raises:
            ValidationError: Invalid input (nothing is written)
            ConflictError: Key reused with a different body
            RequestInProgressError: Original request still holds the key
        """
        start_time = time.time()
        self._validate_payment_request(idempotency_key, request)
        currency = str(request["currency"]).upper()

        log = logger.bind(idempotency_key=idempotency_key)
        log.info(
            "payment_creation_started",
            amount_minor_units=request["amount_minor_units"],
            currency=currency,
        )

        request_hash = compute_request_hash(dict(request))
        outcome = await self.ledger.acquire(idempotency_key, request_hash)

        if isinstance(outcome, Replay):
            log.info("payment_idempotent_return", status_code=outcome.status_code)
            metrics.record_payment_request("replayed", currency)
            return IntakeResult(
                status_code=outcome.status_code,
                body=outcome.body,
                replayed=True,
            )

        if isinstance(outcome, Conflict):
            metrics.record_payment_request("conflict", currency)
            if outcome.reason == "in_progress":
                raise RequestInProgressError()
            raise ConflictError()

        lock = outcome.lock
        async with self.ledger.guard(lock):
            result, audit = await self._process(lock, idempotency_key, request, currency)

        metrics.record_payment_duration(time.time() - start_time)
        if audit is not None:
            await self._audit_created(*audit)
        return result

    async def _process(
        self,
        lock: LockToken,
        idempotency_key: str,
        request: Mapping[str, Any],
        currency: str,
    ) -> tuple:
        amount = request["amount_minor_units"]
        request_metadata = dict(request.get("metadata") or {})

        try:
            async with self.session_factory() as db:
                payment = Payment(
                    id=uuid.uuid4(),
                    user_id=request.get("user_id"),
                    idempotency_key=idempotency_key,
                    amount_minor_units=amount,
                    currency=currency,
                    status="pending",
                    payment_method=request.get("payment_method"),
                    customer_email=request.get("customer_email"),
                    external_payment_id=generate_external_payment_id(),
                    payment_metadata=request_metadata,
                    created_at=utcnow(),
                    updated_at=utcnow(),
                )
                db.add(payment)
                await db.flush()

                gateway_result = await self.gateway.authorize(
                    amount_minor_units=amount,
                    currency=currency,
                    idempotency_key=idempotency_key,
                    metadata={"payment_id": str(payment.id), **request_metadata},
                )

                payment.status = gateway_result.status
                payment.gateway_ref = gateway_result.gateway_id
                payment.payment_metadata = {
                    **request_metadata,
                    "gateway_response": gateway_result.to_dict(),
                }
                payment.updated_at = utcnow()

                db.add(
                    Transaction(
                        payment_id=payment.id,
                        transaction_type="payment",
                        amount_minor_units=amount,
                        currency=currency,
                        external_transaction_id=gateway_result.gateway_id,
                        gateway_response=gateway_result.to_dict(),
                        status=gateway_result.status,
                        processed_at=utcnow() if gateway_result.status == "succeeded" else None,
                    )
                )

                body = serialize_response(payment_response(payment))
                if not await self.ledger.release(lock, body, 201, session=db):
                    # Lock was taken over after going stale; the new holder owns the key
                    await db.rollback()
                    raise RequestInProgressError()
                await db.commit()

        except GatewayError as e:
            return await self._fail(lock, e, currency), None
        except SQLAlchemyError as e:
            logger.error("payment_storage_failed", idempotency_key=idempotency_key, error=str(e))
            return await self._fail(lock, StorageError(), currency), None

        lock.mark_committed()
        metrics.record_payment_request(payment.status, currency)
        logger.info(
            "payment_created",
            payment_id=str(payment.id),
            external_payment_id=payment.external_payment_id,
            status=payment.status,
        )
        result = IntakeResult(status_code=201, body=body, payment_id=str(payment.id))
        return result, (payment, gateway_result.to_dict())

    async def _fail(self, lock: LockToken, error: PaymentSystemError, currency: str) -> IntakeResult:
        """Store the error response so replays of this key return it unchanged."""
        body = serialize_response(error.to_dict())
        await self.ledger.release(lock, body, error.http_status)
        metrics.record_payment_request("error", currency)
        logger.warning(
            "payment_creation_failed",
            idempotency_key=lock.key,
            error_code=error.error_code,
            status_code=error.http_status,
        )
        return IntakeResult(status_code=error.http_status, body=body)

    async def _audit_created(self, payment: Payment, gateway_response: Dict[str, Any]) -> None:
        if self.audit_sink is None:
            return
        await self.audit_sink.record(
            "payment.created",
            "payment",
            str(payment.id),
            user_id=payment.user_id,
            new_values={
                "status": "pending",
                "amount_minor_units": payment.amount_minor_units,
                "currency": payment.currency,
                "external_payment_id": payment.external_payment_id,
            },
        )
        await self.audit_sink.record(
            f"payment.{payment.status}",
            "payment",
            str(payment.id),
            user_id=payment.user_id,
            old_values={"status": "pending"},
            new_values={"status": payment.status, "gateway_response": gateway_response},
        )

    async def get_payment(self, payment_id: str, user_id: Optional[str] = None) -> Dict[str, Any]:
        """
        Fetch a payment's public representation.

        Raises:
            NotFoundError: Unknown id, or the payment belongs to another user
        """
        try:
            parsed_id = uuid.UUID(str(payment_id))
        except ValueError:
            raise NotFoundError(f"Payment {payment_id} not found")

        async with self.session_factory() as db:
            stmt = select(Payment).where(Payment.id == parsed_id)
            if user_id is not None:
                stmt = stmt.where(Payment.user_id == user_id)
            payment = (await db.execute(stmt)).scalar_one_or_none()

        if payment is None:
            raise NotFoundError(f"Payment {payment_id} not found")

        return {
            **payment_response(payment),
            "payment_method": payment.payment_method,
            "gateway_ref": payment.gateway_ref,
            "updated_at": payment.updated_at.isoformat(),
        }
