"""SQLAlchemy database models for payflow."""
import uuid
from datetime import datetime, timezone
from typing import Any, Dict

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    Uuid,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")

PAYMENT_STATUSES = ("pending", "processing", "succeeded", "failed", "refunded", "cancelled")
DELIVERY_STATUSES = ("pending", "processing", "delivered", "failed", "abandoned")
RECONCILIATION_STATUSES = ("unmatched", "matched", "disputed")


def utcnow() -> datetime:
    """Naive UTC timestamp used for every persisted time column."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _in_list(column: str, values: tuple[str, ...]) -> str:
    quoted = ", ".join(f"'{v}'" for v in values)
    return f"{column} IN ({quoted})"


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class IdempotencyKey(Base):
    """
    Idempotency ledger table.

    One row per client-supplied key. ``locked`` is flipped with
    compare-and-swap updates so it works across processes and restarts.
    ``response_body`` holds the serialized response text so replays are
    byte-identical.
    """

    __tablename__ = "idempotency_keys"

    key: Mapped[str] = mapped_column(String(255), primary_key=True)
    request_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    endpoint: Mapped[str] = mapped_column(String(255), nullable=False, default="/payments")
    method: Mapped[str] = mapped_column(String(10), nullable=False, default="POST")
    locked: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, index=True)
    lock_token: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    locked_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    response_body: Mapped[str | None] = mapped_column(Text, nullable=True)
    status_code: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    last_used_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow, index=True
    )

    def __repr__(self) -> str:
        """String representation of IdempotencyKey."""
        return f"<IdempotencyKey(key={self.key}, locked={self.locked}, status={self.status_code})>"


class Payment(Base):
    """
    Payment records table.

    Created by the intake service; status mutated only by webhook handlers.
    """

    __tablename__ = "payments"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    idempotency_key: Mapped[str] = mapped_column(
        String(255), unique=True, nullable=False, index=True
    )
    amount_minor_units: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    status: Mapped[str] = mapped_column(String(50), nullable=False, default="pending", index=True)
    payment_method: Mapped[str | None] = mapped_column(String(100), nullable=True)
    customer_email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    external_payment_id: Mapped[str | None] = mapped_column(
        String(255), unique=True, nullable=True, index=True
    )
    gateway_ref: Mapped[str | None] = mapped_column(String(255), nullable=True)
    # "metadata" is reserved on declarative classes
    payment_metadata: Mapped[Dict[str, Any] | None] = mapped_column(
        "metadata", JSONType, nullable=True
    )
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow, index=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        CheckConstraint("amount_minor_units > 0", name="positive_amount"),
        CheckConstraint(_in_list("status", PAYMENT_STATUSES), name="valid_status"),
        CheckConstraint("length(currency) = 3", name="valid_currency"),
        Index("idx_payments_user_status", "user_id", "status"),
        Index("idx_payments_amount_external", "amount_minor_units", "external_payment_id"),
    )

    def __repr__(self) -> str:
        """String representation of Payment."""
        return (
            f"<Payment(id={self.id}, external_id={self.external_payment_id}, "
            f"amount={self.amount_minor_units}, status={self.status})>"
        )


class Transaction(Base):
    """Gateway transaction rows linked to a payment."""

    __tablename__ = "transactions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    payment_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    transaction_type: Mapped[str] = mapped_column(String(50), nullable=False)
    amount_minor_units: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    external_transaction_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    gateway_response: Mapped[Dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    status: Mapped[str] = mapped_column(String(50), nullable=False, default="pending")
    processed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)

    def __repr__(self) -> str:
        """String representation of Transaction."""
        return f"<Transaction(id={self.id}, payment_id={self.payment_id}, status={self.status})>"


class WebhookEvent(Base):
    """
    Inbound webhook events.

    One row per distinct ``event_id``; immutable apart from
    ``processed``/``processed_at``.
    """

    __tablename__ = "webhook_events"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    event_id: Mapped[str] = mapped_column(String(255), unique=True, nullable=False, index=True)
    source: Mapped[str] = mapped_column(String(100), nullable=False, default="payment_gateway")
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    payload: Mapped[Dict[str, Any]] = mapped_column(JSONType, nullable=False)
    signature: Mapped[str | None] = mapped_column(String(255), nullable=True)
    processed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, index=True)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)

    def __repr__(self) -> str:
        """String representation of WebhookEvent."""
        return (
            f"<WebhookEvent(event_id={self.event_id}, type={self.event_type}, "
            f"processed={self.processed})>"
        )


class WebhookDelivery(Base):
    """
    Webhook delivery tracking table.

    Keeps the exact signed bytes so a retry re-sends what the signature
    was computed over.
    """

    __tablename__ = "webhook_deliveries"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    event_id: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    payload: Mapped[Dict[str, Any]] = mapped_column(JSONType, nullable=False)
    raw_payload: Mapped[str] = mapped_column(Text, nullable=False)
    signature: Mapped[str | None] = mapped_column(String(255), nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    next_attempt_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    delivered_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        CheckConstraint("attempts >= 0", name="non_negative_attempts"),
        CheckConstraint(_in_list("status", DELIVERY_STATUSES), name="valid_delivery_status"),
        Index("idx_deliveries_retry", "status", "next_attempt_at"),
    )

    def __repr__(self) -> str:
        """String representation of WebhookDelivery."""
        return (
            f"<WebhookDelivery(id={self.id}, type={self.event_type}, "
            f"status={self.status}, attempts={self.attempts})>"
        )


class ReconciliationRecord(Base):
    """Externally reported transactions uploaded for matching."""

    __tablename__ = "reconciliation_records"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    file_name: Mapped[str] = mapped_column(String(255), nullable=False)
    uploaded_by: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    external_transaction_id: Mapped[str | None] = mapped_column(
        String(255), nullable=True, index=True
    )
    amount_minor_units: Mapped[int | None] = mapped_column(Integer, nullable=True)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    transaction_date: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="unmatched")
    matched_payment_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        CheckConstraint(
            _in_list("status", RECONCILIATION_STATUSES), name="valid_reconciliation_status"
        ),
        Index("idx_reconciliation_scope_status", "uploaded_by", "status"),
    )

    def __repr__(self) -> str:
        """String representation of ReconciliationRecord."""
        return (
            f"<ReconciliationRecord(id={self.id}, external_id={self.external_transaction_id}, "
            f"status={self.status})>"
        )


class AuditLog(Base):
    """
    Audit trail table.

    Append-only; written by the audit sink outside the primary transaction.
    """

    __tablename__ = "audit_logs"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    action: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    resource_type: Mapped[str] = mapped_column(String(100), nullable=False)
    resource_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    old_values: Mapped[Dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    new_values: Mapped[Dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)

    def __repr__(self) -> str:
        """String representation of AuditLog."""
        return f"<AuditLog(id={self.id}, action={self.action}, resource={self.resource_id})>"
