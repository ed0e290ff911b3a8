"""Database package for payflow."""
from .connection import close_db, get_session_factory, init_db
from .models import (
    AuditLog,
    Base,
    IdempotencyKey,
    Payment,
    ReconciliationRecord,
    Transaction,
    WebhookDelivery,
    WebhookEvent,
)

__all__ = [
    "AuditLog",
    "Base",
    "IdempotencyKey",
    "Payment",
    "ReconciliationRecord",
    "Transaction",
    "WebhookDelivery",
    "WebhookEvent",
    "close_db",
    "get_session_factory",
    "init_db",
]
