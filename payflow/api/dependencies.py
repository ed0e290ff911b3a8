"""
FastAPI dependencies for service wiring.

Services are built once per process; tests replace them through
``app.dependency_overrides``.
"""
import hmac
from functools import lru_cache
from typing import Optional

from fastapi import Depends, Header, Request

from payflow.config import Settings, get_settings
from payflow.core.audit import AuditSink, DatabaseAuditSink
from payflow.core.exceptions import UnauthorizedError
from payflow.core.idempotency import IdempotencyLedger
from payflow.core.payment_processor import PaymentProcessor
from payflow.core.reconciliation import ReconciliationEngine
from payflow.core.retry_scheduler import RedisSweepLease, RetryScheduler
from payflow.database.connection import get_session_factory
from payflow.integrations.webhook_handler import WebhookDispatcher
from payflow.monitoring.health import HealthCheck


@lru_cache()
def get_audit_sink() -> AuditSink:
    return DatabaseAuditSink(get_session_factory())


@lru_cache()
def get_payment_processor() -> PaymentProcessor:
    session_factory = get_session_factory()
    settings = get_settings()
    return PaymentProcessor(
        session_factory,
        ledger=IdempotencyLedger(session_factory, settings),
        audit_sink=get_audit_sink(),
        settings=settings,
    )


@lru_cache()
def get_webhook_dispatcher() -> WebhookDispatcher:
    return WebhookDispatcher(get_session_factory(), get_audit_sink(), get_settings())


@lru_cache()
def get_retry_scheduler() -> RetryScheduler:
    """Sweeps triggered over HTTP share the retry worker's Redis lease."""
    settings = get_settings()
    return RetryScheduler(
        get_session_factory(),
        audit_sink=get_audit_sink(),
        settings=settings,
        lease=RedisSweepLease(settings=settings),
    )


@lru_cache()
def get_reconciliation_engine() -> ReconciliationEngine:
    return ReconciliationEngine(get_session_factory(), get_audit_sink())


@lru_cache()
def get_health_check() -> HealthCheck:
    return HealthCheck()


async def require_internal_key(
    request: Request, settings: Settings = Depends(get_settings)
) -> None:
    """Guard for internal endpoints; open when no internal key is configured."""
    expected = settings.internal_api_key
    if not expected:
        return
    provided = request.headers.get(settings.api_key_header)
    if not provided or not hmac.compare_digest(provided.encode(), expected.encode()):
        raise UnauthorizedError("Invalid API key")


async def require_user_scope(x_user_id: Optional[str] = Header(default=None)) -> str:
    """Per-user row isolation scope for reconciliation endpoints."""
    if not x_user_id or not x_user_id.strip():
        raise UnauthorizedError("X-User-Id header required")
    return x_user_id.strip()
