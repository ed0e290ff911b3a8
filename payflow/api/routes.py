"""
API routes for payment intake, webhooks, retries and reconciliation.
"""
from typing import Any, Dict, Optional

import structlog
from fastapi import APIRouter, Depends, Header, HTTPException, Request, Response, status
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from payflow.core.payment_processor import PaymentProcessor
from payflow.core.reconciliation import ReconciliationEngine
from payflow.core.retry_scheduler import RetryScheduler
from payflow.integrations.webhook_handler import WebhookDispatcher
from payflow.monitoring.health import HealthCheck

from .dependencies import (
    get_health_check,
    get_payment_processor,
    get_reconciliation_engine,
    get_retry_scheduler,
    get_webhook_dispatcher,
    require_internal_key,
    require_user_scope,
)
from .schemas import (
    CreatePaymentRequest,
    DisputeResponse,
    ErrorResponse,
    HealthCheckResponse,
    ImportRecordsRequest,
    ImportRecordsResponse,
    PaymentResponse,
    PaymentStatusResponse,
    ReconciliationMatchResponse,
    ReconciliationSummaryResponse,
    RetrySweepResponse,
    WebhookResponse,
)

logger = structlog.get_logger(__name__)

# Create routers
payment_router = APIRouter(prefix="/payments", tags=["payments"])
webhook_router = APIRouter(tags=["webhooks"])
reconciliation_router = APIRouter(prefix="/reconciliation", tags=["reconciliation"])
monitoring_router = APIRouter(tags=["monitoring"])

ERROR_RESPONSES: Dict[int | str, Dict[str, Any]] = {
    400: {"model": ErrorResponse},
    401: {"model": ErrorResponse},
    409: {"model": ErrorResponse},
    500: {"model": ErrorResponse},
}


@payment_router.post(
    "",
    response_model=PaymentResponse,
    status_code=status.HTTP_201_CREATED,
    responses=ERROR_RESPONSES,
    summary="Create a payment",
    description="Create a payment exactly once per Idempotency-Key",
)
async def create_payment(
    request: CreatePaymentRequest,
    idempotency_key: Optional[str] = Header(default=None, alias="Idempotency-Key"),
    processor: PaymentProcessor = Depends(get_payment_processor),
) -> Response:
    """
    Create a new payment.

    Repeating a request with the same key and body returns the stored
    response byte-for-byte; the same key with a different body is a 409.
    """
    result = await processor.create_payment(
        idempotency_key, request.model_dump(exclude_none=True)
    )

    headers = {"Idempotent-Replayed": "true"} if result.replayed else None
    return Response(
        content=result.body,
        status_code=result.status_code,
        media_type="application/json",
        headers=headers,
    )


@payment_router.get(
    "/{payment_id}",
    response_model=PaymentStatusResponse,
    summary="Get payment status",
    description="Retrieve the current status of a payment",
)
async def get_payment_status(
    payment_id: str,
    x_user_id: Optional[str] = Header(default=None),
    processor: PaymentProcessor = Depends(get_payment_processor),
) -> Dict[str, Any]:
    """Get payment status by ID, scoped to the caller when X-User-Id is sent."""
    return await processor.get_payment(payment_id, user_id=x_user_id)


@webhook_router.post(
    "/webhooks",
    response_model=WebhookResponse,
    responses=ERROR_RESPONSES,
    summary="Webhook endpoint",
    description="Verify, deduplicate and process a signed gateway event",
)
async def receive_webhook(
    request: Request,
    x_webhook_signature: Optional[str] = Header(default=None),
    dispatcher: WebhookDispatcher = Depends(get_webhook_dispatcher),
) -> Dict[str, Any]:
    """
    Handle inbound webhook events.

    The signature is checked against the raw body before it is parsed.
    """
    body = await request.body()
    result = await dispatcher.dispatch(body, x_webhook_signature)
    return result.to_dict()


@webhook_router.post(
    "/retry-webhooks",
    response_model=RetrySweepResponse,
    summary="Run a retry sweep",
    description="Re-deliver failed webhook deliveries that are due",
    dependencies=[Depends(require_internal_key)],
)
async def retry_webhooks(
    scheduler: RetryScheduler = Depends(get_retry_scheduler),
) -> Dict[str, Any]:
    """Trigger one retry sweep."""
    result = await scheduler.run_once()
    logger.info("api_retry_sweep_completed", **result.to_dict())
    return result.to_dict()


@reconciliation_router.post(
    "/records",
    response_model=ImportRecordsResponse,
    status_code=status.HTTP_201_CREATED,
    responses=ERROR_RESPONSES,
    summary="Upload reconciliation records",
)
async def import_records(
    request: ImportRecordsRequest,
    user_scope: str = Depends(require_user_scope),
    engine: ReconciliationEngine = Depends(get_reconciliation_engine),
) -> Dict[str, Any]:
    """Store a parsed reconciliation file as unmatched records."""
    imported = await engine.import_records(user_scope, request.records, request.file_name)
    return {"imported": imported}


@reconciliation_router.post(
    "/match",
    response_model=ReconciliationMatchResponse,
    summary="Run reconciliation",
    description="Match the caller's unmatched records against their payments",
)
async def run_reconciliation(
    user_scope: str = Depends(require_user_scope),
    engine: ReconciliationEngine = Depends(get_reconciliation_engine),
) -> ReconciliationMatchResponse:
    """Run exact-match reconciliation for the caller's scope."""
    summary = await engine.match(user_scope)
    return ReconciliationMatchResponse(**summary.to_dict())


@reconciliation_router.post(
    "/records/{record_id}/dispute",
    response_model=DisputeResponse,
    summary="Dispute a reconciliation record",
)
async def dispute_record(
    record_id: str,
    user_scope: str = Depends(require_user_scope),
    engine: ReconciliationEngine = Depends(get_reconciliation_engine),
) -> Dict[str, Any]:
    """Mark a record as disputed after manual review."""
    return await engine.mark_disputed(record_id, user_scope)


@reconciliation_router.get(
    "/summary",
    response_model=ReconciliationSummaryResponse,
    summary="Reconciliation summary",
)
async def reconciliation_summary(
    user_scope: str = Depends(require_user_scope),
    engine: ReconciliationEngine = Depends(get_reconciliation_engine),
) -> ReconciliationSummaryResponse:
    """Record counts by status for the caller's scope."""
    return ReconciliationSummaryResponse(**await engine.summarize(user_scope))


@monitoring_router.get(
    "/health",
    response_model=HealthCheckResponse,
    summary="Health check",
    description="Check overall system health",
)
async def health(health_check: HealthCheck = Depends(get_health_check)) -> Dict[str, Any]:
    """Health check endpoint for monitoring."""
    try:
        return await health_check.check_all()
    except Exception as e:
        logger.error("health_check_error", error=str(e))
        return {
            "status": "unhealthy",
            "checks": {"error": str(e)},
        }


@monitoring_router.get(
    "/health/live",
    response_model=HealthCheckResponse,
    summary="Liveness check",
    description="Kubernetes liveness endpoint",
)
async def liveness(health_check: HealthCheck = Depends(get_health_check)) -> Dict[str, Any]:
    """Liveness check endpoint."""
    return await health_check.liveness()


@monitoring_router.get(
    "/health/ready",
    response_model=HealthCheckResponse,
    summary="Readiness check",
    description="Kubernetes readiness endpoint",
)
async def readiness(health_check: HealthCheck = Depends(get_health_check)) -> Dict[str, Any]:
    """Readiness check endpoint."""
    result = await health_check.readiness()
    if result["status"] != "healthy":
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=result)
    return result


@monitoring_router.get(
    "/metrics",
    summary="Prometheus metrics",
    description="Expose Prometheus metrics",
    include_in_schema=False,
)
async def prometheus_metrics() -> Response:
    """Expose Prometheus metrics."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
