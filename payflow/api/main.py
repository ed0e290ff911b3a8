"""
payflow HTTP application.

Wires the payment, webhook, reconciliation and monitoring routers, request
tracing middleware and the error taxonomy's JSON rendering.
"""
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator

import structlog
from fastapi import FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from payflow import __version__
from payflow.config import get_settings
from payflow.core.exceptions import PaymentSystemError, ValidationError
from payflow.database.connection import close_db, init_db
from payflow.monitoring.logging import setup_logging
from payflow.monitoring.metrics import metrics

from .routes import monitoring_router, payment_router, reconciliation_router, webhook_router

setup_logging()
logger = structlog.get_logger(__name__)

settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, Any]:
    """Create missing tables on startup; dispose of the engine on shutdown."""
    logger.info(
        "application_startup",
        app_env=settings.app_env,
        webhook_secret_configured=bool(settings.webhook_secret),
        internal_key_configured=bool(settings.internal_api_key),
    )
    await init_db()

    yield

    await close_db()
    logger.info("application_shutdown")


app = FastAPI(
    title="payflow",
    description=(
        "Payment intake with idempotency keys, signed webhook ingestion with "
        "deduplication, persistent delivery retries and reconciliation."
    ),
    version=__version__,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.get_allowed_origins_list(),
    allow_methods=["GET", "POST"],
    allow_headers=["*"],
    expose_headers=["X-Request-ID", "Idempotent-Replayed"],
)


@app.middleware("http")
async def request_context_middleware(request: Request, call_next: Any) -> Response:
    """
    Bind request id, method, path and idempotency key into the log context.

    An incoming X-Request-ID is reused and always echoed back.
    """
    request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    start_time = time.perf_counter()

    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(
        request_id=request_id, method=request.method, path=request.url.path
    )
    if request.headers.get("Idempotency-Key"):
        structlog.contextvars.bind_contextvars(
            idempotency_key=request.headers["Idempotency-Key"]
        )
    logger.info("request_started")

    try:
        response = await call_next(request)
    except Exception as e:
        logger.error(
            "request_failed", error=str(e), duration_seconds=time.perf_counter() - start_time
        )
        raise

    route = request.scope.get("route")
    metrics.record_http_request(
        request.method, getattr(route, "path", "unmatched"), response.status_code
    )
    response.headers["X-Request-ID"] = request_id
    logger.info(
        "request_completed",
        status_code=response.status_code,
        duration_seconds=time.perf_counter() - start_time,
    )
    return response


@app.exception_handler(PaymentSystemError)
async def payment_system_error_handler(request: Request, exc: PaymentSystemError) -> JSONResponse:
    """Render domain errors as ``{"error": code, "message": ...}``."""
    log = logger.error if exc.http_status >= 500 else logger.warning
    log("request_error", error_code=exc.error_code, error=exc.message, status_code=exc.http_status)
    return JSONResponse(status_code=exc.http_status, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def request_validation_error_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Malformed request bodies are validation errors (400)."""
    details = "; ".join(
        f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}" for error in exc.errors()
    )
    error = ValidationError(details or None)
    logger.warning("request_validation_failed", error=error.message)
    return JSONResponse(status_code=error.http_status, content=error.to_dict())


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Anything that escapes the services is an opaque internal error."""
    logger.exception("unhandled_exception", error_type=type(exc).__name__)
    error = PaymentSystemError()
    return JSONResponse(status_code=error.http_status, content=error.to_dict())


app.include_router(payment_router)
app.include_router(webhook_router)
app.include_router(reconciliation_router)
app.include_router(monitoring_router)


@app.get("/", tags=["monitoring"])
async def root() -> dict[str, Any]:
    """Service identity."""
    return {"service": settings.app_name, "version": __version__, "environment": settings.app_env}


def run() -> None:
    """Serve the API with uvicorn using the configured host and port."""
    import uvicorn

    uvicorn.run(
        "payflow.api.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
        workers=1 if settings.debug else settings.api_workers,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    run()
