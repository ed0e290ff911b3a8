"""
Structured logging for payflow.

structlog renders every event as JSON (a console renderer outside production)
with the request id bound through contextvars by the API middleware.
Webhook signatures, secrets and API keys are masked before rendering.
"""
import logging
import sys
from typing import Any, Optional

import structlog
from structlog.types import Processor
from pythonjsonlogger import jsonlogger

from payflow.config import Settings, get_settings

REDACTED_FIELDS = frozenset(
    {"signature", "webhook_secret", "secret", "api_key", "x_api_key", "authorization"}
)


def redact_secrets(logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """Mask credential-bearing fields, keeping a short signature prefix for correlation."""
    for key in REDACTED_FIELDS.intersection(event_dict):
        value = event_dict[key]
        if key == "signature" and isinstance(value, str) and len(value) > 16:
            event_dict[key] = value[:16] + "..."
        elif value is not None:
            event_dict[key] = "***"
    return event_dict


def app_context_processor(settings: Settings) -> Processor:
    """Build a processor stamping ``app_name``/``app_env`` on every event."""

    def add_app_context(
        logger: Any, method_name: str, event_dict: dict[str, Any]
    ) -> dict[str, Any]:
        event_dict.setdefault("app_name", settings.app_name)
        event_dict.setdefault("app_env", settings.app_env)
        return event_dict

    return add_app_context


def setup_logging(settings: Optional[Settings] = None) -> None:
    """
    Configure structlog and the stdlib root logger.

    Args:
        settings: Settings to read level and environment from; defaults to
            the cached application settings
    """
    settings = settings or get_settings()
    renderer: Processor = (
        structlog.processors.JSONRenderer()
        if settings.is_production or not settings.debug
        else structlog.dev.ConsoleRenderer()
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.format_exc_info,
            app_context_processor(settings),
            redact_secrets,
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    # Third-party records (uvicorn, alembic) go through python-json-logger
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        jsonlogger.JsonFormatter(
            "%(asctime)s %(levelname)s %(name)s %(message)s",
            rename_fields={"asctime": "@timestamp", "levelname": "level", "name": "logger"},
        )
    )
    root_logger = logging.getLogger()
    root_logger.handlers = [handler]
    root_logger.setLevel(settings.log_level)

    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(
        logging.INFO if settings.database_echo else logging.WARNING
    )

    structlog.get_logger(__name__).info(
        "logging_configured", log_level=settings.log_level, app_env=settings.app_env
    )
