"""FastAPI application and routes."""
from .main import app
from .schemas import (
    CreatePaymentRequest,
    PaymentResponse,
    PaymentStatusResponse,
    RetrySweepResponse,
    WebhookResponse,
)

__all__ = [
    "app",
    "CreatePaymentRequest",
    "PaymentResponse",
    "PaymentStatusResponse",
    "RetrySweepResponse",
    "WebhookResponse",
]
