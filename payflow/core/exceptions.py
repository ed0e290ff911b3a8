"""
Exception taxonomy for payflow.

Every exception carries:
- A stable error code (for client handling)
- A user message (safe to return to callers)
- An HTTP status code (for API responses)

Validation, conflict and authentication errors are returned synchronously and
never retried. Transient delivery errors are recovered by the retry scheduler.
Terminal delivery and storage errors go to the audit trail and need manual
reprocessing.
"""
from typing import Any, Dict, Optional


class PaymentSystemError(Exception):
    """Base exception for all payflow errors."""

    error_code = "internal error"
    http_status = 500
    default_message = "An unexpected error occurred. Please try again later."

    def __init__(
        self,
        message: Optional[str] = None,
        user_message: Optional[str] = None,
        **kwargs: Any,
    ):
        super().__init__(message or self.default_message)
        self.message = message or self.default_message
        self.user_message = user_message or self.message
        self.metadata = kwargs

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dict for API responses."""
        return {"error": self.error_code, "message": self.user_message}


class ValidationError(PaymentSystemError):
    """Malformed or out-of-range input. Never retried."""

    error_code = "validation error"
    http_status = 400
    default_message = "Request validation failed"


class ConflictError(PaymentSystemError):
    """Idempotency key reused with a different request body."""

    error_code = "idempotency key conflict"
    http_status = 409
    default_message = "Key used with different request body"


class RequestInProgressError(ConflictError):
    """The original request holding this idempotency key has not finished."""

    error_code = "request in progress"
    default_message = "A request with this idempotency key is being processed"


class AuthenticationError(PaymentSystemError):
    """Missing or invalid webhook signature."""

    error_code = "invalid signature"
    http_status = 401
    default_message = "Webhook signature verification failed"


class UnauthorizedError(PaymentSystemError):
    """Missing or wrong credentials on an internal or user-scoped endpoint."""

    error_code = "unauthorized"
    http_status = 401
    default_message = "Missing or invalid credentials"


class TransientDeliveryError(PaymentSystemError):
    """Network error or non-2xx response from a webhook destination."""

    error_code = "delivery failed"
    http_status = 502
    default_message = "Webhook delivery failed"

    def __init__(self, message: Optional[str] = None, status_code: Optional[int] = None, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.status_code = status_code


class TerminalDeliveryError(PaymentSystemError):
    """Delivery abandoned after exhausting retry attempts."""

    error_code = "delivery abandoned"
    http_status = 500
    default_message = "Webhook delivery abandoned after maximum attempts"


class StorageError(PaymentSystemError):
    """Persistence failure."""

    error_code = "storage error"
    http_status = 500
    default_message = "A storage error occurred"


class GatewayError(PaymentSystemError):
    """Payment gateway unavailable after retries."""

    error_code = "gateway unavailable"
    http_status = 502
    default_message = "Payment gateway is unavailable"


class WebhookProcessingError(PaymentSystemError):
    """A webhook handler failed; the event will be retried."""

    error_code = "processing failed"
    http_status = 500
    default_message = "Processing failed, will retry"


class NotFoundError(PaymentSystemError):
    """Requested resource does not exist in the caller's scope."""

    error_code = "not found"
    http_status = 404
    default_message = "Resource not found"
