"""
HMAC-SHA256 webhook signature verification.

The signature is computed over the exact raw request bytes, never over a
re-serialized body, and compared in constant time.
"""
import hashlib
import hmac
from typing import Optional, Union

import structlog

logger = structlog.get_logger(__name__)

SIGNATURE_PREFIX = "sha256="


def _to_bytes(value: Union[str, bytes]) -> bytes:
    return value.encode("utf-8") if isinstance(value, str) else value


def sign_payload(raw_payload: Union[str, bytes], secret: str) -> str:
    """
    Compute the signature header value for a payload.

    Returns:
        str: ``sha256=<hex digest>``
    """
    digest = hmac.new(_to_bytes(secret), _to_bytes(raw_payload), hashlib.sha256).hexdigest()
    return f"{SIGNATURE_PREFIX}{digest}"


def verify_signature(
    raw_payload: Union[str, bytes],
    provided_signature: Optional[str],
    secret: Optional[str],
) -> bool:
    """
    Verify a webhook signature.

    Args:
        raw_payload: Request body exactly as received
        provided_signature: ``x-webhook-signature`` header (hex, optionally ``sha256=``-prefixed)
        secret: Shared secret; verification fails closed when unset

    Returns:
        bool: True only when the HMAC matches
    """
    if not provided_signature or not secret:
        logger.warning(
            "webhook_signature_missing",
            has_signature=bool(provided_signature),
            has_secret=bool(secret),
        )
        return False

    provided = provided_signature.strip()
    if provided.lower().startswith(SIGNATURE_PREFIX):
        provided = provided[len(SIGNATURE_PREFIX):]

    expected = sign_payload(raw_payload, secret)[len(SIGNATURE_PREFIX):]
    return hmac.compare_digest(expected.encode("ascii"), provided.lower().encode("utf-8"))
