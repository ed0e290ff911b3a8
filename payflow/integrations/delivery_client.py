"""
Outbound webhook delivery over HTTP.

Re-sends the stored raw payload with its original signature header so the
receiver verifies exactly the bytes that were signed.
"""
from typing import Optional

import httpx
import structlog

from payflow.config import Settings, get_settings
from payflow.core.exceptions import TransientDeliveryError

logger = structlog.get_logger(__name__)

SIGNATURE_HEADER = "x-webhook-signature"


class WebhookDeliveryClient:
    """
    Posts webhook payloads to the configured destination.

    Any transport error or non-2xx response is a ``TransientDeliveryError``;
    whether it is retried is the scheduler's decision.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.settings = settings or get_settings()
        self._client = client
        self._owns_client = client is None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self.settings.webhook_delivery_timeout_seconds
            )
        return self._client

    async def deliver(
        self,
        raw_payload: str,
        signature: Optional[str],
        url: Optional[str] = None,
    ) -> int:
        """
        Deliver one payload.

        Args:
            raw_payload: Exact bytes (as text) the signature was computed over
            signature: Original signature header value
            url: Destination override

        Returns:
            int: Response status code (always 2xx)

        Raises:
            TransientDeliveryError: On network error or non-2xx response
        """
        destination = url or self.settings.webhook_delivery_url
        headers = {"Content-Type": "application/json"}
        if signature:
            headers[SIGNATURE_HEADER] = signature

        try:
            response = await self._get_client().post(
                destination,
                content=raw_payload.encode("utf-8"),
                headers=headers,
            )
        except httpx.HTTPError as e:
            logger.warning("webhook_delivery_transport_error", url=destination, error=str(e))
            raise TransientDeliveryError(f"{type(e).__name__}: {e}") from e

        if not response.is_success:
            body = response.text[:500]
            logger.warning(
                "webhook_delivery_rejected",
                url=destination,
                status_code=response.status_code,
            )
            raise TransientDeliveryError(
                f"HTTP {response.status_code}: {body}",
                status_code=response.status_code,
            )

        return response.status_code

    async def close(self) -> None:
        """Close the underlying HTTP client if this instance created it."""
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
