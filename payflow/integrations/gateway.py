"""
Stubbed payment gateway with retry logic and circuit breaking.

Implements:
- Simulated authorization decision (configurable approval rate)
- Exponential backoff for transient gateway errors
- Circuit breaker pattern
"""
import math
import random
import time
import uuid
from dataclasses import asdict, dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

import structlog
from tenacity import (
    AsyncRetrying,
    RetryError,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from payflow.config import Settings, get_settings
from payflow.core.exceptions import GatewayError
from payflow.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

FEE_RATE = 0.029
FEE_FIXED_MINOR_UNITS = 30


class GatewayTransientError(Exception):
    """Retryable gateway failure (timeout, connection reset, open circuit)."""

    pass


@dataclass(frozen=True)
class GatewayResult:
    """Outcome of one authorization."""

    gateway_id: str
    status: str  # succeeded or failed
    processing_fee: int

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def processing_fee(amount_minor_units: int) -> int:
    """Fee charged by the gateway: 2.9% rounded down plus a fixed 30."""
    return math.floor(amount_minor_units * FEE_RATE) + FEE_FIXED_MINOR_UNITS


class CircuitBreaker:
    """
    Circuit breaker for gateway calls.

    Prevents cascading failures by temporarily stopping requests
    when error rate exceeds threshold.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        timeout: int = 60,
        success_threshold: int = 2,
    ):
        """
        Initialize circuit breaker.

        Args:
            failure_threshold: Number of failures before opening circuit
            timeout: Seconds before attempting to close circuit
            success_threshold: Successful calls needed to close circuit
        """
        self.failure_threshold = failure_threshold
        self.timeout = timeout
        self.success_threshold = success_threshold
        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time: Optional[float] = None
        self.state = "closed"  # closed, open, half_open

    async def call(self, func: Callable[..., Awaitable[Any]], *args: Any, **kwargs: Any) -> Any:
        """
        Await ``func`` with circuit breaker protection.

        Raises:
            GatewayTransientError: If circuit is open
        """
        if self.state == "open":
            if self.last_failure_time and time.time() - self.last_failure_time > self.timeout:
                self._set_state("half_open")
                self.success_count = 0
                logger.info("circuit_breaker_half_open")
            else:
                raise GatewayTransientError("Circuit breaker is open")

        try:
            result = await func(*args, **kwargs)
        except Exception:
            self.on_failure()
            raise
        self.on_success()
        return result

    def on_success(self) -> None:
        """Record successful call."""
        self.failure_count = 0
        if self.state == "half_open":
            self.success_count += 1
            if self.success_count >= self.success_threshold:
                self._set_state("closed")
                logger.info("circuit_breaker_closed")

    def on_failure(self) -> None:
        """Record failed call."""
        self.failure_count += 1
        self.last_failure_time = time.time()
        if self.failure_count >= self.failure_threshold:
            self._set_state("open")
            logger.warning("circuit_breaker_opened", failure_count=self.failure_count)

    def _set_state(self, state: str) -> None:
        self.state = state
        metrics.set_circuit_breaker_state(state)


class StubGateway:
    """
    Simulated gateway decision point.

    Approves with probability ``success_rate``; pass a seeded ``random.Random``
    for deterministic outcomes.
    """

    def __init__(self, success_rate: float = 0.9, rng: Optional[random.Random] = None):
        self.success_rate = success_rate
        self.rng = rng or random.Random()

    async def authorize(
        self,
        amount_minor_units: int,
        currency: str,
        idempotency_key: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> GatewayResult:
        approved = self.rng.random() < self.success_rate
        return GatewayResult(
            gateway_id=f"gw_{uuid.uuid4().hex[:24]}",
            status="succeeded" if approved else "failed",
            processing_fee=processing_fee(amount_minor_units),
        )


class GatewayClient:
    """
    Wrapper around a gateway with production-grade error handling.

    Features:
    - Automatic retry with exponential backoff for transient errors
    - Circuit breaker pattern
    - Declines are results, not errors
    """

    def __init__(
        self,
        gateway: Optional[StubGateway] = None,
        settings: Optional[Settings] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
        wait: Any = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.gateway = gateway or StubGateway(success_rate=self.settings.gateway_success_rate)
        self.circuit_breaker = circuit_breaker or CircuitBreaker()
        self.wait = wait or wait_exponential(multiplier=0.2, min=0.2, max=2)

    async def authorize(
        self,
        amount_minor_units: int,
        currency: str,
        idempotency_key: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> GatewayResult:
        """
        Authorize a payment.

        Args:
            amount_minor_units: Amount in minor units
            currency: ISO currency code
            idempotency_key: Forwarded so the gateway can dedupe on its side
            metadata: Optional metadata

        Returns:
            GatewayResult: Gateway decision

        Raises:
            GatewayError: If the gateway stays unavailable after retries
        """
        logger.info(
            "gateway_authorize",
            amount_minor_units=amount_minor_units,
            currency=currency,
            idempotency_key=idempotency_key,
        )

        try:
            async for attempt in AsyncRetrying(
                retry=retry_if_exception_type(GatewayTransientError),
                stop=stop_after_attempt(self.settings.gateway_max_retries),
                wait=self.wait,
                reraise=True,
            ):
                with attempt:
                    result = await self.circuit_breaker.call(
                        self.gateway.authorize,
                        amount_minor_units,
                        currency,
                        idempotency_key,
                        metadata,
                    )
        except (GatewayTransientError, RetryError) as e:
            metrics.record_gateway_call("error")
            logger.error("gateway_unavailable", idempotency_key=idempotency_key, error=str(e))
            raise GatewayError(f"Gateway unavailable: {e}") from e

        metrics.record_gateway_call(result.status)
        logger.info(
            "gateway_authorized",
            gateway_id=result.gateway_id,
            status=result.status,
            processing_fee=result.processing_fee,
        )
        return result
