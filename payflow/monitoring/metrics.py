"""
Prometheus metrics for payflow monitoring.

Tracks:
- Payment requests by status and currency
- Idempotency ledger outcomes
- Gateway calls
- Webhook events by type and outcome
- Retry sweep results
- Reconciliation match results
"""
import time

from prometheus_client import Counter, Gauge, Histogram

# HTTP metrics
http_requests_total = Counter(
    "payflow_http_requests_total",
    "HTTP requests by route template and status code",
    ["method", "route", "status_code"],
)

# Payment metrics
payment_requests_total = Counter(
    "payflow_payment_requests_total",
    "Total number of payment requests",
    ["status", "currency"],
)

payment_processing_duration_seconds = Histogram(
    "payflow_payment_processing_duration_seconds",
    "Payment processing duration in seconds",
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

# Idempotency metrics
idempotency_outcomes_total = Counter(
    "payflow_idempotency_outcomes_total",
    "Idempotency ledger acquire outcomes",
    ["outcome"],  # proceed, replay, conflict, in_progress
)

idempotency_stale_locks_released_total = Counter(
    "payflow_idempotency_stale_locks_released_total",
    "Idempotency locks force-released after exceeding the staleness threshold",
)

# Gateway metrics
gateway_requests_total = Counter(
    "payflow_gateway_requests_total",
    "Total stub gateway authorizations",
    ["status"],  # succeeded, failed, error
)

gateway_circuit_breaker_state = Gauge(
    "payflow_gateway_circuit_breaker_state",
    "Gateway circuit breaker state (0=closed, 1=open, 2=half_open)",
)

# Webhook metrics
webhook_events_total = Counter(
    "payflow_webhook_events_total",
    "Total inbound webhook events",
    ["event_type", "status"],  # processed, duplicate, unhandled, failed
)

webhook_processing_duration_seconds = Histogram(
    "payflow_webhook_processing_duration_seconds",
    "Webhook processing duration in seconds",
    ["event_type"],
    buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5),
)

webhook_signature_failures_total = Counter(
    "payflow_webhook_signature_failures_total",
    "Inbound webhooks rejected for missing or invalid signatures",
)

# Retry metrics
retry_deliveries_total = Counter(
    "payflow_retry_deliveries_total",
    "Webhook deliveries re-attempted by the retry scheduler",
    ["outcome"],  # succeeded, failed, abandoned
)

retry_sweep_duration_seconds = Histogram(
    "payflow_retry_sweep_duration_seconds",
    "Retry sweep duration in seconds",
    buckets=(0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
)

retry_sweeps_skipped_total = Counter(
    "payflow_retry_sweeps_skipped_total",
    "Retry sweeps skipped because another sweep held the lease",
)

# Reconciliation metrics
reconciliation_records_total = Counter(
    "payflow_reconciliation_records_total",
    "Reconciliation records evaluated",
    ["result"],  # matched, unmatched
)

reconciliation_duration_seconds = Histogram(
    "payflow_reconciliation_duration_seconds",
    "Reconciliation run duration in seconds",
    buckets=(0.1, 0.5, 1.0, 5.0, 10.0, 30.0, 60.0),
)

reconciliation_last_run_timestamp = Gauge(
    "payflow_reconciliation_last_run_timestamp",
    "Timestamp of last reconciliation run",
)


class MetricsCollector:
    """Helper class for collecting metrics."""

    @staticmethod
    def record_http_request(method: str, route: str, status_code: int) -> None:
        """Record one HTTP request against its route template."""
        http_requests_total.labels(method=method, route=route, status_code=str(status_code)).inc()

    @staticmethod
    def record_payment_request(status: str, currency: str) -> None:
        """Record a payment request."""
        payment_requests_total.labels(status=status, currency=currency).inc()

    @staticmethod
    def record_payment_duration(duration_seconds: float) -> None:
        """Record payment processing duration."""
        payment_processing_duration_seconds.observe(duration_seconds)

    @staticmethod
    def record_idempotency_outcome(outcome: str) -> None:
        """Record an idempotency ledger outcome."""
        idempotency_outcomes_total.labels(outcome=outcome).inc()

    @staticmethod
    def record_stale_locks_released(count: int) -> None:
        """Record force-released idempotency locks."""
        if count > 0:
            idempotency_stale_locks_released_total.inc(count)

    @staticmethod
    def record_gateway_call(status: str) -> None:
        """Record a gateway authorization."""
        gateway_requests_total.labels(status=status).inc()

    @staticmethod
    def set_circuit_breaker_state(state: str) -> None:
        """Set circuit breaker state."""
        state_map = {"closed": 0, "open": 1, "half_open": 2}
        gateway_circuit_breaker_state.set(state_map.get(state, 0))

    @staticmethod
    def record_webhook_event(event_type: str, status: str, duration_seconds: float) -> None:
        """Record webhook event processing."""
        webhook_events_total.labels(event_type=event_type, status=status).inc()
        webhook_processing_duration_seconds.labels(event_type=event_type).observe(
            duration_seconds
        )

    @staticmethod
    def record_signature_failure() -> None:
        """Record a rejected webhook signature."""
        webhook_signature_failures_total.inc()

    @staticmethod
    def record_retry_sweep(
        succeeded: int, failed: int, abandoned: int, duration_seconds: float
    ) -> None:
        """Record the outcome counts of one retry sweep."""
        retry_deliveries_total.labels(outcome="succeeded").inc(succeeded)
        retry_deliveries_total.labels(outcome="failed").inc(failed)
        retry_deliveries_total.labels(outcome="abandoned").inc(abandoned)
        retry_sweep_duration_seconds.observe(duration_seconds)

    @staticmethod
    def record_retry_sweep_skipped() -> None:
        """Record a sweep skipped because of lease contention."""
        retry_sweeps_skipped_total.inc()

    @staticmethod
    def set_reconciliation_metrics(matched: int, unmatched: int, duration_seconds: float) -> None:
        """Record reconciliation results."""
        reconciliation_records_total.labels(result="matched").inc(matched)
        reconciliation_records_total.labels(result="unmatched").inc(unmatched)
        reconciliation_duration_seconds.observe(duration_seconds)
        reconciliation_last_run_timestamp.set(time.time())


# Export singleton instance
metrics = MetricsCollector()
