"""Background workers for retries and reconciliation."""
from .reconciliation_worker import start_reconciliation_worker
from .retry_worker import start_retry_worker

__all__ = ["start_retry_worker", "start_reconciliation_worker"]
