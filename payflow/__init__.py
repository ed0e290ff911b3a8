"""payflow: idempotent payment intake, signed webhooks, delivery retries and reconciliation."""

__version__ = "1.0.0"
