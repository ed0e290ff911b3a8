"""
Pydantic schemas for API request/response models.

Request models accept both camelCase and snake_case field names.
"""
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class CreatePaymentRequest(BaseModel):
    """Request schema for creating a payment."""

    amount_minor_units: int = Field(
        ...,
        alias="amountMinorUnits",
        strict=True,
        description="Amount in the currency's smallest unit (must be positive)",
    )
    currency: str = Field(..., description="ISO 4217 currency code (e.g., USD)")
    payment_method: Optional[str] = Field(
        default=None, alias="paymentMethod", description="Payment method label"
    )
    metadata: Optional[Dict[str, Any]] = Field(default=None, description="Opaque key-value map")
    customer_email: Optional[str] = Field(
        default=None, alias="customerEmail", description="Customer email"
    )
    user_id: Optional[str] = Field(default=None, alias="userId", description="Owner scope")

    model_config = ConfigDict(
        populate_by_name=True,
        json_schema_extra={
            "examples": [
                {
                    "amountMinorUnits": 5000,
                    "currency": "USD",
                    "paymentMethod": "card",
                    "metadata": {"order_id": "order_123"},
                }
            ]
        },
    )


class PaymentResponse(BaseModel):
    """Response schema for payment creation."""

    id: str = Field(..., description="Payment ID")
    external_payment_id: Optional[str] = Field(default=None, description="Gateway correlation id")
    status: str = Field(..., description="Payment status")
    amount_minor_units: int = Field(..., description="Amount in minor units")
    currency: str = Field(..., description="Currency code")
    created_at: str = Field(..., description="Creation timestamp (ISO 8601)")


class PaymentStatusResponse(PaymentResponse):
    """Response schema for payment status."""

    payment_method: Optional[str] = Field(default=None, description="Payment method label")
    gateway_ref: Optional[str] = Field(default=None, description="Gateway reference")
    updated_at: str = Field(..., description="Last update timestamp (ISO 8601)")


class ErrorResponse(BaseModel):
    """Error body returned for every handled failure."""

    error: str = Field(..., description="Stable error code")
    message: str = Field(..., description="Human readable message")


class WebhookResponse(BaseModel):
    """Response schema for webhook processing."""

    status: str = Field(..., description="processed, duplicate or unhandled")
    event_id: str = Field(..., description="Event ID")
    event_type: str = Field(..., description="Event type")
    message: Optional[str] = Field(default=None, description="Status message")


class RetrySweepResponse(BaseModel):
    """Response schema for a retry sweep."""

    processed: int
    succeeded: int
    failed: int
    abandoned: int
    skipped: bool = False


class ImportRecordsRequest(BaseModel):
    """Parsed reconciliation upload."""

    file_name: str = Field(..., alias="fileName", description="Source file name")
    records: List[Dict[str, Any]] = Field(
        ...,
        description="Rows with external_transaction_id, amount (minor units), currency, transaction_date",
    )

    model_config = ConfigDict(populate_by_name=True)


class ImportRecordsResponse(BaseModel):
    """Response schema for a reconciliation upload."""

    imported: int


class ReconciliationMatchResponse(BaseModel):
    """Response schema for a matching run."""

    total: int
    matched: int
    unmatched: int
    match_rate: float = Field(..., serialization_alias="matchRate", description="Percent matched")
    manual_review: List[Dict[str, Any]] = Field(
        default_factory=list, serialization_alias="manualReview"
    )


class ReconciliationSummaryResponse(BaseModel):
    """Record counts by status."""

    total: int
    unmatched: int
    matched: int
    disputed: int
    match_rate: float = Field(..., serialization_alias="matchRate")


class DisputeResponse(BaseModel):
    """Response schema for a disputed record."""

    id: str
    status: str


class HealthCheckResponse(BaseModel):
    """Response schema for health checks."""

    status: str = Field(..., description="Overall health status (healthy/unhealthy)")
    checks: Optional[Dict[str, Any]] = Field(default=None, description="Individual service checks")
    message: Optional[str] = Field(default=None, description="Status message")
