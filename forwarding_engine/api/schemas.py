"""
Pydantic schemas for API request/response models.
"""
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from forwarding_engine.core.forwarding import ForwardingOutcome
from forwarding_engine.core.records import EventSnapshot, PaymentSnapshot


class TipRecipientRequest(BaseModel):
    """One tip recipient in a payment request."""

    destination: str = Field(..., min_length=1, description="Recipient wallet id")
    share_percent: Optional[int] = Field(
        default=None, ge=1, le=100, description="Whole percentage of the tip (equal split if omitted)"
    )


class CreatePaymentRequest(BaseModel):
    """Request schema for creating a pending payment."""

    merchant_account_ref: str = Field(..., min_length=1, description="Merchant wallet id")
    base_amount: int = Field(..., gt=0, description="Base amount in sats")
    tip_amount: Optional[int] = Field(default=None, ge=0, description="Explicit tip in sats")
    tip_percent: Optional[int] = Field(
        default=None, ge=0, le=100, description="Tip as a percentage of the base amount"
    )
    tip_recipients: List[TipRecipientRequest] = Field(
        default_factory=list, description="Ordered tip recipients"
    )
    display_currency: str = Field(default="BTC", description="Currency shown to the payer")
    memo: Optional[str] = Field(default=None, max_length=500, description="Payer-facing memo")
    metadata: Optional[Dict[str, Any]] = Field(default=None, description="Optional payment metadata")

    @field_validator("display_currency")
    @classmethod
    def validate_currency(cls, v: str) -> str:
        """Normalize currency code."""
        return v.upper()

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "merchant_account_ref": "b2c1e1a0-7c1e-4d0a-9a6b-5d8f0c1d2e3f",
                    "base_amount": 100,
                    "tip_amount": 10,
                    "tip_recipients": [{"destination": "9f8e7d6c-5b4a-3210-fedc-ba9876543210"}],
                    "display_currency": "USD",
                    "memo": "Coffee",
                }
            ]
        }
    }


class TipLegResponse(BaseModel):
    """A frozen tip leg."""

    position: int
    destination: str
    share_percent: int
    amount: int


class PaymentResponse(BaseModel):
    """Response schema for a payment record."""

    payment_hash: str = Field(..., description="Invoice payment hash")
    invoice_ref: str = Field(..., description="Payment request to show the payer")
    status: str = Field(..., description="Payment status")
    total_amount: int = Field(..., description="Invoice amount in sats")
    base_amount: int = Field(..., description="Merchant share in sats")
    tip_amount: int = Field(..., description="Tip in sats")
    merchant_account_ref: str = Field(..., description="Merchant wallet id")
    tip_recipients: List[TipLegResponse] = Field(default_factory=list)
    display_currency: str
    memo: Optional[str] = None
    created_at: str = Field(..., description="Creation timestamp (ISO 8601)")
    expires_at: str = Field(..., description="Invoice expiry (ISO 8601)")
    claimed_at: Optional[str] = None
    processed_at: Optional[str] = None

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "payment_hash": "3f1a...c9",
                    "invoice_ref": "lnbc1100n1p...",
                    "status": "pending",
                    "total_amount": 110,
                    "base_amount": 100,
                    "tip_amount": 10,
                    "merchant_account_ref": "b2c1e1a0-7c1e-4d0a-9a6b-5d8f0c1d2e3f",
                    "tip_recipients": [
                        {
                            "position": 0,
                            "destination": "9f8e7d6c-5b4a-3210-fedc-ba9876543210",
                            "share_percent": 100,
                            "amount": 10,
                        }
                    ],
                    "display_currency": "USD",
                    "memo": "Coffee",
                    "created_at": "2025-01-06T10:00:00+00:00",
                    "expires_at": "2025-01-06T10:15:00+00:00",
                    "claimed_at": None,
                    "processed_at": None,
                }
            ]
        }
    }

    @classmethod
    def from_snapshot(cls, record: PaymentSnapshot) -> "PaymentResponse":
        return cls(
            payment_hash=record.payment_hash,
            invoice_ref=record.invoice_ref,
            status=record.status.value,
            total_amount=record.total_amount,
            base_amount=record.base_amount,
            tip_amount=record.tip_amount,
            merchant_account_ref=record.merchant_account_ref,
            tip_recipients=[TipLegResponse(**leg.model_dump()) for leg in record.tip_recipients],
            display_currency=record.display_currency,
            memo=record.memo,
            created_at=record.created_at.isoformat(),
            expires_at=record.expires_at.isoformat(),
            claimed_at=record.claimed_at.isoformat() if record.claimed_at else None,
            processed_at=record.processed_at.isoformat() if record.processed_at else None,
        )


class PaymentEventResponse(BaseModel):
    """One audit event."""

    id: int
    event_type: str
    event_status: str
    payload: Dict[str, Any]
    created_at: str

    @classmethod
    def from_snapshot(cls, event: EventSnapshot) -> "PaymentEventResponse":
        return cls(
            id=event.id,
            event_type=event.event_type.value,
            event_status=event.event_status.value,
            payload=event.payload,
            created_at=event.created_at.isoformat(),
        )


class CancelPaymentRequest(BaseModel):
    """Request schema for cancelling a payment."""

    reason: Optional[str] = Field(default=None, max_length=200, description="Cancellation reason")


class LegResultResponse(BaseModel):
    """Outcome of one transfer leg."""

    leg: str
    destination: str
    amount: int
    status: str
    attempts: int
    error: Optional[str] = None


class RedriveResponse(BaseModel):
    """Response schema for a manual re-drive."""

    payment_hash: str
    claimed: bool = Field(..., description="Whether this call performed the forwarding")
    status: Optional[str] = Field(default=None, description="Payment status afterwards")
    legs: List[LegResultResponse] = Field(default_factory=list)

    @classmethod
    def from_outcome(cls, outcome: ForwardingOutcome) -> "RedriveResponse":
        return cls(
            payment_hash=outcome.payment_hash,
            claimed=outcome.claimed,
            status=outcome.status.value if outcome.status else None,
            legs=[LegResultResponse(**leg.to_dict()) for leg in outcome.legs],
        )


class SweepResponse(BaseModel):
    """Response schema for a sweep."""

    ran_at: str
    expired: List[str]
    exceptions: List[str]
    stale_processing: List[str]


class StatsResponse(BaseModel):
    """Response schema for payment statistics."""

    since: str
    hours: int
    total: int
    by_status: Dict[str, int]
    forwarded_volume: int
    tip_volume: int
    payments_with_tips: int
    open_listener_handles: int


class HealthCheckResponse(BaseModel):
    """Response schema for health checks."""

    status: str = Field(..., description="Overall health status (healthy/degraded/unhealthy)")
    checks: Optional[Dict[str, Any]] = Field(default=None, description="Individual service checks")
    message: Optional[str] = Field(default=None, description="Status message")


class WebhookResponse(BaseModel):
    """Response schema for webhook processing."""

    status: str = Field(..., description="Processing status")
    event_id: str = Field(..., description="Webhook delivery id")
    reason: Optional[str] = Field(default=None, description="Why the event was ignored")
    payment_hash: Optional[str] = None
    claimed: Optional[bool] = None
    payment_status: Optional[str] = None
