"""
Snapshots of payment state passed between the store, the orchestrator and callers.

ORM rows never leave the store; everything above it works with these models,
which are also the JSON shape of hot cache entries.
"""
from datetime import datetime, timezone
from typing import Annotated, Any, Dict, List, Optional

from pydantic import AfterValidator, BaseModel, Field

from forwarding_engine.core.states import EventStatus, EventType, PaymentStatus
from forwarding_engine.database.models import PaymentEvent, PaymentRecord


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes (SQLite drops tzinfo on read)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


UTCDateTime = Annotated[datetime, AfterValidator(ensure_utc)]


class TipLeg(BaseModel):
    """One tip recipient and the amount owed to it."""

    position: int = Field(..., ge=0)
    destination: str
    share_percent: int = Field(..., ge=1, le=100)
    amount: int = Field(..., ge=0)

    @property
    def leg_name(self) -> str:
        return f"tip:{self.position}"


class NewPayment(BaseModel):
    """Input for creating a pending payment record."""

    payment_hash: str
    invoice_ref: str
    total_amount: int
    base_amount: int
    tip_amount: int
    merchant_account_ref: str
    tip_recipients: List[TipLeg] = Field(default_factory=list)
    display_currency: str = "BTC"
    memo: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    expires_at: UTCDateTime


class PaymentSnapshot(BaseModel):
    """Read model of a payment record."""

    payment_hash: str
    invoice_ref: str
    total_amount: int
    base_amount: int
    tip_amount: int
    merchant_account_ref: str
    status: PaymentStatus
    display_currency: str
    memo: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    tip_recipients: List[TipLeg] = Field(default_factory=list)
    created_at: UTCDateTime
    expires_at: UTCDateTime
    claimed_at: Optional[UTCDateTime] = None
    processed_at: Optional[UTCDateTime] = None
    updated_at: UTCDateTime

    @classmethod
    def from_row(cls, row: PaymentRecord) -> "PaymentSnapshot":
        """Build a snapshot from an ORM row with its recipients loaded."""
        return cls(
            payment_hash=row.payment_hash,
            invoice_ref=row.invoice_ref,
            total_amount=row.total_amount,
            base_amount=row.base_amount,
            tip_amount=row.tip_amount,
            merchant_account_ref=row.merchant_account_ref,
            status=PaymentStatus(row.status),
            display_currency=row.display_currency,
            memo=row.memo,
            metadata=row.provider_metadata or {},
            tip_recipients=[
                TipLeg(
                    position=r.position,
                    destination=r.destination,
                    share_percent=r.share_percent,
                    amount=r.amount,
                )
                for r in row.recipients
            ],
            created_at=row.created_at,
            expires_at=row.expires_at,
            claimed_at=row.claimed_at,
            processed_at=row.processed_at,
            updated_at=row.updated_at,
        )

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.expires_at <= (now or utcnow())


class EventSnapshot(BaseModel):
    """Read model of an audit event."""

    id: int
    payment_hash: str
    event_type: EventType
    event_status: EventStatus
    payload: Dict[str, Any]
    created_at: UTCDateTime

    @classmethod
    def from_row(cls, row: PaymentEvent) -> "EventSnapshot":
        return cls(
            id=row.id,
            payment_hash=row.payment_hash,
            event_type=EventType(row.event_type),
            event_status=EventStatus(row.event_status),
            payload=row.payload,
            created_at=row.created_at,
        )
