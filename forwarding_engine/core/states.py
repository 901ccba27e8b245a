"""Payment statuses, event vocabulary and the allowed transition graph."""
from enum import Enum
from typing import Dict, FrozenSet


class PaymentStatus(str, Enum):
    """Lifecycle status of a payment record."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    COMPLETED_WITH_EXCEPTIONS = "completed_with_exceptions"
    FAILED = "failed"
    EXPIRED = "expired"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


class EventType(str, Enum):
    """Audit event types written to the payment_events table."""

    CREATED = "created"
    PAID = "paid"
    FORWARDING_STARTED = "forwarding_started"
    LEG_SUCCEEDED = "leg_succeeded"
    LEG_FAILED = "leg_failed"
    LEG_SKIPPED = "leg_skipped"
    COMPLETED = "completed"
    COMPLETED_WITH_EXCEPTIONS = "completed_with_exceptions"
    FAILED = "failed"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class EventStatus(str, Enum):
    """Outcome flag on an audit event."""

    SUCCESS = "success"
    ERROR = "error"


TERMINAL_STATUSES: FrozenSet[PaymentStatus] = frozenset(
    {
        PaymentStatus.COMPLETED,
        PaymentStatus.COMPLETED_WITH_EXCEPTIONS,
        PaymentStatus.FAILED,
        PaymentStatus.EXPIRED,
        PaymentStatus.CANCELLED,
    }
)

TRANSITIONS: Dict[PaymentStatus, FrozenSet[PaymentStatus]] = {
    PaymentStatus.PENDING: frozenset(
        {PaymentStatus.PROCESSING, PaymentStatus.EXPIRED, PaymentStatus.CANCELLED}
    ),
    PaymentStatus.PROCESSING: frozenset(
        {
            PaymentStatus.COMPLETED,
            PaymentStatus.COMPLETED_WITH_EXCEPTIONS,
            PaymentStatus.FAILED,
        }
    ),
}


def allowed_sources(target: PaymentStatus) -> FrozenSet[PaymentStatus]:
    """
    Return the statuses from which ``target`` may be entered.

    Args:
        target: Destination status

    Returns:
        FrozenSet[PaymentStatus]: Source statuses with an edge into target
    """
    return frozenset(source for source, targets in TRANSITIONS.items() if target in targets)
