"""Core payment forwarding logic."""
from .errors import (
    CancellationRejectedError,
    DuplicatePaymentError,
    ForwardingEngineError,
    InvalidTransitionError,
    PaymentNotFoundError,
    PaymentStoreError,
    PaymentValidationError,
)
from .forwarding import ForwardingOrchestrator, ForwardingOutcome, LegResult
from .listener import SettlementListener
from .outbox import OutboxPublisher
from .payment_service import PaymentService
from .payment_store import ClaimOutcome, ClaimResult, HybridPaymentStore
from .states import EventStatus, EventType, PaymentStatus
from .sweeper import ExpirySweeper, SweepReport

__all__ = [
    "CancellationRejectedError",
    "ClaimOutcome",
    "ClaimResult",
    "DuplicatePaymentError",
    "EventStatus",
    "EventType",
    "ExpirySweeper",
    "ForwardingEngineError",
    "ForwardingOrchestrator",
    "ForwardingOutcome",
    "HybridPaymentStore",
    "InvalidTransitionError",
    "LegResult",
    "OutboxPublisher",
    "PaymentNotFoundError",
    "PaymentService",
    "PaymentStatus",
    "PaymentStoreError",
    "PaymentValidationError",
    "SettlementListener",
    "SweepReport",
]
