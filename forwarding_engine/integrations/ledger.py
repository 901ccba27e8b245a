"""
Capability interface for the external custodial ledger.

The engine never talks to a ledger directly; it is handed an object
implementing :class:`LedgerProvider`. Production uses the Blink GraphQL client,
tests use an in-memory fake.
"""
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import AsyncIterator, FrozenSet, Optional, Protocol


class LedgerErrorType(Enum):
    """Classification of ledger errors for retry logic."""

    TRANSIENT = "transient"  # Retry these
    PERMANENT = "permanent"  # Don't retry these
    RATE_LIMIT = "rate_limit"  # Retry with longer backoff


class LedgerError(Exception):
    """Base exception for ledger-related errors."""

    def __init__(
        self,
        message: str,
        error_type: LedgerErrorType,
        original_error: Optional[Exception] = None,
    ):
        """
        Initialize ledger error.

        Args:
            message: Error message
            error_type: Classification of error
            original_error: Underlying exception, if any
        """
        super().__init__(message)
        self.error_type = error_type
        self.original_error = original_error

    @property
    def retryable(self) -> bool:
        return self.error_type != LedgerErrorType.PERMANENT


class UpstreamUnavailable(LedgerError):
    """Transport or ledger API unreachable."""

    def __init__(self, message: str, original_error: Optional[Exception] = None):
        super().__init__(message, LedgerErrorType.TRANSIENT, original_error)


@dataclass(frozen=True)
class Invoice:
    """An invoice issued on the funnel account."""

    invoice_ref: str
    payment_hash: str
    expires_at: datetime


@dataclass(frozen=True)
class SettlementEvent:
    """Notification that an invoice has been paid into the funnel account."""

    notification_id: str
    payment_hash: str
    amount: int
    timestamp: datetime
    source: str = "stream"


@dataclass(frozen=True)
class SettlementFilter:
    """Scope of a settlement subscription."""

    payment_hashes: FrozenSet[str] = field(default_factory=frozenset)

    def matches(self, payment_hash: str) -> bool:
        return not self.payment_hashes or payment_hash in self.payment_hashes


@dataclass(frozen=True)
class TransferResult:
    """Outcome of an intraledger transfer."""

    success: bool
    transfer_id: Optional[str] = None
    status: str = "SUCCESS"


class SettlementSubscription(Protocol):
    """An open settlement feed; iterate for events, close when done."""

    def __aiter__(self) -> AsyncIterator[SettlementEvent]:
        ...

    async def close(self) -> None:
        ...


class LedgerProvider(Protocol):
    """Operations the engine consumes from the custodial ledger."""

    async def create_invoice(self, amount: int, memo: str) -> Invoice:
        ...

    async def subscribe_settlements(
        self, settlement_filter: SettlementFilter
    ) -> SettlementSubscription:
        """Open a subscription; raises UpstreamUnavailable if it cannot connect."""
        ...

    async def transfer(
        self,
        from_account: str,
        to_account: str,
        amount: int,
        memo: str = "",
        idempotency_key: Optional[str] = None,
    ) -> TransferResult:
        ...
