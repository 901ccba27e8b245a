"""External ledger integrations."""
from .blink_client import BlinkClient, CircuitBreaker
from .ledger import (
    Invoice,
    LedgerError,
    LedgerErrorType,
    LedgerProvider,
    SettlementEvent,
    SettlementFilter,
    TransferResult,
    UpstreamUnavailable,
)
from .webhook_handler import WebhookError, WebhookHandler

__all__ = [
    "BlinkClient",
    "CircuitBreaker",
    "Invoice",
    "LedgerError",
    "LedgerErrorType",
    "LedgerProvider",
    "SettlementEvent",
    "SettlementFilter",
    "TransferResult",
    "UpstreamUnavailable",
    "WebhookError",
    "WebhookHandler",
]
