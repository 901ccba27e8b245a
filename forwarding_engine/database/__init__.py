"""Database package for the forwarding engine."""
from .connection import close_db, create_session_factory, get_session_factory, init_db
from .models import (
    Base,
    OutboxEvent,
    PaymentEvent,
    PaymentRecord,
    TipRecipient,
)

__all__ = [
    "Base",
    "PaymentRecord",
    "TipRecipient",
    "PaymentEvent",
    "OutboxEvent",
    "create_session_factory",
    "get_session_factory",
    "init_db",
    "close_db",
]
