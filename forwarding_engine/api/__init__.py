"""FastAPI application and routes."""
from .main import app
from .schemas import (
    CreatePaymentRequest,
    PaymentEventResponse,
    PaymentResponse,
    RedriveResponse,
)

__all__ = [
    "app",
    "CreatePaymentRequest",
    "PaymentEventResponse",
    "PaymentResponse",
    "RedriveResponse",
]
