"""Domain exceptions for the forwarding engine."""


class ForwardingEngineError(Exception):
    """Base exception for forwarding engine errors."""

    pass


class PaymentValidationError(ForwardingEngineError):
    """Raised when a payment request is malformed; no record is created."""

    pass


class PaymentNotFoundError(ForwardingEngineError):
    """Raised when no payment record exists for a payment hash."""

    pass


class DuplicatePaymentError(ForwardingEngineError):
    """Raised when a payment record already exists for a payment hash."""

    pass


class CancellationRejectedError(ForwardingEngineError):
    """Raised when cancelling a payment that is no longer pending."""

    pass


class InvalidTransitionError(ForwardingEngineError):
    """Raised when a status change is not an edge of the transition graph."""

    pass


class PaymentStoreError(ForwardingEngineError):
    """Raised when the cold store cannot be read or written."""

    pass
