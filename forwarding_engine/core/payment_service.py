"""
Caller-facing payment service.

Creates pending payments (invoice + record + listener handle), reads status and
the audit trail, cancels unpaid invoices and lets operators re-drive a payment
through the orchestrator.
"""
import re
from datetime import timedelta
from typing import Any, Dict, List, Optional, Sequence, Tuple

import structlog

from forwarding_engine.config import Settings, get_settings
from forwarding_engine.core.errors import (
    CancellationRejectedError,
    PaymentNotFoundError,
    PaymentValidationError,
)
from forwarding_engine.core.forwarding import ForwardingOrchestrator, ForwardingOutcome
from forwarding_engine.core.listener import SettlementListener
from forwarding_engine.core.payment_store import HybridPaymentStore
from forwarding_engine.core.records import EventSnapshot, NewPayment, PaymentSnapshot, utcnow
from forwarding_engine.core.split import compute_tip_amount, split_tip
from forwarding_engine.core.states import EventStatus, EventType, PaymentStatus
from forwarding_engine.integrations.ledger import LedgerProvider, SettlementEvent
from forwarding_engine.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

MAX_MEMO_LENGTH = 500
CURRENCY_PATTERN = re.compile(r"^[A-Z]{3,5}$")


class PaymentService:
    """
    Facade over store, ledger, listener and orchestrator.

    Handles the complete pending-payment lifecycle on the caller side;
    settlement and forwarding happen in the listener and orchestrator.
    """

    def __init__(
        self,
        store: HybridPaymentStore,
        ledger: LedgerProvider,
        listener: SettlementListener,
        orchestrator: ForwardingOrchestrator,
        settings: Optional[Settings] = None,
    ):
        """
        Initialize payment service.

        Args:
            store: Payment store
            ledger: Ledger capability used to issue invoices
            listener: Settlement listener
            orchestrator: Forwarding orchestrator
            settings: Optional settings
        """
        self.store = store
        self.ledger = ledger
        self.listener = listener
        self.orchestrator = orchestrator
        self.settings = settings or get_settings()
        logger.info("payment_service_initialized")

    def _validate_payment_request(
        self,
        merchant_account_ref: str,
        base_amount: int,
        tip_amount: int,
        tip_recipients: Sequence[Tuple[str, Optional[int]]],
        display_currency: str,
        memo: Optional[str],
    ) -> None:
        """
        Validate payment request parameters.

        Raises:
            PaymentValidationError: If validation fails
        """
        if not merchant_account_ref or not merchant_account_ref.strip():
            raise PaymentValidationError("Merchant account is required")

        if base_amount <= 0:
            raise PaymentValidationError("Base amount must be positive")

        if tip_amount < 0:
            raise PaymentValidationError("Tip amount cannot be negative")

        if base_amount + tip_amount > self.settings.max_payment_amount:
            raise PaymentValidationError(
                f"Total amount exceeds maximum of {self.settings.max_payment_amount} sats"
            )

        if len(tip_recipients) > self.settings.max_tip_recipients:
            raise PaymentValidationError(
                f"At most {self.settings.max_tip_recipients} tip recipients are allowed"
            )

        destinations = [destination for destination, _ in tip_recipients]
        if any(not destination or not destination.strip() for destination in destinations):
            raise PaymentValidationError("Tip recipient destination is required")
        if len(set(destinations)) != len(destinations):
            raise PaymentValidationError("Tip recipients must be unique")

        if tip_amount > 0 and not tip_recipients:
            raise PaymentValidationError("A tip requires at least one recipient")

        if memo is not None and len(memo) > MAX_MEMO_LENGTH:
            raise PaymentValidationError(f"Memo must be at most {MAX_MEMO_LENGTH} characters")

        if not CURRENCY_PATTERN.match(display_currency):
            raise PaymentValidationError("Display currency must be 3-5 uppercase letters")

    async def create_pending_payment(
        self,
        merchant_account_ref: str,
        base_amount: int,
        tip_amount: Optional[int] = None,
        tip_percent: Optional[int] = None,
        tip_recipients: Optional[Sequence[Tuple[str, Optional[int]]]] = None,
        display_currency: str = "BTC",
        memo: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> PaymentSnapshot:
        """
        Issue an invoice for base + tip and persist a pending record for it.

        Args:
            merchant_account_ref: Merchant wallet receiving the base amount
            base_amount: Base amount in sats
            tip_amount: Explicit tip in sats
            tip_percent: Tip as a whole percentage of the base (ignored if tip_amount is given)
            tip_recipients: Ordered (destination, share_percent) pairs
            display_currency: Currency the amounts were displayed in
            memo: Payer-facing memo
            metadata: Free-form caller metadata

        Returns:
            PaymentSnapshot: The pending record, including invoice and split

        Raises:
            PaymentValidationError: If the request is invalid
            UpstreamUnavailable: If the ledger cannot issue an invoice
            LedgerError: If the ledger rejects the invoice
        """
        recipients = list(tip_recipients or [])
        if tip_amount is None:
            tip_amount = compute_tip_amount(base_amount, tip_percent) if tip_percent else 0

        self._validate_payment_request(
            merchant_account_ref, base_amount, tip_amount, recipients, display_currency, memo
        )

        legs = split_tip(tip_amount, recipients)
        total_amount = base_amount + tip_amount
        invoice_memo = memo or f"Payment {base_amount} + {tip_amount} sats"

        logger.info(
            "creating_pending_payment",
            merchant_account_ref=merchant_account_ref,
            total_amount=total_amount,
            tip_amount=tip_amount,
            tip_recipients=len(legs),
        )

        invoice = await self.ledger.create_invoice(total_amount, invoice_memo)

        expires_at = invoice.expires_at or utcnow() + timedelta(
            seconds=self.settings.invoice_expiry_seconds
        )
        record = await self.store.create_pending(
            NewPayment(
                payment_hash=invoice.payment_hash,
                invoice_ref=invoice.invoice_ref,
                total_amount=total_amount,
                base_amount=base_amount,
                tip_amount=tip_amount,
                merchant_account_ref=merchant_account_ref,
                tip_recipients=legs,
                display_currency=display_currency,
                memo=memo,
                metadata=metadata or {},
                expires_at=expires_at,
            )
        )

        self.listener.open(record.payment_hash, record.expires_at)
        metrics.record_payment_created(display_currency, total_amount)

        logger.info(
            "pending_payment_created",
            payment_hash=record.payment_hash,
            total_amount=total_amount,
            expires_at=record.expires_at.isoformat(),
        )
        return record

    async def get_payment_status(self, payment_hash: str) -> PaymentSnapshot:
        """
        Get payment record by hash.

        Raises:
            PaymentNotFoundError: If no record exists
        """
        record = await self.store.get(payment_hash)
        if record is None:
            raise PaymentNotFoundError(f"Payment {payment_hash} not found")
        return record

    async def list_events(self, payment_hash: str) -> List[EventSnapshot]:
        """
        Get the audit trail for a payment.

        Raises:
            PaymentNotFoundError: If no record exists
        """
        events = await self.store.list_events(payment_hash)
        if not events and await self.store.get(payment_hash, consistent=True) is None:
            raise PaymentNotFoundError(f"Payment {payment_hash} not found")
        return events

    async def cancel_payment(self, payment_hash: str, reason: Optional[str] = None) -> PaymentSnapshot:
        """
        Cancel an unpaid invoice.

        Args:
            payment_hash: Payment hash
            reason: Optional cancellation reason recorded on the event

        Returns:
            PaymentSnapshot: The cancelled record

        Raises:
            PaymentNotFoundError: If no record exists
            CancellationRejectedError: If the record is no longer pending
        """
        applied = await self.store.transition(
            payment_hash,
            PaymentStatus.CANCELLED,
            EventType.CANCELLED,
            EventStatus.SUCCESS,
            {"reason": reason} if reason else {},
            from_statuses=[PaymentStatus.PENDING],
        )
        record = await self.store.get(payment_hash, consistent=True)
        if record is None:
            raise PaymentNotFoundError(f"Payment {payment_hash} not found")
        if not applied:
            raise CancellationRejectedError(
                f"Payment {payment_hash} is {record.status.value} and can no longer be cancelled"
            )

        self.listener.close(payment_hash)
        logger.info("payment_cancelled", payment_hash=payment_hash, reason=reason)
        return record

    async def redrive(self, payment_hash: str) -> ForwardingOutcome:
        """
        Manually push a settled payment through the orchestrator.

        The caller asserts the invoice was paid. The claim still arbitrates, so
        a record already processing or finished is left untouched.

        Raises:
            PaymentNotFoundError: If no record exists
        """
        record = await self.store.get(payment_hash, consistent=True)
        if record is None:
            raise PaymentNotFoundError(f"Payment {payment_hash} not found")

        logger.info("payment_redrive_requested", payment_hash=payment_hash, status=record.status.value)
        outcome = await self.orchestrator.process(
            payment_hash,
            settlement=SettlementEvent(
                notification_id=f"{payment_hash}:redrive",
                payment_hash=payment_hash,
                amount=record.total_amount,
                timestamp=utcnow(),
                source="manual",
            ),
        )
        self.listener.close(payment_hash)
        return outcome

    async def get_stats(self, hours: int = 24) -> Dict[str, Any]:
        """
        Aggregate statistics for payments created in the last ``hours``.

        Raises:
            PaymentValidationError: If hours is not positive
        """
        if hours <= 0:
            raise PaymentValidationError("hours must be positive")
        stats = await self.store.get_stats(utcnow() - timedelta(hours=hours))
        stats["hours"] = hours
        stats["open_listener_handles"] = self.listener.open_handles
        return stats
