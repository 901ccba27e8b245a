"""
Forwarding orchestrator.

Turns a settled invoice into transfers out of the funnel account:
1. Claim the record (pending -> processing)
2. Forward the base amount to the merchant
3. Forward each tip leg independently
4. Record the terminal status and completion signal
"""
import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from forwarding_engine.config import Settings, get_settings
from forwarding_engine.core.payment_store import HybridPaymentStore
from forwarding_engine.core.records import PaymentSnapshot, TipLeg
from forwarding_engine.core.states import EventStatus, EventType, PaymentStatus
from forwarding_engine.integrations.ledger import (
    LedgerError,
    LedgerProvider,
    SettlementEvent,
    TransferResult,
    UpstreamUnavailable,
)
from forwarding_engine.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

MERCHANT_LEG = "merchant"


def _is_retryable(error: BaseException) -> bool:
    return isinstance(error, LedgerError) and error.retryable


@dataclass
class LegResult:
    """Final outcome of one transfer leg."""

    leg: str
    destination: str
    amount: int
    status: str  # succeeded, failed, skipped
    attempts: int = 0
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status != "failed"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "leg": self.leg,
            "destination": self.destination,
            "amount": self.amount,
            "status": self.status,
            "attempts": self.attempts,
            "error": self.error,
        }


@dataclass
class ForwardingOutcome:
    """What a call to :meth:`ForwardingOrchestrator.process` did."""

    payment_hash: str
    claimed: bool
    status: Optional[PaymentStatus] = None
    legs: List[LegResult] = field(default_factory=list)

    @property
    def failed_legs(self) -> List[LegResult]:
        return [leg for leg in self.legs if not leg.ok]

    @property
    def forwarded_amount(self) -> int:
        return sum(leg.amount for leg in self.legs if leg.status == "succeeded")


class ForwardingOrchestrator:
    """
    Claims settled payments and forwards them to merchant and tip recipients.

    The claim is the only concurrency guard: any number of listeners, webhooks
    or manual re-drives may call :meth:`process` for the same hash and at most
    one of them moves money.
    """

    def __init__(
        self,
        store: HybridPaymentStore,
        ledger: LedgerProvider,
        settings: Optional[Settings] = None,
    ):
        """
        Initialize orchestrator.

        Args:
            store: Payment store
            ledger: Ledger capability used for transfers
            settings: Optional settings
        """
        self.store = store
        self.ledger = ledger
        self.settings = settings or get_settings()

    @staticmethod
    def merchant_memo(record: PaymentSnapshot) -> str:
        memo = record.memo or "Payment"
        if record.tip_amount > 0:
            return (
                f"{memo} | {record.base_amount} + {record.tip_amount} "
                f"= {record.total_amount} sats"
            )
        return memo

    @staticmethod
    def tip_memo(record: PaymentSnapshot, tip: TipLeg) -> str:
        memo = record.memo or "payment"
        return f"Tip from {memo}: {tip.amount} sats ({tip.share_percent}%)"

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            stop=stop_after_attempt(self.settings.transfer_max_attempts),
            wait=wait_exponential(
                multiplier=self.settings.transfer_retry_base_delay,
                max=self.settings.transfer_retry_max_delay,
            ),
            retry=retry_if_exception(_is_retryable),
            reraise=True,
        )

    async def _attempt_transfer(
        self,
        record: PaymentSnapshot,
        kind: str,
        leg: str,
        destination: str,
        amount: int,
        memo: str,
        attempt: int,
    ) -> TransferResult:
        """
        Run one bounded transfer attempt, recording a leg_failed event on failure.

        Raises:
            LedgerError: If the attempt failed; ``retryable`` decides whether
                another attempt follows
        """
        error: LedgerError
        try:
            result = await asyncio.wait_for(
                self.ledger.transfer(
                    self.settings.funnel_wallet_id,
                    destination,
                    amount,
                    memo=memo,
                    idempotency_key=f"{record.payment_hash}:{leg}",
                ),
                timeout=self.settings.transfer_timeout_seconds,
            )
            if result.success:
                metrics.record_leg_attempt(kind, "success")
                return result
            error = UpstreamUnavailable(f"Transfer not completed, status {result.status}")
        except asyncio.TimeoutError as e:
            error = UpstreamUnavailable(
                f"Transfer timed out after {self.settings.transfer_timeout_seconds}s", e
            )
        except LedgerError as e:
            error = e

        metrics.record_leg_attempt(kind, "error")
        logger.warning(
            "forwarding_leg_attempt_failed",
            payment_hash=record.payment_hash,
            leg=leg,
            attempt=attempt,
            error=str(error),
            error_type=error.error_type.value,
        )
        await self.store.record_event(
            record.payment_hash,
            EventType.LEG_FAILED,
            EventStatus.ERROR,
            {
                "leg": leg,
                "destination": destination,
                "amount": amount,
                "attempt": attempt,
                "error": str(error),
                "error_type": error.error_type.value,
            },
        )
        raise error

    async def _forward_leg(
        self,
        record: PaymentSnapshot,
        kind: str,
        leg: str,
        destination: str,
        amount: int,
        memo: str,
    ) -> LegResult:
        """
        Forward one leg with its own retry budget.

        Args:
            record: Claimed payment
            kind: merchant or tip
            leg: Leg name (``merchant`` or ``tip:<position>``)
            destination: Recipient account
            amount: Amount in sats
            memo: Transfer memo

        Returns:
            LegResult: Final leg outcome
        """
        if amount <= 0:
            await self.store.record_event(
                record.payment_hash,
                EventType.LEG_SKIPPED,
                EventStatus.SUCCESS,
                {"leg": leg, "destination": destination, "amount": amount},
            )
            metrics.record_leg(kind, "skipped")
            return LegResult(leg=leg, destination=destination, amount=amount, status="skipped")

        attempts = 0
        try:
            async for attempt in self._retrying():
                with attempt:
                    attempts = attempt.retry_state.attempt_number
                    result = await self._attempt_transfer(
                        record, kind, leg, destination, amount, memo, attempts
                    )
        except LedgerError as e:
            metrics.record_leg(kind, "failed")
            logger.error(
                "forwarding_leg_failed",
                payment_hash=record.payment_hash,
                leg=leg,
                attempts=attempts,
                error=str(e),
            )
            return LegResult(
                leg=leg,
                destination=destination,
                amount=amount,
                status="failed",
                attempts=attempts,
                error=str(e),
            )

        await self.store.record_event(
            record.payment_hash,
            EventType.LEG_SUCCEEDED,
            EventStatus.SUCCESS,
            {
                "leg": leg,
                "destination": destination,
                "amount": amount,
                "attempt": attempts,
                "transfer_id": result.transfer_id,
            },
        )
        metrics.record_leg(kind, "succeeded")
        logger.info(
            "forwarding_leg_succeeded",
            payment_hash=record.payment_hash,
            leg=leg,
            amount=amount,
            attempts=attempts,
        )
        return LegResult(
            leg=leg, destination=destination, amount=amount, status="succeeded", attempts=attempts
        )

    async def _finish(
        self,
        outcome: ForwardingOutcome,
        status: PaymentStatus,
        event_type: EventType,
        event_status: EventStatus,
        payload: Dict[str, Any],
    ) -> ForwardingOutcome:
        applied = await self.store.transition(
            outcome.payment_hash,
            status,
            event_type,
            event_status,
            payload,
            from_statuses=[PaymentStatus.PROCESSING],
        )
        if not applied:
            logger.warning(
                "forwarding_finalize_skipped",
                payment_hash=outcome.payment_hash,
                status=status.value,
            )
        outcome.status = status
        return outcome

    async def process(
        self,
        payment_hash: str,
        settlement: Optional[SettlementEvent] = None,
    ) -> ForwardingOutcome:
        """
        Claim and forward a settled payment.

        Safe to call any number of times for the same hash; only the caller
        that wins the claim performs transfers.

        Args:
            payment_hash: Payment hash of the settled invoice
            settlement: Settlement notification that triggered processing

        Returns:
            ForwardingOutcome: Claim flag, final status and per-leg results

        Raises:
            PaymentStoreError: If the cold store fails
        """
        claim = await self.store.claim_for_processing(payment_hash, settlement=settlement)
        if not claim.claimed:
            logger.info(
                "forwarding_claim_rejected",
                payment_hash=payment_hash,
                outcome=claim.outcome.value,
            )
            return ForwardingOutcome(
                payment_hash=payment_hash,
                claimed=False,
                status=claim.record.status if claim.record else None,
            )

        record = claim.record or await self.store.get(payment_hash, consistent=True)
        outcome = ForwardingOutcome(payment_hash=payment_hash, claimed=True)
        start_time = time.monotonic()

        logger.info(
            "forwarding_started",
            payment_hash=payment_hash,
            base_amount=record.base_amount,
            tip_amount=record.tip_amount,
            tip_legs=len(record.tip_recipients),
        )

        legs_total = record.base_amount + sum(tip.amount for tip in record.tip_recipients)
        if legs_total != record.total_amount:
            logger.error(
                "forwarding_amount_mismatch",
                payment_hash=payment_hash,
                total_amount=record.total_amount,
                legs_total=legs_total,
            )
            return await self._finish(
                outcome,
                PaymentStatus.FAILED,
                EventType.FAILED,
                EventStatus.ERROR,
                {
                    "reason": "amount_mismatch",
                    "total_amount": record.total_amount,
                    "legs_total": legs_total,
                },
            )

        merchant = await self._forward_leg(
            record,
            "merchant",
            MERCHANT_LEG,
            record.merchant_account_ref,
            record.base_amount,
            self.merchant_memo(record),
        )
        outcome.legs.append(merchant)

        if not merchant.ok:
            await self._finish(
                outcome,
                PaymentStatus.FAILED,
                EventType.FAILED,
                EventStatus.ERROR,
                {
                    "reason": "merchant_leg_failed",
                    "attempts": merchant.attempts,
                    "error": merchant.error,
                    "tips_attempted": False,
                },
            )
            metrics.record_forwarding_duration(time.monotonic() - start_time)
            return outcome

        for tip in record.tip_recipients:
            outcome.legs.append(
                await self._forward_leg(
                    record,
                    "tip",
                    tip.leg_name,
                    tip.destination,
                    tip.amount,
                    self.tip_memo(record, tip),
                )
            )

        failed = outcome.failed_legs
        if failed:
            await self._finish(
                outcome,
                PaymentStatus.COMPLETED_WITH_EXCEPTIONS,
                EventType.COMPLETED_WITH_EXCEPTIONS,
                EventStatus.ERROR,
                {
                    "forwarded_amount": outcome.forwarded_amount,
                    "failed_legs": [leg.to_dict() for leg in failed],
                },
            )
        else:
            await self._finish(
                outcome,
                PaymentStatus.COMPLETED,
                EventType.COMPLETED,
                EventStatus.SUCCESS,
                {"forwarded_amount": outcome.forwarded_amount, "legs": len(outcome.legs)},
            )

        metrics.record_forwarding_duration(time.monotonic() - start_time)
        logger.info(
            "forwarding_finished",
            payment_hash=payment_hash,
            status=outcome.status.value,
            failed_legs=len(failed),
        )
        return outcome
