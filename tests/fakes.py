"""
In-memory ledger provider and record builders for tests.
"""
import asyncio
import itertools
from datetime import timedelta
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from forwarding_engine.core.records import NewPayment, utcnow
from forwarding_engine.core.split import split_tip
from forwarding_engine.integrations.ledger import (
    Invoice,
    LedgerError,
    SettlementEvent,
    SettlementFilter,
    TransferResult,
    UpstreamUnavailable,
)

_END = object()


class FakeSubscription:
    """Queue-backed settlement feed."""

    def __init__(self, settlement_filter: SettlementFilter):
        self.filter = settlement_filter
        self.queue: "asyncio.Queue[Any]" = asyncio.Queue()
        self.closed = False

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        while not self.closed:
            item = await self.queue.get()
            if item is _END:
                return
            if isinstance(item, Exception):
                raise item
            yield item

    async def close(self) -> None:
        if not self.closed:
            self.closed = True
            self.queue.put_nowait(_END)


class FakeLedger:
    """Ledger provider with failure injection."""

    def __init__(self, funnel_account: str = "funnel-wallet"):
        self.funnel_account = funnel_account
        self.invoices: List[Invoice] = []
        self.transfers: List[Dict[str, Any]] = []
        self.transfer_attempts: List[Dict[str, Any]] = []
        self.subscriptions: List[FakeSubscription] = []
        self.subscribe_calls = 0
        self.connect_failures = 0
        self.invoice_error: Optional[Exception] = None
        self.transfer_delay = 0.0
        self._transfer_failures: Dict[str, List[Any]] = {}
        self._counter = itertools.count(1)

    async def create_invoice(self, amount: int, memo: str) -> Invoice:
        if self.invoice_error is not None:
            raise self.invoice_error
        n = next(self._counter)
        invoice = Invoice(
            invoice_ref=f"lnbc{amount}n1fake{n:04d}",
            payment_hash=f"{n:064x}",
            expires_at=utcnow() + timedelta(minutes=15),
        )
        self.invoices.append(invoice)
        return invoice

    async def subscribe_settlements(self, settlement_filter: SettlementFilter) -> FakeSubscription:
        self.subscribe_calls += 1
        if self.connect_failures > 0:
            self.connect_failures -= 1
            raise UpstreamUnavailable("connection refused")
        subscription = FakeSubscription(settlement_filter)
        self.subscriptions.append(subscription)
        return subscription

    def open_subscriptions(self, payment_hash: Optional[str] = None) -> List[FakeSubscription]:
        return [
            s
            for s in self.subscriptions
            if not s.closed and (payment_hash is None or s.filter.matches(payment_hash))
        ]

    def settle(
        self, payment_hash: str, amount: int, notification_id: Optional[str] = None
    ) -> SettlementEvent:
        """Deliver a settlement to every open subscription interested in it."""
        event = SettlementEvent(
            notification_id=notification_id or f"tx-{payment_hash[-8:]}",
            payment_hash=payment_hash,
            amount=amount,
            timestamp=utcnow(),
        )
        for subscription in self.open_subscriptions(payment_hash):
            subscription.queue.put_nowait(event)
        return event

    def drop_connections(self) -> None:
        """Break every open stream with a transport error."""
        for subscription in self.open_subscriptions():
            subscription.queue.put_nowait(UpstreamUnavailable("stream reset"))

    def fail_transfers(
        self, destination: str, times: Optional[int] = None, error: Optional[LedgerError] = None
    ) -> None:
        """Fail transfers to a destination ``times`` times (forever if None)."""
        self._transfer_failures[destination] = [
            times if times is not None else float("inf"),
            error or UpstreamUnavailable("ledger timeout"),
        ]

    async def transfer(
        self,
        from_account: str,
        to_account: str,
        amount: int,
        memo: str = "",
        idempotency_key: Optional[str] = None,
    ) -> TransferResult:
        attempt = {
            "from_account": from_account,
            "to_account": to_account,
            "amount": amount,
            "memo": memo,
            "idempotency_key": idempotency_key,
        }
        self.transfer_attempts.append(attempt)
        if self.transfer_delay:
            await asyncio.sleep(self.transfer_delay)

        failure = self._transfer_failures.get(to_account)
        if failure is not None and failure[0] > 0:
            failure[0] -= 1
            raise failure[1]

        self.transfers.append(attempt)
        return TransferResult(success=True, transfer_id=f"tr-{len(self.transfers)}")

    def received(self, destination: str) -> int:
        return sum(t["amount"] for t in self.transfers if t["to_account"] == destination)


async def eventually(condition: Callable[[], bool], timeout: float = 3.0) -> None:
    """Poll a condition until it holds or fail after ``timeout`` seconds."""
    deadline = asyncio.get_running_loop().time() + timeout
    while not condition():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.01)


def new_payment(
    payment_hash: str = "a" * 64,
    base_amount: int = 100,
    tip_amount: int = 10,
    recipients: Sequence[Tuple[str, Optional[int]]] = (("tip-wallet-1", None),),
    merchant_account_ref: str = "merchant-wallet",
    expires_in: int = 900,
    memo: Optional[str] = "Coffee",
) -> NewPayment:
    """Build a pending payment with a valid split."""
    return NewPayment(
        payment_hash=payment_hash,
        invoice_ref=f"lnbc{base_amount + tip_amount}n1{payment_hash[:8]}",
        total_amount=base_amount + tip_amount,
        base_amount=base_amount,
        tip_amount=tip_amount,
        merchant_account_ref=merchant_account_ref,
        tip_recipients=split_tip(tip_amount, list(recipients)) if recipients else [],
        memo=memo,
        expires_at=utcnow() + timedelta(seconds=expires_in),
    )
