"""
Real-time settlement listener.

Holds one explicit subscription handle per pending invoice in a registry keyed
by payment hash. Each handle runs a watcher task that stays subscribed to the
ledger's settlement feed until the invoice is paid, cancelled or expires, and
reconnects with jittered backoff whenever the transport drops.
"""
import asyncio
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime
from typing import Any, AsyncIterator, Dict, Optional, Set

import structlog
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception_type, wait_random_exponential

from forwarding_engine.config import Settings, get_settings
from forwarding_engine.core.forwarding import ForwardingOrchestrator, ForwardingOutcome
from forwarding_engine.core.payment_store import HybridPaymentStore
from forwarding_engine.core.records import PaymentSnapshot, utcnow
from forwarding_engine.core.states import PaymentStatus
from forwarding_engine.integrations.ledger import (
    LedgerProvider,
    SettlementEvent,
    SettlementFilter,
    SettlementSubscription,
    UpstreamUnavailable,
)
from forwarding_engine.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


@dataclass
class SubscriptionHandle:
    """Registry entry for one invoice's settlement subscription."""

    payment_hash: str
    expires_at: datetime
    refs: int = 1
    closed: bool = False
    task: Optional["asyncio.Task[None]"] = None


class SettlementListener:
    """
    Lazily subscribes to settlements for pending invoices and dispatches them.

    The listener never decides idempotency: every fresh notification goes to
    the orchestrator, whose claim arbitrates duplicates across listeners,
    webhooks and manual re-drives.
    """

    def __init__(
        self,
        ledger: LedgerProvider,
        orchestrator: ForwardingOrchestrator,
        store: HybridPaymentStore,
        settings: Optional[Settings] = None,
    ):
        """
        Initialize listener.

        Args:
            ledger: Ledger capability providing settlement subscriptions
            orchestrator: Orchestrator that claims and forwards settled payments
            store: Payment store, used to resync the registry
            settings: Optional settings
        """
        self.ledger = ledger
        self.orchestrator = orchestrator
        self.store = store
        self.settings = settings or get_settings()
        self._handles: Dict[str, SubscriptionHandle] = {}
        self._seen: "OrderedDict[str, None]" = OrderedDict()
        self._inflight: "Set[asyncio.Task[Optional[ForwardingOutcome]]]" = set()

    @property
    def open_handles(self) -> int:
        return len(self._handles)

    def is_open(self, payment_hash: str) -> bool:
        return payment_hash in self._handles

    def handle_for(self, payment_hash: str) -> Optional[SubscriptionHandle]:
        return self._handles.get(payment_hash)

    @property
    def in_flight(self) -> int:
        return len(self._inflight)

    # ------------------------------------------------------------------
    # Registry
    # ------------------------------------------------------------------

    def open(self, payment_hash: str, expires_at: datetime) -> None:
        """
        Start listening for a payment hash, or add a reference to an open handle.

        Args:
            payment_hash: Invoice payment hash
            expires_at: Invoice expiry; bounds the watcher's lifetime
        """
        handle = self._handles.get(payment_hash)
        if handle is not None and not handle.closed:
            handle.refs += 1
            return

        ttl = (expires_at - utcnow()).total_seconds()
        if ttl <= 0:
            logger.info("listener_open_skipped_expired", payment_hash=payment_hash)
            return

        handle = SubscriptionHandle(payment_hash=payment_hash, expires_at=expires_at)
        handle.task = asyncio.create_task(
            self._watch(handle, ttl), name=f"settlement-listener:{payment_hash}"
        )
        self._handles[payment_hash] = handle
        metrics.set_listener_handles(len(self._handles))
        logger.info("listener_opened", payment_hash=payment_hash, ttl_seconds=int(ttl))

    def close(self, payment_hash: str, force: bool = True) -> None:
        """
        Release a handle.

        Args:
            payment_hash: Invoice payment hash
            force: Tear down regardless of outstanding references; otherwise
                drop one reference and tear down when none remain
        """
        handle = self._handles.get(payment_hash)
        if handle is None:
            return

        handle.refs -= 1
        if handle.refs > 0 and not force:
            return

        handle.closed = True
        del self._handles[payment_hash]
        metrics.set_listener_handles(len(self._handles))

        # A watcher closing its own handle finishes on its own.
        if handle.task is not None and handle.task is not asyncio.current_task():
            handle.task.cancel()

        logger.info("listener_closed", payment_hash=payment_hash)

    def _release(self, handle: SubscriptionHandle) -> None:
        handle.closed = True
        if self._handles.get(handle.payment_hash) is handle:
            del self._handles[handle.payment_hash]
            metrics.set_listener_handles(len(self._handles))

    async def sync_with_store(self) -> Dict[str, int]:
        """
        Reconcile the registry with the store.

        Opens handles for every pending, unexpired record not yet registered
        and closes handles whose record is gone, expired or terminal. Records
        in processing keep their handle; the dispatch that claimed them closes
        it when forwarding ends.

        Returns:
            Dict[str, int]: Number of handles opened and closed
        """
        now = utcnow()
        pending_hashes: Set[str] = set()
        opened = 0
        async for record in self._iter_pending(now):
            pending_hashes.add(record.payment_hash)
            if record.payment_hash not in self._handles:
                self.open(record.payment_hash, record.expires_at)
                opened += 1

        closed = 0
        for payment_hash in list(self._handles):
            if payment_hash in pending_hashes:
                continue
            record = await self.store.get(payment_hash, consistent=True)
            if (
                record is None
                or record.status.is_terminal
                or (record.status == PaymentStatus.PENDING and record.is_expired(now))
            ):
                self.close(payment_hash)
                closed += 1

        logger.info("listener_synced", opened=opened, closed=closed, open_handles=self.open_handles)
        return {"opened": opened, "closed": closed}

    async def _iter_pending(self, now: datetime) -> AsyncIterator[PaymentSnapshot]:
        """Page through every payable pending record."""
        page_size = self.settings.sweeper_batch_size
        after: Optional[str] = None
        while True:
            page = await self.store.list_pending(now, limit=page_size, after=after)
            for record in page:
                yield record
            if len(page) < page_size:
                return
            after = page[-1].payment_hash

    async def shutdown(self) -> None:
        """Cancel every watcher, empty the registry and let in-flight forwarding finish."""
        handles = list(self._handles.values())
        self._handles.clear()
        tasks = []
        for handle in handles:
            handle.closed = True
            if handle.task is not None:
                handle.task.cancel()
                tasks.append(handle.task)
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        if self._inflight:
            await asyncio.gather(*self._inflight, return_exceptions=True)
        metrics.set_listener_handles(0)
        logger.info("listener_shutdown", cancelled=len(tasks))

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def _remember(self, notification_id: str) -> None:
        self._seen[notification_id] = None
        while len(self._seen) > self.settings.listener_dedup_window:
            self._seen.popitem(last=False)

    def _start_dispatch(self, event: SettlementEvent) -> "asyncio.Task[Optional[ForwardingOutcome]]":
        """
        Run a dispatch in its own task.

        Closing or expiring the watcher that received the settlement cancels
        the watcher only; a claimed payment always runs to a terminal status.
        """
        task = asyncio.create_task(
            self.dispatch(event), name=f"settlement-dispatch:{event.payment_hash}"
        )
        self._inflight.add(task)
        task.add_done_callback(self._dispatch_done)
        return task

    def _dispatch_done(self, task: "asyncio.Task[Optional[ForwardingOutcome]]") -> None:
        self._inflight.discard(task)
        # dispatch already logged the failure; mark it retrieved
        if not task.cancelled():
            task.exception()

    async def dispatch(self, event: SettlementEvent) -> Optional[ForwardingOutcome]:
        """
        Hand a settlement notification to the orchestrator.

        Args:
            event: Settlement notification from a stream, poll or webhook

        Returns:
            Optional[ForwardingOutcome]: None if the notification was a duplicate

        Raises:
            Exception: Whatever the orchestrator raised; the notification is
                forgotten so a redelivery can retry
        """
        if event.notification_id in self._seen:
            metrics.record_notification(event.source, "duplicate")
            logger.info(
                "settlement_duplicate_dropped",
                payment_hash=event.payment_hash,
                notification_id=event.notification_id,
            )
            return None

        self._remember(event.notification_id)
        logger.info(
            "settlement_received",
            payment_hash=event.payment_hash,
            notification_id=event.notification_id,
            amount=event.amount,
            source=event.source,
        )

        try:
            outcome = await self.orchestrator.process(event.payment_hash, settlement=event)
        except Exception as e:
            self._seen.pop(event.notification_id, None)
            metrics.record_notification(event.source, "failed")
            logger.error(
                "settlement_dispatch_failed",
                payment_hash=event.payment_hash,
                notification_id=event.notification_id,
                error=str(e),
            )
            raise

        metrics.record_notification(event.source, "dispatched")
        self.close(event.payment_hash)
        return outcome

    # ------------------------------------------------------------------
    # Watchers
    # ------------------------------------------------------------------

    @staticmethod
    def _log_reconnect(retry_state: RetryCallState) -> None:
        metrics.record_listener_reconnect()
        error = retry_state.outcome.exception() if retry_state.outcome else None
        logger.warning(
            "listener_reconnecting",
            attempt=retry_state.attempt_number,
            wait_seconds=round(retry_state.next_action.sleep, 3) if retry_state.next_action else None,
            error=str(error),
        )

    async def _connect(self, handle: SubscriptionHandle) -> SettlementSubscription:
        """
        Subscribe for a handle's payment hash, retrying transport failures forever.

        A fresh retry controller per call resets the backoff after every
        successful connect.
        """
        settlement_filter = SettlementFilter(payment_hashes=frozenset({handle.payment_hash}))
        async for attempt in AsyncRetrying(
            retry=retry_if_exception_type(UpstreamUnavailable),
            wait=wait_random_exponential(
                multiplier=self.settings.listener_backoff_base,
                max=self.settings.listener_backoff_max,
            ),
            before_sleep=self._log_reconnect,
        ):
            with attempt:
                subscription = await self.ledger.subscribe_settlements(settlement_filter)
        return subscription

    async def _consume(self, handle: SubscriptionHandle) -> None:
        while not handle.closed:
            subscription = await self._connect(handle)
            try:
                async for event in subscription:
                    if event.payment_hash != handle.payment_hash:
                        continue
                    await asyncio.shield(self._start_dispatch(event))
                    if handle.closed:
                        return
            except UpstreamUnavailable as e:
                logger.warning(
                    "listener_stream_interrupted",
                    payment_hash=handle.payment_hash,
                    error=str(e),
                )
            except Exception as e:
                # Dispatch failures are retried by re-subscribing, which replays
                # settlements the feed still holds.
                logger.error(
                    "listener_dispatch_error",
                    payment_hash=handle.payment_hash,
                    error=str(e),
                )
            finally:
                await subscription.close()

            if handle.closed:
                return
            metrics.record_listener_reconnect()
            await asyncio.sleep(self.settings.listener_backoff_base)

    async def _watch(self, handle: SubscriptionHandle, ttl: float) -> None:
        try:
            await asyncio.wait_for(self._consume(handle), timeout=ttl)
        except asyncio.TimeoutError:
            logger.info("listener_handle_expired", payment_hash=handle.payment_hash)
        except Exception as e:
            logger.error(
                "listener_watch_failed",
                payment_hash=handle.payment_hash,
                error=str(e),
                exc_info=True,
            )
        finally:
            self._release(handle)

    def describe(self) -> Dict[str, Any]:
        """Registry summary for diagnostics."""
        return {
            "open_handles": self.open_handles,
            "dedup_window": len(self._seen),
            "payment_hashes": sorted(self._handles),
        }
