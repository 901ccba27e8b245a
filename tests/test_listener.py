"""
Tests for the settlement listener.

Watchers run as real asyncio tasks against the in-memory ledger, so each
test waits on the observable effect with a short deadline.
"""
import asyncio
from datetime import timedelta

import pytest

from forwarding_engine.core.listener import SettlementListener
from forwarding_engine.core.records import utcnow
from forwarding_engine.core.services import ForwardingServices
from forwarding_engine.core.states import EventType, PaymentStatus
from forwarding_engine.integrations.ledger import SettlementEvent

from tests.fakes import FakeLedger, eventually, new_payment


async def _open_pending(services: ForwardingServices, ledger: FakeLedger, **kwargs):
    record = await services.store.create_pending(new_payment(**kwargs))
    services.listener.open(record.payment_hash, record.expires_at)
    await eventually(lambda: len(ledger.open_subscriptions(record.payment_hash)) == 1)
    return record


class TestSettlementDispatch:
    """Test suite for settlement delivery through the stream."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_settlement_triggers_forwarding_and_closes_handle(
        self, services: ForwardingServices, ledger: FakeLedger
    ) -> None:
        record = await _open_pending(services, ledger)

        ledger.settle(record.payment_hash, record.total_amount)
        await eventually(lambda: not services.listener.is_open(record.payment_hash))
        await eventually(lambda: len(ledger.transfers) == 2)

        final = await services.store.get(record.payment_hash)
        assert final.status == PaymentStatus.COMPLETED
        await eventually(lambda: ledger.open_subscriptions(record.payment_hash) == [])

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_duplicate_notification_is_dropped(
        self, services: ForwardingServices, ledger: FakeLedger, mocker
    ) -> None:
        record = await services.store.create_pending(new_payment())
        process = mocker.spy(services.orchestrator, "process")
        event = SettlementEvent(
            notification_id="tx-dup",
            payment_hash=record.payment_hash,
            amount=record.total_amount,
            timestamp=utcnow(),
        )

        first = await services.listener.dispatch(event)
        second = await services.listener.dispatch(event)

        assert first is not None and first.claimed
        assert second is None
        assert process.call_count == 1

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_failed_dispatch_can_be_redelivered(
        self, services: ForwardingServices, mocker
    ) -> None:
        record = await services.store.create_pending(new_payment())
        original = services.orchestrator.process
        failures = [RuntimeError("database unavailable")]

        async def flaky(payment_hash, settlement=None):
            if failures:
                raise failures.pop()
            return await original(payment_hash, settlement=settlement)

        mocker.patch.object(services.orchestrator, "process", side_effect=flaky)
        event = SettlementEvent(
            notification_id="tx-retry",
            payment_hash=record.payment_hash,
            amount=record.total_amount,
            timestamp=utcnow(),
        )

        with pytest.raises(RuntimeError):
            await services.listener.dispatch(event)

        outcome = await services.listener.dispatch(event)
        assert outcome is not None and outcome.claimed

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_settlement_for_other_hash_is_ignored(
        self, services: ForwardingServices, ledger: FakeLedger
    ) -> None:
        record = await _open_pending(services, ledger)
        subscription = ledger.open_subscriptions(record.payment_hash)[0]

        subscription.queue.put_nowait(
            SettlementEvent(
                notification_id="tx-other",
                payment_hash="c" * 64,
                amount=5,
                timestamp=utcnow(),
            )
        )
        await asyncio.sleep(0.05)

        assert services.listener.is_open(record.payment_hash)
        assert ledger.transfer_attempts == []


class TestReconnect:
    """Test suite for transport failures."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_connect_retries_until_ledger_accepts(
        self, services: ForwardingServices, ledger: FakeLedger
    ) -> None:
        ledger.connect_failures = 3
        record = await services.store.create_pending(new_payment())

        services.listener.open(record.payment_hash, record.expires_at)
        await eventually(lambda: len(ledger.open_subscriptions(record.payment_hash)) == 1)

        assert ledger.subscribe_calls == 4
        ledger.settle(record.payment_hash, record.total_amount)
        await eventually(lambda: len(ledger.transfers) == 2)

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_dropped_stream_resubscribes_and_still_forwards(
        self, services: ForwardingServices, ledger: FakeLedger
    ) -> None:
        record = await _open_pending(services, ledger)

        ledger.drop_connections()
        await eventually(lambda: ledger.subscribe_calls == 2)
        await eventually(lambda: len(ledger.open_subscriptions(record.payment_hash)) == 1)

        ledger.settle(record.payment_hash, record.total_amount)
        await eventually(lambda: len(ledger.transfers) == 2)
        assert ledger.received("merchant-wallet") == 100


class TestRegistry:
    """Test suite for handle bookkeeping."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_open_is_reference_counted(
        self, services: ForwardingServices, ledger: FakeLedger
    ) -> None:
        record = await _open_pending(services, ledger)
        listener = services.listener

        listener.open(record.payment_hash, record.expires_at)
        assert listener.handle_for(record.payment_hash).refs == 2
        assert len(ledger.open_subscriptions(record.payment_hash)) == 1

        listener.close(record.payment_hash, force=False)
        assert listener.is_open(record.payment_hash)

        listener.close(record.payment_hash, force=False)
        assert not listener.is_open(record.payment_hash)
        await eventually(lambda: ledger.open_subscriptions(record.payment_hash) == [])

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_expired_invoice_is_not_opened(self, services: ForwardingServices) -> None:
        services.listener.open("d" * 64, utcnow() - timedelta(seconds=1))

        assert services.listener.open_handles == 0

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_handle_released_when_invoice_expires(
        self, services: ForwardingServices, ledger: FakeLedger
    ) -> None:
        services.listener.open("d" * 64, utcnow() + timedelta(milliseconds=100))
        assert services.listener.is_open("d" * 64)

        await eventually(lambda: not services.listener.is_open("d" * 64))
        await eventually(lambda: ledger.open_subscriptions("d" * 64) == [])

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_sync_with_store_opens_pending_and_closes_finished(
        self, services: ForwardingServices, ledger: FakeLedger
    ) -> None:
        store = services.store
        listener = services.listener
        pending = await store.create_pending(new_payment(payment_hash="a" * 64))
        cancelled = await store.create_pending(new_payment(payment_hash="b" * 64))
        listener.open(cancelled.payment_hash, cancelled.expires_at)
        await store.transition(cancelled.payment_hash, PaymentStatus.CANCELLED, EventType.CANCELLED)

        result = await listener.sync_with_store()

        assert result == {"opened": 1, "closed": 1}
        assert listener.is_open(pending.payment_hash)
        assert not listener.is_open(cancelled.payment_hash)

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_shutdown_cancels_every_watcher(
        self, services: ForwardingServices, ledger: FakeLedger
    ) -> None:
        await _open_pending(services, ledger, payment_hash="a" * 64)
        await _open_pending(services, ledger, payment_hash="b" * 64)
        tasks = [services.listener.handle_for(h).task for h in ("a" * 64, "b" * 64)]

        await services.listener.shutdown()

        assert services.listener.open_handles == 0
        assert all(task.done() for task in tasks)
        assert services.listener.describe()["payment_hashes"] == []


    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_sync_with_store_pages_through_every_pending_record(
        self, services: ForwardingServices, test_settings
    ) -> None:
        hashes = [f"{n:x}" * 64 for n in range(1, 6)]
        for payment_hash in hashes:
            await services.store.create_pending(new_payment(payment_hash=payment_hash))
        listener = SettlementListener(
            services.ledger,
            services.orchestrator,
            services.store,
            settings=test_settings.model_copy(update={"sweeper_batch_size": 2}),
        )

        result = await listener.sync_with_store()

        assert result == {"opened": 5, "closed": 0}
        assert listener.describe()["payment_hashes"] == sorted(hashes)
        await listener.shutdown()


class TestForwardingInFlight:
    """Test suite for teardown while a settlement is being forwarded."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_resync_during_transfer_lets_forwarding_finish(
        self, services: ForwardingServices, ledger: FakeLedger
    ) -> None:
        record = await _open_pending(services, ledger)
        ledger.transfer_delay = 0.2

        ledger.settle(record.payment_hash, record.total_amount)
        await eventually(lambda: len(ledger.transfer_attempts) == 1)
        result = await services.listener.sync_with_store()

        assert result["closed"] == 0
        await eventually(lambda: len(ledger.transfers) == 2)
        await eventually(lambda: services.listener.in_flight == 0)
        final = await services.store.get(record.payment_hash, consistent=True)
        assert final.status == PaymentStatus.COMPLETED
        assert not services.listener.is_open(record.payment_hash)

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_redrive_during_transfer_lets_forwarding_finish(
        self, services: ForwardingServices, ledger: FakeLedger
    ) -> None:
        record = await _open_pending(services, ledger)
        ledger.transfer_delay = 0.2

        ledger.settle(record.payment_hash, record.total_amount)
        await eventually(lambda: len(ledger.transfer_attempts) == 1)
        outcome = await services.payments.redrive(record.payment_hash)

        assert outcome.claimed is False
        assert not services.listener.is_open(record.payment_hash)
        await eventually(lambda: len(ledger.transfers) == 2)
        await eventually(lambda: services.listener.in_flight == 0)
        final = await services.store.get(record.payment_hash, consistent=True)
        assert final.status == PaymentStatus.COMPLETED
        assert ledger.received("merchant-wallet") == 100

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_handle_expiry_during_transfer_lets_forwarding_finish(
        self, services: ForwardingServices, ledger: FakeLedger
    ) -> None:
        record = await services.store.create_pending(new_payment())
        services.listener.open(record.payment_hash, utcnow() + timedelta(milliseconds=300))
        await eventually(lambda: len(ledger.open_subscriptions(record.payment_hash)) == 1)
        ledger.transfer_delay = 0.3

        ledger.settle(record.payment_hash, record.total_amount)
        await eventually(lambda: not services.listener.is_open(record.payment_hash))
        await eventually(lambda: len(ledger.transfers) == 2)
        await eventually(lambda: services.listener.in_flight == 0)

        final = await services.store.get(record.payment_hash, consistent=True)
        assert final.status == PaymentStatus.COMPLETED
