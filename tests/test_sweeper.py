"""
Tests for the expiry sweeper.
"""
from datetime import timedelta

import pytest

from forwarding_engine.core.payment_store import HybridPaymentStore
from forwarding_engine.core.records import utcnow
from forwarding_engine.core.services import ForwardingServices
from forwarding_engine.core.states import EventType, PaymentStatus
from forwarding_engine.core.sweeper import ExpirySweeper

from tests.fakes import FakeLedger, new_payment


@pytest.fixture
def sweeper(store: HybridPaymentStore, test_settings) -> ExpirySweeper:
    return ExpirySweeper(store, settings=test_settings)


class TestExpiry:
    """Test suite for expiring stale invoices."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_expired_pending_record_expires_exactly_once(
        self, store: HybridPaymentStore, sweeper: ExpirySweeper
    ) -> None:
        record = await store.create_pending(new_payment(expires_in=60))
        later = utcnow() + timedelta(minutes=5)

        first = await sweeper.run_once(now=later)
        second = await sweeper.run_once(now=later + timedelta(minutes=1))

        assert first.expired == [record.payment_hash]
        assert second.expired == []

        final = await store.get(record.payment_hash)
        assert final.status == PaymentStatus.EXPIRED
        events = await store.list_events(record.payment_hash)
        assert [e.event_type for e in events].count(EventType.EXPIRED) == 1

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_unexpired_record_is_left_pending(
        self, store: HybridPaymentStore, sweeper: ExpirySweeper
    ) -> None:
        record = await store.create_pending(new_payment(expires_in=900))

        report = await sweeper.run_once()

        assert report.expired == []
        assert (await store.get(record.payment_hash)).status == PaymentStatus.PENDING

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_claimed_record_is_never_expired(
        self, store: HybridPaymentStore, sweeper: ExpirySweeper
    ) -> None:
        record = await store.create_pending(new_payment(expires_in=60))
        await store.claim_for_processing(record.payment_hash)

        report = await sweeper.run_once(now=utcnow() + timedelta(minutes=5))

        assert report.expired == []
        final = await store.get(record.payment_hash)
        assert final.status == PaymentStatus.PROCESSING

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_expiry_closes_listener_handle(
        self, services: ForwardingServices, ledger: FakeLedger
    ) -> None:
        record = await services.store.create_pending(new_payment(expires_in=60))
        services.listener.open(record.payment_hash, record.expires_at)

        report = await services.sweeper.run_once(now=utcnow() + timedelta(minutes=5))

        assert report.expired == [record.payment_hash]
        assert not services.listener.is_open(record.payment_hash)


class TestReporting:
    """Test suite for unresolved payment reporting."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_reports_old_exceptions(
        self, store: HybridPaymentStore, sweeper: ExpirySweeper
    ) -> None:
        record = await store.create_pending(new_payment())
        await store.claim_for_processing(record.payment_hash)
        await store.transition(
            record.payment_hash,
            PaymentStatus.COMPLETED_WITH_EXCEPTIONS,
            EventType.COMPLETED_WITH_EXCEPTIONS,
        )

        recent = await sweeper.run_once()
        later = await sweeper.run_once(now=utcnow() + timedelta(hours=2))

        assert recent.exceptions == []
        assert later.exceptions == [record.payment_hash]

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_reports_stale_processing_without_touching_it(
        self, store: HybridPaymentStore, sweeper: ExpirySweeper
    ) -> None:
        record = await store.create_pending(new_payment())
        await store.claim_for_processing(record.payment_hash)

        report = await sweeper.run_once(now=utcnow() + timedelta(hours=1))

        assert report.stale_processing == [record.payment_hash]
        final = await store.get(record.payment_hash)
        assert final.status == PaymentStatus.PROCESSING

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_report_serializes(self, sweeper: ExpirySweeper) -> None:
        report = await sweeper.run_once()

        data = report.to_dict()

        assert set(data) == {"ran_at", "expired", "exceptions", "stale_processing"}
        assert data["expired"] == []
