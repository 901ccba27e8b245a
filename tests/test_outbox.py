"""
Tests for the completion signal outbox.
"""
import asyncio
import json
from typing import Any, Dict, List

import pytest
from sqlalchemy.exc import OperationalError

from forwarding_engine.core.outbox import OutboxPublisher
from forwarding_engine.core.payment_store import HybridPaymentStore
from forwarding_engine.core.states import EventType, PaymentStatus
from forwarding_engine.workers.outbox_publisher import redis_channel_publisher

from tests.fakes import eventually, new_payment


async def _finish(store: HybridPaymentStore, payment_hash: str) -> None:
    await store.create_pending(new_payment(payment_hash=payment_hash))
    await store.claim_for_processing(payment_hash)
    await store.transition(payment_hash, PaymentStatus.COMPLETED, EventType.COMPLETED)


class TestOutboxPublisher:
    """Test suite for OutboxPublisher."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_publishes_completion_signals_in_order_once(
        self, store: HybridPaymentStore, session_factory, test_settings
    ) -> None:
        published: List[Dict[str, Any]] = []

        async def collect(event: Dict[str, Any]) -> None:
            published.append(event)

        publisher = OutboxPublisher(collect, session_factory=session_factory, settings=test_settings)
        await _finish(store, "a" * 64)
        await _finish(store, "b" * 64)

        assert await publisher.get_pending_count() == 2
        assert await publisher.process_batch() == 2
        assert await publisher.process_batch() == 0

        assert [e["aggregate_id"] for e in published] == ["a" * 64, "b" * 64]
        assert published[0]["event_type"] == "payment.completed"
        assert published[0]["payload"]["status"] == "completed"
        assert await publisher.get_pending_count() == 0

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_failed_publish_stops_batch_and_is_retried(
        self, store: HybridPaymentStore, session_factory, test_settings
    ) -> None:
        published: List[str] = []
        failures = [ConnectionError("broker down")]

        async def flaky(event: Dict[str, Any]) -> None:
            if event["aggregate_id"] == "b" * 64 and failures:
                raise failures.pop()
            published.append(event["aggregate_id"])

        publisher = OutboxPublisher(flaky, session_factory=session_factory, settings=test_settings)
        await _finish(store, "a" * 64)
        await _finish(store, "b" * 64)
        await _finish(store, "c" * 64)

        assert await publisher.process_batch() == 1
        assert await publisher.get_pending_count() == 2
        assert await publisher.process_batch() == 2
        assert published == ["a" * 64, "b" * 64, "c" * 64]

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_loop_survives_queue_depth_query_failure(
        self, store: HybridPaymentStore, session_factory, test_settings, mocker
    ) -> None:
        published: List[str] = []

        async def collect(event: Dict[str, Any]) -> None:
            published.append(event["aggregate_id"])

        publisher = OutboxPublisher(
            collect,
            session_factory=session_factory,
            settings=test_settings.model_copy(update={"outbox_poll_interval": 0.01}),
        )
        original = publisher.get_pending_count
        failures = [OperationalError("SELECT count(*)", {}, Exception("database is locked"))]

        async def flaky_count() -> int:
            if failures:
                raise failures.pop()
            return await original()

        mocker.patch.object(publisher, "get_pending_count", side_effect=flaky_count)
        await _finish(store, "a" * 64)

        task = asyncio.create_task(publisher.start())
        await eventually(lambda: published == ["a" * 64])
        await _finish(store, "b" * 64)
        await eventually(lambda: published == ["a" * 64, "b" * 64])
        publisher.stop()
        await asyncio.wait_for(task, timeout=1.0)

        assert failures == []
        assert task.exception() is None

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_redis_channel_publisher(self, redis_client) -> None:
        pubsub = redis_client.pubsub()
        await pubsub.subscribe("payments:completed")
        publish = redis_channel_publisher(redis_client, "payments:completed")

        await publish({"aggregate_id": "a" * 64, "event_type": "payment.completed"})

        message = None
        for _ in range(10):
            message = await pubsub.get_message(ignore_subscribe_messages=True, timeout=0.1)
            if message is not None:
                break
        await pubsub.aclose()

        assert message is not None
        assert json.loads(message["data"])["aggregate_id"] == "a" * 64
