"""
Transactional outbox for payment completion signals.

Every terminal transition writes an outbox row in the same transaction as the
status change. This publisher drains those rows in order and hands them to a
publisher callable, so a completion signal is never lost and never emitted
for a change that rolled back.
"""
import asyncio
from typing import Any, Awaitable, Callable, Dict, List, Optional

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from forwarding_engine.config import Settings, get_settings
from forwarding_engine.core.records import utcnow
from forwarding_engine.database.connection import get_session_factory
from forwarding_engine.database.models import OutboxEvent
from forwarding_engine.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

PublisherFunc = Callable[[Dict[str, Any]], Awaitable[Any]]


class OutboxPublisher:
    """
    Publishes completion signals from the outbox table.

    Delivery is at-least-once:
    1. Read unpublished rows in creation order
    2. Hand each to the publisher callable
    3. Mark the delivered ones as published
    """

    def __init__(
        self,
        publisher_func: Optional[PublisherFunc] = None,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        settings: Optional[Settings] = None,
    ):
        """
        Initialize outbox publisher.

        Args:
            publisher_func: Coroutine function receiving each event
            session_factory: Optional session factory (uses the global one if not provided)
            settings: Optional settings
        """
        self.settings = settings or get_settings()
        self.publisher_func = publisher_func or self._default_publisher
        self.session_factory = session_factory or get_session_factory()
        self.batch_size = self.settings.outbox_batch_size
        self.poll_interval_seconds = self.settings.outbox_poll_interval
        self._running = False

        logger.info(
            "outbox_publisher_initialized",
            batch_size=self.batch_size,
            poll_interval=self.poll_interval_seconds,
        )

    async def _default_publisher(self, event_data: Dict[str, Any]) -> None:
        """Log the completion signal."""
        logger.info(
            "completion_signal",
            event_type=event_data.get("event_type"),
            payment_hash=event_data.get("aggregate_id"),
        )

    async def _fetch_unpublished_events(self, db: AsyncSession) -> List[OutboxEvent]:
        stmt = (
            select(OutboxEvent)
            .where(OutboxEvent.published.is_(False))
            .order_by(OutboxEvent.created_at, OutboxEvent.id)
            .limit(self.batch_size)
        )
        result = await db.execute(stmt)
        return list(result.scalars().all())

    async def _publish_event(self, event: OutboxEvent) -> bool:
        """
        Publish a single event.

        Args:
            event: Outbox event to publish

        Returns:
            bool: True if published successfully, False otherwise
        """
        try:
            await self.publisher_func(
                {
                    "id": event.id,
                    "aggregate_id": event.aggregate_id,
                    "aggregate_type": event.aggregate_type,
                    "event_type": event.event_type,
                    "payload": event.payload,
                    "created_at": event.created_at.isoformat(),
                }
            )
        except Exception as e:
            logger.error(
                "outbox_event_publish_failed",
                event_id=event.id,
                event_type=event.event_type,
                error=str(e),
            )
            return False

        metrics.record_outbox_event_published(event.event_type)
        logger.info(
            "outbox_event_published",
            event_id=event.id,
            event_type=event.event_type,
            payment_hash=event.aggregate_id,
        )
        return True

    async def _mark_as_published(self, db: AsyncSession, event_ids: List[int]) -> None:
        if not event_ids:
            return

        stmt = (
            update(OutboxEvent)
            .where(OutboxEvent.id.in_(event_ids))
            .values(published=True, published_at=utcnow())
        )
        await db.execute(stmt)
        await db.commit()

    async def process_batch(self) -> int:
        """
        Process a batch of unpublished events.

        Publishing stops at the first failure so signals for one payment
        are never delivered out of order.

        Returns:
            int: Number of events published
        """
        async with self.session_factory() as db:
            try:
                events = await self._fetch_unpublished_events(db)
                if not events:
                    return 0

                published_ids = []
                for event in events:
                    if not await self._publish_event(event):
                        break
                    published_ids.append(event.id)

                await self._mark_as_published(db, published_ids)

                logger.info(
                    "outbox_batch_processed",
                    total=len(events),
                    published=len(published_ids),
                )
                return len(published_ids)

            except Exception as e:
                logger.error("outbox_batch_processing_error", error=str(e))
                await db.rollback()
                return 0

    async def start(self) -> None:
        """
        Start the outbox publisher loop.

        Continuously polls for unpublished events until :meth:`stop` is called.
        """
        self._running = True
        logger.info("outbox_publisher_started")

        try:
            while self._running:
                try:
                    published_count = await self.process_batch()
                    metrics.set_outbox_queue_depth(await self.get_pending_count())

                    if published_count == 0:
                        await asyncio.sleep(self.poll_interval_seconds)
                    else:
                        await asyncio.sleep(0)

                except Exception as e:
                    logger.error("outbox_publisher_error", error=str(e))
                    await asyncio.sleep(self.poll_interval_seconds)
        finally:
            logger.info("outbox_publisher_stopped")

    def stop(self) -> None:
        """Stop the outbox publisher."""
        self._running = False
        logger.info("outbox_publisher_stop_requested")

    async def get_pending_count(self) -> int:
        """
        Get count of pending unpublished events.

        Returns:
            int: Number of unpublished events
        """
        async with self.session_factory() as db:
            result = await db.execute(
                select(func.count()).select_from(OutboxEvent).where(OutboxEvent.published.is_(False))
            )
            return int(result.scalar_one())
