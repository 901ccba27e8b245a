"""
Hybrid payment store.

Two tiers, one authority:
1. PostgreSQL is the system of record and the only place claims and
   transitions happen (conditional UPDATEs).
2. Redis holds a TTL-bounded JSON projection of pending records for fast
   status reads. It is advisory: every Redis failure degrades to the cold store.
"""
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

import redis.asyncio as aioredis
import structlog
from pydantic import ValidationError
from sqlalchemy import case, func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from forwarding_engine.config import Settings, get_settings
from forwarding_engine.core.errors import (
    DuplicatePaymentError,
    InvalidTransitionError,
    PaymentStoreError,
)
from forwarding_engine.core.records import (
    EventSnapshot,
    NewPayment,
    PaymentSnapshot,
    utcnow,
)
from forwarding_engine.core.states import (
    EventStatus,
    EventType,
    PaymentStatus,
    allowed_sources,
)
from forwarding_engine.database.connection import get_session_factory
from forwarding_engine.database.models import (
    OutboxEvent,
    PaymentEvent,
    PaymentRecord,
    TipRecipient,
)
from forwarding_engine.integrations.ledger import SettlementEvent
from forwarding_engine.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class ClaimOutcome(str, Enum):
    """Result of a claim attempt."""

    CLAIMED = "claimed"
    ALREADY_CLAIMED = "already_claimed"
    NOT_FOUND = "not_found"


@dataclass(frozen=True)
class ClaimResult:
    """Outcome of claim_for_processing plus the record as the cold store sees it."""

    outcome: ClaimOutcome
    record: Optional[PaymentSnapshot]

    @property
    def claimed(self) -> bool:
        return self.outcome == ClaimOutcome.CLAIMED


class HybridPaymentStore:
    """
    Payment state store backed by PostgreSQL with a Redis hot cache.

    The conditional claim in :meth:`claim_for_processing` is the only
    concurrency guard in the system.
    """

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        redis_client: Optional[aioredis.Redis] = None,
        settings: Optional[Settings] = None,
    ):
        """
        Initialize payment store.

        Args:
            session_factory: Optional session factory (uses the global one if not provided)
            redis_client: Optional Redis client (creates one on first use if not provided)
            settings: Optional settings
        """
        self.settings = settings or get_settings()
        self.session_factory = session_factory or get_session_factory()
        self.redis_client = redis_client
        self._owns_redis = redis_client is None

    async def _ensure_redis(self) -> aioredis.Redis:
        """Ensure Redis client is initialized."""
        if self.redis_client is None:
            self.redis_client = aioredis.from_url(
                self.settings.redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
        return self.redis_client

    def cache_key(self, payment_hash: str) -> str:
        """Hot cache key for a payment hash."""
        return f"{self.settings.cache_key_prefix}{payment_hash}"

    # ------------------------------------------------------------------
    # Cache tier
    # ------------------------------------------------------------------

    async def _cache_put(self, snapshot: PaymentSnapshot, now: Optional[datetime] = None) -> None:
        """Project a pending record into Redis with TTL = remaining validity."""
        ttl_seconds = int((snapshot.expires_at - (now or utcnow())).total_seconds())
        if ttl_seconds <= 0:
            return

        try:
            redis = await self._ensure_redis()
            await redis.setex(
                self.cache_key(snapshot.payment_hash),
                ttl_seconds,
                snapshot.model_dump_json(),
            )
        except Exception as e:
            metrics.record_cache_error("set")
            logger.warning(
                "payment_cache_set_error",
                error=str(e),
                payment_hash=snapshot.payment_hash,
            )

    async def _cache_get(self, payment_hash: str) -> Optional[PaymentSnapshot]:
        try:
            redis = await self._ensure_redis()
            cached = await redis.get(self.cache_key(payment_hash))
        except Exception as e:
            metrics.record_cache_error("get")
            logger.warning("payment_cache_get_error", error=str(e), payment_hash=payment_hash)
            return None

        if not cached:
            return None

        try:
            return PaymentSnapshot.model_validate_json(cached)
        except ValidationError as e:
            logger.warning(
                "payment_cache_entry_unreadable", error=str(e), payment_hash=payment_hash
            )
            await self.evict_cache(payment_hash)
            return None

    async def evict_cache(self, payment_hash: str) -> None:
        """
        Remove the hot cache entry for a payment.

        Args:
            payment_hash: Payment hash to evict
        """
        try:
            redis = await self._ensure_redis()
            await redis.delete(self.cache_key(payment_hash))
            logger.debug("payment_cache_evicted", payment_hash=payment_hash)
        except Exception as e:
            metrics.record_cache_error("delete")
            logger.warning(
                "payment_cache_evict_error",
                error=str(e),
                payment_hash=payment_hash,
            )

    # ------------------------------------------------------------------
    # Cold tier
    # ------------------------------------------------------------------

    @staticmethod
    async def _select_record(db: AsyncSession, payment_hash: str) -> Optional[PaymentRecord]:
        stmt = select(PaymentRecord).where(PaymentRecord.payment_hash == payment_hash)
        result = await db.execute(stmt)
        return result.scalar_one_or_none()

    async def _read_cold(self, payment_hash: str) -> Optional[PaymentSnapshot]:
        try:
            async with self.session_factory() as db:
                row = await self._select_record(db, payment_hash)
                return PaymentSnapshot.from_row(row) if row is not None else None
        except SQLAlchemyError as e:
            logger.error("payment_store_read_error", error=str(e), payment_hash=payment_hash)
            raise PaymentStoreError(f"Failed to read payment {payment_hash}: {str(e)}")

    @staticmethod
    def _event(
        payment_hash: str,
        event_type: EventType,
        event_status: EventStatus,
        payload: Dict[str, Any],
        now: datetime,
    ) -> PaymentEvent:
        return PaymentEvent(
            payment_hash=payment_hash,
            event_type=event_type.value,
            event_status=event_status.value,
            payload=payload,
            created_at=now,
        )

    async def create_pending(
        self, new_payment: NewPayment, now: Optional[datetime] = None
    ) -> PaymentSnapshot:
        """
        Persist a new pending payment, then project it into the cache.

        Args:
            new_payment: Frozen amounts, recipients and invoice data
            now: Optional creation time

        Returns:
            PaymentSnapshot: The stored record

        Raises:
            DuplicatePaymentError: If the payment hash already exists
            PaymentStoreError: If the cold store write fails
        """
        now = now or utcnow()
        payment_hash = new_payment.payment_hash

        async with self.session_factory() as db:
            try:
                row = PaymentRecord(
                    payment_hash=payment_hash,
                    invoice_ref=new_payment.invoice_ref,
                    total_amount=new_payment.total_amount,
                    base_amount=new_payment.base_amount,
                    tip_amount=new_payment.tip_amount,
                    merchant_account_ref=new_payment.merchant_account_ref,
                    status=PaymentStatus.PENDING.value,
                    display_currency=new_payment.display_currency,
                    memo=new_payment.memo,
                    provider_metadata=new_payment.metadata or None,
                    created_at=now,
                    expires_at=new_payment.expires_at,
                    updated_at=now,
                    recipients=[
                        TipRecipient(
                            position=leg.position,
                            destination=leg.destination,
                            share_percent=leg.share_percent,
                            amount=leg.amount,
                        )
                        for leg in new_payment.tip_recipients
                    ],
                )
                db.add(row)
                await db.flush()

                db.add(
                    self._event(
                        payment_hash,
                        EventType.CREATED,
                        EventStatus.SUCCESS,
                        {
                            "total_amount": new_payment.total_amount,
                            "base_amount": new_payment.base_amount,
                            "tip_amount": new_payment.tip_amount,
                            "tip_recipients": len(new_payment.tip_recipients),
                            "expires_at": new_payment.expires_at.isoformat(),
                        },
                        now,
                    )
                )
                await db.commit()
                snapshot = PaymentSnapshot.from_row(row)

            except IntegrityError as e:
                await db.rollback()
                logger.warning("payment_already_exists", payment_hash=payment_hash)
                raise DuplicatePaymentError(f"Payment {payment_hash} already exists") from e
            except SQLAlchemyError as e:
                await db.rollback()
                logger.error("payment_store_create_error", error=str(e), payment_hash=payment_hash)
                raise PaymentStoreError(f"Failed to create payment: {str(e)}")

        logger.info(
            "payment_record_created",
            payment_hash=payment_hash,
            total_amount=snapshot.total_amount,
            expires_at=snapshot.expires_at.isoformat(),
        )

        await self._cache_put(snapshot, now)
        return snapshot

    async def get(self, payment_hash: str, consistent: bool = False) -> Optional[PaymentSnapshot]:
        """
        Read a payment, cache first.

        Only pending records are ever cached; a cached entry with any other
        status disagrees with the lifecycle, so it is evicted and the cold
        store answers instead.

        Args:
            payment_hash: Payment hash
            consistent: Skip the cache and read the cold store

        Returns:
            Optional[PaymentSnapshot]: The record, or None if unknown
        """
        if not consistent:
            cached = await self._cache_get(payment_hash)
            if cached is not None:
                if cached.status == PaymentStatus.PENDING:
                    metrics.record_cache_lookup("redis")
                    return cached
                logger.warning(
                    "store_inconsistency",
                    payment_hash=payment_hash,
                    cached_status=cached.status.value,
                )
                await self.evict_cache(payment_hash)

        snapshot = await self._read_cold(payment_hash)
        if snapshot is None:
            metrics.record_cache_lookup("miss")
            return None

        metrics.record_cache_lookup("database")
        if snapshot.status == PaymentStatus.PENDING and not consistent:
            await self._cache_put(snapshot)
        return snapshot

    async def claim_for_processing(
        self,
        payment_hash: str,
        settlement: Optional[SettlementEvent] = None,
        now: Optional[datetime] = None,
    ) -> ClaimResult:
        """
        Atomically move a record from pending to processing.

        Exactly one caller per payment hash ever observes ``claimed``. Losing
        the race is not an error.

        Args:
            payment_hash: Payment hash to claim
            settlement: Settlement that triggered the claim, recorded as a paid event
            now: Optional claim time

        Returns:
            ClaimResult: Claim outcome and the current record

        Raises:
            PaymentStoreError: If the cold store fails
        """
        now = now or utcnow()

        async with self.session_factory() as db:
            try:
                stmt = (
                    update(PaymentRecord)
                    .where(
                        PaymentRecord.payment_hash == payment_hash,
                        PaymentRecord.status == PaymentStatus.PENDING.value,
                    )
                    .values(
                        status=PaymentStatus.PROCESSING.value,
                        claimed_at=now,
                        updated_at=now,
                    )
                    .execution_options(synchronize_session=False)
                )
                result = await db.execute(stmt)

                if result.rowcount != 1:
                    await db.rollback()
                    row = await self._select_record(db, payment_hash)
                    outcome = (
                        ClaimOutcome.NOT_FOUND if row is None else ClaimOutcome.ALREADY_CLAIMED
                    )
                    current = PaymentSnapshot.from_row(row) if row is not None else None
                    metrics.record_claim(outcome.value)
                    logger.info(
                        "payment_claim_rejected",
                        payment_hash=payment_hash,
                        outcome=outcome.value,
                        current_status=current.status.value if current else None,
                    )
                    return ClaimResult(outcome=outcome, record=current)

                if settlement is not None:
                    db.add(
                        self._event(
                            payment_hash,
                            EventType.PAID,
                            EventStatus.SUCCESS,
                            {
                                "notification_id": settlement.notification_id,
                                "amount": settlement.amount,
                                "source": settlement.source,
                                "settled_at": settlement.timestamp.isoformat(),
                            },
                            now,
                        )
                    )
                db.add(
                    self._event(
                        payment_hash,
                        EventType.FORWARDING_STARTED,
                        EventStatus.SUCCESS,
                        {"claimed_at": now.isoformat()},
                        now,
                    )
                )
                await db.commit()

                row = await self._select_record(db, payment_hash)
                record = PaymentSnapshot.from_row(row) if row is not None else None

            except SQLAlchemyError as e:
                await db.rollback()
                logger.error("payment_claim_error", error=str(e), payment_hash=payment_hash)
                raise PaymentStoreError(f"Failed to claim payment {payment_hash}: {str(e)}")

        metrics.record_claim(ClaimOutcome.CLAIMED.value)
        logger.info("payment_claimed", payment_hash=payment_hash)

        await self.evict_cache(payment_hash)
        return ClaimResult(outcome=ClaimOutcome.CLAIMED, record=record)

    async def record_event(
        self,
        payment_hash: str,
        event_type: EventType,
        event_status: EventStatus = EventStatus.SUCCESS,
        payload: Optional[Dict[str, Any]] = None,
        now: Optional[datetime] = None,
    ) -> None:
        """
        Append an audit event.

        Args:
            payment_hash: Payment hash
            event_type: Event type
            event_status: success or error
            payload: Structured detail
            now: Optional event time

        Raises:
            PaymentStoreError: If the insert fails
        """
        async with self.session_factory() as db:
            try:
                db.add(
                    self._event(
                        payment_hash, event_type, event_status, payload or {}, now or utcnow()
                    )
                )
                await db.commit()
            except SQLAlchemyError as e:
                await db.rollback()
                logger.error(
                    "payment_event_record_error",
                    error=str(e),
                    payment_hash=payment_hash,
                    event_type=event_type.value,
                )
                raise PaymentStoreError(f"Failed to record event: {str(e)}")

    async def transition(
        self,
        payment_hash: str,
        new_status: PaymentStatus,
        event_type: EventType,
        event_status: EventStatus = EventStatus.SUCCESS,
        payload: Optional[Dict[str, Any]] = None,
        from_statuses: Optional[Iterable[PaymentStatus]] = None,
        now: Optional[datetime] = None,
    ) -> bool:
        """
        Change status and append the matching event in one transaction.

        Terminal transitions also set processed_at, write the completion
        signal to the outbox and evict the cache.

        Args:
            payment_hash: Payment hash
            new_status: Target status
            event_type: Event recorded with the change
            event_status: success or error
            payload: Event payload
            from_statuses: Restrict the source states further
            now: Optional transition time

        Returns:
            bool: True if applied, False if the record was not in a source state

        Raises:
            InvalidTransitionError: If no edge leads into new_status from the given sources
            PaymentStoreError: If the cold store fails
        """
        now = now or utcnow()
        payload = payload or {}

        sources = allowed_sources(new_status)
        if from_statuses is not None:
            requested = frozenset(from_statuses)
            if not requested <= sources:
                raise InvalidTransitionError(
                    f"Cannot move to {new_status.value} from "
                    f"{sorted(s.value for s in requested - sources)}"
                )
            sources = requested
        if not sources:
            raise InvalidTransitionError(f"No transition leads to {new_status.value}")

        values: Dict[str, Any] = {"status": new_status.value, "updated_at": now}
        if new_status.is_terminal:
            values["processed_at"] = now

        async with self.session_factory() as db:
            try:
                stmt = (
                    update(PaymentRecord)
                    .where(
                        PaymentRecord.payment_hash == payment_hash,
                        PaymentRecord.status.in_([s.value for s in sources]),
                    )
                    .values(**values)
                    .execution_options(synchronize_session=False)
                )
                result = await db.execute(stmt)

                if result.rowcount != 1:
                    await db.rollback()
                    logger.info(
                        "payment_transition_skipped",
                        payment_hash=payment_hash,
                        new_status=new_status.value,
                    )
                    return False

                db.add(self._event(payment_hash, event_type, event_status, payload, now))

                if new_status.is_terminal:
                    db.add(
                        OutboxEvent(
                            aggregate_id=payment_hash,
                            aggregate_type="payment",
                            event_type=f"payment.{new_status.value}",
                            payload={
                                "payment_hash": payment_hash,
                                "status": new_status.value,
                                "processed_at": now.isoformat(),
                                "details": payload,
                            },
                            published=False,
                            created_at=now,
                        )
                    )

                await db.commit()

            except SQLAlchemyError as e:
                await db.rollback()
                logger.error(
                    "payment_transition_error",
                    error=str(e),
                    payment_hash=payment_hash,
                    new_status=new_status.value,
                )
                raise PaymentStoreError(f"Failed to transition payment: {str(e)}")

        logger.info(
            "payment_transitioned",
            payment_hash=payment_hash,
            new_status=new_status.value,
            event_type=event_type.value,
        )

        if new_status.is_terminal:
            metrics.record_terminal_transition(new_status.value)
        await self.evict_cache(payment_hash)
        return True

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def _list_records(self, *criteria: Any, order_by: Any, limit: int) -> List[PaymentSnapshot]:
        try:
            async with self.session_factory() as db:
                stmt = select(PaymentRecord).where(*criteria).order_by(order_by).limit(limit)
                result = await db.execute(stmt)
                return [PaymentSnapshot.from_row(row) for row in result.scalars().all()]
        except SQLAlchemyError as e:
            logger.error("payment_store_query_error", error=str(e))
            raise PaymentStoreError(f"Failed to query payments: {str(e)}")

    async def list_events(self, payment_hash: str) -> List[EventSnapshot]:
        """Return the audit trail for a payment in insertion order."""
        try:
            async with self.session_factory() as db:
                stmt = (
                    select(PaymentEvent)
                    .where(PaymentEvent.payment_hash == payment_hash)
                    .order_by(PaymentEvent.id)
                )
                result = await db.execute(stmt)
                return [EventSnapshot.from_row(row) for row in result.scalars().all()]
        except SQLAlchemyError as e:
            logger.error("payment_events_query_error", error=str(e), payment_hash=payment_hash)
            raise PaymentStoreError(f"Failed to list events: {str(e)}")

    async def list_pending(
        self,
        now: Optional[datetime] = None,
        limit: Optional[int] = None,
        after: Optional[str] = None,
    ) -> List[PaymentSnapshot]:
        """
        Pending records that are still payable, ordered by payment hash.

        Args:
            now: Reference time for payability
            limit: Page size, defaults to the sweeper batch size
            after: Only return hashes sorting after this one, for keyset paging
        """
        criteria = [
            PaymentRecord.status == PaymentStatus.PENDING.value,
            PaymentRecord.expires_at > (now or utcnow()),
        ]
        if after is not None:
            criteria.append(PaymentRecord.payment_hash > after)
        return await self._list_records(
            *criteria,
            order_by=PaymentRecord.payment_hash,
            limit=limit or self.settings.sweeper_batch_size,
        )

    async def list_expired_pending(
        self, now: Optional[datetime] = None, limit: Optional[int] = None
    ) -> List[PaymentSnapshot]:
        """Pending records whose validity window has passed."""
        return await self._list_records(
            PaymentRecord.status == PaymentStatus.PENDING.value,
            PaymentRecord.expires_at < (now or utcnow()),
            order_by=PaymentRecord.expires_at,
            limit=limit or self.settings.sweeper_batch_size,
        )

    async def list_exceptions_older_than(
        self, cutoff: datetime, limit: Optional[int] = None
    ) -> List[PaymentSnapshot]:
        """completed_with_exceptions records processed before the cutoff."""
        return await self._list_records(
            PaymentRecord.status == PaymentStatus.COMPLETED_WITH_EXCEPTIONS.value,
            PaymentRecord.processed_at < cutoff,
            order_by=PaymentRecord.processed_at,
            limit=limit or self.settings.sweeper_batch_size,
        )

    async def list_stale_processing(
        self, cutoff: datetime, limit: Optional[int] = None
    ) -> List[PaymentSnapshot]:
        """processing records claimed before the cutoff."""
        return await self._list_records(
            PaymentRecord.status == PaymentStatus.PROCESSING.value,
            PaymentRecord.claimed_at < cutoff,
            order_by=PaymentRecord.claimed_at,
            limit=limit or self.settings.sweeper_batch_size,
        )

    async def get_stats(self, since: datetime) -> Dict[str, Any]:
        """
        Aggregate payment statistics for records created since a point in time.

        Args:
            since: Lower bound on created_at

        Returns:
            Dict[str, Any]: Counts by status plus forwarded and tip volume
        """
        forwarded = [
            PaymentStatus.COMPLETED.value,
            PaymentStatus.COMPLETED_WITH_EXCEPTIONS.value,
        ]
        try:
            async with self.session_factory() as db:
                by_status = await db.execute(
                    select(PaymentRecord.status, func.count())
                    .where(PaymentRecord.created_at >= since)
                    .group_by(PaymentRecord.status)
                )
                totals = await db.execute(
                    select(
                        func.coalesce(func.sum(PaymentRecord.total_amount), 0),
                        func.coalesce(func.sum(PaymentRecord.tip_amount), 0),
                        func.coalesce(func.sum(case((PaymentRecord.tip_amount > 0, 1), else_=0)), 0),
                    ).where(
                        PaymentRecord.created_at >= since,
                        PaymentRecord.status.in_(forwarded),
                    )
                )
                total_volume, tip_volume, with_tips = totals.one()
                status_rows = by_status.all()
        except SQLAlchemyError as e:
            logger.error("payment_stats_query_error", error=str(e))
            raise PaymentStoreError(f"Failed to compute stats: {str(e)}")

        counts = {status.value: 0 for status in PaymentStatus}
        for status, count in status_rows:
            counts[status] = count

        return {
            "since": since.isoformat(),
            "total": sum(counts.values()),
            "by_status": counts,
            "forwarded_volume": int(total_volume),
            "tip_volume": int(tip_volume),
            "payments_with_tips": int(with_tips),
        }

    async def close(self) -> None:
        """Close Redis connection if this store created it."""
        if self.redis_client is not None and self._owns_redis:
            await self.redis_client.aclose()
            self.redis_client = None
