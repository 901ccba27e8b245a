"""
Expiry and reconciliation sweeper.

Runs periodically to:
- Expire pending records whose invoice validity window has passed
- Report completed_with_exceptions records left unresolved past the grace period
- Report processing records that look stuck (claimed but never finished)
"""
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, TYPE_CHECKING

import structlog

from forwarding_engine.config import Settings, get_settings
from forwarding_engine.core.payment_store import HybridPaymentStore
from forwarding_engine.core.records import utcnow
from forwarding_engine.core.states import EventStatus, EventType, PaymentStatus
from forwarding_engine.monitoring.metrics import metrics

if TYPE_CHECKING:
    from forwarding_engine.core.listener import SettlementListener

logger = structlog.get_logger(__name__)


@dataclass
class SweepReport:
    """Result of a single sweep."""

    ran_at: datetime
    expired: List[str] = field(default_factory=list)
    exceptions: List[str] = field(default_factory=list)
    stale_processing: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ran_at": self.ran_at.isoformat(),
            "expired": self.expired,
            "exceptions": self.exceptions,
            "stale_processing": self.stale_processing,
        }


class ExpirySweeper:
    """
    Periodic sweep over the cold store.

    Expiry goes through the same conditional transition as every other state
    change, so a sweep racing a settlement never expires a paid record and
    repeated sweeps expire each record once.
    """

    def __init__(
        self,
        store: HybridPaymentStore,
        listener: Optional["SettlementListener"] = None,
        settings: Optional[Settings] = None,
    ):
        """
        Initialize sweeper.

        Args:
            store: Payment store
            listener: Optional listener whose handles are closed for expired records
            settings: Optional settings
        """
        self.store = store
        self.listener = listener
        self.settings = settings or get_settings()
        logger.info("expiry_sweeper_initialized")

    async def _expire_pending(self, now: datetime) -> List[str]:
        expired: List[str] = []
        for record in await self.store.list_expired_pending(now):
            applied = await self.store.transition(
                record.payment_hash,
                PaymentStatus.EXPIRED,
                EventType.EXPIRED,
                EventStatus.SUCCESS,
                {"expires_at": record.expires_at.isoformat(), "swept_at": now.isoformat()},
                from_statuses=[PaymentStatus.PENDING],
                now=now,
            )
            if applied:
                expired.append(record.payment_hash)
                logger.info("payment_expired", payment_hash=record.payment_hash)
            if self.listener is not None:
                self.listener.close(record.payment_hash)
        return expired

    async def _report_exceptions(self, now: datetime) -> List[str]:
        cutoff = now - timedelta(seconds=self.settings.exception_grace_period_seconds)
        records = await self.store.list_exceptions_older_than(cutoff)
        for record in records:
            logger.warning(
                "forwarding_exception_unresolved",
                payment_hash=record.payment_hash,
                processed_at=record.processed_at.isoformat() if record.processed_at else None,
                tip_amount=record.tip_amount,
            )
        return [record.payment_hash for record in records]

    async def _report_stale_processing(self, now: datetime) -> List[str]:
        cutoff = now - timedelta(seconds=self.settings.stale_processing_after_seconds)
        records = await self.store.list_stale_processing(cutoff)
        for record in records:
            logger.warning(
                "payment_processing_stale",
                payment_hash=record.payment_hash,
                claimed_at=record.claimed_at.isoformat() if record.claimed_at else None,
            )
        return [record.payment_hash for record in records]

    async def run_once(self, now: Optional[datetime] = None) -> SweepReport:
        """
        Run one sweep.

        Args:
            now: Optional sweep time

        Returns:
            SweepReport: Expired hashes and outstanding problems

        Raises:
            PaymentStoreError: If the cold store fails
        """
        now = now or utcnow()
        logger.info("sweep_started", ran_at=now.isoformat())

        report = SweepReport(ran_at=now)
        report.expired = await self._expire_pending(now)
        report.exceptions = await self._report_exceptions(now)
        report.stale_processing = await self._report_stale_processing(now)

        metrics.set_sweeper_metrics(
            expired=len(report.expired),
            exceptions=len(report.exceptions),
            stale_processing=len(report.stale_processing),
        )

        logger.info(
            "sweep_completed",
            expired=len(report.expired),
            exceptions=len(report.exceptions),
            stale_processing=len(report.stale_processing),
        )
        return report
