"""Wiring of the engine's components for the API process and workers."""
from dataclasses import dataclass
from typing import Optional

import redis.asyncio as aioredis
import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from forwarding_engine.config import Settings, get_settings
from forwarding_engine.core.forwarding import ForwardingOrchestrator
from forwarding_engine.core.listener import SettlementListener
from forwarding_engine.core.payment_service import PaymentService
from forwarding_engine.core.payment_store import HybridPaymentStore
from forwarding_engine.core.sweeper import ExpirySweeper
from forwarding_engine.database.connection import get_session_factory
from forwarding_engine.integrations.blink_client import BlinkClient
from forwarding_engine.integrations.ledger import LedgerProvider
from forwarding_engine.integrations.webhook_handler import WebhookHandler
from forwarding_engine.monitoring.health import HealthCheck

logger = structlog.get_logger(__name__)


@dataclass
class ForwardingServices:
    """All long-lived components of one engine process."""

    settings: Settings
    ledger: LedgerProvider
    store: HybridPaymentStore
    orchestrator: ForwardingOrchestrator
    listener: SettlementListener
    sweeper: ExpirySweeper
    payments: PaymentService
    webhooks: WebhookHandler
    health: HealthCheck
    redis_client: aioredis.Redis
    owns_redis: bool = False

    async def close(self) -> None:
        """Stop listeners and release connections."""
        await self.listener.shutdown()
        close_ledger = getattr(self.ledger, "close", None)
        if close_ledger is not None:
            await close_ledger()
        if self.owns_redis:
            await self.redis_client.aclose()
        logger.info("services_closed")


def build_services(
    settings: Optional[Settings] = None,
    ledger: Optional[LedgerProvider] = None,
    redis_client: Optional[aioredis.Redis] = None,
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
) -> ForwardingServices:
    """
    Construct the component graph.

    Args:
        settings: Optional settings
        ledger: Optional ledger provider (a Blink client is built otherwise)
        redis_client: Optional shared Redis client
        session_factory: Optional session factory

    Returns:
        ForwardingServices: Wired components
    """
    settings = settings or get_settings()
    session_factory = session_factory or get_session_factory()
    owns_redis = redis_client is None
    if redis_client is None:
        redis_client = aioredis.from_url(
            settings.redis_url,
            encoding="utf-8",
            decode_responses=True,
        )
    ledger = ledger or BlinkClient(settings=settings)

    store = HybridPaymentStore(
        session_factory=session_factory, redis_client=redis_client, settings=settings
    )
    orchestrator = ForwardingOrchestrator(store, ledger, settings=settings)
    listener = SettlementListener(ledger, orchestrator, store, settings=settings)
    sweeper = ExpirySweeper(store, listener=listener, settings=settings)
    payments = PaymentService(store, ledger, listener, orchestrator, settings=settings)
    webhooks = WebhookHandler(listener, redis_client=redis_client, settings=settings)
    health = HealthCheck(
        session_factory=session_factory,
        redis_client=redis_client,
        ledger_ping=getattr(ledger, "ping", None),
        settings=settings,
    )

    logger.info("services_built", ledger=type(ledger).__name__)
    return ForwardingServices(
        settings=settings,
        ledger=ledger,
        store=store,
        orchestrator=orchestrator,
        listener=listener,
        sweeper=sweeper,
        payments=payments,
        webhooks=webhooks,
        health=health,
        redis_client=redis_client,
        owns_redis=owns_redis,
    )
