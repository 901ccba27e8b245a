"""
Pytest configuration and fixtures.

The cold store runs on SQLite through aiosqlite and the hot cache on fakeredis,
so the suite needs no external services.
"""
import base64
import os
from typing import Any, AsyncGenerator

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./forwarding_engine_test.db")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/15")
os.environ.setdefault("LEDGER_API_KEY", "blink_test_key")
os.environ.setdefault("FUNNEL_WALLET_ID", "funnel-wallet")
os.environ.setdefault("APP_ENV", "test")

import pytest
import pytest_asyncio
from fakeredis import aioredis as fake_aioredis
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from forwarding_engine.config import Settings
from forwarding_engine.core.forwarding import ForwardingOrchestrator
from forwarding_engine.core.payment_store import HybridPaymentStore
from forwarding_engine.core.services import ForwardingServices, build_services
from forwarding_engine.database.connection import create_session_factory
from forwarding_engine.database.models import Base

from tests.fakes import FakeLedger

WEBHOOK_SECRET = "whsec_" + base64.b64encode(b"forwarding-engine-test-secret").decode()


def pytest_configure(config: Any) -> None:
    config.addinivalue_line("markers", "unit: fast tests without I/O")
    config.addinivalue_line("markers", "race: concurrency and race condition tests")
    config.addinivalue_line("markers", "integration: tests running against the store")


@pytest.fixture
def test_settings(tmp_path: Any) -> Settings:
    """Create test settings."""
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'engine.db'}",
        redis_url="redis://localhost:6379/15",
        ledger_api_key="blink_test_key",
        funnel_wallet_id="funnel-wallet",
        ledger_webhook_secret=WEBHOOK_SECRET,
        transfer_max_attempts=3,
        transfer_retry_base_delay=0,
        transfer_retry_max_delay=0,
        transfer_timeout_seconds=1.0,
        listener_backoff_base=0.01,
        listener_backoff_max=0.05,
        listener_dedup_window=100,
        listener_poll_interval=0.01,
        app_name="forwarding-engine-test",
        app_env="test",
        log_level="DEBUG",
        debug=True,
    )


@pytest_asyncio.fixture
async def session_factory(
    test_settings: Settings,
) -> AsyncGenerator[async_sessionmaker[AsyncSession], Any]:
    """Create a fresh SQLite database with all tables."""
    engine = create_async_engine(test_settings.database_url, poolclass=NullPool)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield create_session_factory(engine)

    await engine.dispose()


@pytest_asyncio.fixture
async def redis_client() -> AsyncGenerator[fake_aioredis.FakeRedis, Any]:
    """In-memory Redis."""
    client = fake_aioredis.FakeRedis(decode_responses=True)
    yield client
    await client.flushall()
    await client.aclose()


@pytest_asyncio.fixture
async def store(
    session_factory: async_sessionmaker[AsyncSession],
    redis_client: fake_aioredis.FakeRedis,
    test_settings: Settings,
) -> HybridPaymentStore:
    """Payment store over the test database and cache."""
    return HybridPaymentStore(
        session_factory=session_factory, redis_client=redis_client, settings=test_settings
    )


@pytest.fixture
def ledger() -> FakeLedger:
    """Fake ledger provider."""
    return FakeLedger()


@pytest.fixture
def orchestrator(
    store: HybridPaymentStore, ledger: FakeLedger, test_settings: Settings
) -> ForwardingOrchestrator:
    return ForwardingOrchestrator(store, ledger, settings=test_settings)


@pytest_asyncio.fixture
async def services(
    test_settings: Settings,
    ledger: FakeLedger,
    redis_client: fake_aioredis.FakeRedis,
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[ForwardingServices, Any]:
    """Fully wired engine over fakes."""
    services = build_services(
        test_settings,
        ledger=ledger,
        redis_client=redis_client,
        session_factory=session_factory,
    )
    yield services
    await services.close()
