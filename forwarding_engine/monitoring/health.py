"""
Health checks for Kubernetes readiness/liveness probes.

Checks:
- Database connectivity (required)
- Redis connectivity (degraded when down; the store falls back to the database)
- Ledger API reachability (degraded when down; listeners reconnect on their own)
"""
from typing import Any, Awaitable, Callable, Dict, Optional

import redis.asyncio as aioredis
import structlog
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from forwarding_engine.config import Settings, get_settings
from forwarding_engine.database.connection import get_session_factory

logger = structlog.get_logger(__name__)


class HealthCheckError(Exception):
    """Raised when health check fails."""

    pass


class HealthCheck:
    """
    Health check service for monitoring system dependencies.

    Provides:
    - Database connectivity check
    - Redis connectivity check
    - Ledger API reachability check
    - Overall system health status
    """

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        redis_client: Optional[aioredis.Redis] = None,
        ledger_ping: Optional[Callable[[], Awaitable[Any]]] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        """
        Initialize health check service.

        Args:
            session_factory: Optional session factory
            redis_client: Optional Redis client (a short-lived one is created per check otherwise)
            ledger_ping: Optional coroutine function probing the ledger
            settings: Optional settings
        """
        self.settings = settings or get_settings()
        self.session_factory = session_factory
        self.redis_client = redis_client
        self.ledger_ping = ledger_ping

    async def check_database(self) -> Dict[str, Any]:
        """
        Check database connectivity.

        Returns:
            Dict[str, Any]: Database health status

        Raises:
            HealthCheckError: If database check fails
        """
        try:
            session_factory = self.session_factory or get_session_factory()
            async with session_factory() as db:
                result = await db.execute(text("SELECT 1"))
                result.scalar()

            return {
                "status": "healthy",
                "service": "database",
                "message": "Database connection successful",
            }

        except Exception as e:
            logger.error("database_health_check_failed", error=str(e))
            raise HealthCheckError(f"Database health check failed: {str(e)}")

    async def check_redis(self) -> Dict[str, Any]:
        """
        Check Redis connectivity.

        Returns:
            Dict[str, Any]: Redis health status

        Raises:
            HealthCheckError: If Redis check fails
        """
        redis_client = self.redis_client
        owned = redis_client is None
        try:
            if redis_client is None:
                redis_client = aioredis.from_url(
                    self.settings.redis_url,
                    encoding="utf-8",
                    decode_responses=True,
                )
            await redis_client.ping()

            return {
                "status": "healthy",
                "service": "redis",
                "message": "Redis connection successful",
            }

        except Exception as e:
            logger.error("redis_health_check_failed", error=str(e))
            raise HealthCheckError(f"Redis health check failed: {str(e)}")

        finally:
            if owned and redis_client is not None:
                await redis_client.aclose()

    async def check_ledger(self) -> Dict[str, Any]:
        """
        Check ledger API reachability.

        Returns:
            Dict[str, Any]: Ledger health status

        Raises:
            HealthCheckError: If the ledger check fails
        """
        if self.ledger_ping is None:
            return {
                "status": "unknown",
                "service": "ledger",
                "message": "Ledger provider has no health probe",
            }

        try:
            details = await self.ledger_ping()
            return {
                "status": "healthy",
                "service": "ledger",
                "message": "Ledger API reachable",
                "details": details,
            }

        except Exception as e:
            logger.error("ledger_health_check_failed", error=str(e))
            raise HealthCheckError(f"Ledger health check failed: {str(e)}")

    async def check_all(self) -> Dict[str, Any]:
        """
        Run all health checks.

        The database is required. Redis and the ledger only degrade the service.

        Returns:
            Dict[str, Any]: Overall health status
        """
        checks: Dict[str, Any] = {}
        status = "healthy"

        for name, check, required in (
            ("database", self.check_database, True),
            ("redis", self.check_redis, False),
            ("ledger", self.check_ledger, False),
        ):
            try:
                checks[name] = await check()
            except HealthCheckError as e:
                checks[name] = {"status": "unhealthy", "service": name, "error": str(e)}
                if required:
                    status = "unhealthy"
                elif status == "healthy":
                    status = "degraded"

        return {"status": status, "checks": checks}

    async def liveness(self) -> Dict[str, Any]:
        """
        Liveness probe endpoint.

        Simple check that the application is running.
        Does not check external dependencies.

        Returns:
            Dict[str, Any]: Liveness status
        """
        return {
            "status": "alive",
            "message": "Application is running",
        }

    async def readiness(self) -> Dict[str, Any]:
        """
        Readiness probe endpoint.

        Ready while the database is reachable, even if degraded.

        Returns:
            Dict[str, Any]: Readiness status
        """
        return await self.check_all()
