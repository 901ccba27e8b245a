"""
Outbox publisher background worker.

Continuously drains the outbox table and publishes payment completion
signals to a Redis channel.
"""
import asyncio
import json
import signal
from typing import Any, Awaitable, Callable, Dict, Optional

import redis.asyncio as aioredis
import structlog

from forwarding_engine.config import Settings, get_settings
from forwarding_engine.core.outbox import OutboxPublisher
from forwarding_engine.database.connection import close_db
from forwarding_engine.monitoring.logging import setup_logging

logger = structlog.get_logger(__name__)


def redis_channel_publisher(
    redis_client: aioredis.Redis, channel: str
) -> Callable[[Dict[str, Any]], Awaitable[None]]:
    """
    Build a publisher that sends completion signals to a Redis channel.

    Args:
        redis_client: Redis client
        channel: Pub/sub channel name

    Returns:
        Callable: Coroutine function accepting one outbox event
    """

    async def publish(event_data: Dict[str, Any]) -> None:
        receivers = await redis_client.publish(channel, json.dumps(event_data, default=str))
        logger.info(
            "completion_signal_published",
            event_type=event_data.get("event_type"),
            payment_hash=event_data.get("aggregate_id"),
            receivers=receivers,
        )

    return publish


async def start_outbox_publisher(settings: Optional[Settings] = None) -> None:
    """
    Start the outbox publisher worker.

    Runs continuously until stopped.
    """
    settings = settings or get_settings()
    setup_logging(settings)

    logger.info("outbox_publisher_worker_starting", channel=settings.completion_channel)

    redis_client = aioredis.from_url(
        settings.redis_url,
        encoding="utf-8",
        decode_responses=True,
    )
    publisher = OutboxPublisher(
        publisher_func=redis_channel_publisher(redis_client, settings.completion_channel),
        settings=settings,
    )

    def signal_handler(sig: int, frame: Any) -> None:
        logger.info("outbox_publisher_worker_shutdown_signal_received", signal=sig)
        publisher.stop()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        await publisher.start()
    except Exception as e:
        logger.error("outbox_publisher_worker_error", error=str(e))
        raise
    finally:
        await redis_client.aclose()
        await close_db()
        logger.info("outbox_publisher_worker_stopped")


def main() -> None:
    asyncio.run(start_outbox_publisher())


if __name__ == "__main__":
    main()
