"""
Expiry sweeper background worker.

Runs the sweeper every ``sweeper_interval_seconds`` until SIGINT/SIGTERM.
"""
import asyncio
import signal
from typing import Any, Optional

import structlog

from forwarding_engine.config import Settings, get_settings
from forwarding_engine.core.payment_store import HybridPaymentStore
from forwarding_engine.core.sweeper import ExpirySweeper
from forwarding_engine.database.connection import close_db
from forwarding_engine.monitoring.logging import setup_logging

logger = structlog.get_logger(__name__)


async def run_sweep(sweeper: ExpirySweeper) -> None:
    """Run one sweep and raise alerts for outstanding problems."""
    report = await sweeper.run_once()

    if report.exceptions or report.stale_processing:
        logger.warning(
            "sweeper_attention_required",
            exceptions=len(report.exceptions),
            stale_processing=len(report.stale_processing),
        )


async def start_sweeper_worker(settings: Optional[Settings] = None) -> None:
    """
    Start the sweeper worker.

    Args:
        settings: Optional settings
    """
    settings = settings or get_settings()
    setup_logging(settings)

    logger.info("sweeper_worker_starting", interval=settings.sweeper_interval_seconds)

    running = True

    def signal_handler(sig: int, frame: Any) -> None:
        nonlocal running
        logger.info("sweeper_worker_shutdown_signal_received", signal=sig)
        running = False

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    store = HybridPaymentStore(settings=settings)
    sweeper = ExpirySweeper(store, settings=settings)

    try:
        while running:
            try:
                await run_sweep(sweeper)
            except Exception as e:
                logger.error("sweeper_execution_error", error=str(e))
                # Continue running even if one sweep fails

            # Sleep in short steps so shutdown signals are noticed
            remaining = float(settings.sweeper_interval_seconds)
            while remaining > 0 and running:
                step = min(remaining, 1.0)
                await asyncio.sleep(step)
                remaining -= step

    finally:
        await store.close()
        await close_db()
        logger.info("sweeper_worker_stopped")


def main() -> None:
    asyncio.run(start_sweeper_worker())


if __name__ == "__main__":
    main()
