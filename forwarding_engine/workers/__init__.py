"""Background workers for sweeping and completion signals."""
from .outbox_publisher import start_outbox_publisher
from .sweeper_worker import start_sweeper_worker

__all__ = ["start_outbox_publisher", "start_sweeper_worker"]
