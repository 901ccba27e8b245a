"""Payment aggregation and forwarding engine."""

__version__ = "1.0.0"
