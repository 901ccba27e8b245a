"""Configuration package for the forwarding engine."""
from .settings import get_settings, Settings

__all__ = ["Settings", "get_settings"]
