"""Core infrastructure: settings, logging, caching and HTTP client."""

from chainpulse.app.core.cache import CacheEntry, TTLCache
from chainpulse.app.core.config import Settings, settings
from chainpulse.app.core.logging import get_log_context, get_logger, setup_logging

__all__ = [
    "CacheEntry",
    "TTLCache",
    "Settings",
    "settings",
    "get_log_context",
    "get_logger",
    "setup_logging",
]
