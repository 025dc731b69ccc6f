"""In-process TTL cache for expensive, idempotent reads.

Entries expire a fixed time after they were stored. Expired entries are
dropped when read and by a periodic background sweep, so keys that are
written but never read again do not accumulate.
"""

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Generic, Optional, TypeVar

from chainpulse.app.core.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

DEFAULT_TTL_MS = 5 * 60 * 1000
DEFAULT_SWEEP_INTERVAL = 60.0


@dataclass
class CacheEntry(Generic[T]):
    """Internal cache entry with TTL tracking."""

    value: T
    stored_at: float
    ttl: float

    def is_expired(self, now: float) -> bool:
        """An entry is valid while ``now - stored_at < ttl``."""
        return now - self.stored_at >= self.ttl


class TTLCache:
    """In-memory key/value cache with per-entry expiry.

    The cache is meant to be constructed once per external service and
    passed to whatever needs it.

    Usage:
        cache = TTLCache(ttl_ms=300_000)
        await cache.start()          # periodic sweep

        cache.set("gasPrice", "0.000000001")
        cache.get("gasPrice")        # -> "0.000000001" until the TTL elapses

        await cache.stop()
    """

    def __init__(
        self,
        ttl_ms: float = DEFAULT_TTL_MS,
        sweep_interval: float = DEFAULT_SWEEP_INTERVAL,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the cache.

        Args:
            ttl_ms: Default time-to-live in milliseconds
            sweep_interval: Seconds between background sweeps
            clock: Returns the current time in seconds
        """
        if ttl_ms <= 0:
            raise ValueError("ttl_ms must be positive")
        self._ttl = ttl_ms / 1000.0
        self._sweep_interval = sweep_interval
        self._clock = clock
        self._data: Dict[str, CacheEntry[Any]] = {}
        self._task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()

    @property
    def ttl(self) -> float:
        """Default time-to-live in seconds."""
        return self._ttl

    @property
    def running(self) -> bool:
        return self._task is not None

    def get(self, key: str) -> Optional[Any]:
        """Return the stored value, or None if missing or expired.

        An expired entry is removed as a side effect.
        """
        entry = self._data.get(key)
        if entry is None:
            return None
        if entry.is_expired(self._clock()):
            del self._data[key]
            return None
        return entry.value

    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        """Store a value, replacing any existing entry.

        Args:
            key: The cache key
            value: The value to store
            ttl: Optional per-entry time-to-live in seconds
        """
        self._data[key] = CacheEntry(
            value=value,
            stored_at=self._clock(),
            ttl=self._ttl if ttl is None else ttl,
        )

    def clear(self) -> None:
        """Clear all entries from the cache."""
        self._data.clear()

    def sweep(self) -> int:
        """Remove all expired entries from the cache.

        Returns:
            Number of entries removed.
        """
        now = self._clock()
        expired_keys = [key for key, entry in self._data.items() if entry.is_expired(now)]
        for key in expired_keys:
            del self._data[key]
        if expired_keys:
            logger.debug(f"Cleaned {len(expired_keys)} expired cache entries")
        return len(expired_keys)

    def __len__(self) -> int:
        return len(self._data)

    def __contains__(self, key: object) -> bool:
        if not isinstance(key, str):
            return False
        return self.get(key) is not None

    async def start(self) -> None:
        """Start the background sweep task."""
        if self._task is not None:
            logger.debug("Cache sweeper already running")
            return

        self._stop_event.clear()
        self._task = asyncio.create_task(self._run_sweeps())
        logger.info(f"Started cache sweeper (ttl: {self._ttl}s, interval: {self._sweep_interval}s)")

    async def stop(self) -> None:
        """Stop the background sweep task."""
        if self._task is None:
            return

        self._stop_event.set()
        try:
            await asyncio.wait_for(self._task, timeout=5.0)
        except asyncio.TimeoutError:
            logger.warning("Cache sweeper did not stop gracefully, cancelling")
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        finally:
            self._task = None
            logger.info("Stopped cache sweeper")

    async def _run_sweeps(self) -> None:
        """Background task that sweeps expired entries on a fixed interval."""
        while not self._stop_event.is_set():
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self._sweep_interval)
            except asyncio.TimeoutError:
                self.sweep()
