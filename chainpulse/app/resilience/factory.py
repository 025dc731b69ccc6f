"""Wiring for the resilience layer.

Each external service gets its own tracker, cache and orchestrator. Nothing
here is a module-level singleton: the application builds one ``Resilience``
container at startup and passes its parts to whoever needs them.
"""

import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from chainpulse.app.core.cache import TTLCache
from chainpulse.app.core.config import Settings
from chainpulse.app.core.logging import get_logger
from chainpulse.app.resilience.health import HealthMonitor, ProbeFn
from chainpulse.app.resilience.rate_limit import RateLimitTracker
from chainpulse.app.resilience.retry import BackoffPolicy, RetryOrchestrator

logger = get_logger(__name__)


@dataclass
class ServiceResilience:
    """Rate limit state, cache and orchestrator for one external service."""

    tracker: RateLimitTracker
    cache: TTLCache
    orchestrator: RetryOrchestrator


@dataclass
class Resilience:
    twitter: ServiceResilience
    rpc: ServiceResilience
    monitor: Optional[HealthMonitor] = None

    def services(self) -> Dict[str, ServiceResilience]:
        return {"twitter": self.twitter, "rpc": self.rpc}

    async def start(self) -> None:
        """Start cache sweeps and, if configured, the health timer."""
        for service in self.services().values():
            await service.cache.start()
        if self.monitor is not None:
            await self.monitor.start()

    async def stop(self) -> None:
        if self.monitor is not None:
            await self.monitor.stop()
        for service in self.services().values():
            await service.cache.stop()


def build_service_resilience(
    config: Settings,
    clock: Callable[[], float] = time.time,
    cache_ttl_ms: Optional[int] = None,
) -> ServiceResilience:
    """Tracker, cache and orchestrator for one service.

    ``cache_ttl_ms`` defaults to ``config.rpc_cache_ttl``.
    """
    tracker = RateLimitTracker(
        safety_margin=config.rate_limit_safety_margin,
        default_retry_after=config.rate_limit_default_retry_after,
        endpoint_margins=config.rate_limit_endpoint_margins,
        clock=clock,
    )
    cache = TTLCache(
        ttl_ms=config.rpc_cache_ttl if cache_ttl_ms is None else cache_ttl_ms,
        sweep_interval=config.cache_sweep_interval_seconds,
        clock=clock,
    )
    orchestrator = RetryOrchestrator(
        tracker, cache=cache, max_attempts=config.retry_max_attempts
    )
    return ServiceResilience(tracker=tracker, cache=cache, orchestrator=orchestrator)


def build_backoff_policy(config: Settings) -> BackoffPolicy:
    return BackoffPolicy(
        schedule=tuple(config.rpc_backoff_schedule),
        max_attempts=config.rpc_retry_attempts,
    )


def build_health_monitor(
    config: Settings,
    service: ServiceResilience,
    probes: Dict[str, ProbeFn],
    clock: Callable[[], float] = time.time,
) -> HealthMonitor:
    """Monitor whose probes run through ``service``'s orchestrator."""
    return HealthMonitor(
        service.orchestrator,
        probes,
        max_age=config.health_max_age_seconds,
        check_interval=config.health_check_interval_seconds,
        clock=clock,
    )


def build_resilience(
    config: Settings,
    probes: Optional[Dict[str, ProbeFn]] = None,
    clock: Callable[[], float] = time.time,
) -> Resilience:
    """Build the resilience container.

    Args:
        config: Application settings
        probes: Health probes for the RPC service; without them no
            monitor is created
        clock: Returns the current time in seconds, shared by every part
    """
    twitter = build_service_resilience(config, clock, cache_ttl_ms=config.twitter_cache_ttl)
    rpc = build_service_resilience(config, clock, cache_ttl_ms=config.rpc_cache_ttl)
    monitor = build_health_monitor(config, rpc, probes, clock) if probes else None

    logger.debug(
        f"Resilience layer built (safety margin: {config.rate_limit_safety_margin}, "
        f"max attempts: {config.retry_max_attempts})"
    )
    return Resilience(twitter=twitter, rpc=rpc, monitor=monitor)
