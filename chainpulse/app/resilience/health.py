"""Health monitoring and health-gated scheduled jobs.

This module provides:
- HealthMonitor: probes an external service through a RetryOrchestrator
  and keeps the resulting HealthStatus
- ScheduledJob: runs a periodic cycle only while the monitor reports the
  service healthy, and re-probes immediately when a whole cycle fails
"""

import asyncio
import time
from collections.abc import Sized
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional

from chainpulse.app.core.logging import get_log_context, get_logger
from chainpulse.app.resilience.models import HealthState, HealthStatus
from chainpulse.app.resilience.retry import RetryOrchestrator

logger = get_logger(__name__)

ProbeFn = Callable[[], Awaitable[Any]]
CycleFn = Callable[[], Awaitable[Any]]

DEFAULT_MAX_AGE = 10 * 60


def is_trivial(value: Any) -> bool:
    """Check if a probe result carries no information (None, zero, empty)."""
    if value is None or value is False:
        return True
    if isinstance(value, (int, float, Decimal)) and not isinstance(value, bool):
        return value == 0
    if isinstance(value, str):
        return value.strip() in ("", "0")
    if isinstance(value, Sized):
        return len(value) == 0
    return False


class HealthMonitor:
    """Tracks whether an external service is usable.

    ``healthy`` is only ever set by a completed probe. Elapsed time decides
    when to probe again, never what the answer is.

    Usage:
        monitor = HealthMonitor(
            orchestrator,
            probes=rpc.health_probes(),
        )
        status = await monitor.ensure_fresh()
        if not status.healthy:
            ...  # skip work this cycle
    """

    def __init__(
        self,
        orchestrator: RetryOrchestrator,
        probes: Mapping[str, ProbeFn],
        max_age: float = DEFAULT_MAX_AGE,
        check_interval: float = 0.0,
        clock: Callable[[], float] = time.time,
    ):
        """Initialize the health monitor.

        Args:
            orchestrator: Orchestrator the probes are executed through
            probes: Endpoint key -> lightweight read call
            max_age: Seconds after which ``ensure_fresh`` re-probes
            check_interval: Seconds between background probes; 0 disables
                the background timer
            clock: Returns the current time in seconds
        """
        if not probes:
            raise ValueError("at least one probe is required")
        self._orchestrator = orchestrator
        self._probes: Dict[str, ProbeFn] = dict(probes)
        self._max_age = max_age
        self._check_interval = check_interval
        self._clock = clock
        self._status = HealthStatus()
        self._lock = asyncio.Lock()
        self._task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()

    @property
    def status(self) -> HealthStatus:
        return self._status

    @property
    def is_healthy(self) -> bool:
        return self._status.healthy

    def is_stale(self, max_age: Optional[float] = None) -> bool:
        """A monitor that has never probed is always stale."""
        last = self._status.last_checked_at
        if last is None:
            return True
        limit = self._max_age if max_age is None else max_age
        return self._clock() - last > limit

    async def probe(self) -> bool:
        """Run every probe once and record the outcome.

        Returns:
            True if every probe returned a non-trivial result
        """
        async with self._lock:
            return await self._probe()

    async def ensure_fresh(self, max_age: Optional[float] = None) -> HealthStatus:
        """Re-probe if the last result is older than ``max_age``, then return the status."""
        async with self._lock:
            if self.is_stale(max_age):
                await self._probe()
            return self._status

    async def _probe(self) -> bool:
        healthy = True
        for endpoint, probe_fn in self._probes.items():
            try:
                result = await self._orchestrator.execute(endpoint, probe_fn)
            except Exception as e:
                logger.warning(
                    f"Health probe '{endpoint}' failed: {type(e).__name__}: {e}",
                    extra=get_log_context(endpoint=endpoint),
                )
                healthy = False
                break
            if is_trivial(result):
                logger.warning(
                    f"Health probe '{endpoint}' returned an empty result: {result!r}",
                    extra=get_log_context(endpoint=endpoint),
                )
                healthy = False
                break

        previous = self._status.state
        state = HealthState.HEALTHY if healthy else HealthState.DEGRADED
        self._status = HealthStatus(state=state, last_checked_at=self._clock())

        if previous != state:
            if healthy:
                logger.info(
                    f"Service is now healthy (was {previous.value})",
                    extra=get_log_context(health_state=state.value),
                )
            else:
                logger.warning(
                    f"Service is now degraded (was {previous.value})",
                    extra=get_log_context(health_state=state.value),
                )
        return healthy

    async def start(self) -> None:
        """Start the background probe task, if a check interval is configured."""
        if self._check_interval <= 0:
            logger.debug("Health check interval is 0, background probing disabled")
            return
        if self._task is not None:
            logger.debug("Health monitor already running")
            return

        self._stop_event.clear()
        self._task = asyncio.create_task(self._run_checks())
        logger.info(f"Started health monitor (interval: {self._check_interval}s)")

    async def stop(self) -> None:
        """Stop the background probe task."""
        if self._task is None:
            return

        self._stop_event.set()
        try:
            await asyncio.wait_for(self._task, timeout=5.0)
        except asyncio.TimeoutError:
            logger.warning("Health monitor task did not stop gracefully, cancelling")
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        finally:
            self._task = None
            logger.info("Stopped health monitor")

    async def _run_checks(self) -> None:
        """Background task that probes on a fixed interval."""
        while not self._stop_event.is_set():
            try:
                await self.probe()
            except Exception as e:
                logger.error(f"Error during health check cycle: {e}")

            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self._check_interval)
            except asyncio.TimeoutError:
                pass


class ScheduledJob:
    """Periodic job gated on a HealthMonitor.

    Each cycle first calls ``monitor.ensure_fresh()``. A degraded service
    means the whole cycle is skipped; the job never runs half a cycle on
    stale assumptions. When a cycle raises, the monitor is re-probed right
    away instead of waiting for the next interval.
    """

    def __init__(
        self,
        name: str,
        monitor: HealthMonitor,
        cycle: CycleFn,
        interval: float,
        max_age: Optional[float] = None,
    ):
        self.name = name
        self.monitor = monitor
        self.interval = interval
        self._cycle = cycle
        self._max_age = max_age
        self._task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()
        self.completed = 0
        self.skipped = 0
        self.failed = 0

    async def run_once(self) -> bool:
        """Run a single gated cycle.

        Returns:
            True if the cycle ran to completion
        """
        status = await self.monitor.ensure_fresh(self._max_age)
        if not status.healthy:
            self.skipped += 1
            logger.info(
                f"Skipping {self.name} cycle: service is {status.state.value}",
                extra=get_log_context(operation=self.name, health_state=status.state.value),
            )
            return False

        try:
            await self._cycle()
        except Exception as e:
            self.failed += 1
            logger.error(
                f"{self.name} cycle failed: {type(e).__name__}: {e}. Re-probing service health.",
                extra=get_log_context(operation=self.name),
            )
            await self.monitor.probe()
            return False

        self.completed += 1
        return True

    async def start(self, run_immediately: bool = True) -> None:
        """Start running the job every ``interval`` seconds."""
        if self._task is not None:
            logger.debug(f"{self.name} already running")
            return

        self._stop_event.clear()
        self._task = asyncio.create_task(self._run_loop(run_immediately))
        logger.info(f"Started {self.name} (interval: {self.interval}s)")

    async def stop(self) -> None:
        if self._task is None:
            return

        self._stop_event.set()
        try:
            await asyncio.wait_for(self._task, timeout=5.0)
        except asyncio.TimeoutError:
            logger.warning(f"{self.name} did not stop gracefully, cancelling")
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        finally:
            self._task = None
            logger.info(f"Stopped {self.name}")

    async def _run_loop(self, run_immediately: bool) -> None:
        if not run_immediately:
            if await self._wait_interval():
                return

        while not self._stop_event.is_set():
            try:
                await self.run_once()
            except Exception as e:
                logger.error(f"Error during {self.name} cycle: {e}")

            if await self._wait_interval():
                return

    async def _wait_interval(self) -> bool:
        """Wait one interval. Returns True if the job was stopped meanwhile."""
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval)
        except asyncio.TimeoutError:
            return False
        return True
