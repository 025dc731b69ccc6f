"""Tests for health monitoring and health-gated jobs."""

import asyncio
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from chainpulse.app.exceptions import CycleFailedError
from chainpulse.app.resilience.health import HealthMonitor, ScheduledJob, is_trivial
from chainpulse.app.resilience.models import HealthState
from chainpulse.app.resilience.rate_limit import RateLimitTracker
from chainpulse.app.resilience.retry import RetryOrchestrator


def _monitor(clock, probes, **kwargs):
    orchestrator = RetryOrchestrator(RateLimitTracker(clock=clock))
    return HealthMonitor(orchestrator, probes, clock=clock, **kwargs)


class TestIsTrivial:
    """Tests for probe result triviality."""

    @pytest.mark.parametrize("value", [None, False, 0, 0.0, "", "0", " 0 ", [], {}])
    def test_trivial(self, value):
        assert is_trivial(value)

    @pytest.mark.parametrize("value", [1, 12345, "0.000000003", ["tx"], {"a": 1}, True])
    def test_not_trivial(self, value):
        assert not is_trivial(value)


class TestHealthMonitor:
    """Tests for HealthMonitor probing."""

    def test_initial_state_is_unknown_and_unhealthy(self, clock):
        """Before any probe the service is not considered healthy."""
        monitor = _monitor(clock, {"gasPrice": AsyncMock(return_value="1")})

        assert monitor.status.state is HealthState.UNKNOWN
        assert not monitor.is_healthy
        assert monitor.is_stale()

    def test_requires_probes(self, clock):
        with pytest.raises(ValueError):
            _monitor(clock, {})

    @pytest.mark.asyncio
    async def test_successful_probe(self, clock):
        """All probes returning data means healthy."""
        monitor = _monitor(clock, {
            "gasPrice": AsyncMock(return_value="0.000000003"),
            "blockNumber": AsyncMock(return_value=41_000_000),
        })

        assert await monitor.probe() is True
        assert monitor.status.state is HealthState.HEALTHY
        assert monitor.status.last_checked_at == clock()

    @pytest.mark.asyncio
    async def test_trivial_result_degrades(self, clock):
        """A zero block number means the node is not usable."""
        monitor = _monitor(clock, {
            "gasPrice": AsyncMock(return_value="0.000000003"),
            "blockNumber": AsyncMock(return_value=0),
        })

        assert await monitor.probe() is False
        assert monitor.status.state is HealthState.DEGRADED

    @pytest.mark.asyncio
    async def test_probe_error_degrades(self, clock):
        """An exception from a probe is recorded, not raised."""
        monitor = _monitor(clock, {"gasPrice": AsyncMock(side_effect=httpx.ConnectError("down"))})

        assert await monitor.probe() is False
        assert monitor.status.state is HealthState.DEGRADED
        assert monitor.status.last_checked_at == clock()

    @pytest.mark.asyncio
    async def test_state_transition_is_logged(self, clock):
        """Going from degraded to healthy logs the transition."""
        probe = AsyncMock(side_effect=["0", "0.000000003"])
        monitor = _monitor(clock, {"gasPrice": probe})

        await monitor.probe()
        with patch("chainpulse.app.resilience.health.logger") as mock_logger:
            await monitor.probe()

        mock_logger.info.assert_called_once()
        assert "healthy" in mock_logger.info.call_args[0][0]

    @pytest.mark.asyncio
    async def test_ensure_fresh_reuses_recent_result(self, clock):
        """A result younger than max_age is not re-probed."""
        probe = AsyncMock(return_value="1")
        monitor = _monitor(clock, {"gasPrice": probe}, max_age=600)

        await monitor.ensure_fresh()
        clock.advance(300)
        status = await monitor.ensure_fresh()

        assert status.healthy
        assert probe.call_count == 1

    @pytest.mark.asyncio
    async def test_ensure_fresh_reprobes_stale_result(self, clock):
        """Elapsed time triggers a probe but never decides the answer."""
        probe = AsyncMock(side_effect=["1", "0"])
        monitor = _monitor(clock, {"gasPrice": probe}, max_age=600)

        await monitor.ensure_fresh()
        clock.advance(601)
        status = await monitor.ensure_fresh()

        assert probe.call_count == 2
        assert status.state is HealthState.DEGRADED

    @pytest.mark.asyncio
    async def test_ensure_fresh_custom_max_age(self, clock):
        probe = AsyncMock(return_value="1")
        monitor = _monitor(clock, {"gasPrice": probe}, max_age=600)

        await monitor.ensure_fresh()
        clock.advance(61)
        await monitor.ensure_fresh(max_age=60)

        assert probe.call_count == 2

    @pytest.mark.asyncio
    async def test_background_timer_disabled_by_default(self, clock):
        """A zero check interval starts no task."""
        probe = AsyncMock(return_value="1")
        monitor = _monitor(clock, {"gasPrice": probe})

        await monitor.start()
        await asyncio.sleep(0)
        await monitor.stop()

        probe.assert_not_called()

    @pytest.mark.asyncio
    async def test_background_timer_probes(self, clock):
        """With an interval the monitor probes on its own."""
        probe = AsyncMock(return_value="1")
        monitor = _monitor(clock, {"gasPrice": probe}, check_interval=0.01)

        await monitor.start()
        try:
            await asyncio.sleep(0.05)
        finally:
            await monitor.stop()

        assert probe.call_count >= 1
        assert monitor.is_healthy


class TestScheduledJob:
    """Tests for health-gated scheduled jobs."""

    @pytest.mark.asyncio
    async def test_degraded_cycles_skip_then_recover(self, clock):
        """Three failed probes skip three cycles; the fourth runs the job."""
        probe = AsyncMock(side_effect=["0", "0", "0", "0.000000003"])
        monitor = _monitor(clock, {"gasPrice": probe}, max_age=600)
        cycle = AsyncMock()
        job = ScheduledJob("bnb-insights", monitor, cycle, interval=1800)

        with patch("chainpulse.app.resilience.health.logger") as mock_logger:
            for _ in range(3):
                assert await job.run_once() is False
                assert not monitor.status.healthy
                clock.advance(1800)

        cycle.assert_not_called()
        assert job.skipped == 3
        skip_logs = [c for c in mock_logger.info.call_args_list if "Skipping" in c[0][0]]
        assert len(skip_logs) == 3

        assert await job.run_once() is True
        assert monitor.status.healthy
        cycle.assert_awaited_once()
        assert job.completed == 1

    @pytest.mark.asyncio
    async def test_failed_cycle_reprobes(self, clock):
        """A cycle that fails as a whole triggers an immediate probe."""
        probe = AsyncMock(side_effect=["1", "0"])
        monitor = _monitor(clock, {"gasPrice": probe})
        cycle = AsyncMock(side_effect=CycleFailedError("All chain data fetches failed"))
        job = ScheduledJob("bnb-insights", monitor, cycle, interval=1800)

        assert await job.run_once() is False

        assert probe.call_count == 2
        assert job.failed == 1
        assert monitor.status.state is HealthState.DEGRADED

    @pytest.mark.asyncio
    async def test_start_and_stop(self, clock):
        """The loop runs cycles until stopped."""
        monitor = _monitor(clock, {"gasPrice": AsyncMock(return_value="1")})
        cycle = AsyncMock()
        job = ScheduledJob("bnb-insights", monitor, cycle, interval=0.01)

        await job.start()
        try:
            await asyncio.sleep(0.05)
        finally:
            await job.stop()

        assert cycle.await_count >= 1
        assert job.completed == cycle.await_count

    @pytest.mark.asyncio
    async def test_start_without_immediate_run(self, clock):
        """With run_immediately=False nothing runs before the first interval."""
        monitor = _monitor(clock, {"gasPrice": AsyncMock(return_value="1")})
        cycle = AsyncMock()
        job = ScheduledJob("bnb-insights", monitor, cycle, interval=60)

        await job.start(run_immediately=False)
        await asyncio.sleep(0.01)
        await job.stop()

        cycle.assert_not_called()
