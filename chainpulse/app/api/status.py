"""Health and rate limit status endpoints."""

from dataclasses import asdict
from typing import Any

from fastapi import APIRouter, Request

router = APIRouter(tags=["status"])


@router.get("/health")
async def health(request: Request) -> dict[str, Any]:
    """Report the last known RPC health and cache occupancy.

    Never probes: the answer is whatever the monitor last recorded.
    """
    container = request.app.state.container
    health_status: dict[str, Any] = {"status": "ok", "components": {}}

    monitor = container.resilience.monitor
    if monitor is not None:
        rpc_status = monitor.status
        health_status["components"]["rpc"] = rpc_status.to_dict()
        if not rpc_status.healthy:
            health_status["status"] = "degraded"

    health_status["components"]["cache"] = {
        "entries": sum(len(s.cache) for s in container.resilience.services().values())
    }
    return health_status


@router.get("/rate-limits")
async def rate_limits(request: Request) -> dict[str, Any]:
    """Snapshot of tracked rate limit state per service and endpoint."""
    container = request.app.state.container
    return {
        name: {endpoint: asdict(state) for endpoint, state in service.tracker.all_statuses().items()}
        for name, service in container.resilience.services().items()
    }
