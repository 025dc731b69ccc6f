from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncGenerator, Optional

import httpx
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from chainpulse.app.api.status import router as status_router
from chainpulse.app.clients.rpc import RpcClient
from chainpulse.app.clients.twitter import TwitterApiClient
from chainpulse.app.core.config import Settings, settings
from chainpulse.app.core.http_client import init_http_client
from chainpulse.app.core.logging import get_logger, setup_logging
from chainpulse.app.exceptions import ChainPulseError, RateLimitExceeded
from chainpulse.app.resilience.factory import Resilience, build_health_monitor, build_resilience
from chainpulse.app.resilience.health import ScheduledJob
from chainpulse.app.services.insights import InsightsService, SnapshotHandler, build_insights_job


@dataclass
class AppContainer:
    """Everything the application wires together at startup."""

    resilience: Resilience
    rpc: Optional[RpcClient] = None
    twitter: Optional[TwitterApiClient] = None
    insights_job: Optional[ScheduledJob] = None

    async def start(self) -> None:
        await self.resilience.start()
        if self.insights_job is not None:
            await self.insights_job.start()

    async def stop(self) -> None:
        if self.insights_job is not None:
            await self.insights_job.stop()
        await self.resilience.stop()


def build_container(
    http_client: httpx.AsyncClient,
    config: Settings = settings,
    snapshot_handler: Optional[SnapshotHandler] = None,
) -> AppContainer:
    """Wire clients, resilience and the insights job around one HTTP client."""
    resilience = build_resilience(config)

    rpc = RpcClient.from_settings(http_client, config, cache=resilience.rpc.cache)
    resilience.monitor = build_health_monitor(
        config,
        resilience.rpc,
        rpc.health_probes(),
    )
    twitter = TwitterApiClient.from_settings(http_client, resilience.twitter.orchestrator, config)

    insights_job = None
    if config.insights_enabled:
        service = InsightsService(rpc, snapshot_handler)
        insights_job = build_insights_job(
            service, resilience.monitor, config.insights_interval_minutes
        )

    return AppContainer(
        resilience=resilience, rpc=rpc, twitter=twitter, insights_job=insights_job
    )


def create_app(
    config: Settings = settings,
    container: Optional[AppContainer] = None,
    snapshot_handler: Optional[SnapshotHandler] = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        config: Settings used to build the container
        container: Prebuilt container; when omitted one is built during
            startup around the shared HTTP client
        snapshot_handler: Receives every chain snapshot the insights job collects

    Returns:
        Configured FastAPI application instance
    """
    setup_logging()
    logger = get_logger(__name__)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Open the shared HTTP client, then start background tasks.

        Shutdown stops the insights job before the cache sweeps and the
        health timer, and closes the HTTP client last.
        """
        async with init_http_client(config) as http_client:
            if getattr(app.state, "container", None) is None:
                app.state.container = build_container(http_client, config, snapshot_handler)
            app_container: AppContainer = app.state.container
            await app_container.start()

            logger.info(
                "Application startup complete",
                extra={
                    "rpc_url": config.rpc_url,
                    "insights_enabled": app_container.insights_job is not None,
                    "debug_mode": config.debug,
                },
            )

            yield

            await app_container.stop()

        logger.info("Application shutdown complete")

    app = FastAPI(
        title="ChainPulse",
        description="Rate-limit aware access to the Twitter API and a BNB Chain JSON-RPC node",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.container = container

    app.include_router(status_router)

    @app.exception_handler(RateLimitExceeded)
    async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
        """Handle RateLimitExceeded and return HTTP 429 response."""
        return JSONResponse(
            status_code=exc.status_code,
            content={
                "error": "rate_limited",
                "message": str(exc),
                "endpoint": exc.endpoint,
                "retry_after": exc.wait_seconds,
            },
            headers={"Retry-After": str(int(exc.wait_seconds))},
        )

    @app.exception_handler(ChainPulseError)
    async def chainpulse_error_handler(request: Request, exc: ChainPulseError) -> JSONResponse:
        logger.error(f"{type(exc).__name__}: {exc}")
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": type(exc).__name__, "message": str(exc)},
        )

    return app


# Create the application instance
app = create_app()
