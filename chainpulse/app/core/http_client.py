"""Shared HTTP client management for connection pooling.

One ``httpx.AsyncClient`` is opened during application startup and handed
to every API client, so the Twitter and RPC clients reuse connections.
"""

from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator

import httpx

from chainpulse.app.core.config import Settings, settings


def _timeout(config: Settings) -> httpx.Timeout:
    return httpx.Timeout(
        connect=config.httpx_connect_timeout,
        read=config.httpx_read_timeout,
        write=config.httpx_write_timeout,
        pool=config.httpx_pool_timeout,
    )


def _limits(config: Settings) -> httpx.Limits:
    return httpx.Limits(
        max_connections=config.httpx_max_connections,
        max_keepalive_connections=config.httpx_max_keepalive_connections,
        keepalive_expiry=config.httpx_keepalive_expiry,
    )


@asynccontextmanager
async def init_http_client(config: Settings = settings) -> AsyncGenerator[httpx.AsyncClient, None]:
    """Open the shared HTTP client and close it on exit.

    Used in the FastAPI lifespan:

        async with init_http_client() as http_client:
            yield
    """
    client = create_http_client(config)
    try:
        yield client
    finally:
        await client.aclose()


def create_http_client(config: Settings = settings, **kwargs: Any) -> httpx.AsyncClient:
    """Create a standalone HTTP client with the configured pool settings.

    The caller owns the client and must close it:
        async with create_http_client() as client:
            ...

    Args:
        config: Settings to read timeouts and pool limits from
        **kwargs: Passed through to ``httpx.AsyncClient`` (e.g. ``transport``)
    """
    timeout_override = kwargs.pop("timeout", None)
    timeout = httpx.Timeout(timeout_override) if timeout_override is not None else _timeout(config)
    return httpx.AsyncClient(timeout=timeout, limits=_limits(config), **kwargs)
