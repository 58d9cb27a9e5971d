"""Shared HTTP client management for connection pooling.

The response cache fetches through one pooled ``httpx.AsyncClient``. The
client is opened by ``init_http_client()`` around the application's
lifetime and reused by every strategy.
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

import httpx

from flowguard.app.core.config import settings


_shared_http_client: httpx.AsyncClient | None = None


def _default_timeout() -> httpx.Timeout:
    return httpx.Timeout(
        connect=settings.httpx_connect_timeout,
        read=settings.httpx_read_timeout,
        write=settings.httpx_write_timeout,
        pool=settings.httpx_pool_timeout,
    )


def _default_limits() -> httpx.Limits:
    return httpx.Limits(
        max_connections=settings.httpx_max_connections,
        max_keepalive_connections=settings.httpx_max_keepalive_connections,
        keepalive_expiry=settings.httpx_keepalive_expiry,
    )


def get_http_client() -> httpx.AsyncClient:
    """Get the shared HTTP client instance.

    Raises:
        RuntimeError: If the HTTP client has not been initialized.
    """
    if _shared_http_client is None:
        raise RuntimeError(
            "HTTP client not initialized. Wrap the caller in init_http_client()."
        )
    return _shared_http_client


@asynccontextmanager
async def init_http_client() -> AsyncGenerator[httpx.AsyncClient, None]:
    """Initialize and yield the shared HTTP client.

        async with init_http_client():
            response = await cache.network_first(url)
    """
    global _shared_http_client

    _shared_http_client = httpx.AsyncClient(
        timeout=_default_timeout(), limits=_default_limits()
    )

    try:
        yield _shared_http_client
    finally:
        if _shared_http_client is not None:
            await _shared_http_client.aclose()
            _shared_http_client = None


def create_http_client(**kwargs) -> httpx.AsyncClient:
    """Create a new HTTP client with default settings.

    The returned client should be closed when done:
        async with create_http_client() as client:
            ...

    Args:
        **kwargs: Override default settings. Can include:
            - timeout: Single timeout value (overrides the granular timeouts)
            - transport: Custom transport (e.g. ``httpx.MockTransport``)
            - base_url: Base URL for relative requests

    Returns:
        A new httpx.AsyncClient instance.
    """
    timeout_override = kwargs.pop("timeout", None)
    timeout = (
        httpx.Timeout(timeout_override)
        if timeout_override is not None
        else _default_timeout()
    )
    return httpx.AsyncClient(timeout=timeout, limits=_default_limits(), **kwargs)
