"""Tests for shared HTTP client management."""

import httpx
import pytest

from flowguard.app.core import http_client
from flowguard.app.core.http_client import (
    create_http_client,
    get_http_client,
    init_http_client,
)


def test_get_http_client_requires_init():
    with pytest.raises(RuntimeError, match="not initialized"):
        get_http_client()


@pytest.mark.asyncio
async def test_init_http_client_lifecycle():
    async with init_http_client() as client:
        assert get_http_client() is client
        assert client.timeout.connect == 10.0
        assert client.timeout.read == 30.0

    assert client.is_closed
    assert http_client._shared_http_client is None


@pytest.mark.asyncio
async def test_create_http_client_with_transport():
    transport = httpx.MockTransport(lambda request: httpx.Response(204))

    async with create_http_client(transport=transport, timeout=2.5) as client:
        response = await client.get("https://api.example.org/health")

    assert response.status_code == 204
    assert client.timeout.read == 2.5
