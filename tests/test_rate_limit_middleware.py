"""Tests for rate limit enforcement helpers and the HTTP middleware."""

import hashlib
from unittest.mock import Mock

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from flowguard.app.exceptions import RateLimitExceededError
from flowguard.app.middleware.rate_limit import (
    RateLimitResult,
    RateLimitMiddleware,
    SlidingWindowRateLimiter,
    create_rate_limit_middleware,
    rate_limit_headers,
)
from flowguard.app.resilience import is_rate_limit_error


class TestCreateRateLimitMiddleware:
    """Tests for the enforcing wrapper around check()."""

    @pytest.mark.asyncio
    async def test_returns_result_when_admitted(self, clock):
        limiter = SlidingWindowRateLimiter(max_requests=2, window_seconds=60.0, clock=clock)
        enforce = create_rate_limit_middleware(limiter)

        result = await enforce({"user_id": "a"})

        assert result.is_limited is False
        assert result.remaining == 2

    @pytest.mark.asyncio
    async def test_raises_429_when_limited(self, clock):
        limiter = SlidingWindowRateLimiter(max_requests=1, window_seconds=60.0, clock=clock)
        enforce = create_rate_limit_middleware(limiter)
        await enforce({"user_id": "a"})

        clock.advance(15.2)
        with pytest.raises(RateLimitExceededError) as exc_info:
            await enforce({"user_id": "a"})

        error = exc_info.value
        assert error.status_code == 429
        # 60s window, first request 15.2s ago -> 44.8s left, rounded up
        assert error.retry_after == 45
        assert error.result.is_limited is True
        assert is_rate_limit_error(error) is True

    @pytest.mark.asyncio
    async def test_retry_after_is_at_least_one_second(self, clock):
        limiter = SlidingWindowRateLimiter(max_requests=1, window_seconds=1.0, clock=clock)
        enforce = create_rate_limit_middleware(limiter)
        await enforce({"user_id": "a"})
        clock.advance(0.9999)

        with pytest.raises(RateLimitExceededError) as exc_info:
            await enforce({"user_id": "a"})
        assert exc_info.value.retry_after == 1


def test_rate_limit_headers(clock):
    limiter = SlidingWindowRateLimiter(max_requests=10, window_seconds=60.0, clock=clock)

    result = RateLimitResult(
        limit=10, current=3, remaining=7, reset_time=clock.now + 12.5, is_limited=False
    )
    assert rate_limit_headers(result, limiter.now()) == {
        "X-RateLimit-Limit": "10",
        "X-RateLimit-Remaining": "7",
        "X-RateLimit-Reset": "13",
    }


class TestRateLimitMiddlewareContext:
    """Tests for building limiter contexts from requests."""

    @pytest.fixture
    def middleware(self):
        return RateLimitMiddleware(Mock(), limiter=SlidingWindowRateLimiter())

    def test_context_from_user_header(self, middleware):
        request = Mock()
        request.headers = {"X-User-ID": "doctor-9"}

        assert middleware._build_context(request) == {"user_id": "doctor-9"}

    def test_context_from_ip_is_hashed(self, middleware):
        request = Mock()
        request.headers = {}
        request.client.host = "192.168.1.1"

        context = middleware._build_context(request)

        expected = hashlib.sha256("192.168.1.1".encode()).hexdigest()[:32]
        assert context == {"user_id": f"ip:{expected}"}
        assert "192.168.1.1" not in context["user_id"]

    def test_context_from_x_forwarded_for(self, middleware):
        request = Mock()
        request.headers = {"X-Forwarded-For": "10.0.0.1, 192.168.1.1"}
        request.client.host = "127.0.0.1"

        context = middleware._build_context(request)

        expected = hashlib.sha256("10.0.0.1".encode()).hexdigest()[:32]
        assert context == {"user_id": f"ip:{expected}"}


class TestRateLimitMiddlewareApp:
    """End-to-end tests through a FastAPI app."""

    @pytest.fixture
    def client(self, clock):
        app = FastAPI()
        limiter = SlidingWindowRateLimiter(max_requests=2, window_seconds=60.0, clock=clock)
        app.add_middleware(RateLimitMiddleware, limiter=limiter)

        @app.get("/patients")
        async def patients():
            return {"patients": []}

        return TestClient(app)

    def test_adds_headers_when_admitted(self, client):
        resp = client.get("/patients", headers={"X-User-ID": "u1"})

        assert resp.status_code == 200
        assert resp.headers["X-RateLimit-Limit"] == "2"
        assert resp.headers["X-RateLimit-Remaining"] == "2"

    def test_returns_429_when_limited(self, client):
        for _ in range(2):
            assert client.get("/patients", headers={"X-User-ID": "u1"}).status_code == 200

        resp = client.get("/patients", headers={"X-User-ID": "u1"})

        assert resp.status_code == 429
        assert resp.headers["Retry-After"] == "60"
        assert resp.headers["X-RateLimit-Remaining"] == "0"
        body = resp.json()
        assert body["error"] == "rate_limit_exceeded"
        assert body["retry_after"] == 60

    def test_users_are_limited_separately(self, client):
        for _ in range(2):
            client.get("/patients", headers={"X-User-ID": "u1"})

        assert client.get("/patients", headers={"X-User-ID": "u2"}).status_code == 200
