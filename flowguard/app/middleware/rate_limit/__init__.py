"""Admission control for outbound calls.

This module provides a sliding window rate limiter, a helper turning a
denial into a classifiable 429 error, and a Starlette middleware applying
the same limiter to incoming HTTP requests.
"""

import hashlib
import math
from typing import Any, Awaitable, Callable, Dict, Mapping

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from flowguard.app.core.logging import get_log_context, get_logger
from flowguard.app.exceptions import RateLimitExceededError

# Re-export models
from flowguard.app.middleware.rate_limit.models import (
    KeyStats,
    RateLimitResult,
    RateLimitWindow,
)

# Re-export backends
from flowguard.app.middleware.rate_limit.backends import (
    ANONYMOUS_KEY,
    DEFAULT_TIERS,
    RateLimiterRegistry,
    SlidingWindowRateLimiter,
    default_key_generator,
)

logger = get_logger(__name__)

__all__ = [
    # Models
    "KeyStats",
    "RateLimitResult",
    "RateLimitWindow",
    # Backends
    "ANONYMOUS_KEY",
    "DEFAULT_TIERS",
    "RateLimiterRegistry",
    "SlidingWindowRateLimiter",
    "default_key_generator",
    # Enforcement
    "create_rate_limit_middleware",
    "rate_limit_headers",
    "RateLimitMiddleware",
]

Enforcer = Callable[[Mapping[str, Any]], Awaitable[RateLimitResult]]


def _retry_after(limiter: SlidingWindowRateLimiter, result: RateLimitResult) -> int:
    """Whole seconds until the window frees a slot (at least 1)."""
    return max(1, math.ceil(result.reset_time - limiter.now()))


def create_rate_limit_middleware(limiter: SlidingWindowRateLimiter) -> Enforcer:
    """Wrap ``limiter.check`` so a denial raises ``RateLimitExceededError``.

    The raised error carries ``status_code = 429`` and ``retry_after``, so
    the resilient executor classifies it as a rate-limit failure.

    Example:
        >>> enforce = create_rate_limit_middleware(limiter)
        >>> await enforce({"user_id": "nurse-7"})
    """

    async def enforce(context: Mapping[str, Any]) -> RateLimitResult:
        result = await limiter.check(context)
        if result.is_limited:
            retry_after = _retry_after(limiter, result)
            logger.info(
                f"Rate limit exceeded, retry after {retry_after}s",
                extra=get_log_context(rate_limit_key=limiter.key_generator(context)),
            )
            raise RateLimitExceededError(retry_after=retry_after, result=result)
        return result

    return enforce


def rate_limit_headers(result: RateLimitResult, now: float) -> Dict[str, str]:
    """``X-RateLimit-*`` headers describing a check result.

    ``X-RateLimit-Reset`` is given in seconds from now, since the limiter
    clock is monotonic rather than wall time.
    """
    return {
        "X-RateLimit-Limit": str(result.limit),
        "X-RateLimit-Remaining": str(result.remaining),
        "X-RateLimit-Reset": str(max(0, math.ceil(result.reset_time - now))),
    }


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Middleware enforcing a sliding window limit on incoming requests.

    Requests are keyed by the ``X-User-ID`` header when present, otherwise
    by a hash of the client IP.
    """

    def __init__(self, app, limiter: SlidingWindowRateLimiter):
        super().__init__(app)
        self.limiter = limiter
        self._enforce = create_rate_limit_middleware(limiter)

    def _build_context(self, request: Request) -> Dict[str, Any]:
        """Build the limiter context for a request.

        The client IP is hashed so raw addresses are never kept in memory.
        """
        user_id = request.headers.get("X-User-ID", "").strip()
        if user_id:
            return {"user_id": user_id}

        forwarded = request.headers.get("X-Forwarded-For")
        if forwarded:
            client_ip = forwarded.split(",")[0].strip()
        else:
            client_ip = request.client.host if request.client else "unknown"

        ip_hash = hashlib.sha256(client_ip.encode()).hexdigest()[:32]
        return {"user_id": f"ip:{ip_hash}"}

    async def dispatch(
        self,
        request: Request,
        call_next: RequestResponseEndpoint
    ) -> Response:
        context = self._build_context(request)
        try:
            result = await self._enforce(context)
        except RateLimitExceededError as e:
            headers = rate_limit_headers(e.result, self.limiter.now())
            headers["Retry-After"] = str(e.retry_after)
            return JSONResponse(
                status_code=e.status_code,
                content={
                    "error": "rate_limit_exceeded",
                    "message": e.message,
                    "retry_after": e.retry_after,
                },
                headers=headers,
            )

        response = await call_next(request)
        response.headers.update(rate_limit_headers(result, self.limiter.now()))
        return response
