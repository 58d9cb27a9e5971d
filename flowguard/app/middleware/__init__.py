"""Middleware package for flowguard."""

from flowguard.app.middleware.rate_limit import (
    RateLimitMiddleware,
    RateLimiterRegistry,
    SlidingWindowRateLimiter,
    create_rate_limit_middleware,
)

__all__ = [
    "RateLimitMiddleware",
    "RateLimiterRegistry",
    "SlidingWindowRateLimiter",
    "create_rate_limit_middleware",
]
