"""Guarded HTTP GET combining admission control, backoff and caching.

A call first asks the limiter for a slot, then runs the cache strategy
under the resilient executor. The three components keep their own state;
the client only calls them in sequence.
"""

from typing import Any, Dict, Mapping, Optional

import httpx

from flowguard.app.core.logging import get_log_context, get_logger
from flowguard.app.middleware.rate_limit import (
    SlidingWindowRateLimiter,
    create_rate_limit_middleware,
)
from flowguard.app.resilience.retry import ExecuteOptions, ResilientExecutor
from flowguard.app.services.response_cache import ResponseCache

logger = get_logger(__name__)

STRATEGIES = ("cache_first", "network_first", "stale_while_revalidate")


class ResilientClient:
    """GET requests through limiter, executor and response cache.

    Usage:
        client = ResilientClient(limiter, executor, cache)
        response = await client.get(
            "/rest/v1/appointments", key="appointments", context={"user_id": uid}
        )
    """

    def __init__(
        self,
        limiter: SlidingWindowRateLimiter,
        executor: ResilientExecutor,
        cache: ResponseCache,
    ):
        self.limiter = limiter
        self.executor = executor
        self.cache = cache
        self._enforce = create_rate_limit_middleware(limiter)

    async def get(
        self,
        url: str,
        *,
        key: str,
        context: Optional[Mapping[str, Any]] = None,
        strategy: str = "network_first",
        options: Optional[Dict[str, Any]] = None,
    ) -> httpx.Response:
        """Fetch ``url`` under admission control, backoff and caching.

        Args:
            url: Absolute URL, or relative to the cache's base URL
            key: Circuit breaker key for the call
            context: Admission context (defaults to ``{"user_id": key}``)
            strategy: One of ``STRATEGIES``
            options: Extra ``ExecuteOptions`` fields

        Raises:
            RateLimitExceededError: If admission control denies the call
            CircuitOpenError: If the key's circuit is open
            httpx.HTTPStatusError: For a 429 answer once retries are spent
        """
        if strategy not in STRATEGIES:
            raise ValueError(f"Unknown cache strategy: {strategy}")

        await self._enforce(context if context is not None else {"user_id": key})

        fetch = getattr(self.cache, strategy)

        async def operation() -> httpx.Response:
            response = await fetch(url)
            if response.status_code == 429:
                logger.debug(
                    "Upstream answered 429",
                    extra=get_log_context(rate_limit_key=key, url=url, status_code=429),
                )
                response.raise_for_status()
            return response

        return await self.executor.execute(
            operation, ExecuteOptions(key=key, **(options or {}))
        )
