"""Sliding window admission control.

The limiter keeps a log of request timestamps per key and admits a new
request only while fewer than ``max_requests`` timestamps fall inside the
trailing window. Admitting a request reserves its slot immediately.
"""

import asyncio
import time
from typing import Any, Callable, Dict, Mapping, Optional

from flowguard.app.core.config import settings
from flowguard.app.core.logging import get_log_context, get_logger
from flowguard.app.middleware.rate_limit.models import (
    KeyStats,
    RateLimitResult,
    RateLimitWindow,
)

logger = get_logger(__name__)

ANONYMOUS_KEY = "anonymous"

KeyGenerator = Callable[[Mapping[str, Any]], str]
Clock = Callable[[], float]


def default_key_generator(context: Mapping[str, Any]) -> str:
    """Derive the rate limit key from the caller's user identifier."""
    user_id = context.get("user_id")
    if user_id:
        return str(user_id)
    user = context.get("user")
    if isinstance(user, Mapping) and user.get("id"):
        return str(user["id"])
    return ANONYMOUS_KEY


class SlidingWindowRateLimiter:
    """In-memory sliding window rate limiter.

    Each limiter owns one ``key -> RateLimitWindow`` map for its lifetime.
    Callers sharing a key share its budget.

    Read-modify-write of a window happens under an ``asyncio.Lock``, so
    concurrent checks for the same key are serialised and can never admit
    more than ``max_requests`` within a window.

    A background sweep started with ``start()`` (or ``async with limiter``)
    prunes stale timestamps every ``window_seconds`` to bound memory.
    """

    def __init__(
        self,
        max_requests: Optional[int] = None,
        window_seconds: Optional[float] = None,
        key_generator: KeyGenerator = default_key_generator,
        skip_successful_requests: bool = False,
        skip_failed_requests: bool = False,
        block_seconds: Optional[float] = None,
        clock: Clock = time.monotonic,
    ):
        """Initialize the limiter.

        Args:
            max_requests: Requests admitted per window (default from settings)
            window_seconds: Length of the sliding window in seconds
            key_generator: Maps a request context to its rate limit key
            skip_successful_requests: Reserved for success-based accounting
            skip_failed_requests: Reserved for failure-based accounting
            block_seconds: Block a key this long after it hits the limit
                (0 disables blocking)
            clock: Monotonic time source in seconds
        """
        self.max_requests = (
            max_requests if max_requests is not None else settings.rate_limit_max_requests
        )
        self.window_seconds = (
            window_seconds
            if window_seconds is not None
            else settings.rate_limit_window_seconds
        )
        self.block_seconds = (
            block_seconds if block_seconds is not None else settings.rate_limit_block_seconds
        )
        if self.max_requests < 1:
            raise ValueError("max_requests must be at least 1")
        if self.window_seconds <= 0:
            raise ValueError("window_seconds must be positive")
        if self.block_seconds < 0:
            raise ValueError("block_seconds must not be negative")

        self.key_generator = key_generator
        self.skip_successful_requests = skip_successful_requests
        self.skip_failed_requests = skip_failed_requests
        self._clock = clock

        self._windows: Dict[str, RateLimitWindow] = {}
        self._lock = asyncio.Lock()
        self._task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()

    def now(self) -> float:
        """Current time on the limiter's clock."""
        return self._clock()

    async def check(self, context: Mapping[str, Any]) -> RateLimitResult:
        """Check the caller's key and reserve a slot if it is admitted."""
        return await self._evaluate(context, consume=True)

    async def peek(self, context: Mapping[str, Any]) -> RateLimitResult:
        """Check the caller's key without reserving a slot."""
        return await self._evaluate(context, consume=False)

    async def _evaluate(
        self, context: Mapping[str, Any], consume: bool
    ) -> RateLimitResult:
        key = self.key_generator(context)

        async with self._lock:
            now = self._clock()
            window = self._windows.get(key)
            if window is None:
                window = RateLimitWindow()
                if consume:
                    self._windows[key] = window

            window.prune(now - self.window_seconds)

            if window.blocked_until is not None:
                if now < window.blocked_until:
                    return RateLimitResult(
                        limit=self.max_requests,
                        current=len(window.timestamps),
                        remaining=0,
                        reset_time=window.blocked_until,
                        is_limited=True,
                        blocked_until=window.blocked_until,
                    )
                window.blocked_until = None

            current = len(window.timestamps)
            is_limited = current >= self.max_requests

            if is_limited:
                if consume and self.block_seconds > 0:
                    window.blocked_until = now + self.block_seconds
                logger.debug(
                    f"Rate limit reached for key '{key}' ({current}/{self.max_requests})",
                    extra=get_log_context(rate_limit_key=key),
                )
            elif consume:
                window.timestamps.append(now)

            if window.timestamps:
                reset_time = window.timestamps[0] + self.window_seconds
            else:
                reset_time = now + self.window_seconds

            return RateLimitResult(
                limit=self.max_requests,
                current=current,
                remaining=max(0, self.max_requests - current),
                reset_time=reset_time,
                is_limited=is_limited,
                blocked_until=window.blocked_until,
            )

    def reset(self, key: str) -> None:
        """Forget all recorded requests for a key."""
        self._windows.pop(key, None)

    def reset_all(self) -> None:
        """Forget all recorded requests for every key."""
        self._windows.clear()

    def get_stats(self) -> Dict[str, KeyStats]:
        """Per-key usage within the current window."""
        window_start = self._clock() - self.window_seconds
        stats: Dict[str, KeyStats] = {}
        for key, window in self._windows.items():
            requests = sum(1 for ts in window.timestamps if ts > window_start)
            stats[key] = KeyStats(
                requests=requests,
                percentage=requests / self.max_requests * 100,
            )
        return stats

    async def cleanup(self) -> int:
        """Prune stale timestamps and drop empty keys.

        Returns:
            Number of keys removed.
        """
        async with self._lock:
            now = self._clock()
            window_start = now - self.window_seconds
            expired = []
            for key, window in self._windows.items():
                window.prune(window_start)
                if window.blocked_until is not None and window.blocked_until <= now:
                    window.blocked_until = None
                if window.is_empty():
                    expired.append(key)
            for key in expired:
                del self._windows[key]
            return len(expired)

    async def start(self) -> None:
        """Start the periodic background sweep."""
        if self._task is not None:
            logger.debug("Rate limiter sweep already running")
            return

        self._stop_event.clear()
        self._task = asyncio.create_task(self._run_cleanup())
        logger.debug(f"Started rate limiter sweep (interval: {self.window_seconds}s)")

    async def stop(self) -> None:
        """Stop the background sweep."""
        if self._task is None:
            return

        self._stop_event.set()
        try:
            await asyncio.wait_for(self._task, timeout=5.0)
        except asyncio.TimeoutError:
            logger.warning("Rate limiter sweep did not stop gracefully, cancelling")
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        finally:
            self._task = None
            logger.debug("Stopped rate limiter sweep")

    @property
    def running(self) -> bool:
        return self._task is not None

    async def _run_cleanup(self) -> None:
        while not self._stop_event.is_set():
            try:
                await asyncio.wait_for(
                    self._stop_event.wait(), timeout=self.window_seconds
                )
            except asyncio.TimeoutError:
                removed = await self.cleanup()
                if removed:
                    logger.debug(f"Rate limiter sweep removed {removed} idle keys")

    async def __aenter__(self) -> "SlidingWindowRateLimiter":
        await self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.stop()


# Endpoint tiers: (max_requests, window_seconds, block_seconds)
DEFAULT_TIERS: Dict[str, tuple] = {
    "default": (100, 60.0, 300.0),
    "auth": (5, 60.0, 900.0),
    "payment": (10, 60.0, 300.0),
    "admin": (50, 60.0, 300.0),
    "read": (200, 60.0, 60.0),
}


class RateLimiterRegistry:
    """Named limiter tiers shared by reference.

    Build one registry at startup and pass it to the components that need
    admission control. Unknown tiers fall back to ``default``.
    """

    def __init__(
        self,
        tiers: Optional[Dict[str, tuple]] = None,
        key_generator: KeyGenerator = default_key_generator,
        clock: Clock = time.monotonic,
    ):
        tiers = tiers if tiers is not None else DEFAULT_TIERS
        if "default" not in tiers:
            raise ValueError("A 'default' tier is required")

        self._limiters: Dict[str, SlidingWindowRateLimiter] = {
            name: SlidingWindowRateLimiter(
                max_requests=max_requests,
                window_seconds=window_seconds,
                block_seconds=block_seconds,
                key_generator=key_generator,
                clock=clock,
            )
            for name, (max_requests, window_seconds, block_seconds) in tiers.items()
        }

    def get(self, tier: str = "default") -> SlidingWindowRateLimiter:
        return self._limiters.get(tier) or self._limiters["default"]

    @property
    def tiers(self) -> list[str]:
        return list(self._limiters)

    async def check(
        self, context: Mapping[str, Any], tier: str = "default"
    ) -> RateLimitResult:
        return await self.get(tier).check(context)

    def reset(self, key: str, tier: str = "default") -> None:
        self.get(tier).reset(key)

    def get_stats(self) -> Dict[str, Dict[str, KeyStats]]:
        return {name: limiter.get_stats() for name, limiter in self._limiters.items()}

    async def start(self) -> None:
        for limiter in self._limiters.values():
            await limiter.start()

    async def stop(self) -> None:
        for limiter in self._limiters.values():
            await limiter.stop()

    async def __aenter__(self) -> "RateLimiterRegistry":
        await self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.stop()
