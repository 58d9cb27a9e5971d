"""Rate limiting data models.

This module contains dataclasses for rate limit state and results.
"""

from collections import deque
from dataclasses import dataclass, field
from typing import Deque, Optional


@dataclass
class RateLimitResult:
    """Result of an admission check.

    ``reset_time`` is on the limiter's clock: the instant the oldest
    counted request leaves the window.
    """
    limit: int
    current: int
    remaining: int
    reset_time: float
    is_limited: bool
    blocked_until: Optional[float] = None

    @property
    def allowed(self) -> bool:
        return not self.is_limited


@dataclass
class RateLimitWindow:
    """Request timestamps recorded for one key (sliding window log)."""
    timestamps: Deque[float] = field(default_factory=deque)
    blocked_until: Optional[float] = None

    def prune(self, window_start: float) -> None:
        """Drop timestamps at or before ``window_start``."""
        while self.timestamps and self.timestamps[0] <= window_start:
            self.timestamps.popleft()

    def is_empty(self) -> bool:
        return not self.timestamps and self.blocked_until is None


@dataclass
class KeyStats:
    """Usage of one key within the current window."""
    requests: int
    percentage: float
