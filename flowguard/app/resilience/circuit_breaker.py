"""Per-key circuit breaker state.

The breaker has two observable states. A key is OPEN while ``now`` is
before its ``open_until`` instant and CLOSED otherwise. There is no
half-open probe: the first check after ``open_until`` passes closes the
circuit and clears the failure count, so the next call is a fresh attempt.
"""

import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from flowguard.app.core.logging import get_log_context, get_logger

logger = get_logger(__name__)


@dataclass
class CircuitState:
    """Failure history of one key."""

    failure_count: int = 0
    open_until: Optional[float] = None

    def reset(self) -> None:
        self.failure_count = 0
        self.open_until = None


class CircuitBreakerRegistry:
    """Owns the ``key -> CircuitState`` map.

    Create one registry and hand it to every executor that should share
    circuit state. Entries are created lazily and kept for the registry's
    lifetime.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._states: Dict[str, CircuitState] = {}
        self._clock = clock

    def now(self) -> float:
        return self._clock()

    def get(self, key: str) -> CircuitState:
        state = self._states.get(key)
        if state is None:
            state = CircuitState()
            self._states[key] = state
        return state

    def is_open(self, key: str) -> bool:
        """Whether calls for ``key`` must be rejected right now.

        An expired circuit is closed here, resetting its failure count.
        """
        state = self.get(key)
        if state.open_until is None:
            return False
        if self._clock() < state.open_until:
            return True

        logger.info(
            f"Circuit for '{key}' closed after timeout",
            extra=get_log_context(rate_limit_key=key),
        )
        state.reset()
        return False

    def record_success(self, key: str) -> None:
        self.get(key).reset()

    def record_failure(self, key: str, threshold: int, timeout: float) -> CircuitState:
        """Count a rate-limit failure, opening the circuit at ``threshold``."""
        state = self.get(key)
        state.failure_count += 1
        if state.failure_count >= threshold:
            state.open_until = self._clock() + timeout
            logger.warning(
                f"Circuit for '{key}' opened for {timeout}s after "
                f"{state.failure_count} rate limit failures",
                extra=get_log_context(rate_limit_key=key),
            )
        return state

    def reset(self, key: str) -> None:
        self._states.pop(key, None)

    def reset_all(self) -> None:
        self._states.clear()

    def snapshot(self) -> Dict[str, CircuitState]:
        """Copy of every key's state, for diagnostics."""
        return {
            key: CircuitState(state.failure_count, state.open_until)
            for key, state in self._states.items()
        }
