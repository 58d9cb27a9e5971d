"""Exponential backoff for rate-limited operations.

This module executes an async operation under retry and circuit breaker
discipline. Only rate-limit failures (HTTP 429 or a "rate limit" message)
are retried and counted against the circuit. Anything else is re-raised
on the first attempt so genuine bugs are never hidden behind retries.
"""

import asyncio
import functools
import inspect
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional, TypeVar, Union

from flowguard.app.core.config import settings
from flowguard.app.core.logging import get_log_context, get_logger
from flowguard.app.exceptions import CircuitOpenError
from flowguard.app.resilience.circuit_breaker import CircuitBreakerRegistry

logger = get_logger(__name__)

T = TypeVar("T")
F = TypeVar("F", bound=Callable[..., Any])

RATE_LIMIT_STATUS = 429

RetryCallback = Callable[[int, float], Union[None, Awaitable[None]]]


@dataclass
class ExecuteOptions:
    """Per-call retry and circuit breaker configuration.

    Attributes:
        key: Circuit key; callers using the same key share fate
        max_retries: Retries after the first attempt (default: 4)
        base_delay: Delay before the first retry in seconds (default: 1.0)
        max_delay: Upper bound for any delay in seconds (default: 8.0)
        circuit_breaker_threshold: Consecutive rate-limit failures that
            open the circuit (default: 3)
        circuit_breaker_timeout: Seconds the circuit stays open (default: 60)
        on_retry: Observer called as ``on_retry(attempt, delay)`` before
            each backoff sleep; may be sync or async

    Example:
        >>> options = ExecuteOptions(key="consultations", max_retries=2)
        >>> options.delay_for(1)  # Returns 2.0
    """

    key: str
    max_retries: int = field(default_factory=lambda: settings.retry_max_retries)
    base_delay: float = field(default_factory=lambda: settings.retry_base_delay)
    max_delay: float = field(default_factory=lambda: settings.retry_max_delay)
    circuit_breaker_threshold: int = field(
        default_factory=lambda: settings.circuit_breaker_threshold
    )
    circuit_breaker_timeout: float = field(
        default_factory=lambda: settings.circuit_breaker_timeout
    )
    on_retry: Optional[RetryCallback] = None

    def __post_init__(self) -> None:
        if not self.key:
            raise ValueError("ExecuteOptions.key is required")
        if self.max_retries < 0:
            raise ValueError("max_retries must not be negative")
        if self.circuit_breaker_threshold < 1:
            raise ValueError("circuit_breaker_threshold must be at least 1")

    def delay_for(self, attempt: int) -> float:
        return calculate_backoff_delay(attempt, self.base_delay, self.max_delay)


def calculate_backoff_delay(attempt: int, base_delay: float, max_delay: float) -> float:
    """Delay before retrying after failed attempt ``attempt`` (0-indexed).

    delay = min(base_delay * 2^attempt, max_delay)
    """
    return min(base_delay * (2 ** attempt), max_delay)


def _statuses_of(exception: BaseException) -> list:
    statuses = [getattr(exception, attr, None) for attr in ("status", "status_code", "code")]
    response = getattr(exception, "response", None)
    statuses.append(getattr(response, "status_code", None))
    return [status for status in statuses if status is not None]


def is_rate_limit_error(exception: BaseException) -> bool:
    """Check if an exception signals rate limiting.

    True when the error carries an HTTP-style 429 status (``status``,
    ``status_code``, ``code`` or ``response.status_code``) or when its
    message mentions "rate limit" in any case. A ``CircuitOpenError`` is
    never a rate limit failure, even though its message says so.
    """
    if isinstance(exception, CircuitOpenError):
        return False
    if any(str(status) == str(RATE_LIMIT_STATUS) for status in _statuses_of(exception)):
        return True
    return "rate limit" in str(exception).lower()


class ResilientExecutor:
    """Runs operations with rate-limit backoff and a per-key circuit breaker.

    Usage:
        breakers = CircuitBreakerRegistry()
        executor = ResilientExecutor(breakers)

        result = await executor.execute(
            lambda: client.get(url),
            ExecuteOptions(key="lab-orders"),
        )

    No cancellation is offered; wrap ``execute`` in ``asyncio.wait_for``
    to bound a whole retry sequence.
    """

    def __init__(
        self,
        breakers: Optional[CircuitBreakerRegistry] = None,
        sleep: Optional[Callable[[float], Awaitable[Any]]] = None,
    ):
        self.breakers = breakers or CircuitBreakerRegistry()
        self._sleep = sleep

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        options: ExecuteOptions,
    ) -> T:
        """Execute ``operation`` under retry and circuit breaker discipline.

        Raises:
            CircuitOpenError: If the key's circuit is open, before calling
                the operation
            Exception: The operation's own error, when it is not a rate
                limit failure or the retry budget is spent
        """
        key = options.key
        attempt = 0

        while True:
            if self.breakers.is_open(key):
                state = self.breakers.get(key)
                logger.debug(
                    f"Rejecting call for '{key}': circuit open",
                    extra=get_log_context(rate_limit_key=key),
                )
                raise CircuitOpenError(key, state.open_until)

            try:
                result = await operation()
            except Exception as e:
                if not is_rate_limit_error(e):
                    raise

                self.breakers.record_failure(
                    key,
                    threshold=options.circuit_breaker_threshold,
                    timeout=options.circuit_breaker_timeout,
                )

                if attempt >= options.max_retries:
                    logger.warning(
                        f"Max retries ({options.max_retries}) exceeded for '{key}': "
                        f"{type(e).__name__}: {e}",
                        extra=get_log_context(rate_limit_key=key, attempt=attempt),
                    )
                    raise

                delay = options.delay_for(attempt)
                logger.warning(
                    f"Retry {attempt + 1}/{options.max_retries} for '{key}' "
                    f"after {type(e).__name__}: {e}. Waiting {delay:.2f}s...",
                    extra=get_log_context(
                        rate_limit_key=key, attempt=attempt + 1, delay=delay
                    ),
                )

                if options.on_retry is not None:
                    notified = options.on_retry(attempt + 1, delay)
                    if inspect.isawaitable(notified):
                        await notified

                await self._wait(delay)
                attempt += 1
                continue

            self.breakers.record_success(key)
            return result

    async def _wait(self, delay: float) -> None:
        if self._sleep is not None:
            await self._sleep(delay)
        else:
            await asyncio.sleep(delay)


_default_executor: Optional[ResilientExecutor] = None


def get_default_executor() -> ResilientExecutor:
    """Get or create the process-wide executor used by the helpers below."""
    global _default_executor
    if _default_executor is None:
        _default_executor = ResilientExecutor()
    return _default_executor


def reset_default_executor() -> None:
    """Drop the process-wide executor and its circuit state.

    This is primarily useful for testing.
    """
    global _default_executor
    _default_executor = None


async def execute_with_rate_limit_backoff(
    operation: Callable[[], Awaitable[T]],
    key: str,
    executor: Optional[ResilientExecutor] = None,
    **options: Any,
) -> T:
    """Run ``operation`` through ``executor`` (or the default one).

    Example:
        >>> await execute_with_rate_limit_backoff(
        ...     fetch_consultations, key="consultations", max_retries=2
        ... )
    """
    runner = executor or get_default_executor()
    return await runner.execute(operation, ExecuteOptions(key=key, **options))


def with_rate_limit_backoff(
    key: str,
    executor: Optional[ResilientExecutor] = None,
    **options: Any,
) -> Callable[[F], F]:
    """Decorator form of ``execute_with_rate_limit_backoff``.

    Example:
        >>> @with_rate_limit_backoff(key="consultations")
        ... async def load_consultations(hospital_id):
        ...     return await api.get(f"/consultations?hospital={hospital_id}")
    """

    def decorator(func: F) -> F:
        @functools.wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            return await execute_with_rate_limit_backoff(
                lambda: func(*args, **kwargs), key, executor=executor, **options
            )

        return wrapper  # type: ignore

    return decorator
