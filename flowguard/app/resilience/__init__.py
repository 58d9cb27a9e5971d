"""Retry with exponential backoff and per-key circuit breaking."""

from flowguard.app.resilience.circuit_breaker import CircuitBreakerRegistry, CircuitState
from flowguard.app.resilience.retry import (
    ExecuteOptions,
    ResilientExecutor,
    calculate_backoff_delay,
    execute_with_rate_limit_backoff,
    get_default_executor,
    is_rate_limit_error,
    reset_default_executor,
    with_rate_limit_backoff,
)

__all__ = [
    "CircuitBreakerRegistry",
    "CircuitState",
    "ExecuteOptions",
    "ResilientExecutor",
    "calculate_backoff_delay",
    "execute_with_rate_limit_backoff",
    "get_default_executor",
    "is_rate_limit_error",
    "reset_default_executor",
    "with_rate_limit_backoff",
]
