"""Custom exceptions for the resilience layer."""

from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from flowguard.app.middleware.rate_limit.models import RateLimitResult


CIRCUIT_OPEN_MESSAGE = "Rate limit circuit is open. Please wait and try again."


class FlowGuardException(Exception):
    """Base class for flowguard exceptions with an HTTP status code.

    All custom exceptions inherit from this class and define their
    specific status_code so callers can map them to responses.
    """
    status_code: int = 500

    def __init__(self, message: str = "Flowguard error"):
        self.message = message
        super().__init__(message)


class RateLimitExceededError(FlowGuardException):
    """Raised when admission control denies a unit of work.

    Carries ``status_code = 429`` so the executor classifies it as a
    rate-limit failure.
    """
    status_code = 429

    def __init__(
        self,
        retry_after: int,
        result: Optional["RateLimitResult"] = None,
        message: Optional[str] = None,
    ):
        self.retry_after = retry_after
        self.result = result
        super().__init__(
            message or f"Rate limit exceeded. Retry after {retry_after} seconds."
        )


class CircuitOpenError(FlowGuardException):
    """Raised without calling the operation while a key's circuit is open.

    Maps to HTTP 503 Service Unavailable.
    """
    status_code = 503

    def __init__(self, key: str, open_until: Optional[float] = None):
        self.key = key
        self.open_until = open_until
        super().__init__(CIRCUIT_OPEN_MESSAGE)


class CacheUnavailableError(FlowGuardException):
    """Raised when the network failed and the cache holds nothing for the URL."""
    status_code = 503

    def __init__(self, url: str):
        self.url = url
        super().__init__(f"Network request failed and no cache available for {url}")


class InvalidURLError(FlowGuardException, ValueError):
    """Raised when a URL handed to the response cache is not well-formed.

    Maps to HTTP 400 Bad Request.
    """
    status_code = 400

    def __init__(self, url: object, reason: str = "malformed URL"):
        self.url = url
        self.reason = reason
        super().__init__(f"Invalid URL {url!r}: {reason}")
