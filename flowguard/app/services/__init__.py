"""Services package for flowguard.

This package provides:
- TTL-aware response cache with cache-first, network-first and
  stale-while-revalidate strategies
- A guarded HTTP client chaining admission control, backoff and caching
"""

from flowguard.app.services.response_cache import (
    CACHE_TTL_HEADER,
    CACHED_TIME_HEADER,
    CacheNames,
    CacheStats,
    ResponseCache,
    normalize_url,
)
from flowguard.app.services.resilient_client import ResilientClient

__all__ = [
    "CACHE_TTL_HEADER",
    "CACHED_TIME_HEADER",
    "CacheNames",
    "CacheStats",
    "ResponseCache",
    "normalize_url",
    "ResilientClient",
]
