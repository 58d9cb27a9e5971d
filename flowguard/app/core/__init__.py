"""Core utilities for the resilience layer."""

from flowguard.app.core.cache import CacheNamespace, CacheStorage
from flowguard.app.core.config import settings
from flowguard.app.core.http_client import (
    create_http_client,
    get_http_client,
    init_http_client,
)
from flowguard.app.core.logging import get_logger, setup_logging

__all__ = [
    "CacheNamespace",
    "CacheStorage",
    "settings",
    "create_http_client",
    "get_http_client",
    "init_http_client",
    "get_logger",
    "setup_logging",
]
