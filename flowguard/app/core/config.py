import json
import re
from typing import Annotated, Any

from pydantic import field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


def _parse_patterns(raw: Any) -> list[str]:
    if raw is None:
        return []
    if isinstance(raw, list):
        items = [str(v).strip() for v in raw]
        return [v for v in items if v]

    raw = str(raw).strip()
    if not raw or raw == "[]":
        return []

    # Prefer JSON, but tolerate a comma separated list of patterns.
    if raw.startswith("["):
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError:
            parsed = None
        if isinstance(parsed, list):
            items = [str(v).strip() for v in parsed]
            return [v for v in items if v]

    return [p.strip() for p in raw.split(",") if p.strip()]


class Settings(BaseSettings):
    """Resilience layer settings loaded from environment variables.

    All settings can be configured via ``FLOWGUARD_*`` environment variables
    or a .env file.
    """

    # Admission control (sliding window)
    rate_limit_max_requests: int = 100
    rate_limit_window_seconds: float = 60.0
    rate_limit_block_seconds: float = 0.0  # 0 disables blocking after a denial

    # Retry / circuit breaker
    retry_max_retries: int = 4
    retry_base_delay: float = 1.0  # Seconds
    retry_max_delay: float = 8.0  # Seconds
    circuit_breaker_threshold: int = 3  # Consecutive rate-limit failures
    circuit_breaker_timeout: float = 60.0  # Seconds the circuit stays open

    # Response cache
    cache_prefix: str = "caresync"
    cache_version: str = "v1"
    cache_base_url: str = ""  # Used to resolve relative URLs
    cache_ttl_static: int = 30 * 24 * 60 * 60  # 30 days
    cache_ttl_api: int = 5 * 60  # 5 minutes
    cache_ttl_images: int = 7 * 24 * 60 * 60  # 7 days
    cache_ttl_fonts: int = 365 * 24 * 60 * 60  # 1 year
    cache_ttl_dynamic: int = 24 * 60 * 60  # 1 day

    # Path patterns of API responses worth caching.
    # NoDecode so a plain comma separated value doesn't crash JSON parsing.
    cacheable_api_patterns: Annotated[list[str], NoDecode] = [
        r"/rest/v1/patients",
        r"/rest/v1/appointments",
        r"/rest/v1/prescriptions",
        r"/rest/v1/lab_orders",
        r"/rest/v1/invoices",
        r"/rest/v1/rpc/get_dashboard_stats",
    ]

    # HTTP client connection pool settings
    httpx_connect_timeout: float = 10.0
    httpx_read_timeout: float = 30.0
    httpx_write_timeout: float = 10.0
    httpx_pool_timeout: float = 5.0
    httpx_keepalive_expiry: float = 30.0
    httpx_max_connections: int = 100
    httpx_max_keepalive_connections: int = 20

    # Logging settings
    log_level: str = "INFO"
    log_format: str = "text"  # text or json

    @field_validator("cacheable_api_patterns", mode="before")
    @classmethod
    def decode_patterns(cls, v: Any) -> list[str]:
        patterns = _parse_patterns(v)
        for pattern in patterns:
            try:
                re.compile(pattern)
            except re.error as e:
                raise ValueError(f"Invalid cacheable API pattern {pattern!r}: {e}") from e
        return patterns

    @field_validator(
        "rate_limit_max_requests",
        "retry_max_retries",
        "circuit_breaker_threshold",
        "httpx_max_connections",
    )
    @classmethod
    def validate_positive_int(cls, v: int, info) -> int:
        """Validate counters are usable."""
        minimum = 0 if info.field_name == "retry_max_retries" else 1
        if v < minimum:
            raise ValueError(f"{info.field_name} must be at least {minimum}")
        return v

    @field_validator(
        "rate_limit_window_seconds",
        "retry_base_delay",
        "retry_max_delay",
        "circuit_breaker_timeout",
        "httpx_connect_timeout",
        "httpx_read_timeout",
    )
    @classmethod
    def validate_positive_duration(cls, v: float, info) -> float:
        """Validate durations are positive."""
        if v <= 0:
            raise ValueError(f"{info.field_name} must be positive")
        return v

    @field_validator("rate_limit_block_seconds")
    @classmethod
    def validate_block_seconds(cls, v: float) -> float:
        if v < 0:
            raise ValueError("rate_limit_block_seconds must not be negative")
        return v

    @field_validator(
        "cache_ttl_static",
        "cache_ttl_api",
        "cache_ttl_images",
        "cache_ttl_fonts",
        "cache_ttl_dynamic",
    )
    @classmethod
    def validate_ttl(cls, v: int) -> int:
        """Validate cache TTLs are positive."""
        if v < 1:
            raise ValueError("Cache TTL values must be at least 1 second")
        return v

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v: str) -> str:
        v = v.strip().lower()
        if v not in ("text", "json"):
            raise ValueError("log_format must be 'text' or 'json'")
        return v

    model_config = SettingsConfigDict(
        env_prefix="FLOWGUARD_", env_file=".env", extra="ignore"
    )


# Global settings instance
settings = Settings()
