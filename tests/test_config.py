"""Tests for environment-driven settings."""

import os

import pytest
from pydantic import ValidationError

from flowguard.app.core.config import Settings


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch, tmp_path):
    """Keep a developer's .env or FLOWGUARD_* variables out of the tests."""
    monkeypatch.chdir(tmp_path)
    for name in list(os.environ):
        if name.startswith("FLOWGUARD_"):
            monkeypatch.delenv(name)


class TestDefaults:
    def test_resilience_defaults(self):
        settings = Settings()

        assert settings.rate_limit_max_requests == 100
        assert settings.rate_limit_window_seconds == 60.0
        assert settings.rate_limit_block_seconds == 0.0
        assert settings.retry_max_retries == 4
        assert settings.retry_base_delay == 1.0
        assert settings.retry_max_delay == 8.0
        assert settings.circuit_breaker_threshold == 3
        assert settings.circuit_breaker_timeout == 60.0

    def test_cache_defaults(self):
        settings = Settings()

        assert settings.cache_prefix == "caresync"
        assert settings.cache_version == "v1"
        assert settings.cache_ttl_api == 300
        assert settings.cache_ttl_static == 30 * 24 * 60 * 60
        assert r"/rest/v1/patients" in settings.cacheable_api_patterns


class TestEnvironment:
    def test_reads_prefixed_variables(self, monkeypatch):
        monkeypatch.setenv("FLOWGUARD_RATE_LIMIT_MAX_REQUESTS", "25")
        monkeypatch.setenv("FLOWGUARD_CIRCUIT_BREAKER_TIMEOUT", "15.5")
        monkeypatch.setenv("FLOWGUARD_CACHE_VERSION", "v2")

        settings = Settings()

        assert settings.rate_limit_max_requests == 25
        assert settings.circuit_breaker_timeout == 15.5
        assert settings.cache_version == "v2"

    def test_reads_env_file(self, tmp_path):
        (tmp_path / ".env").write_text("FLOWGUARD_RETRY_MAX_RETRIES=7\n")

        assert Settings().retry_max_retries == 7

    def test_patterns_from_json_list(self, monkeypatch):
        monkeypatch.setenv("FLOWGUARD_CACHEABLE_API_PATTERNS", '["^/v2/reports", "/rpc/stats"]')

        assert Settings().cacheable_api_patterns == ["^/v2/reports", "/rpc/stats"]

    def test_patterns_from_comma_separated_value(self, monkeypatch):
        monkeypatch.setenv("FLOWGUARD_CACHEABLE_API_PATTERNS", "^/v2/reports, /rpc/stats ,")

        assert Settings().cacheable_api_patterns == ["^/v2/reports", "/rpc/stats"]

    def test_empty_patterns(self, monkeypatch):
        monkeypatch.setenv("FLOWGUARD_CACHEABLE_API_PATTERNS", "")

        assert Settings().cacheable_api_patterns == []


class TestValidation:
    @pytest.mark.parametrize(
        "field,value",
        [
            ("rate_limit_max_requests", 0),
            ("rate_limit_window_seconds", 0),
            ("rate_limit_block_seconds", -1),
            ("retry_max_retries", -1),
            ("retry_base_delay", 0),
            ("circuit_breaker_threshold", 0),
            ("circuit_breaker_timeout", -5),
            ("cache_ttl_api", 0),
        ],
    )
    def test_rejects_invalid_values(self, field, value):
        with pytest.raises(ValidationError):
            Settings(**{field: value})

    def test_zero_retries_allowed(self):
        assert Settings(retry_max_retries=0).retry_max_retries == 0

    def test_rejects_invalid_pattern(self):
        with pytest.raises(ValidationError, match="Invalid cacheable API pattern"):
            Settings(cacheable_api_patterns=["/rest/v1/(unclosed"])

    def test_log_format_normalised(self, monkeypatch):
        monkeypatch.setenv("FLOWGUARD_LOG_FORMAT", " JSON ")
        assert Settings().log_format == "json"

    def test_rejects_unknown_log_format(self):
        with pytest.raises(ValidationError, match="log_format"):
            Settings(log_format="structured")
