"""Tests for per-key circuit breaker state."""

from unittest.mock import patch

from flowguard.app.resilience import CircuitBreakerRegistry, CircuitState


class TestCircuitBreakerRegistry:
    """Tests for opening, closing and resetting circuits."""

    def test_new_key_is_closed(self, clock):
        breakers = CircuitBreakerRegistry(clock=clock)

        assert breakers.is_open("appointments") is False
        assert breakers.get("appointments") == CircuitState()

    def test_opens_at_threshold(self, clock):
        breakers = CircuitBreakerRegistry(clock=clock)

        breakers.record_failure("k", threshold=3, timeout=60.0)
        breakers.record_failure("k", threshold=3, timeout=60.0)
        assert breakers.is_open("k") is False

        state = breakers.record_failure("k", threshold=3, timeout=60.0)
        assert state.failure_count == 3
        assert state.open_until == clock.now + 60.0
        assert breakers.is_open("k") is True

    def test_closes_passively_after_timeout(self, clock):
        breakers = CircuitBreakerRegistry(clock=clock)
        breakers.record_failure("k", threshold=1, timeout=30.0)

        clock.advance(29.9)
        assert breakers.is_open("k") is True

        clock.advance(0.1)
        assert breakers.is_open("k") is False
        # Expiry clears the failure history too
        assert breakers.get("k") == CircuitState()

    def test_success_resets_failures(self, clock):
        breakers = CircuitBreakerRegistry(clock=clock)
        breakers.record_failure("k", threshold=3, timeout=60.0)
        breakers.record_failure("k", threshold=3, timeout=60.0)

        breakers.record_success("k")

        assert breakers.get("k").failure_count == 0
        breakers.record_failure("k", threshold=3, timeout=60.0)
        assert breakers.is_open("k") is False

    def test_keys_are_isolated(self, clock):
        breakers = CircuitBreakerRegistry(clock=clock)
        breakers.record_failure("labs", threshold=1, timeout=60.0)

        assert breakers.is_open("labs") is True
        assert breakers.is_open("billing") is False

    def test_reset_and_reset_all(self, clock):
        breakers = CircuitBreakerRegistry(clock=clock)
        breakers.record_failure("a", threshold=1, timeout=60.0)
        breakers.record_failure("b", threshold=1, timeout=60.0)

        breakers.reset("a")
        assert breakers.is_open("a") is False
        assert breakers.is_open("b") is True

        breakers.reset_all()
        assert breakers.snapshot() == {}

    def test_snapshot_is_a_copy(self, clock):
        breakers = CircuitBreakerRegistry(clock=clock)
        breakers.record_failure("k", threshold=5, timeout=60.0)

        snapshot = breakers.snapshot()
        snapshot["k"].failure_count = 99

        assert breakers.get("k").failure_count == 1

    def test_logs_open_and_close(self, clock):
        breakers = CircuitBreakerRegistry(clock=clock)

        with patch("flowguard.app.resilience.circuit_breaker.logger") as mock_logger:
            breakers.record_failure("k", threshold=1, timeout=5.0)
            clock.advance(5.0)
            breakers.is_open("k")

        warning_msg = mock_logger.warning.call_args[0][0]
        assert "opened" in warning_msg
        assert "'k'" in warning_msg
        info_msg = mock_logger.info.call_args[0][0]
        assert "closed" in info_msg
