"""Tests for gateway and emergency circuit breakers."""
import pytest

from qr_guard.circuit_breaker import CircuitBreaker, CircuitBreakerOpen


class TestCircuitBreaker:
    """Test gateway circuit breaker behavior."""

    def test_allows_requests_when_closed(self, clock):
        """Should allow requests when circuit is closed."""
        cb = CircuitBreaker(failure_threshold=3, timeout=1, clock=clock)

        result = cb.call(lambda: "success")

        assert result == "success"
        assert cb.state == "closed"

    def test_opens_after_threshold_failures(self, clock):
        """Should open circuit after 3 consecutive failures."""
        cb = CircuitBreaker(failure_threshold=3, timeout=1, clock=clock)

        def failing_call():
            raise ConnectionError("Gateway failed")

        for i in range(3):
            with pytest.raises(ConnectionError):
                cb.call(failing_call)

        assert cb.state == "open"

        # Next call should fail immediately without attempting
        calls = []
        with pytest.raises(CircuitBreakerOpen) as exc_info:
            cb.call(lambda: calls.append(1))
        assert calls == []
        assert exc_info.value.retry_after == pytest.approx(1)

    def test_transitions_to_half_open_after_timeout(self, clock):
        """A failed half-open attempt re-opens the circuit."""
        cb = CircuitBreaker(failure_threshold=3, timeout=1, clock=clock)

        def failing_call():
            raise ConnectionError("Failed")

        for i in range(3):
            with pytest.raises(ConnectionError):
                cb.call(failing_call)
        assert cb.state == "open"

        clock.advance(1.1)

        with pytest.raises(ConnectionError):
            cb.call(failing_call)

        assert cb.state == "open"

    def test_closes_on_successful_half_open_attempt(self, clock):
        """Should close circuit on successful half-open attempt."""
        cb = CircuitBreaker(failure_threshold=3, timeout=1, clock=clock)

        call_count = [0]

        def conditional_call():
            call_count[0] += 1
            if call_count[0] <= 3:
                raise ConnectionError("Failed")
            return "success"

        for i in range(3):
            with pytest.raises(ConnectionError):
                cb.call(conditional_call)
        assert cb.state == "open"

        clock.advance(1.1)

        assert cb.call(conditional_call) == "success"
        assert cb.state == "closed"

    def test_resets_failure_count_on_success(self, clock):
        """Should reset failure count after successful call."""
        cb = CircuitBreaker(failure_threshold=3, timeout=1, clock=clock)

        def failing_call():
            raise ConnectionError("Failed")

        for i in range(2):
            with pytest.raises(ConnectionError):
                cb.call(failing_call)

        cb.call(lambda: "success")

        for i in range(2):
            with pytest.raises(ConnectionError):
                cb.call(failing_call)

        assert cb.state == "closed"

    def test_manual_reset(self, clock):
        cb = CircuitBreaker(failure_threshold=1, timeout=60, clock=clock)

        def failing_call():
            raise ConnectionError("down")

        with pytest.raises(ConnectionError):
            cb.call(failing_call)
        assert cb.state == "open"

        cb.reset()

        assert cb.state == "closed"
        assert cb.call(lambda: "ok") == "ok"


class TestEmergencyCircuitBreaker:
    """Test request-storm detection."""

    def test_allows_normal_polling(self, emergency_breaker, clock):
        for _ in range(10):
            assert emergency_breaker.should_allow_request("X", "test").allowed
            clock.advance(30)

    def test_trips_on_request_storm(self, emergency_breaker):
        """The 4th request inside 60s trips the instance (max_requests=3)."""
        for _ in range(3):
            assert emergency_breaker.should_allow_request("X", "test").allowed

        decision = emergency_breaker.should_allow_request("X", "test")

        assert decision.allowed is False
        assert "storm" in decision.reason.lower()
        assert decision.retry_after == 300
        assert emergency_breaker.snapshot()["tripped_instances"] == ["X"]

    def test_trip_is_per_instance(self, emergency_breaker):
        for _ in range(4):
            emergency_breaker.should_allow_request("X", "test")

        assert emergency_breaker.should_allow_request("Y", "test").allowed

    def test_recovers_after_cooldown(self, emergency_breaker, clock):
        for _ in range(4):
            emergency_breaker.should_allow_request("X", "test")

        clock.advance(299)
        assert emergency_breaker.should_allow_request("X", "test").allowed is False

        clock.advance(2)
        assert emergency_breaker.should_allow_request("X", "test").allowed is True
        assert emergency_breaker.snapshot()["tripped_instances"] == []

    def test_old_requests_leave_the_window(self, emergency_breaker, clock):
        for _ in range(3):
            emergency_breaker.should_allow_request("X", "test")
        clock.advance(61)

        assert emergency_breaker.should_allow_request("X", "test").allowed

    def test_trip_all_blocks_every_instance(self, emergency_breaker, clock):
        emergency_breaker.trip_all()

        decision = emergency_breaker.should_allow_request("anything", "test")
        assert decision.allowed is False
        assert decision.retry_after == pytest.approx(300)
        assert emergency_breaker.snapshot()["global_trip"] is True

        clock.advance(301)
        assert emergency_breaker.should_allow_request("anything", "test").allowed

    def test_reset_single_instance(self, emergency_breaker):
        for _ in range(4):
            emergency_breaker.should_allow_request("X", "test")
            emergency_breaker.should_allow_request("Y", "test")

        emergency_breaker.reset("X")

        assert emergency_breaker.should_allow_request("X", "test").allowed
        assert not emergency_breaker.should_allow_request("Y", "test").allowed

    def test_reset_all(self, emergency_breaker):
        emergency_breaker.trip_all()
        for _ in range(4):
            emergency_breaker.should_allow_request("X", "test")

        emergency_breaker.reset()

        assert emergency_breaker.should_allow_request("X", "test").allowed
        assert emergency_breaker.snapshot() == {"global_trip": False, "tripped_instances": []}

    def test_trip_all_with_zero_duration_blocks_nothing(self, emergency_breaker):
        emergency_breaker.trip_all(duration=0)

        assert emergency_breaker.should_allow_request("X", "test").allowed
        assert emergency_breaker.snapshot()["global_trip"] is False

    def test_idle_instances_are_forgotten(self, emergency_breaker, clock):
        for instance_id in ("X", "Y", "Z"):
            emergency_breaker.should_allow_request(instance_id, "test")

        clock.advance(61)
        emergency_breaker.should_allow_request("X", "test")

        assert set(emergency_breaker._request_log) == {"X"}
        assert len(emergency_breaker._request_log["X"]) == 1
