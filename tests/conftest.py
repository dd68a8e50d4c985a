"""Shared test fixtures."""
import pytest

from qr_guard.circuit_breaker import EmergencyCircuitBreaker
from qr_guard.request_manager import QRRequestManager, RateLimitPolicy


class FakeClock:
    """Monotonic clock the tests move by hand (seconds)."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class FakeTimer:
    """Stands in for threading.Timer / asyncio.Task."""

    def __init__(self):
        self.cancelled = False
        self.cancel_calls = 0

    def cancel(self):
        self.cancelled = True
        self.cancel_calls += 1


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def manager(clock) -> QRRequestManager:
    """Manager with the production policy (10s gap, 2 per 30s) on a fake clock."""
    return QRRequestManager(
        policy=RateLimitPolicy(min_interval_seconds=10, window_seconds=30, max_requests_per_window=2),
        clock=clock
    )


@pytest.fixture
def emergency_breaker(clock) -> EmergencyCircuitBreaker:
    return EmergencyCircuitBreaker(
        max_requests=3, window_seconds=60, cooldown_seconds=300, clock=clock
    )


@pytest.fixture
def make_timer():
    return FakeTimer
