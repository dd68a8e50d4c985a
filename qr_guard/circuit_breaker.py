"""Circuit breakers protecting the messaging gateway.

Purpose: Fail fast when the gateway is down, and cut off request storms
before they reach it.

CircuitBreaker - three states (closed, open, half-open) with failure
threshold and timeout, wrapped around gateway calls:
- CLOSED: Normal operation, requests pass through
- OPEN: Gateway failing, requests fail immediately (fail fast)
- HALF_OPEN: Testing if gateway recovered, allow one request

EmergencyCircuitBreaker - per-instance sliding-window counter consulted
before every QR poll; trips an instance for a cooldown when it sees more
requests than a healthy poller could ever send.
"""
import logging
import threading
import time
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Deque, Dict, Optional

from qr_guard import config

logger = logging.getLogger(__name__)


class CircuitState(Enum):
    """Circuit breaker states."""
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreakerOpen(Exception):
    """Raised when circuit breaker is open (fail fast)."""

    def __init__(self, message: str, retry_after: float = 0):
        super().__init__(message)
        self.retry_after = retry_after


class CircuitBreaker:
    """Circuit breaker for gateway calls."""

    def __init__(
        self,
        failure_threshold: int = 5,
        timeout: float = 60,
        clock: Callable[[], float] = time.monotonic
    ):
        """
        Initialize circuit breaker.

        Args:
            failure_threshold: Number of failures before opening circuit
            timeout: Seconds to wait before attempting half-open
            clock: Monotonic time source
        """
        self.failure_threshold = failure_threshold
        self.timeout = timeout
        self.failure_count = 0
        self.last_failure_time: Optional[float] = None
        self._state = CircuitState.CLOSED
        self._clock = clock
        self._lock = threading.Lock()

    @property
    def state(self) -> str:
        """Get current state as string."""
        return self._state.value

    def call(self, func: Callable, *args, **kwargs) -> Any:
        """
        Execute function with circuit breaker protection.

        Raises:
            CircuitBreakerOpen: If circuit is open (fail fast)
            Exception: If function raises exception
        """
        with self._lock:
            if self._state == CircuitState.OPEN:
                if self._should_attempt_reset():
                    self._state = CircuitState.HALF_OPEN
                    logger.info("Gateway circuit breaker transitioning to HALF_OPEN")
                else:
                    retry_after = self._time_until_retry()
                    raise CircuitBreakerOpen(
                        f"Gateway circuit breaker is OPEN. Retry after {retry_after:.1f}s",
                        retry_after=retry_after
                    )

        try:
            result = func(*args, **kwargs)
        except Exception:
            self._on_failure()
            raise

        self._on_success()
        return result

    def reset(self):
        """Force the circuit closed."""
        with self._lock:
            self._state = CircuitState.CLOSED
            self.failure_count = 0
            self.last_failure_time = None

    def _should_attempt_reset(self) -> bool:
        if self.last_failure_time is None:
            return True
        return self._clock() - self.last_failure_time >= self.timeout

    def _time_until_retry(self) -> float:
        if self.last_failure_time is None:
            return 0
        return max(0, self.timeout - (self._clock() - self.last_failure_time))

    def _on_success(self):
        with self._lock:
            self.failure_count = 0
            if self._state == CircuitState.HALF_OPEN:
                self._state = CircuitState.CLOSED
                logger.info("Gateway circuit breaker closed after successful half-open attempt")

    def _on_failure(self):
        with self._lock:
            self.failure_count += 1
            self.last_failure_time = self._clock()

            if self._state == CircuitState.HALF_OPEN:
                self._state = CircuitState.OPEN
                logger.warning("Gateway circuit breaker opened after failed half-open attempt")
            elif self.failure_count >= self.failure_threshold:
                self._state = CircuitState.OPEN
                logger.error(
                    f"Gateway circuit breaker opened after {self.failure_count} failures. "
                    f"Timeout: {self.timeout}s"
                )


@dataclass(frozen=True)
class CircuitDecision:
    allowed: bool
    reason: Optional[str] = None
    retry_after: Optional[float] = None


class EmergencyCircuitBreaker:
    """
    Request-storm breaker consulted before every QR poll.

    Pattern: Sliding window of request timestamps per instance, plus a
    global kill switch for incidents.
    """

    def __init__(
        self,
        max_requests: int = config.QR_STORM_MAX_REQUESTS,
        window_seconds: float = config.QR_STORM_WINDOW_SECONDS,
        cooldown_seconds: float = config.QR_STORM_COOLDOWN_SECONDS,
        clock: Callable[[], float] = time.monotonic
    ):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.cooldown_seconds = cooldown_seconds
        self._clock = clock

        # {instance_id: deque([timestamp1, timestamp2, ...])}
        self._request_log: Dict[str, Deque[float]] = {}
        # {instance_id: tripped_until}
        self._tripped_until: Dict[str, float] = {}
        self._global_trip_until: Optional[float] = None
        self._lock = threading.Lock()

    def should_allow_request(self, instance_id: str, source: str = "unknown") -> CircuitDecision:
        """
        Decide whether a QR poll may go out, and log it if so.

        Args:
            instance_id: Instance being polled
            source: Caller name, for the logs

        Returns:
            CircuitDecision; retry_after is set while tripped
        """
        with self._lock:
            now = self._clock()

            if self._global_trip_until is not None:
                if now < self._global_trip_until:
                    return CircuitDecision(
                        allowed=False,
                        reason="Emergency stop active for all instances",
                        retry_after=self._global_trip_until - now
                    )
                self._global_trip_until = None

            tripped_until = self._tripped_until.get(instance_id)
            if tripped_until is not None:
                if now < tripped_until:
                    return CircuitDecision(
                        allowed=False,
                        reason=f"Request storm detected for {instance_id}",
                        retry_after=tripped_until - now
                    )
                del self._tripped_until[instance_id]
                self._request_log.pop(instance_id, None)
                logger.info(f"Emergency breaker cooled down for {instance_id}")

            self._evict_stale(now)
            log = self._request_log.setdefault(instance_id, deque())

            if len(log) >= self.max_requests:
                self._tripped_until[instance_id] = now + self.cooldown_seconds
                logger.error(
                    f"Emergency breaker tripped for {instance_id} by {source}: "
                    f"{len(log)} requests in {self.window_seconds:g}s, "
                    f"blocking for {self.cooldown_seconds:g}s"
                )
                return CircuitDecision(
                    allowed=False,
                    reason=f"Request storm detected for {instance_id}",
                    retry_after=self.cooldown_seconds
                )

            log.append(now)
            return CircuitDecision(allowed=True)

    def trip_all(self, duration: Optional[float] = None):
        """Block every instance for ``duration`` seconds (default: cooldown)."""
        with self._lock:
            if duration is None:
                duration = self.cooldown_seconds
            self._global_trip_until = self._clock() + duration
        logger.error("Emergency breaker tripped for all instances")

    def _evict_stale(self, now: float):
        # Forget instances with no recent requests and no active trip.
        cutoff = now - self.window_seconds
        for instance_id in list(self._request_log):
            log = self._request_log[instance_id]
            while log and log[0] <= cutoff:
                log.popleft()
            if not log:
                del self._request_log[instance_id]
        for instance_id, until in list(self._tripped_until.items()):
            if now >= until:
                del self._tripped_until[instance_id]

    def reset(self, instance_id: Optional[str] = None):
        """Clear one instance, or everything when instance_id is None."""
        with self._lock:
            if instance_id is None:
                self._request_log.clear()
                self._tripped_until.clear()
                self._global_trip_until = None
            else:
                self._request_log.pop(instance_id, None)
                self._tripped_until.pop(instance_id, None)

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            now = self._clock()
            return {
                "global_trip": self._global_trip_until is not None and now < self._global_trip_until,
                "tripped_instances": sorted(
                    instance_id for instance_id, until in self._tripped_until.items()
                    if now < until
                ),
            }
