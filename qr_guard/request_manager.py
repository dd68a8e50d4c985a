"""QR request manager: ownership and throttling for QR-code polling.

Purpose: Stop duplicate pollers and runaway request volume against the
messaging gateway.

Pattern: In-memory registry keyed by instance id, one owning component per
instance, reset-on-expiry request counter per registration.
Good for: Single-process deployments (one manager per application).
NOT for: Cross-process coordination (state is memory-only).

Every operation is synchronous and total: denials come back as structured
results, never as exceptions. The only raising entry point is
``polling_slot``, which has to refuse a ``with`` block somehow.
"""
import logging
import math
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, Iterator, List, Optional, Protocol

from qr_guard import config

logger = logging.getLogger(__name__)


class DenialReason(Enum):
    """Why the manager refused an action."""
    OWNERSHIP_CONFLICT = "ownership_conflict"
    RATE_LIMITED = "rate_limited"
    NOT_REGISTERED = "not_registered"


class OwnershipConflict(Exception):
    """Raised by ``polling_slot`` when another component owns the instance."""

    def __init__(self, instance_id: str, owner: str):
        super().__init__(f"Instance {instance_id} is already being polled by {owner}")
        self.instance_id = instance_id
        self.owner = owner


class TimerHandle(Protocol):
    """Anything that can be cancelled: threading.Timer, asyncio.Task, asyncio.TimerHandle."""

    def cancel(self) -> object: ...


@dataclass(frozen=True)
class RateLimitPolicy:
    """Throttling thresholds applied to every registration."""
    min_interval_seconds: float = config.QR_MIN_REQUEST_INTERVAL_SECONDS
    window_seconds: float = config.QR_RATE_WINDOW_SECONDS
    max_requests_per_window: int = config.QR_MAX_REQUESTS_PER_WINDOW


@dataclass(frozen=True)
class RegistrationResult:
    accepted: bool
    reason: Optional[DenialReason] = None
    message: Optional[str] = None


@dataclass(frozen=True)
class RequestCheck:
    allowed: bool
    reason: Optional[DenialReason] = None
    message: Optional[str] = None
    wait_time_ms: Optional[int] = None


@dataclass
class Registration:
    """Registry record; only the manager mutates it."""
    instance_id: str
    component_id: str
    is_active: bool = True
    last_request_at: Optional[float] = None
    window_started_at: Optional[float] = None
    request_count_in_window: int = 0
    timer_handle: Optional[TimerHandle] = None


@dataclass(frozen=True)
class InstanceStats:
    instance_id: str
    component_id: str
    is_active: bool
    request_count_in_window: int
    seconds_since_last_request: Optional[float]
    has_timer: bool


@dataclass(frozen=True)
class ManagerStats:
    count: int
    per_instance: List[InstanceStats] = field(default_factory=list)


def _wait_ms(seconds: float) -> int:
    # Rounded up so a caller sleeping exactly this long is never early.
    return max(1, math.ceil(seconds * 1000))


class QRRequestManager:
    """
    Single authority deciding who may poll an instance and how often.

    Construct one per application and pass it to whatever owns the pollers.

    Args:
        policy: Throttling thresholds (defaults from qr_guard.config)
        clock: Monotonic time source in seconds (injectable for tests)
    """

    def __init__(
        self,
        policy: Optional[RateLimitPolicy] = None,
        clock: Callable[[], float] = time.monotonic
    ):
        self.policy = policy or RateLimitPolicy()
        self._clock = clock
        self._registrations: Dict[str, Registration] = {}
        self._lock = threading.RLock()

    def _owned(self, instance_id: str, component_id: str) -> Optional[Registration]:
        registration = self._registrations.get(instance_id)
        if registration is None or registration.component_id != component_id:
            return None
        return registration

    def _window_expired(self, registration: Registration, now: float) -> bool:
        if registration.window_started_at is None:
            return True
        return now - registration.window_started_at >= self.policy.window_seconds

    def register(self, instance_id: str, component_id: str) -> RegistrationResult:
        """
        Claim polling rights for an instance.

        Args:
            instance_id: Messaging-channel instance key
            component_id: Caller identity

        Returns:
            RegistrationResult; rejected with OWNERSHIP_CONFLICT when another
            component is active on the instance
        """
        with self._lock:
            existing = self._registrations.get(instance_id)
            if existing and existing.is_active and existing.component_id != component_id:
                logger.warning(
                    f"QR registration rejected: {instance_id} owned by "
                    f"{existing.component_id}, requested by {component_id}"
                )
                return RegistrationResult(
                    accepted=False,
                    reason=DenialReason.OWNERSHIP_CONFLICT,
                    message=f"Instance {instance_id} is already being polled by {existing.component_id}"
                )

            # The owner's timer is still owned after re-registering.
            timer_handle = None
            if existing and existing.component_id == component_id:
                timer_handle = existing.timer_handle

            self._registrations[instance_id] = Registration(
                instance_id=instance_id,
                component_id=component_id,
                timer_handle=timer_handle
            )
            logger.info(f"QR polling registered: {instance_id} -> {component_id}")
            return RegistrationResult(accepted=True)

    def can_make_request(self, instance_id: str, component_id: str) -> RequestCheck:
        """
        Check whether the caller may poll the gateway right now.

        The window cap is checked before the minimum gap, so a denial inside a
        full window reports the time left until the window resets.

        Returns:
            RequestCheck with wait_time_ms set on RATE_LIMITED denials
        """
        with self._lock:
            registration = self._owned(instance_id, component_id)
            if registration is None:
                return RequestCheck(
                    allowed=False,
                    reason=DenialReason.NOT_REGISTERED,
                    message=f"Component {component_id} is not registered for {instance_id}"
                )

            if registration.last_request_at is None:
                return RequestCheck(allowed=True)

            now = self._clock()

            if (not self._window_expired(registration, now)
                    and registration.request_count_in_window >= self.policy.max_requests_per_window):
                remaining = self.policy.window_seconds - (now - registration.window_started_at)
                return RequestCheck(
                    allowed=False,
                    reason=DenialReason.RATE_LIMITED,
                    message=(
                        f"Window cap reached: {self.policy.max_requests_per_window} requests "
                        f"per {self.policy.window_seconds:g}s"
                    ),
                    wait_time_ms=_wait_ms(remaining)
                )

            elapsed = now - registration.last_request_at
            if elapsed < self.policy.min_interval_seconds:
                return RequestCheck(
                    allowed=False,
                    reason=DenialReason.RATE_LIMITED,
                    message=f"Minimum interval of {self.policy.min_interval_seconds:g}s not reached",
                    wait_time_ms=_wait_ms(self.policy.min_interval_seconds - elapsed)
                )

            return RequestCheck(allowed=True)

    def record_request(self, instance_id: str, component_id: str) -> bool:
        """Account for a poll that was just sent. No-op for non-owners."""
        with self._lock:
            registration = self._owned(instance_id, component_id)
            if registration is None:
                return False

            now = self._clock()
            if self._window_expired(registration, now):
                registration.request_count_in_window = 1
                registration.window_started_at = now
            else:
                registration.request_count_in_window += 1
            registration.last_request_at = now

            logger.debug(
                f"QR request recorded for {instance_id}: "
                f"{registration.request_count_in_window} in window"
            )
            return True

    def set_timer_handle(self, instance_id: str, component_id: str, handle: TimerHandle) -> bool:
        """Attach the owner's polling timer, cancelling the one it replaces."""
        with self._lock:
            registration = self._owned(instance_id, component_id)
            if registration is None:
                return False

            if registration.timer_handle is not None and registration.timer_handle is not handle:
                self._release_timer(registration)
            registration.timer_handle = handle
            return True

    def unregister(self, instance_id: str, component_id: str) -> bool:
        """Give up polling rights. Only the owner can unregister."""
        with self._lock:
            registration = self._owned(instance_id, component_id)
            if registration is None:
                return False

            self._release_timer(registration)
            del self._registrations[instance_id]
            logger.info(f"QR polling unregistered: {instance_id} <- {component_id}")
            return True

    def owner_of(self, instance_id: str) -> Optional[str]:
        with self._lock:
            registration = self._registrations.get(instance_id)
            return registration.component_id if registration else None

    def is_registered(self, instance_id: str, component_id: str) -> bool:
        with self._lock:
            return self._owned(instance_id, component_id) is not None

    def get_stats(self) -> ManagerStats:
        """Read-only snapshot for diagnostics."""
        with self._lock:
            now = self._clock()
            per_instance = [
                InstanceStats(
                    instance_id=reg.instance_id,
                    component_id=reg.component_id,
                    is_active=reg.is_active,
                    request_count_in_window=reg.request_count_in_window,
                    seconds_since_last_request=(
                        now - reg.last_request_at if reg.last_request_at is not None else None
                    ),
                    has_timer=reg.timer_handle is not None
                )
                for reg in self._registrations.values()
            ]
            return ManagerStats(count=len(per_instance), per_instance=per_instance)

    def emergency_stop(self) -> int:
        """
        Cancel every timer and clear the registry, regardless of owner.

        Returns:
            Number of registrations cleared
        """
        with self._lock:
            cleared = len(self._registrations)
            for registration in self._registrations.values():
                self._release_timer(registration)
            self._registrations.clear()

        logger.error(f"QR emergency stop: cleared {cleared} registrations")
        return cleared

    @contextmanager
    def polling_slot(self, instance_id: str, component_id: str) -> Iterator[RegistrationResult]:
        """
        Hold polling rights for the duration of a ``with`` block.

        Raises:
            OwnershipConflict: If another component owns the instance
        """
        result = self.register(instance_id, component_id)
        if not result.accepted:
            raise OwnershipConflict(instance_id, self.owner_of(instance_id) or "unknown")
        try:
            yield result
        finally:
            self.unregister(instance_id, component_id)

    def _release_timer(self, registration: Registration):
        handle = registration.timer_handle
        registration.timer_handle = None
        if handle is None:
            return
        try:
            handle.cancel()
        except Exception as e:
            logger.error(f"Failed to cancel QR timer for {registration.instance_id}: {e}")
