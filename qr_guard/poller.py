"""QR code auto-refresh poller.

Purpose: Keep an instance's pairing QR code fresh until the phone connects,
without ever fighting another poller or flooding the gateway.

Lifecycle (the request manager contract):
1. register before starting the polling timer
2. emergency breaker + can_make_request before every poll
3. record_request right before the gateway call
4. hand the polling task to set_timer_handle
5. unregister on stop (which cancels the task)
"""
import asyncio
import logging
import time
import uuid
from typing import Callable, Optional

from qr_guard import config
from qr_guard.circuit_breaker import CircuitBreakerOpen, EmergencyCircuitBreaker
from qr_guard.gateway_client import GatewayError, InstanceNotFoundError, QRGatewayClient
from qr_guard.models import QRCodeData, QRStatus
from qr_guard.request_manager import DenialReason, QRRequestManager

logger = logging.getLogger(__name__)


def generate_component_id() -> str:
    """Generate a poller identity: qr-<epoch ms>-<9 random chars>."""
    return f"qr-{int(time.time() * 1000)}-{uuid.uuid4().hex[:9]}"


class QRCodePoller:
    """
    Polls one instance's QR code on a fixed interval.

    Args:
        instance_id: Gateway instance to poll
        manager: Shared QRRequestManager
        client: Gateway client performing the actual fetch
        breaker: Optional emergency breaker consulted before each poll
        refresh_interval: Seconds between polls
        max_retries: Consecutive failures before giving up
        scanning_window: Skip a poll while the current QR has more than this
                         many seconds left (the user might be scanning it)
    """

    def __init__(
        self,
        instance_id: str,
        manager: QRRequestManager,
        client: QRGatewayClient,
        breaker: Optional[EmergencyCircuitBreaker] = None,
        refresh_interval: float = config.QR_REFRESH_INTERVAL_SECONDS,
        max_retries: int = config.QR_MAX_RETRIES,
        scanning_window: float = config.QR_SCANNING_WINDOW_SECONDS,
        on_status_change: Optional[Callable[[QRStatus], None]] = None,
        on_connected: Optional[Callable[[], None]] = None,
        on_error: Optional[Callable[[str], None]] = None,
        component_id: Optional[str] = None
    ):
        self.instance_id = instance_id
        self.manager = manager
        self.client = client
        self.breaker = breaker
        self.refresh_interval = refresh_interval
        self.max_retries = max_retries
        self.scanning_window = scanning_window
        self.on_status_change = on_status_change
        self.on_connected = on_connected
        self.on_error = on_error
        self.component_id = component_id or generate_component_id()

        self.data = QRCodeData()
        self.retry_count = 0
        self._polling = False
        self._task: Optional[asyncio.Task] = None

    @property
    def is_polling(self) -> bool:
        return self._polling

    async def start(self) -> bool:
        """
        Claim the instance and start polling.

        Returns:
            False if another poller owns the instance
        """
        if self._polling:
            return True

        registration = self.manager.register(self.instance_id, self.component_id)
        if not registration.accepted:
            logger.info(f"Cannot start QR polling for {self.instance_id}: {registration.message}")
            return False

        self._polling = True
        self.retry_count = 0

        await self.poll_once()

        # The initial poll may already have connected or failed for good.
        if self._polling:
            self._task = asyncio.create_task(self._run())
            self._task.add_done_callback(self._on_task_done)
            if not self.manager.set_timer_handle(self.instance_id, self.component_id, self._task):
                # Registration vanished during the initial poll (emergency stop).
                logger.warning(f"QR polling for {self.instance_id} lost its registration on start")
                self.stop()
        return True

    def _on_task_done(self, task: asyncio.Task):
        # An emergency stop cancels the task behind our back.
        if task.cancelled() and self._polling and not self.manager.is_registered(
            self.instance_id, self.component_id
        ):
            self._polling = False
            self._task = None
            logger.warning(f"QR polling for {self.instance_id} cancelled by the request manager")

    def stop(self):
        """Release the instance and cancel the polling task. Idempotent."""
        was_polling = self._polling
        self._polling = False
        self.manager.unregister(self.instance_id, self.component_id)

        # emergency_stop may already have cancelled it; cancelling twice is harmless.
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None

        if was_polling:
            logger.info(f"QR polling stopped for {self.instance_id}")

    async def _run(self):
        while self._polling:
            await asyncio.sleep(self.refresh_interval)
            if not self._polling:
                break
            await self.poll_once()

    async def poll_once(self) -> QRCodeData:
        """Run one gated poll and apply its outcome."""
        if self.data.status == QRStatus.AVAILABLE and self.data.is_expired():
            self._update(self.data.model_copy(update={"status": QRStatus.EXPIRED}))

        if (self.data.status == QRStatus.AVAILABLE
                and self.data.seconds_until_expiry() > self.scanning_window):
            logger.debug(f"Skipping QR refresh for {self.instance_id} - user might be scanning")
            return self.data

        check = self.manager.can_make_request(self.instance_id, self.component_id)
        if not check.allowed:
            if check.reason == DenialReason.NOT_REGISTERED and self._polling:
                # Emergency stop or teardown took our registration away.
                self._fail_permanently("Polling rights lost")
            else:
                if check.wait_time_ms:
                    logger.info(
                        f"QR request blocked for {self.instance_id}: {check.message}. "
                        f"Wait {check.wait_time_ms / 1000:.0f}s"
                    )
                self._update(QRCodeData.failed(f"QR request blocked: {check.message}"))
                if self._polling:
                    self._count_failure()
            return self.data

        new_data = await self._fetch()
        self._update(new_data)

        if new_data.status == QRStatus.CONNECTED:
            self.retry_count = 0
            self.stop()
        elif new_data.status == QRStatus.ERROR:
            # _fetch may already have given up for good (unknown instance).
            if not self._polling:
                return self.data
            self._count_failure()
        else:
            self.retry_count = 0

        return self.data

    async def refresh(self) -> QRCodeData:
        """Manual refresh; same gating as a scheduled poll, ignoring the scanning window."""
        self._update(self.data.model_copy(update={"status": QRStatus.LOADING}))

        check = self.manager.can_make_request(self.instance_id, self.component_id)
        if not check.allowed:
            self._update(QRCodeData.failed(f"QR request blocked: {check.message}"))
            return self.data

        self._update(await self._fetch())
        if self.data.status == QRStatus.CONNECTED:
            self.stop()
        return self.data

    async def _fetch(self) -> QRCodeData:
        if self.breaker is not None:
            decision = self.breaker.should_allow_request(self.instance_id, "QRCodePoller")
            if not decision.allowed:
                logger.warning(f"Emergency circuit breaker: {decision.reason}")
                return QRCodeData.failed(f"Emergency circuit breaker: {decision.reason}")

        self.manager.record_request(self.instance_id, self.component_id)

        try:
            return await asyncio.to_thread(self.client.fetch_qr_code, self.instance_id)
        except InstanceNotFoundError as e:
            self._fail_permanently(str(e))
            return self.data
        except (GatewayError, CircuitBreakerOpen, ValueError) as e:
            logger.error(f"Error fetching QR code for {self.instance_id}: {e}")
            return QRCodeData.failed(str(e))

    def _count_failure(self):
        self.retry_count += 1
        if self.retry_count >= self.max_retries:
            self._fail_permanently(f"Max retries ({self.max_retries}) exceeded")

    def _fail_permanently(self, message: str):
        self.stop()
        self._update(QRCodeData.failed(message))

    def _update(self, new_data: QRCodeData):
        previous = self.data.status
        self.data = new_data
        if new_data.status == previous:
            return

        if self.on_status_change:
            self.on_status_change(new_data.status)
        if new_data.status == QRStatus.CONNECTED and self.on_connected:
            self.on_connected()
        elif new_data.status == QRStatus.ERROR and new_data.error and self.on_error:
            self.on_error(new_data.error)

    async def __aenter__(self) -> "QRCodePoller":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        self.stop()
