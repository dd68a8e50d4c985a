"""Messaging gateway (Evolution API) client for QR codes.

Purpose: Centralize HTTP configuration for the gateway so every QR fetch
gets the same timeouts, retries and circuit breaker.

Pattern: requests.Session with tenacity retry strategy and connection
pooling, wrapped in a CircuitBreaker.
"""
import logging
import re
from datetime import timedelta
from typing import Optional

import requests
from requests.adapters import HTTPAdapter
from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential
)
from urllib3.util.retry import Retry

from qr_guard import config
from qr_guard.circuit_breaker import CircuitBreaker
from qr_guard.models import QRCodeData, QRStatus, utc_now

logger = logging.getLogger(__name__)

UUID_PATTERN = re.compile(
    r'^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$', re.IGNORECASE
)
INSTANCE_NAME_PATTERN = re.compile(r'^[a-zA-Z0-9_-]+$')

QR_DATA_URL_PREFIX = "data:image/png;base64,"


class GatewayError(Exception):
    """Raised when the gateway cannot produce a QR code."""
    pass


class InstanceNotFoundError(GatewayError):
    """Raised when the gateway does not know the instance."""
    pass


def validate_instance_id(instance_id: str) -> str:
    """
    Accept a UUID or a plain instance name.

    Raises:
        ValueError: If the id could be used to escape the URL path
    """
    if not instance_id or not (
        UUID_PATTERN.match(instance_id) or INSTANCE_NAME_PATTERN.match(instance_id)
    ):
        raise ValueError(
            f"Invalid instance ID format: {instance_id!r}. Must be a UUID or valid instance name"
        )
    return instance_id


def _never_reached_gateway(exc: BaseException) -> bool:
    # ConnectTimeout is a ConnectionError; a ReadTimeout may already have been served.
    return isinstance(exc, requests.exceptions.ConnectionError)


def create_http_session(
    max_retries: int = config.GATEWAY_MAX_RETRIES,
    backoff_factor: float = 1.0,
    timeout: int = config.GATEWAY_TIMEOUT_SECONDS
) -> requests.Session:
    """
    Create HTTP session with retry and connection pooling.

    Only connection failures are retried: an answered request (even a 503)
    is one request the gateway really saw, and the poller already retries on
    its next tick under the request manager's throttle.

    Args:
        max_retries: Extra attempts after a connection failure (default: 3)
        backoff_factor: Backoff multiplier (1.0 gives delays of 1s, 2s, 4s;
                        0 disables waiting between attempts)
        timeout: Request timeout in seconds (default: 15)

    Returns:
        Configured requests.Session whose ``get`` retries and raises for
        HTTP errors
    """
    session = requests.Session()

    # Retries live in one place (tenacity below); the adapter never resends.
    retry_strategy = Retry(total=0, read=False)
    adapter = HTTPAdapter(
        max_retries=retry_strategy,
        pool_connections=10,
        pool_maxsize=10,
    )
    session.mount("http://", adapter)
    session.mount("https://", adapter)

    original_get = session.get

    @retry(
        stop=stop_after_attempt(max_retries + 1),
        wait=wait_exponential(multiplier=backoff_factor, min=backoff_factor, max=8),
        retry=retry_if_exception(_never_reached_gateway),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True
    )
    def get_with_retry(*args, **kwargs):
        kwargs.setdefault('timeout', timeout)
        response = original_get(*args, **kwargs)
        response.raise_for_status()
        return response

    session.get = get_with_retry
    return session


class QRGatewayClient:
    """
    Fetches pairing QR codes from the gateway.

    The client never decides *whether* to poll; that is the request
    manager's job. It only performs the request it is asked for.
    """

    def __init__(
        self,
        base_url: str = config.EVOLUTION_API_URL,
        api_key: str = config.EVOLUTION_API_KEY,
        session: Optional[requests.Session] = None,
        breaker: Optional[CircuitBreaker] = None,
        qr_ttl_seconds: float = config.QR_CODE_TTL_SECONDS
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.session = session or create_http_session()
        self.breaker = breaker or CircuitBreaker(failure_threshold=5, timeout=60)
        self.qr_ttl_seconds = qr_ttl_seconds

    def fetch_qr_code(self, instance_name: str) -> QRCodeData:
        """
        Ask the gateway for a fresh QR code.

        Args:
            instance_name: Gateway instance name or UUID

        Returns:
            QRCodeData with status CONNECTED, AVAILABLE or LOADING

        Raises:
            ValueError: Invalid instance name
            InstanceNotFoundError: Gateway answered 404
            GatewayError: Any other gateway failure
            CircuitBreakerOpen: Gateway breaker is open
        """
        validate_instance_id(instance_name)
        url = f"{self.base_url}/instance/connect/{instance_name}"

        def make_request():
            try:
                return self.session.get(url, headers={"apikey": self.api_key})
            except requests.exceptions.HTTPError as e:
                # 404/409 are answers about the instance, not gateway failures.
                if e.response is not None and e.response.status_code in (404, 409):
                    return e.response
                raise

        try:
            response = self.breaker.call(make_request)
        except requests.exceptions.RequestException as e:
            logger.error(f"Gateway QR request failed for {instance_name}: {e}")
            raise GatewayError(f"Gateway request failed: {e}") from e

        if response.status_code == 404:
            raise InstanceNotFoundError(f"Instance {instance_name} not found")
        if response.status_code == 409:
            return QRCodeData(status=QRStatus.CONNECTED)

        try:
            payload = response.json()
        except ValueError as e:
            raise GatewayError(f"Gateway returned invalid JSON for {instance_name}") from e

        return self._parse_payload(payload)

    def _parse_payload(self, payload: dict) -> QRCodeData:
        instance = payload.get("instance") or {}
        if instance.get("state") == "open" or payload.get("status") == "connected":
            return QRCodeData(status=QRStatus.CONNECTED)

        qr_code = payload.get("base64")
        if not qr_code:
            return QRCodeData(status=QRStatus.LOADING)
        if not qr_code.startswith("data:image"):
            qr_code = f"{QR_DATA_URL_PREFIX}{qr_code}"

        now = utc_now()
        return QRCodeData(
            qr_code=qr_code,
            status=QRStatus.AVAILABLE,
            expires_at=now + timedelta(seconds=self.qr_ttl_seconds),
            last_updated=now
        )
