"""Configuration for QR polling coordination.

All throttling knobs centralized here - override through environment
variables (or a .env file) without touching code.
"""
import os

from dotenv import load_dotenv

load_dotenv()


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    return float(value) if value not in (None, "") else default


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    return int(value) if value not in (None, "") else default


# Request manager throttling
QR_MIN_REQUEST_INTERVAL_SECONDS = _env_float("QR_MIN_REQUEST_INTERVAL_SECONDS", 10.0)
QR_RATE_WINDOW_SECONDS = _env_float("QR_RATE_WINDOW_SECONDS", 30.0)
QR_MAX_REQUESTS_PER_WINDOW = _env_int("QR_MAX_REQUESTS_PER_WINDOW", 2)

# Poller behaviour
QR_REFRESH_INTERVAL_SECONDS = _env_float("QR_REFRESH_INTERVAL_SECONDS", 30.0)
QR_MAX_RETRIES = _env_int("QR_MAX_RETRIES", 5)
QR_SCANNING_WINDOW_SECONDS = _env_float("QR_SCANNING_WINDOW_SECONDS", 15.0)
QR_CODE_TTL_SECONDS = _env_float("QR_CODE_TTL_SECONDS", 60.0)

# Emergency breaker (request storm detection)
QR_STORM_MAX_REQUESTS = _env_int("QR_STORM_MAX_REQUESTS", 6)
QR_STORM_WINDOW_SECONDS = _env_float("QR_STORM_WINDOW_SECONDS", 60.0)
QR_STORM_COOLDOWN_SECONDS = _env_float("QR_STORM_COOLDOWN_SECONDS", 300.0)

# Messaging gateway (Evolution API)
EVOLUTION_API_URL = os.getenv("EVOLUTION_API_URL", "http://localhost:8080")
EVOLUTION_API_KEY = os.getenv("EVOLUTION_API_KEY", "")
GATEWAY_TIMEOUT_SECONDS = _env_int("GATEWAY_TIMEOUT_SECONDS", 15)
GATEWAY_MAX_RETRIES = _env_int("GATEWAY_MAX_RETRIES", 3)

# Diagnostics API
QR_DIAGNOSTICS_TOKEN = os.getenv("QR_DIAGNOSTICS_TOKEN", "")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
