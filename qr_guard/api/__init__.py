"""API package initialization."""
from qr_guard.api.models import EmergencyStopResponse, ErrorResponse, StatsResponse

__all__ = ["EmergencyStopResponse", "ErrorResponse", "StatsResponse"]
