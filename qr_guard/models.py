"""QR code value types shared by the gateway client and the poller."""
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class QRStatus(str, Enum):
    LOADING = "loading"
    AVAILABLE = "available"
    EXPIRED = "expired"
    ERROR = "error"
    CONNECTED = "connected"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class QRCodeData(BaseModel):
    """Latest QR state for one instance."""
    qr_code: Optional[str] = Field(None, description="Base64 data URL of the QR image")
    status: QRStatus = Field(QRStatus.LOADING, description="Pairing status")
    expires_at: Optional[datetime] = Field(None, description="When the QR stops being scannable")
    last_updated: datetime = Field(default_factory=utc_now)
    error: Optional[str] = Field(None, description="Error detail when status is error")

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "qr_code": "data:image/png;base64,iVBORw0KGgo...",
                "status": "available",
                "expires_at": "2025-01-28T10:01:00Z",
                "last_updated": "2025-01-28T10:00:00Z",
                "error": None
            }
        }
    )

    @classmethod
    def failed(cls, message: str) -> "QRCodeData":
        return cls(status=QRStatus.ERROR, error=message)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        return (now or utc_now()) > self.expires_at

    def seconds_until_expiry(self, now: Optional[datetime] = None) -> float:
        if self.expires_at is None:
            return 0.0
        return max(0.0, (self.expires_at - (now or utc_now())).total_seconds())
