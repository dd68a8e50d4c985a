"""Pydantic models for diagnostics API responses."""
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from qr_guard.request_manager import ManagerStats


class InstanceStatsResponse(BaseModel):
    """Polling state of one registered instance."""
    instance_id: str = Field(..., description="Messaging-channel instance key")
    component_id: str = Field(..., description="Poller currently owning the instance")
    is_active: bool = Field(..., description="Whether the registration is active")
    request_count_in_window: int = Field(..., ge=0, description="Polls accepted in the current window")
    seconds_since_last_request: Optional[float] = Field(
        None, description="Elapsed time since the last accepted poll (null before the first)"
    )
    has_timer: bool = Field(..., description="Whether a polling timer is attached")


class StatsResponse(BaseModel):
    """Response schema for /api/v1/qr/stats."""
    count: int = Field(..., ge=0, description="Number of registered instances")
    per_instance: List[InstanceStatsResponse] = Field(default_factory=list)
    tripped_instances: List[str] = Field(
        default_factory=list, description="Instances blocked by the emergency breaker"
    )
    global_trip: bool = Field(False, description="Whether every instance is blocked")

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "count": 1,
                "per_instance": [{
                    "instance_id": "clinic-downtown",
                    "component_id": "qr-1738058400000-a1b2c3d4e",
                    "is_active": True,
                    "request_count_in_window": 2,
                    "seconds_since_last_request": 4.2,
                    "has_timer": True
                }],
                "tripped_instances": [],
                "global_trip": False
            }
        }
    )

    @classmethod
    def from_stats(cls, stats: ManagerStats, breaker_snapshot: Optional[dict] = None) -> "StatsResponse":
        breaker_snapshot = breaker_snapshot or {}
        return cls(
            count=stats.count,
            per_instance=[
                InstanceStatsResponse(
                    instance_id=item.instance_id,
                    component_id=item.component_id,
                    is_active=item.is_active,
                    request_count_in_window=item.request_count_in_window,
                    seconds_since_last_request=item.seconds_since_last_request,
                    has_timer=item.has_timer
                )
                for item in stats.per_instance
            ],
            tripped_instances=breaker_snapshot.get("tripped_instances", []),
            global_trip=breaker_snapshot.get("global_trip", False)
        )


class EmergencyStopResponse(BaseModel):
    """Response schema for /api/v1/qr/emergency-stop."""
    cleared: int = Field(..., ge=0, description="Registrations removed")
    breaker_tripped: bool = Field(..., description="Whether the emergency breaker now blocks all polls")


class ErrorResponse(BaseModel):
    """Error response schema."""
    error: str = Field(..., description="Error message")
    detail: Optional[str] = Field(None, description="Detailed error information")
    code: Optional[str] = Field(None, description="Error code")

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "error": "Unauthorized",
                "detail": "Missing or invalid diagnostics token",
                "code": "UNAUTHORIZED"
            }
        }
    )
