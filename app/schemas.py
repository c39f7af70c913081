from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from app.models import AttendanceKind, CheckoutReason, PendingStatus
from app.services.geofence import LocationSample


class LocationPayload(BaseModel):
    lat: float | None = Field(default=None, ge=-90, le=90)
    lng: float | None = Field(default=None, ge=-180, le=180)
    accuracy: float | None = Field(default=None, ge=0)
    timestamp: datetime | None = None

    def to_sample(self) -> LocationSample:
        return LocationSample(lat=self.lat, lng=self.lng, accuracy=self.accuracy, timestamp=self.timestamp)


class AttendanceCheckinRequest(BaseModel):
    employee_id: int = Field(ge=1)
    location: LocationPayload | None = None
    device_timezone: str | None = Field(default=None, max_length=64)


class AttendanceCheckoutRequest(BaseModel):
    employee_id: int = Field(ge=1)
    location: LocationPayload | None = None
    device_timezone: str | None = Field(default=None, max_length=64)


class HeartbeatRequest(BaseModel):
    employee_id: int = Field(ge=1)
    location: LocationPayload | None = None
    permission_state: Literal["granted", "denied", "prompt", "unavailable"] | None = None


class AttendanceSessionRead(BaseModel):
    id: int
    employee_id: int
    company_id: int
    branch_id: int | None = None
    attendance_type: AttendanceKind
    check_in_time: datetime
    local_check_in_time: datetime | None = None
    check_out_time: datetime | None = None
    local_check_out_time: datetime | None = None
    total_working_hours: float | None = None
    early_leave_minutes: int | None = None
    late_minutes: int = 0
    checkout_reason: CheckoutReason | None = None
    last_heartbeat_at: datetime | None = None
    resolved_timezone: str | None = None
    device_timezone: str | None = None

    model_config = ConfigDict(from_attributes=True)


class GeofenceVerdictRead(BaseModel):
    valid: bool
    status: str
    reason: str
    distance_m: float
    radius_m: float


class AttendanceActionResponse(BaseModel):
    ok: bool = True
    session: AttendanceSessionRead
    timezone: str
    timezone_resolved: bool
    geofence: GeofenceVerdictRead | None = None


class PendingCountdownRead(BaseModel):
    id: int
    reason: CheckoutReason
    ends_at: datetime
    status: PendingStatus

    model_config = ConfigDict(from_attributes=True)


class HeartbeatResponse(BaseModel):
    ok: bool = True
    attendance_log_id: int
    gps_ok: bool
    in_branch: bool
    reason: str | None = None
    last_seen_at: datetime
    pending: PendingCountdownRead | None = None


class HeartbeatRead(BaseModel):
    last_seen_at: datetime
    gps_ok: bool
    in_branch: bool
    reason: str | None = None

    model_config = ConfigDict(from_attributes=True)


class AttendanceStatusResponse(BaseModel):
    employee_id: int
    checked_in: bool
    session: AttendanceSessionRead | None = None
    heartbeat: HeartbeatRead | None = None
    pending: PendingCountdownRead | None = None


class SweepDetailRead(BaseModel):
    attendance_log_id: int
    employee_id: int
    company_id: int
    action: str
    reason: str | None = None
    ends_at: datetime | None = None
    error: str | None = None


class SweepSummaryResponse(BaseModel):
    sessions_processed: int
    countdowns_started: int
    checkouts_executed: int
    countdowns_cancelled: int
    errors: int
    details: list[SweepDetailRead] = Field(default_factory=list)


class HealthResponse(BaseModel):
    status: str
    schema_guard: dict[str, Any]
    timezone_resolver_configured: bool
