from __future__ import annotations

import enum
from dataclasses import dataclass
from datetime import datetime, timezone
from math import asin, cos, radians, sin, sqrt

EARTH_RADIUS_M = 6371000.0
MAX_ACCURACY_M = 500.0
MAX_LOCATION_AGE_SECONDS = 30.0
UNKNOWN_DISTANCE = -1.0


class GeofenceStatus(str, enum.Enum):
    CONFIRMED_INSIDE = "CONFIRMED_INSIDE"
    CONFIRMED_OUTSIDE = "CONFIRMED_OUTSIDE"
    TRUST_LAST_KNOWN = "TRUST_LAST_KNOWN"


class GeofenceReason(str, enum.Enum):
    INSIDE_GEOFENCE = "INSIDE_GEOFENCE"
    OUTSIDE_GEOFENCE = "OUTSIDE_GEOFENCE"
    LOCATION_MISSING = "LOCATION_MISSING"
    LOW_ACCURACY = "LOW_ACCURACY"
    LOCATION_OUTDATED = "LOCATION_OUTDATED"


@dataclass(frozen=True, slots=True)
class LocationSample:
    lat: float | None
    lng: float | None
    accuracy: float | None = None
    timestamp: datetime | None = None

    @property
    def has_coordinates(self) -> bool:
        return self.lat is not None and self.lng is not None


@dataclass(frozen=True, slots=True)
class Geofence:
    latitude: float
    longitude: float
    radius_m: float


@dataclass(frozen=True, slots=True)
class GeofenceVerdict:
    valid: bool
    status: GeofenceStatus
    reason: GeofenceReason
    distance_m: float
    radius_m: float
    detail: str

    @property
    def is_reliable(self) -> bool:
        return self.status != GeofenceStatus.TRUST_LAST_KNOWN

    def to_log_dict(self) -> dict[str, float | str | bool]:
        return {
            "valid": self.valid,
            "status": self.status.value,
            "reason": self.reason.value,
            "distance_m": round(self.distance_m, 2),
            "radius_m": self.radius_m,
        }


def distance_m(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    lat1_rad = radians(lat1)
    lon1_rad = radians(lon1)
    lat2_rad = radians(lat2)
    lon2_rad = radians(lon2)

    delta_lat = lat2_rad - lat1_rad
    delta_lon = lon2_rad - lon1_rad

    a = sin(delta_lat / 2) ** 2 + cos(lat1_rad) * cos(lat2_rad) * sin(delta_lon / 2) ** 2
    c = 2 * asin(min(1.0, sqrt(a)))
    return EARTH_RADIUS_M * c


def _location_age_seconds(sample_ts: datetime, now_utc: datetime) -> float:
    if sample_ts.tzinfo is None:
        sample_ts = sample_ts.replace(tzinfo=timezone.utc)
    return (now_utc - sample_ts).total_seconds()


def validate_geofence(
    sample: LocationSample | None,
    geofence: Geofence,
    *,
    trust_last_known: bool = False,
    now_utc: datetime | None = None,
) -> GeofenceVerdict:
    """Classify one location sample against a circular geofence.

    Unreliable samples (missing, inaccurate or stale) never produce a distance;
    their validity is whatever the caller passed as ``trust_last_known``.
    Reliable samples are inside when the haversine distance is within the radius.
    """
    radius = float(geofence.radius_m)

    def _unreliable(reason: GeofenceReason, detail: str) -> GeofenceVerdict:
        return GeofenceVerdict(
            valid=trust_last_known,
            status=GeofenceStatus.TRUST_LAST_KNOWN,
            reason=reason,
            distance_m=UNKNOWN_DISTANCE,
            radius_m=radius,
            detail=detail,
        )

    if sample is None or not sample.has_coordinates:
        return _unreliable(GeofenceReason.LOCATION_MISSING, "Device location is missing")

    if sample.accuracy is not None and sample.accuracy > MAX_ACCURACY_M:
        return _unreliable(GeofenceReason.LOW_ACCURACY, "Location accuracy is too low")

    if sample.timestamp is not None:
        reference = now_utc or datetime.now(timezone.utc)
        if _location_age_seconds(sample.timestamp, reference) > MAX_LOCATION_AGE_SECONDS:
            return _unreliable(GeofenceReason.LOCATION_OUTDATED, "Location timestamp is too old")

    distance = distance_m(sample.lat, sample.lng, geofence.latitude, geofence.longitude)  # type: ignore[arg-type]
    if distance > radius:
        return GeofenceVerdict(
            valid=False,
            status=GeofenceStatus.CONFIRMED_OUTSIDE,
            reason=GeofenceReason.OUTSIDE_GEOFENCE,
            distance_m=distance,
            radius_m=radius,
            detail=f"Distance {distance:.0f}m exceeds radius {radius:.0f}m",
        )

    return GeofenceVerdict(
        valid=True,
        status=GeofenceStatus.CONFIRMED_INSIDE,
        reason=GeofenceReason.INSIDE_GEOFENCE,
        distance_m=distance,
        radius_m=radius,
        detail=f"Distance {distance:.0f}m within radius {radius:.0f}m",
    )
