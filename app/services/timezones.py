from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Protocol
from urllib import error as urllib_error
from urllib import request as urllib_request
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from app.settings import get_settings

logger = logging.getLogger("app.timezones")

UTC_ZONE_NAME = "UTC"


class TimezoneResolutionError(Exception):
    pass


class TimezoneResolver(Protocol):
    def resolve(self, latitude: float | None, longitude: float | None, device_hint: str | None) -> str: ...


@dataclass(frozen=True, slots=True)
class ResolvedZone:
    name: str
    zone: ZoneInfo
    resolved: bool
    device_hint: str | None = None

    @property
    def mismatch_detected(self) -> bool:
        return bool(self.resolved and self.device_hint and self.device_hint != self.name)


class UnconfiguredTimezoneResolver:
    def resolve(self, latitude: float | None, longitude: float | None, device_hint: str | None) -> str:
        raise TimezoneResolutionError("timezone resolver is not configured")


class HttpTimezoneResolver:
    """Resolves an IANA zone name from coordinates through a JSON HTTP endpoint.

    The endpoint receives ``{"latitude", "longitude", "deviceTimezone"}`` and
    answers with ``{"timezone": "<IANA name>", ...}``.
    """

    def __init__(self, url: str, *, timeout_seconds: int = 3, token: str | None = None) -> None:
        self.url = url
        self.timeout_seconds = max(1, int(timeout_seconds))
        self.token = (token or "").strip() or None

    def _post_json(self, payload: dict[str, Any]) -> dict[str, Any]:
        body = json.dumps(payload).encode("utf-8")
        request = urllib_request.Request(
            url=self.url,
            data=body,
            method="POST",
            headers={"Content-Type": "application/json"},
        )
        if self.token:
            request.add_header("Authorization", f"Bearer {self.token}")

        try:
            with urllib_request.urlopen(request, timeout=self.timeout_seconds) as response:
                status_code = int(getattr(response, "status", 200) or 200)
                raw = response.read(4096).decode("utf-8", errors="ignore")
        except urllib_error.HTTPError as exc:
            raise TimezoneResolutionError(f"resolver returned HTTP {exc.code}") from exc
        except (urllib_error.URLError, TimeoutError, OSError) as exc:
            raise TimezoneResolutionError(f"resolver unreachable: {exc}") from exc

        if not 200 <= status_code < 300:
            raise TimezoneResolutionError(f"resolver returned HTTP {status_code}")
        try:
            data = json.loads(raw)
        except ValueError as exc:
            raise TimezoneResolutionError("resolver returned invalid JSON") from exc
        if not isinstance(data, dict):
            raise TimezoneResolutionError("resolver returned unexpected payload")
        return data

    def resolve(self, latitude: float | None, longitude: float | None, device_hint: str | None) -> str:
        if latitude is None or longitude is None:
            raise TimezoneResolutionError("coordinates are required")
        data = self._post_json(
            {
                "latitude": latitude,
                "longitude": longitude,
                "deviceTimezone": device_hint,
            }
        )
        zone_name = str(data.get("timezone") or "").strip()
        if not zone_name:
            raise TimezoneResolutionError("resolver returned no timezone")
        return zone_name


def get_timezone_resolver() -> TimezoneResolver:
    settings = get_settings()
    url = (settings.timezone_resolver_url or "").strip()
    if not url:
        return UnconfiguredTimezoneResolver()
    return HttpTimezoneResolver(
        url,
        timeout_seconds=settings.timezone_resolver_timeout_seconds,
        token=settings.timezone_resolver_token,
    )


def fallback_zone() -> ResolvedZone:
    raw_name = (get_settings().attendance_timezone or "").strip() or UTC_ZONE_NAME
    try:
        return ResolvedZone(name=raw_name, zone=ZoneInfo(raw_name), resolved=False)
    except (ZoneInfoNotFoundError, ValueError):
        return ResolvedZone(name=UTC_ZONE_NAME, zone=ZoneInfo(UTC_ZONE_NAME), resolved=False)


def resolve_zone_or_fallback(
    resolver: TimezoneResolver,
    *,
    latitude: float | None,
    longitude: float | None,
    device_hint: str | None,
) -> ResolvedZone:
    # Never blocks attendance: any resolver failure degrades to the fallback zone.
    try:
        zone_name = resolver.resolve(latitude, longitude, device_hint)
        zone = ZoneInfo(zone_name)
    except Exception as exc:
        fallback = fallback_zone()
        logger.info(
            "timezone_resolution_fallback",
            extra={"fallback_zone": fallback.name, "error": str(exc)},
        )
        return ResolvedZone(name=fallback.name, zone=fallback.zone, resolved=False, device_hint=device_hint)

    resolved = ResolvedZone(name=zone_name, zone=zone, resolved=True, device_hint=device_hint)
    if resolved.mismatch_detected:
        logger.warning(
            "timezone_mismatch_detected",
            extra={"resolved_timezone": zone_name, "device_timezone": device_hint},
        )
    return resolved
