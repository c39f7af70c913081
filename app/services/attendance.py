from __future__ import annotations

import enum
import logging
import math
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from typing import Any, Callable, TypeVar

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.audit import AuditContext, log_audit
from app.models import (
    AttendanceKind,
    AttendanceLog,
    AutoCheckoutPending,
    Branch,
    CheckoutReason,
    Employee,
    EmployeeLocationHeartbeat,
)
from app.services.geofence import (
    Geofence,
    GeofenceReason,
    GeofenceStatus,
    GeofenceVerdict,
    LocationSample,
    validate_geofence,
)
from app.services.session_store import SessionStore, normalize_ts
from app.services.timezones import TimezoneResolver, get_timezone_resolver, resolve_zone_or_fallback

logger = logging.getLogger("app.attendance")
_T = TypeVar("_T")

PERMISSION_GRANTED = "granted"
HEARTBEAT_REASON_GPS_DISABLED = "GPS_DISABLED"
HEARTBEAT_REASON_OUT_OF_BRANCH = "OUT_OF_BRANCH"
CANCEL_REASON_MANUAL_CHECKOUT = "MANUAL_CHECKOUT"


class AttendanceErrorCode(str, enum.Enum):
    EMPLOYEE_NOT_FOUND = "EMPLOYEE_NOT_FOUND"
    EMPLOYEE_INACTIVE = "EMPLOYEE_INACTIVE"
    BRANCH_NOT_FOUND = "BRANCH_NOT_FOUND"
    NO_CHECK_IN = "NO_CHECK_IN"
    ALREADY_CHECKED_IN = "ALREADY_CHECKED_IN"
    OUTSIDE_GEOFENCE = "OUTSIDE_GEOFENCE"
    LOCATION_MISSING = "LOCATION_MISSING"
    LOW_ACCURACY = "LOW_ACCURACY"
    LOCATION_OUTDATED = "LOCATION_OUTDATED"
    SERVER_ERROR = "SERVER_ERROR"


FAILURE_MESSAGES: dict[AttendanceErrorCode, tuple[str, str]] = {
    AttendanceErrorCode.EMPLOYEE_NOT_FOUND: ("Employee not found.", "الموظف غير موجود"),
    AttendanceErrorCode.EMPLOYEE_INACTIVE: (
        "Inactive employee cannot perform attendance actions.",
        "حساب الموظف غير نشط",
    ),
    AttendanceErrorCode.BRANCH_NOT_FOUND: ("Assigned branch not found.", "الفرع غير موجود"),
    AttendanceErrorCode.NO_CHECK_IN: ("No open check-in found.", "لم تسجل الحضور اليوم"),
    AttendanceErrorCode.ALREADY_CHECKED_IN: (
        "Employee already has an open attendance session.",
        "لقد سجلت حضورك بالفعل اليوم",
    ),
    AttendanceErrorCode.OUTSIDE_GEOFENCE: ("You are outside the branch area.", "أنت خارج نطاق موقع الفرع"),
    AttendanceErrorCode.LOCATION_MISSING: ("Device location is missing.", "الموقع غير متوفر"),
    AttendanceErrorCode.LOW_ACCURACY: (
        "Location accuracy is too low. Enable GPS or move near a window.",
        "دقة الموقع ضعيفة جدًا، حاول الاقتراب من النافذة أو تفعيل GPS",
    ),
    AttendanceErrorCode.LOCATION_OUTDATED: (
        "Location reading is outdated. Please try again.",
        "الموقع قديم، يرجى المحاولة مرة أخرى",
    ),
    AttendanceErrorCode.SERVER_ERROR: ("Unexpected server error.", "حدث خطأ في الخادم"),
}

_REASON_TO_ERROR_CODE: dict[GeofenceReason, AttendanceErrorCode] = {
    GeofenceReason.OUTSIDE_GEOFENCE: AttendanceErrorCode.OUTSIDE_GEOFENCE,
    GeofenceReason.LOCATION_MISSING: AttendanceErrorCode.LOCATION_MISSING,
    GeofenceReason.LOW_ACCURACY: AttendanceErrorCode.LOW_ACCURACY,
    GeofenceReason.LOCATION_OUTDATED: AttendanceErrorCode.LOCATION_OUTDATED,
}


@dataclass(frozen=True, slots=True)
class AttendanceFailure:
    code: AttendanceErrorCode
    message: str
    message_ar: str
    details: dict[str, Any] = field(default_factory=dict)

    ok = False


@dataclass(frozen=True, slots=True)
class AttendanceSuccess:
    log: AttendanceLog
    timezone_name: str
    timezone_resolved: bool
    verdict: GeofenceVerdict | None = None

    ok = True


@dataclass(frozen=True, slots=True)
class HeartbeatRecorded:
    log: AttendanceLog
    gps_ok: bool
    in_branch: bool
    reason: str | None
    last_seen_at: datetime
    pending: AutoCheckoutPending | None = None

    ok = True


@dataclass(frozen=True, slots=True)
class AttendanceStatus:
    employee_id: int
    open_log: AttendanceLog | None
    heartbeat: EmployeeLocationHeartbeat | None
    pending: AutoCheckoutPending | None


AttendanceResult = AttendanceSuccess | AttendanceFailure
HeartbeatResult = HeartbeatRecorded | AttendanceFailure


class AttendanceRejected(Exception):
    def __init__(self, code: AttendanceErrorCode, **details: Any) -> None:
        super().__init__(code.value)
        self.code = code
        self.details = {key: value for key, value in details.items() if value is not None}

    def to_failure(self) -> AttendanceFailure:
        return build_failure(self.code, **self.details)


def build_failure(code: AttendanceErrorCode, **details: Any) -> AttendanceFailure:
    message, message_ar = FAILURE_MESSAGES[code]
    return AttendanceFailure(code=code, message=message, message_ar=message_ar, details=details)


def parse_schedule_time(value: time | str | None) -> time | None:
    if value is None or isinstance(value, time):
        return value
    raw = value.strip()
    if not raw:
        return None
    parts = [int(part) for part in raw.split(":")]
    while len(parts) < 3:
        parts.append(0)
    return time(parts[0], parts[1], parts[2])


def _is_overnight(work_start: time | None, work_end: time | None) -> bool:
    return work_start is not None and work_end is not None and work_end < work_start


def _floor_minutes(delta: timedelta) -> int:
    return math.floor(delta.total_seconds() / 60)


def compute_late_minutes(
    *,
    check_in_local: datetime,
    work_start: time | str | None,
    work_end: time | str | None = None,
    grace_minutes: int = 0,
) -> int:
    start = parse_schedule_time(work_start)
    end = parse_schedule_time(work_end)
    if start is None:
        return 0
    start_day: date = check_in_local.date()
    if _is_overnight(start, end) and check_in_local.time() < end:  # type: ignore[operator]
        # Checked in after midnight: the shift started the previous evening.
        start_day -= timedelta(days=1)
    scheduled_start = datetime.combine(start_day, start, tzinfo=check_in_local.tzinfo)
    return max(0, _floor_minutes(check_in_local - scheduled_start) - max(0, grace_minutes))


def compute_early_leave_minutes(
    *,
    check_in_local: datetime,
    check_out_local: datetime,
    work_start: time | str | None,
    work_end: time | str | None,
    grace_minutes: int = 0,
) -> int:
    """Minutes the employee left before ``work_end - grace``, never negative.

    Overnight shifts (end earlier than start) end on the calendar day after the
    check-in, unless the check-in itself happened after midnight.
    """
    start = parse_schedule_time(work_start)
    end = parse_schedule_time(work_end)
    if end is None:
        return 0
    end_day: date = check_in_local.date()
    if _is_overnight(start, end) and check_in_local.time() >= end:
        end_day += timedelta(days=1)
    scheduled_end = datetime.combine(end_day, end, tzinfo=check_out_local.tzinfo)
    return max(0, _floor_minutes(scheduled_end - check_out_local) - max(0, grace_minutes))


def compute_working_hours(check_in_utc: datetime, check_out_utc: datetime) -> float:
    elapsed = normalize_ts(check_out_utc) - normalize_ts(check_in_utc)
    return round(max(0.0, elapsed.total_seconds()) / 3600, 2)


def geofence_for_branch(branch: Branch) -> Geofence:
    return Geofence(
        latitude=float(branch.latitude),
        longitude=float(branch.longitude),
        radius_m=float(branch.geofence_radius_m),
    )


def _resolve_employee(store: SessionStore, employee_id: int) -> Employee:
    employee = store.get_employee(employee_id)
    if employee is None:
        raise AttendanceRejected(AttendanceErrorCode.EMPLOYEE_NOT_FOUND)
    if not employee.is_active:
        raise AttendanceRejected(AttendanceErrorCode.EMPLOYEE_INACTIVE)
    return employee


def _resolve_branch(store: SessionStore, employee: Employee, branch_id: int | None) -> Branch:
    branch = store.get_branch(branch_id)
    if branch is None or branch.company_id != employee.company_id:
        raise AttendanceRejected(AttendanceErrorCode.BRANCH_NOT_FOUND)
    return branch


def _log_geofence_decision(
    *,
    action: str,
    employee: Employee,
    branch: Branch,
    location: LocationSample | None,
    verdict: GeofenceVerdict,
) -> None:
    logger.info(
        "geofence_decision",
        extra={
            "action": action,
            "employee_id": employee.id,
            "company_id": employee.company_id,
            "branch_id": branch.id,
            "accuracy": location.accuracy if location is not None else None,
            **verdict.to_log_dict(),
        },
    )


def _reject_for_verdict(verdict: GeofenceVerdict) -> AttendanceRejected:
    distance = round(verdict.distance_m) if verdict.distance_m >= 0 else None
    return AttendanceRejected(
        _REASON_TO_ERROR_CODE[verdict.reason],
        distance_m=distance,
        radius_m=verdict.radius_m,
    )


def _stage_audit(
    store: SessionStore,
    context: AuditContext,
    *,
    action: str,
    log: AttendanceLog,
    timezone_name: str,
    verdict: GeofenceVerdict | None,
) -> None:
    log_audit(
        store.db,
        context,
        action=action,
        entity_type="attendance_log",
        entity_id=str(log.id),
        details={
            "attendance_type": log.attendance_type.value,
            "timezone": timezone_name,
            "geofence_reason": verdict.reason.value if verdict is not None else None,
        },
    )


def _run_unit_of_work(
    store: SessionStore,
    *,
    action: str,
    employee_id: int,
    work: Callable[[], _T],
) -> _T | AttendanceFailure:
    try:
        result = work()
        store.commit()
        return result
    except AttendanceRejected as exc:
        store.rollback()
        logger.info(
            f"{action}_rejected",
            extra={"employee_id": employee_id, "code": exc.code.value, "details": exc.details},
        )
        return exc.to_failure()
    except Exception:
        store.rollback()
        logger.exception(f"{action}_failed", extra={"employee_id": employee_id})
        return build_failure(AttendanceErrorCode.SERVER_ERROR)


def check_in(
    db: Session,
    *,
    employee_id: int,
    location: LocationSample | None,
    device_timezone: str | None = None,
    now_utc: datetime | None = None,
    resolver: TimezoneResolver | None = None,
    audit: AuditContext | None = None,
) -> AttendanceResult:
    store = SessionStore(db)
    now = normalize_ts(now_utc)
    tz_resolver = resolver or get_timezone_resolver()

    def _work() -> AttendanceSuccess:
        employee = _resolve_employee(store, employee_id)
        if store.get_open_session(employee.id) is not None:
            raise AttendanceRejected(AttendanceErrorCode.ALREADY_CHECKED_IN)

        free_task = store.get_active_free_task(employee_id=employee.id, company_id=employee.company_id, now_utc=now)
        branch: Branch | None = None
        verdict: GeofenceVerdict | None = None
        if free_task is None:
            branch = _resolve_branch(store, employee, employee.branch_id)
            verdict = validate_geofence(location, geofence_for_branch(branch), trust_last_known=False, now_utc=now)
            _log_geofence_decision(action="check_in", employee=employee, branch=branch, location=location, verdict=verdict)
            if not verdict.valid:
                raise _reject_for_verdict(verdict)
        else:
            logger.info(
                "check_in_free_task",
                extra={"employee_id": employee.id, "free_task_id": free_task.id},
            )

        zone = resolve_zone_or_fallback(
            tz_resolver,
            latitude=location.lat if location is not None else None,
            longitude=location.lng if location is not None else None,
            device_hint=device_timezone,
        )
        local_check_in = normalize_ts(now).astimezone(zone.zone)
        log = AttendanceLog(
            employee_id=employee.id,
            company_id=employee.company_id,
            branch_id=branch.id if branch is not None else None,
            attendance_type=AttendanceKind.FREE if free_task is not None else AttendanceKind.NORMAL,
            check_in_time=now,
            local_check_in_time=local_check_in.replace(tzinfo=None),
            check_in_latitude=location.lat if location is not None else None,
            check_in_longitude=location.lng if location is not None else None,
            check_in_accuracy=location.accuracy if location is not None else None,
            late_minutes=compute_late_minutes(
                check_in_local=local_check_in,
                work_start=employee.work_start_time,
                work_end=employee.work_end_time,
                grace_minutes=employee.late_grace_min,
            ),
            last_heartbeat_at=now,
            last_location_at=now if location is not None and location.has_coordinates else None,
            resolved_timezone=zone.name,
            device_timezone=device_timezone,
            created_at=now,
        )
        try:
            store.create_session(log)
        except IntegrityError as exc:
            raise AttendanceRejected(AttendanceErrorCode.ALREADY_CHECKED_IN) from exc

        logger.info(
            "check_in_recorded",
            extra={
                "employee_id": employee.id,
                "attendance_log_id": log.id,
                "attendance_type": log.attendance_type.value,
                "timezone": zone.name,
                "timezone_resolved": zone.resolved,
                "late_minutes": log.late_minutes,
            },
        )
        _stage_audit(
            store,
            audit or AuditContext.for_employee(employee.id),
            action="ATTENDANCE_CHECK_IN",
            log=log,
            timezone_name=zone.name,
            verdict=verdict,
        )
        return AttendanceSuccess(log=log, timezone_name=zone.name, timezone_resolved=zone.resolved, verdict=verdict)

    return _run_unit_of_work(store, action="check_in", employee_id=employee_id, work=_work)


def check_out(
    db: Session,
    *,
    employee_id: int,
    location: LocationSample | None,
    device_timezone: str | None = None,
    now_utc: datetime | None = None,
    resolver: TimezoneResolver | None = None,
    audit: AuditContext | None = None,
) -> AttendanceResult:
    store = SessionStore(db)
    now = normalize_ts(now_utc)
    tz_resolver = resolver or get_timezone_resolver()

    def _work() -> AttendanceSuccess:
        employee = _resolve_employee(store, employee_id)
        log = store.get_open_session(employee.id)
        if log is None:
            raise AttendanceRejected(AttendanceErrorCode.NO_CHECK_IN)

        verdict: GeofenceVerdict | None = None
        if log.attendance_type != AttendanceKind.FREE:
            branch = _resolve_branch(store, employee, log.branch_id or employee.branch_id)
            verdict = validate_geofence(location, geofence_for_branch(branch), trust_last_known=True, now_utc=now)
            _log_geofence_decision(action="check_out", employee=employee, branch=branch, location=location, verdict=verdict)
            if verdict.status == GeofenceStatus.CONFIRMED_OUTSIDE:
                raise _reject_for_verdict(verdict)

        zone = resolve_zone_or_fallback(
            tz_resolver,
            latitude=location.lat if location is not None else None,
            longitude=location.lng if location is not None else None,
            device_hint=device_timezone,
        )
        check_in_local = normalize_ts(log.check_in_time).astimezone(zone.zone)
        check_out_local = now.astimezone(zone.zone)
        values = {
            "check_out_time": now,
            "local_check_out_time": check_out_local.replace(tzinfo=None),
            "check_out_latitude": location.lat if location is not None else None,
            "check_out_longitude": location.lng if location is not None else None,
            "check_out_accuracy": location.accuracy if location is not None else None,
            "total_working_hours": compute_working_hours(log.check_in_time, now),
            "early_leave_minutes": compute_early_leave_minutes(
                check_in_local=check_in_local,
                check_out_local=check_out_local,
                work_start=employee.work_start_time,
                work_end=employee.work_end_time,
                grace_minutes=employee.early_grace_min,
            ),
            "checkout_reason": CheckoutReason.MANUAL,
        }
        if not store.close_session_if_open(log.id, values):
            # Closed concurrently, most likely by the auto-checkout sweep.
            raise AttendanceRejected(AttendanceErrorCode.NO_CHECK_IN)

        pending = store.get_active_pending(log.id)
        if pending is not None:
            store.cancel_pending(pending.id, now_utc=now, cancel_reason=CANCEL_REASON_MANUAL_CHECKOUT)
        store.delete_heartbeat(employee.id)
        store.reload(log)

        logger.info(
            "check_out_recorded",
            extra={
                "employee_id": employee.id,
                "attendance_log_id": log.id,
                "total_working_hours": log.total_working_hours,
                "early_leave_minutes": log.early_leave_minutes,
                "timezone": zone.name,
                "timezone_resolved": zone.resolved,
            },
        )
        _stage_audit(
            store,
            audit or AuditContext.for_employee(employee.id),
            action="ATTENDANCE_CHECK_OUT",
            log=log,
            timezone_name=zone.name,
            verdict=verdict,
        )
        return AttendanceSuccess(log=log, timezone_name=zone.name, timezone_resolved=zone.resolved, verdict=verdict)

    return _run_unit_of_work(store, action="check_out", employee_id=employee_id, work=_work)


def _resolve_in_branch(
    store: SessionStore,
    *,
    employee: Employee,
    log: AttendanceLog,
    location: LocationSample | None,
    now: datetime,
) -> tuple[bool, str | None]:
    if log.attendance_type == AttendanceKind.FREE:
        return True, None

    branch = store.get_branch(log.branch_id or employee.branch_id)
    if branch is None:
        return False, HEARTBEAT_REASON_OUT_OF_BRANCH

    verdict = validate_geofence(location, geofence_for_branch(branch), trust_last_known=True, now_utc=now)
    if verdict.is_reliable:
        if verdict.status == GeofenceStatus.CONFIRMED_OUTSIDE:
            return False, HEARTBEAT_REASON_OUT_OF_BRANCH
        return True, None

    # Unreliable reading: keep the last known state; check-in itself was inside.
    previous = store.get_heartbeat(employee.id)
    if previous is not None and previous.attendance_log_id == log.id:
        return previous.in_branch, previous.reason if not previous.in_branch else None
    return True, None


def record_heartbeat(
    db: Session,
    *,
    employee_id: int,
    location: LocationSample | None,
    permission_state: str | None,
    now_utc: datetime | None = None,
) -> HeartbeatResult:
    store = SessionStore(db)
    now = normalize_ts(now_utc)

    def _work() -> HeartbeatRecorded:
        employee = _resolve_employee(store, employee_id)
        log = store.get_open_session(employee.id)
        if log is None:
            raise AttendanceRejected(AttendanceErrorCode.NO_CHECK_IN)

        gps_ok = (permission_state or "").strip().lower() == PERMISSION_GRANTED
        if gps_ok:
            in_branch, reason = _resolve_in_branch(store, employee=employee, log=log, location=location, now=now)
        else:
            in_branch, reason = False, HEARTBEAT_REASON_GPS_DISABLED

        has_coordinates = location is not None and location.has_coordinates
        if not store.touch_session_heartbeat(log.id, now_utc=now, with_location=has_coordinates):
            raise AttendanceRejected(AttendanceErrorCode.NO_CHECK_IN)
        store.upsert_heartbeat(
            employee_id=employee.id,
            company_id=log.company_id,
            attendance_log_id=log.id,
            last_seen_at=now,
            gps_ok=gps_ok,
            in_branch=in_branch,
            reason=reason,
            latitude=location.lat if has_coordinates else None,  # type: ignore[union-attr]
            longitude=location.lng if has_coordinates else None,  # type: ignore[union-attr]
            accuracy=location.accuracy if has_coordinates else None,  # type: ignore[union-attr]
        )
        return HeartbeatRecorded(
            log=log,
            gps_ok=gps_ok,
            in_branch=in_branch,
            reason=reason,
            last_seen_at=now,
            pending=store.get_active_pending(log.id),
        )

    return _run_unit_of_work(store, action="heartbeat", employee_id=employee_id, work=_work)


def get_attendance_status(db: Session, *, employee_id: int) -> AttendanceStatus | AttendanceFailure:
    store = SessionStore(db)
    employee = store.get_employee(employee_id)
    if employee is None:
        return build_failure(AttendanceErrorCode.EMPLOYEE_NOT_FOUND)
    open_log = store.get_open_session(employee.id)
    return AttendanceStatus(
        employee_id=employee.id,
        open_log=open_log,
        heartbeat=store.get_heartbeat(employee.id),
        pending=store.get_active_pending(open_log.id) if open_log is not None else None,
    )
