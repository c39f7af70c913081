from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from app.audit import AuditContext
from app.db import get_db
from app.errors import ApiError
from app.models import AuditActorType
from app.schemas import (
    AttendanceActionResponse,
    AttendanceCheckinRequest,
    AttendanceCheckoutRequest,
    AttendanceSessionRead,
    AttendanceStatusResponse,
    GeofenceVerdictRead,
    HeartbeatRead,
    HeartbeatRequest,
    HeartbeatResponse,
    PendingCountdownRead,
)
from app.services.attendance import (
    AttendanceErrorCode,
    AttendanceFailure,
    AttendanceSuccess,
    check_in,
    check_out,
    get_attendance_status,
    record_heartbeat,
)

router = APIRouter(prefix="/api/attendance", tags=["attendance"])

_FAILURE_STATUS: dict[AttendanceErrorCode, int] = {
    AttendanceErrorCode.EMPLOYEE_NOT_FOUND: 404,
    AttendanceErrorCode.BRANCH_NOT_FOUND: 404,
    AttendanceErrorCode.EMPLOYEE_INACTIVE: 403,
    AttendanceErrorCode.ALREADY_CHECKED_IN: 409,
    AttendanceErrorCode.NO_CHECK_IN: 400,
    AttendanceErrorCode.OUTSIDE_GEOFENCE: 403,
    AttendanceErrorCode.LOCATION_MISSING: 403,
    AttendanceErrorCode.LOW_ACCURACY: 403,
    AttendanceErrorCode.LOCATION_OUTDATED: 403,
    AttendanceErrorCode.SERVER_ERROR: 500,
}


def _client_ip(request: Request) -> str | None:
    forwarded_for = request.headers.get("x-forwarded-for")
    if forwarded_for:
        return forwarded_for.split(",")[0].strip()
    if request.client:
        return request.client.host
    return None


def _raise_for_failure(failure: AttendanceFailure) -> None:
    raise ApiError(
        status_code=_FAILURE_STATUS.get(failure.code, 400),
        code=failure.code.value,
        message=failure.message,
        extra={"message_ar": failure.message_ar, **failure.details},
    )


def _action_response(result: AttendanceSuccess) -> AttendanceActionResponse:
    verdict = result.verdict
    return AttendanceActionResponse(
        session=AttendanceSessionRead.model_validate(result.log),
        timezone=result.timezone_name,
        timezone_resolved=result.timezone_resolved,
        geofence=(
            GeofenceVerdictRead(
                valid=verdict.valid,
                status=verdict.status.value,
                reason=verdict.reason.value,
                distance_m=round(verdict.distance_m, 2),
                radius_m=verdict.radius_m,
            )
            if verdict is not None
            else None
        ),
    )


def _audit_context(request: Request, employee_id: int) -> AuditContext:
    return AuditContext(
        actor_type=AuditActorType.EMPLOYEE,
        actor_id=str(employee_id),
        ip=_client_ip(request),
        user_agent=request.headers.get("user-agent"),
        request_id=getattr(request.state, "request_id", None),
    )


@router.post("/check-in", response_model=AttendanceActionResponse)
def check_in_endpoint(
    payload: AttendanceCheckinRequest,
    request: Request,
    db: Session = Depends(get_db),
) -> AttendanceActionResponse:
    request.state.actor = "employee"
    request.state.employee_id = payload.employee_id
    result = check_in(
        db,
        employee_id=payload.employee_id,
        location=payload.location.to_sample() if payload.location is not None else None,
        device_timezone=payload.device_timezone,
        audit=_audit_context(request, payload.employee_id),
    )
    if isinstance(result, AttendanceFailure):
        _raise_for_failure(result)
    request.state.location_status = result.verdict.status.value if result.verdict is not None else None
    return _action_response(result)


@router.post("/check-out", response_model=AttendanceActionResponse)
def check_out_endpoint(
    payload: AttendanceCheckoutRequest,
    request: Request,
    db: Session = Depends(get_db),
) -> AttendanceActionResponse:
    request.state.actor = "employee"
    request.state.employee_id = payload.employee_id
    result = check_out(
        db,
        employee_id=payload.employee_id,
        location=payload.location.to_sample() if payload.location is not None else None,
        device_timezone=payload.device_timezone,
        audit=_audit_context(request, payload.employee_id),
    )
    if isinstance(result, AttendanceFailure):
        _raise_for_failure(result)
    request.state.location_status = result.verdict.status.value if result.verdict is not None else None
    return _action_response(result)


@router.post("/heartbeat", response_model=HeartbeatResponse)
def heartbeat_endpoint(
    payload: HeartbeatRequest,
    request: Request,
    db: Session = Depends(get_db),
) -> HeartbeatResponse:
    request.state.actor = "employee"
    request.state.employee_id = payload.employee_id
    result = record_heartbeat(
        db,
        employee_id=payload.employee_id,
        location=payload.location.to_sample() if payload.location is not None else None,
        permission_state=payload.permission_state,
    )
    if isinstance(result, AttendanceFailure):
        _raise_for_failure(result)
    return HeartbeatResponse(
        attendance_log_id=result.log.id,
        gps_ok=result.gps_ok,
        in_branch=result.in_branch,
        reason=result.reason,
        last_seen_at=result.last_seen_at,
        pending=PendingCountdownRead.model_validate(result.pending) if result.pending is not None else None,
    )


@router.get("/status/{employee_id}", response_model=AttendanceStatusResponse)
def status_endpoint(employee_id: int, db: Session = Depends(get_db)) -> AttendanceStatusResponse:
    result = get_attendance_status(db, employee_id=employee_id)
    if isinstance(result, AttendanceFailure):
        _raise_for_failure(result)
    heartbeat = result.heartbeat
    if heartbeat is not None and result.open_log is not None and heartbeat.attendance_log_id not in (None, result.open_log.id):
        heartbeat = None
    return AttendanceStatusResponse(
        employee_id=result.employee_id,
        checked_in=result.open_log is not None,
        session=AttendanceSessionRead.model_validate(result.open_log) if result.open_log is not None else None,
        heartbeat=HeartbeatRead.model_validate(heartbeat) if heartbeat is not None else None,
        pending=PendingCountdownRead.model_validate(result.pending) if result.pending is not None else None,
    )
