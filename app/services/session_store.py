from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import delete, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.models import (
    AttendanceLog,
    AutoCheckoutPending,
    AutoCheckoutSettings,
    Branch,
    CheckoutReason,
    Employee,
    EmployeeLocationHeartbeat,
    FreeTask,
    PendingStatus,
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def normalize_ts(ts: datetime | None) -> datetime:
    if ts is None:
        return utcnow()
    if ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc)


class SessionStore:
    """Persistence seam for attendance sessions, heartbeats and pending countdowns.

    Terminal writes are compare-and-swap: they only touch rows that are still
    open (sessions) or still ``PENDING`` (countdowns) and report whether they
    won. Callers never lock rows.
    """

    def __init__(self, db: Session) -> None:
        self.db = db

    def commit(self) -> None:
        self.db.commit()

    def rollback(self) -> None:
        self.db.rollback()

    # Directory lookups

    def get_employee(self, employee_id: int) -> Employee | None:
        return self.db.get(Employee, employee_id)

    def get_branch(self, branch_id: int | None) -> Branch | None:
        if branch_id is None:
            return None
        return self.db.get(Branch, branch_id)

    def get_active_free_task(self, *, employee_id: int, company_id: int, now_utc: datetime) -> FreeTask | None:
        return self.db.scalar(
            select(FreeTask)
            .where(
                FreeTask.employee_id == employee_id,
                FreeTask.company_id == company_id,
                FreeTask.is_active.is_(True),
                FreeTask.start_at <= now_utc,
                FreeTask.end_at >= now_utc,
            )
            .order_by(FreeTask.start_at.desc(), FreeTask.id.desc())
            .limit(1)
        )

    # Attendance sessions

    def get_session(self, attendance_log_id: int) -> AttendanceLog | None:
        return self.db.get(AttendanceLog, attendance_log_id)

    def get_open_session(self, employee_id: int) -> AttendanceLog | None:
        # The partial unique index allows at most one open session, whatever its age.
        return self.db.scalar(
            select(AttendanceLog)
            .where(
                AttendanceLog.employee_id == employee_id,
                AttendanceLog.check_out_time.is_(None),
            )
            .order_by(AttendanceLog.check_in_time.desc(), AttendanceLog.id.desc())
            .limit(1)
        )

    def list_open_sessions(self, company_id: int) -> list[AttendanceLog]:
        return list(
            self.db.scalars(
                select(AttendanceLog)
                .where(
                    AttendanceLog.company_id == company_id,
                    AttendanceLog.check_out_time.is_(None),
                )
                .order_by(AttendanceLog.check_in_time.asc(), AttendanceLog.id.asc())
            ).all()
        )

    def create_session(self, log: AttendanceLog) -> AttendanceLog:
        # IntegrityError here means another open session already exists.
        self.db.add(log)
        self.db.flush()
        return log

    def close_session_if_open(self, attendance_log_id: int, values: dict[str, Any]) -> bool:
        result = self.db.execute(
            update(AttendanceLog)
            .where(
                AttendanceLog.id == attendance_log_id,
                AttendanceLog.check_out_time.is_(None),
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def touch_session_heartbeat(self, attendance_log_id: int, *, now_utc: datetime, with_location: bool) -> bool:
        values: dict[str, Any] = {"last_heartbeat_at": now_utc}
        if with_location:
            values["last_location_at"] = now_utc
        result = self.db.execute(
            update(AttendanceLog)
            .where(
                AttendanceLog.id == attendance_log_id,
                AttendanceLog.check_out_time.is_(None),
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def reload(self, log: AttendanceLog) -> AttendanceLog:
        self.db.refresh(log)
        return log

    # Heartbeats

    def get_heartbeat(self, employee_id: int) -> EmployeeLocationHeartbeat | None:
        return self.db.get(EmployeeLocationHeartbeat, employee_id)

    def upsert_heartbeat(
        self,
        *,
        employee_id: int,
        company_id: int,
        attendance_log_id: int,
        last_seen_at: datetime,
        gps_ok: bool,
        in_branch: bool,
        reason: str | None,
        latitude: float | None = None,
        longitude: float | None = None,
        accuracy: float | None = None,
    ) -> EmployeeLocationHeartbeat:
        heartbeat = self.db.merge(
            EmployeeLocationHeartbeat(
                employee_id=employee_id,
                company_id=company_id,
                attendance_log_id=attendance_log_id,
                last_seen_at=last_seen_at,
                gps_ok=gps_ok,
                in_branch=in_branch,
                reason=reason,
                latitude=latitude,
                longitude=longitude,
                accuracy=accuracy,
            )
        )
        self.db.flush()
        return heartbeat

    def delete_heartbeat(self, employee_id: int) -> int:
        result = self.db.execute(
            delete(EmployeeLocationHeartbeat)
            .where(EmployeeLocationHeartbeat.employee_id == employee_id)
            .execution_options(synchronize_session=False)
        )
        return int(result.rowcount or 0)

    # Auto-checkout configuration and countdowns

    def list_auto_checkout_settings(self) -> list[AutoCheckoutSettings]:
        return list(
            self.db.scalars(select(AutoCheckoutSettings).order_by(AutoCheckoutSettings.company_id.asc())).all()
        )

    def get_auto_checkout_settings(self, company_id: int) -> AutoCheckoutSettings | None:
        return self.db.scalar(select(AutoCheckoutSettings).where(AutoCheckoutSettings.company_id == company_id))

    def get_active_pending(self, attendance_log_id: int) -> AutoCheckoutPending | None:
        return self.db.scalar(
            select(AutoCheckoutPending)
            .where(
                AutoCheckoutPending.attendance_log_id == attendance_log_id,
                AutoCheckoutPending.status == PendingStatus.PENDING,
            )
            .order_by(AutoCheckoutPending.id.desc())
            .limit(1)
        )

    def list_stale_pending(self, company_id: int) -> list[tuple[AutoCheckoutPending, bool]]:
        """PENDING rows whose session is closed or gone, flagged with whether the session exists."""
        rows = self.db.execute(
            select(AutoCheckoutPending, AttendanceLog.id)
            .outerjoin(AttendanceLog, AttendanceLog.id == AutoCheckoutPending.attendance_log_id)
            .where(
                AutoCheckoutPending.company_id == company_id,
                AutoCheckoutPending.status == PendingStatus.PENDING,
                or_(AttendanceLog.id.is_(None), AttendanceLog.check_out_time.is_not(None)),
            )
            .order_by(AutoCheckoutPending.id.asc())
        ).all()
        return [(pending, log_id is not None) for pending, log_id in rows]

    def create_pending(
        self,
        *,
        log: AttendanceLog,
        reason: CheckoutReason,
        ends_at: datetime,
        now_utc: datetime,
    ) -> AutoCheckoutPending | None:
        """Insert a PENDING countdown, or return None when one already exists.

        Must be the first write of the unit of work: a unique-index conflict
        rolls the whole session back.
        """
        pending = AutoCheckoutPending(
            employee_id=log.employee_id,
            company_id=log.company_id,
            attendance_log_id=log.id,
            reason=reason,
            ends_at=ends_at,
            status=PendingStatus.PENDING,
            created_at=now_utc,
        )
        self.db.add(pending)
        try:
            self.db.flush()
        except IntegrityError:
            self.db.rollback()
            return None
        return pending

    def finish_pending(self, pending_id: int, *, now_utc: datetime) -> bool:
        return self._transition_pending(
            pending_id,
            {"status": PendingStatus.DONE, "done_at": now_utc},
        )

    def cancel_pending(self, pending_id: int, *, now_utc: datetime, cancel_reason: str) -> bool:
        return self._transition_pending(
            pending_id,
            {
                "status": PendingStatus.CANCELLED,
                "cancelled_at": now_utc,
                "cancel_reason": cancel_reason,
            },
        )

    def _transition_pending(self, pending_id: int, values: dict[str, Any]) -> bool:
        result = self.db.execute(
            update(AutoCheckoutPending)
            .where(
                AutoCheckoutPending.id == pending_id,
                AutoCheckoutPending.status == PendingStatus.PENDING,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1
