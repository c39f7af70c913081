from __future__ import annotations

import enum
import logging
from collections.abc import Callable, Iterable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sqlalchemy.orm import Session

from app.audit import AuditContext, log_audit
from app.models import (
    AttendanceLog,
    AuditActorType,
    AutoCheckoutPending,
    AutoCheckoutSettings,
    CheckoutReason,
    EmployeeLocationHeartbeat,
)
from app.services.attendance import compute_working_hours
from app.services.session_store import SessionStore, normalize_ts

logger = logging.getLogger("app.auto_checkout")

CANCEL_REASON_CONDITIONS_RESOLVED = "CONDITIONS_RESOLVED"
CANCEL_REASON_LOG_NOT_FOUND = "LOG_NOT_FOUND"
SYSTEM_AUDIT_CONTEXT = AuditContext(actor_type=AuditActorType.SYSTEM, actor_id="auto_checkout")

SessionFactory = Callable[[], Session]


class SessionState(str, enum.Enum):
    NORMAL = "NORMAL"
    PENDING = "PENDING"
    CLOSED = "CLOSED"
    CANCELLED = "CANCELLED"


class SweepAction(str, enum.Enum):
    NONE = "NONE"
    START = "STARTED"
    HOLD = "HOLD"
    EXECUTE = "EXECUTED"
    CANCEL = "CANCELLED"
    STALE = "STALE"
    ERROR = "ERROR"


ALLOWED_TRANSITIONS: dict[SessionState, frozenset[SessionState]] = {
    SessionState.NORMAL: frozenset({SessionState.NORMAL, SessionState.PENDING, SessionState.CLOSED}),
    SessionState.PENDING: frozenset({SessionState.PENDING, SessionState.CLOSED, SessionState.CANCELLED}),
    SessionState.CANCELLED: frozenset({SessionState.NORMAL}),
    SessionState.CLOSED: frozenset(),
}

ACTION_TRANSITIONS: dict[SweepAction, tuple[SessionState, SessionState]] = {
    SweepAction.NONE: (SessionState.NORMAL, SessionState.NORMAL),
    SweepAction.START: (SessionState.NORMAL, SessionState.PENDING),
    SweepAction.HOLD: (SessionState.PENDING, SessionState.PENDING),
    SweepAction.EXECUTE: (SessionState.PENDING, SessionState.CLOSED),
    SweepAction.CANCEL: (SessionState.PENDING, SessionState.CANCELLED),
}

NO_SIGNAL_REASONS = frozenset({CheckoutReason.NO_HEARTBEAT, CheckoutReason.HEARTBEAT_TIMEOUT})


class InvalidTransition(Exception):
    pass


def assert_transition(source: SessionState, target: SessionState) -> None:
    if target not in ALLOWED_TRANSITIONS[source]:
        raise InvalidTransition(f"{source.value} -> {target.value}")


@dataclass(frozen=True, slots=True)
class EnforcementPolicy:
    company_id: int
    enabled: bool
    grace_seconds: int
    on_no_signal_enabled: bool = True
    on_location_disabled_enabled: bool = True
    no_signal_grace_seconds: int | None = None
    location_disabled_grace_seconds: int | None = None

    @classmethod
    def from_settings(cls, row: AutoCheckoutSettings) -> EnforcementPolicy:
        return cls(
            company_id=row.company_id,
            enabled=bool(row.auto_checkout_enabled),
            grace_seconds=max(0, int(row.auto_checkout_after_seconds)),
            on_no_signal_enabled=bool(row.on_no_signal_enabled),
            on_location_disabled_enabled=bool(row.on_location_disabled_enabled),
            no_signal_grace_seconds=row.no_signal_grace_seconds,
            location_disabled_grace_seconds=row.location_disabled_grace_seconds,
        )

    def countdown_seconds(self, reason: CheckoutReason) -> int:
        if reason in NO_SIGNAL_REASONS and self.no_signal_grace_seconds is not None:
            return max(0, int(self.no_signal_grace_seconds))
        if reason == CheckoutReason.GPS_DISABLED and self.location_disabled_grace_seconds is not None:
            return max(0, int(self.location_disabled_grace_seconds))
        return self.grace_seconds


@dataclass(frozen=True, slots=True)
class HeartbeatSnapshot:
    last_seen_at: datetime | None
    gps_ok: bool
    in_branch: bool

    @classmethod
    def from_row(cls, row: EmployeeLocationHeartbeat) -> HeartbeatSnapshot:
        return cls(
            last_seen_at=normalize_ts(row.last_seen_at) if row.last_seen_at is not None else None,
            gps_ok=bool(row.gps_ok),
            in_branch=bool(row.in_branch),
        )


@dataclass(frozen=True, slots=True)
class PendingSnapshot:
    id: int
    reason: CheckoutReason
    ends_at: datetime

    @classmethod
    def from_row(cls, row: AutoCheckoutPending) -> PendingSnapshot:
        return cls(id=row.id, reason=row.reason, ends_at=normalize_ts(row.ends_at))


@dataclass(frozen=True, slots=True)
class SessionSnapshot:
    attendance_log_id: int
    employee_id: int
    company_id: int
    check_in_time: datetime

    @classmethod
    def from_row(cls, row: AttendanceLog) -> SessionSnapshot:
        return cls(
            attendance_log_id=row.id,
            employee_id=row.employee_id,
            company_id=row.company_id,
            check_in_time=normalize_ts(row.check_in_time),
        )


def evaluate_trigger(
    policy: EnforcementPolicy,
    *,
    check_in_time: datetime,
    heartbeat: HeartbeatSnapshot | None,
    now_utc: datetime,
) -> CheckoutReason | None:
    """Return the highest-priority reason to force a checkout, or None.

    Priority: missing heartbeat, heartbeat timeout, GPS disabled, out of branch.
    """
    grace = timedelta(seconds=policy.grace_seconds)

    if heartbeat is None or heartbeat.last_seen_at is None:
        if policy.on_no_signal_enabled and now_utc - normalize_ts(check_in_time) >= grace:
            return CheckoutReason.NO_HEARTBEAT
        return None

    if policy.on_no_signal_enabled and now_utc - heartbeat.last_seen_at >= grace:
        return CheckoutReason.HEARTBEAT_TIMEOUT
    if not heartbeat.gps_ok:
        # Without GPS the branch check has nothing to go on.
        return CheckoutReason.GPS_DISABLED if policy.on_location_disabled_enabled else None
    if not heartbeat.in_branch:
        return CheckoutReason.OUT_OF_BRANCH
    return None


def decide_action(
    trigger: CheckoutReason | None,
    pending: PendingSnapshot | None,
    *,
    now_utc: datetime,
) -> SweepAction:
    if trigger is None:
        return SweepAction.CANCEL if pending is not None else SweepAction.NONE
    if pending is None:
        return SweepAction.START
    if now_utc >= pending.ends_at:
        return SweepAction.EXECUTE
    return SweepAction.HOLD


@dataclass(slots=True)
class SessionOutcome:
    attendance_log_id: int
    employee_id: int
    company_id: int
    action: SweepAction
    reason: str | None = None
    ends_at: datetime | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "attendance_log_id": self.attendance_log_id,
            "employee_id": self.employee_id,
            "company_id": self.company_id,
            "action": self.action.value,
            "reason": self.reason,
        }
        if self.ends_at is not None:
            payload["ends_at"] = self.ends_at.isoformat()
        if self.error is not None:
            payload["error"] = self.error
        return payload


@dataclass(slots=True)
class SweepSummary:
    sessions_processed: int = 0
    countdowns_started: int = 0
    checkouts_executed: int = 0
    countdowns_cancelled: int = 0
    errors: int = 0
    details: list[SessionOutcome] = field(default_factory=list)

    def record(self, outcome: SessionOutcome) -> None:
        self.sessions_processed += 1
        if outcome.action == SweepAction.START:
            self.countdowns_started += 1
        elif outcome.action == SweepAction.EXECUTE:
            self.checkouts_executed += 1
        elif outcome.action == SweepAction.CANCEL:
            self.countdowns_cancelled += 1
        elif outcome.action == SweepAction.ERROR:
            self.errors += 1
        if outcome.action not in (SweepAction.NONE, SweepAction.HOLD):
            self.details.append(outcome)

    def merge(self, other: SweepSummary) -> None:
        self.sessions_processed += other.sessions_processed
        self.countdowns_started += other.countdowns_started
        self.checkouts_executed += other.checkouts_executed
        self.countdowns_cancelled += other.countdowns_cancelled
        self.errors += other.errors
        self.details.extend(other.details)

    def to_dict(self) -> dict[str, Any]:
        return {
            "sessions_processed": self.sessions_processed,
            "countdowns_started": self.countdowns_started,
            "checkouts_executed": self.checkouts_executed,
            "countdowns_cancelled": self.countdowns_cancelled,
            "errors": self.errors,
            "details": [item.to_dict() for item in self.details],
        }


def _local_wall_clock(now_utc: datetime, zone_name: str | None) -> datetime:
    try:
        zone = ZoneInfo((zone_name or "").strip() or "UTC")
    except (ZoneInfoNotFoundError, ValueError):
        zone = ZoneInfo("UTC")
    return now_utc.astimezone(zone).replace(tzinfo=None)


def _heartbeat_for_session(store: SessionStore, log: AttendanceLog) -> HeartbeatSnapshot | None:
    row = store.get_heartbeat(log.employee_id)
    if row is None:
        return None
    # A leftover row from an earlier session says nothing about this one.
    if row.attendance_log_id is not None and row.attendance_log_id != log.id:
        return None
    return HeartbeatSnapshot.from_row(row)


def _execute_forced_checkout(
    store: SessionStore,
    *,
    log: AttendanceLog,
    pending: PendingSnapshot,
    reason: CheckoutReason,
    now_utc: datetime,
) -> SweepAction:
    values = {
        "check_out_time": now_utc,
        "local_check_out_time": _local_wall_clock(now_utc, log.resolved_timezone),
        "total_working_hours": compute_working_hours(log.check_in_time, now_utc),
        "checkout_reason": reason,
    }
    if not store.close_session_if_open(log.id, values):
        # Lost the race to a manual checkout or a concurrent tick.
        store.finish_pending(pending.id, now_utc=now_utc)
        store.commit()
        return SweepAction.STALE

    if not store.finish_pending(pending.id, now_utc=now_utc):
        # The countdown was settled by a concurrent tick; leave the session to it.
        store.rollback()
        return SweepAction.STALE

    store.delete_heartbeat(log.employee_id)
    log_audit(
        store.db,
        SYSTEM_AUDIT_CONTEXT,
        action="AUTO_CHECKOUT_EXECUTED",
        entity_type="attendance_log",
        entity_id=str(log.id),
        details={"reason": reason.value, "employee_id": log.employee_id},
    )
    store.commit()
    return SweepAction.EXECUTE


def process_session(
    store: SessionStore,
    policy: EnforcementPolicy,
    snapshot: SessionSnapshot,
    *,
    now_utc: datetime,
) -> SessionOutcome:
    outcome = SessionOutcome(
        attendance_log_id=snapshot.attendance_log_id,
        employee_id=snapshot.employee_id,
        company_id=snapshot.company_id,
        action=SweepAction.NONE,
    )

    log = store.get_session(snapshot.attendance_log_id)
    if log is None or not log.is_open:
        pending_row = store.get_active_pending(snapshot.attendance_log_id)
        if pending_row is not None:
            if log is None:
                store.cancel_pending(pending_row.id, now_utc=now_utc, cancel_reason=CANCEL_REASON_LOG_NOT_FOUND)
            else:
                store.finish_pending(pending_row.id, now_utc=now_utc)
            store.commit()
        outcome.action = SweepAction.STALE
        return outcome

    trigger = evaluate_trigger(
        policy,
        check_in_time=log.check_in_time,
        heartbeat=_heartbeat_for_session(store, log),
        now_utc=now_utc,
    )
    pending_row = store.get_active_pending(log.id)
    pending = PendingSnapshot.from_row(pending_row) if pending_row is not None else None
    action = decide_action(trigger, pending, now_utc=now_utc)
    assert_transition(*ACTION_TRANSITIONS[action])
    outcome.action = action
    outcome.reason = trigger.value if trigger is not None else None

    if action == SweepAction.START:
        ends_at = now_utc + timedelta(seconds=policy.countdown_seconds(trigger))  # type: ignore[arg-type]
        created = store.create_pending(log=log, reason=trigger, ends_at=ends_at, now_utc=now_utc)  # type: ignore[arg-type]
        if created is None:
            # A concurrent tick opened the countdown first.
            outcome.action = SweepAction.HOLD
            return outcome
        store.commit()
        outcome.ends_at = ends_at
        logger.info("auto_checkout_countdown_started", extra=outcome.to_dict())
    elif action == SweepAction.EXECUTE:
        outcome.action = _execute_forced_checkout(
            store,
            log=log,
            pending=pending,  # type: ignore[arg-type]
            reason=trigger,  # type: ignore[arg-type]
            now_utc=now_utc,
        )
        if outcome.action == SweepAction.EXECUTE:
            logger.info("auto_checkout_executed", extra=outcome.to_dict())
    elif action == SweepAction.CANCEL:
        if store.cancel_pending(pending.id, now_utc=now_utc, cancel_reason=CANCEL_REASON_CONDITIONS_RESOLVED):  # type: ignore[union-attr]
            store.commit()
            outcome.reason = CANCEL_REASON_CONDITIONS_RESOLVED
            logger.info("auto_checkout_countdown_cancelled", extra=outcome.to_dict())
        else:
            store.rollback()
            outcome.action = SweepAction.STALE
    else:
        store.rollback()

    return outcome


def clean_stale_pending(store: SessionStore, company_id: int, *, now_utc: datetime) -> list[SessionOutcome]:
    """Settle countdowns left behind by sessions that were closed or removed elsewhere."""
    outcomes: list[SessionOutcome] = []
    for pending, session_exists in store.list_stale_pending(company_id):
        if session_exists:
            settled = store.finish_pending(pending.id, now_utc=now_utc)
            reason = None
        else:
            settled = store.cancel_pending(pending.id, now_utc=now_utc, cancel_reason=CANCEL_REASON_LOG_NOT_FOUND)
            reason = CANCEL_REASON_LOG_NOT_FOUND
        if settled:
            outcomes.append(
                SessionOutcome(
                    attendance_log_id=pending.attendance_log_id,
                    employee_id=pending.employee_id,
                    company_id=pending.company_id,
                    action=SweepAction.STALE,
                    reason=reason,
                )
            )
    if outcomes:
        store.commit()
        logger.info("auto_checkout_stale_pending_settled", extra={"company_id": company_id, "count": len(outcomes)})
    else:
        store.rollback()
    return outcomes


def _process_in_own_session(
    session_factory: SessionFactory,
    policy: EnforcementPolicy,
    snapshot: SessionSnapshot,
    now_utc: datetime,
) -> SessionOutcome:
    with session_factory() as db:
        store = SessionStore(db)
        try:
            return process_session(store, policy, snapshot, now_utc=now_utc)
        except Exception as exc:
            store.rollback()
            logger.exception(
                "auto_checkout_session_failed",
                extra={
                    "attendance_log_id": snapshot.attendance_log_id,
                    "employee_id": snapshot.employee_id,
                    "company_id": snapshot.company_id,
                },
            )
            return SessionOutcome(
                attendance_log_id=snapshot.attendance_log_id,
                employee_id=snapshot.employee_id,
                company_id=snapshot.company_id,
                action=SweepAction.ERROR,
                error=f"{exc.__class__.__name__}: {exc}",
            )


def _map_outcomes(
    session_factory: SessionFactory,
    policy: EnforcementPolicy,
    snapshots: Iterable[SessionSnapshot],
    *,
    now_utc: datetime,
    max_workers: int,
) -> list[SessionOutcome]:
    items = list(snapshots)
    if max_workers <= 1 or len(items) <= 1:
        return [_process_in_own_session(session_factory, policy, item, now_utc) for item in items]
    with ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="auto-checkout") as executor:
        return list(
            executor.map(
                lambda item: _process_in_own_session(session_factory, policy, item, now_utc),
                items,
            )
        )


def run_company_sweep(
    session_factory: SessionFactory,
    policy: EnforcementPolicy,
    *,
    now_utc: datetime,
    max_workers: int = 1,
) -> SweepSummary:
    summary = SweepSummary()
    if not policy.enabled:
        return summary

    with session_factory() as db:
        store = SessionStore(db)
        summary.details.extend(clean_stale_pending(store, policy.company_id, now_utc=now_utc))
        snapshots = [SessionSnapshot.from_row(row) for row in store.list_open_sessions(policy.company_id)]

    for outcome in _map_outcomes(
        session_factory,
        policy,
        snapshots,
        now_utc=now_utc,
        max_workers=max_workers,
    ):
        summary.record(outcome)
    return summary


def run_auto_checkout_sweep(
    session_factory: SessionFactory,
    *,
    now_utc: datetime | None = None,
    max_workers: int = 1,
) -> SweepSummary:
    """Run one enforcement tick over every company with auto-checkout enabled.

    Per-company settings are loaded once and passed into each company sweep.
    Failures are isolated per session (and per company listing) and reported
    in the summary instead of being raised.
    """
    now = normalize_ts(now_utc)
    with session_factory() as db:
        policies = [EnforcementPolicy.from_settings(row) for row in SessionStore(db).list_auto_checkout_settings()]

    summary = SweepSummary()
    for policy in policies:
        if not policy.enabled:
            continue
        try:
            summary.merge(run_company_sweep(session_factory, policy, now_utc=now, max_workers=max_workers))
        except Exception:
            summary.errors += 1
            logger.exception("auto_checkout_company_failed", extra={"company_id": policy.company_id})

    logger.info(
        "auto_checkout_sweep_completed",
        extra={
            "sessions_processed": summary.sessions_processed,
            "countdowns_started": summary.countdowns_started,
            "checkouts_executed": summary.checkouts_executed,
            "countdowns_cancelled": summary.countdowns_cancelled,
            "errors": summary.errors,
        },
    )
    return summary
