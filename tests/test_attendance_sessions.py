from __future__ import annotations

import unittest
from datetime import time, timedelta
from unittest.mock import patch

from sqlalchemy import select

from app.models import (
    AttendanceKind,
    AttendanceLog,
    AuditLog,
    AutoCheckoutPending,
    CheckoutReason,
    EmployeeLocationHeartbeat,
    FreeTask,
    PendingStatus,
)
from app.services.attendance import (
    AttendanceErrorCode,
    AttendanceFailure,
    AttendanceSuccess,
    HeartbeatRecorded,
    check_in,
    check_out,
    record_heartbeat,
)
from app.services.geofence import LocationSample
from app.services.session_store import SessionStore
from sqlite_support import (
    BRANCH_LAT,
    BRANCH_LNG,
    FailingResolver,
    StaticResolver,
    make_session_factory,
    open_session,
    seed_company,
    utc,
)

INSIDE = LocationSample(lat=BRANCH_LAT, lng=BRANCH_LNG, accuracy=15)
FAR_AWAY = LocationSample(lat=BRANCH_LAT + 0.05, lng=BRANCH_LNG, accuracy=15)


class CheckInTests(unittest.TestCase):
    def setUp(self) -> None:
        self.Session = make_session_factory()
        with self.Session() as db:
            seed_company(db, work_start=time(9, 0), work_end=time(17, 0), late_grace_min=5)

    def test_check_in_inside_geofence_creates_open_session(self) -> None:
        with self.Session() as db:
            result = check_in(
                db,
                employee_id=7,
                location=INSIDE,
                device_timezone="Asia/Riyadh",
                now_utc=utc(2026, 3, 2, 6, 20),
                resolver=StaticResolver("Asia/Riyadh"),
            )

        self.assertIsInstance(result, AttendanceSuccess)
        self.assertTrue(result.timezone_resolved)
        self.assertEqual(result.timezone_name, "Asia/Riyadh")
        with self.Session() as db:
            log = db.scalar(select(AttendanceLog))
            self.assertIsNotNone(log)
            self.assertIsNone(log.check_out_time)
            self.assertEqual(log.attendance_type, AttendanceKind.NORMAL)
            self.assertEqual(log.branch_id, 1)
            # 06:20 UTC is 09:20 in Riyadh; 20 minutes late minus 5 grace.
            self.assertEqual(log.late_minutes, 15)
            self.assertEqual(log.local_check_in_time.hour, 9)
            self.assertEqual(log.resolved_timezone, "Asia/Riyadh")
            audit = db.scalar(select(AuditLog))
            self.assertEqual(audit.action, "ATTENDANCE_CHECK_IN")
            self.assertEqual(audit.entity_id, str(log.id))
            self.assertEqual(audit.actor_id, "7")

    def test_check_in_outside_geofence_is_rejected(self) -> None:
        with self.Session() as db:
            result = check_in(
                db,
                employee_id=7,
                location=FAR_AWAY,
                now_utc=utc(2026, 3, 2, 6, 0),
                resolver=StaticResolver("UTC"),
            )

        self.assertIsInstance(result, AttendanceFailure)
        self.assertEqual(result.code, AttendanceErrorCode.OUTSIDE_GEOFENCE)
        self.assertGreater(result.details["distance_m"], 100)
        self.assertEqual(result.details["radius_m"], 100)
        with self.Session() as db:
            self.assertIsNone(db.scalar(select(AttendanceLog)))
            self.assertIsNone(db.scalar(select(AuditLog)))

    def test_check_in_with_unreliable_location_is_rejected(self) -> None:
        cases = [
            (None, AttendanceErrorCode.LOCATION_MISSING),
            (LocationSample(lat=BRANCH_LAT, lng=BRANCH_LNG, accuracy=800), AttendanceErrorCode.LOW_ACCURACY),
            (
                LocationSample(lat=BRANCH_LAT, lng=BRANCH_LNG, accuracy=10, timestamp=utc(2026, 3, 2, 5, 0)),
                AttendanceErrorCode.LOCATION_OUTDATED,
            ),
        ]
        for location, expected_code in cases:
            with self.Session() as db:
                result = check_in(
                    db,
                    employee_id=7,
                    location=location,
                    now_utc=utc(2026, 3, 2, 6, 0),
                    resolver=StaticResolver("UTC"),
                )
            self.assertIsInstance(result, AttendanceFailure)
            self.assertEqual(result.code, expected_code)

    def test_second_check_in_is_rejected_while_session_open(self) -> None:
        with self.Session() as db:
            first = check_in(db, employee_id=7, location=INSIDE, now_utc=utc(2026, 3, 2, 6, 0), resolver=StaticResolver("UTC"))
        with self.Session() as db:
            second = check_in(db, employee_id=7, location=INSIDE, now_utc=utc(2026, 3, 2, 6, 5), resolver=StaticResolver("UTC"))

        self.assertIsInstance(first, AttendanceSuccess)
        self.assertIsInstance(second, AttendanceFailure)
        self.assertEqual(second.code, AttendanceErrorCode.ALREADY_CHECKED_IN)

    def test_free_task_skips_geofence(self) -> None:
        with self.Session() as db:
            db.add(
                FreeTask(
                    employee_id=7,
                    company_id=1,
                    start_at=utc(2026, 3, 2, 0, 0),
                    end_at=utc(2026, 3, 2, 23, 0),
                    is_active=True,
                )
            )
            db.commit()
        with self.Session() as db:
            result = check_in(db, employee_id=7, location=FAR_AWAY, now_utc=utc(2026, 3, 2, 6, 0), resolver=StaticResolver("UTC"))

        self.assertIsInstance(result, AttendanceSuccess)
        self.assertIsNone(result.verdict)
        self.assertEqual(result.log.attendance_type, AttendanceKind.FREE)
        self.assertIsNone(result.log.branch_id)

    def test_resolver_failure_falls_back_to_utc(self) -> None:
        with self.Session() as db:
            result = check_in(
                db,
                employee_id=7,
                location=INSIDE,
                device_timezone="Europe/Istanbul",
                now_utc=utc(2026, 3, 2, 9, 10),
                resolver=FailingResolver(),
            )

        self.assertIsInstance(result, AttendanceSuccess)
        self.assertFalse(result.timezone_resolved)
        self.assertEqual(result.timezone_name, "UTC")
        self.assertEqual(result.log.late_minutes, 5)

    def test_unknown_and_inactive_employees(self) -> None:
        with self.Session() as db:
            missing = check_in(db, employee_id=999, location=INSIDE, resolver=StaticResolver("UTC"))
        self.assertEqual(missing.code, AttendanceErrorCode.EMPLOYEE_NOT_FOUND)

        with self.Session() as db:
            employee = SessionStore(db).get_employee(7)
            employee.is_active = False
            db.commit()
        with self.Session() as db:
            inactive = check_in(db, employee_id=7, location=INSIDE, resolver=StaticResolver("UTC"))
        self.assertEqual(inactive.code, AttendanceErrorCode.EMPLOYEE_INACTIVE)


class CheckOutTests(unittest.TestCase):
    def setUp(self) -> None:
        self.Session = make_session_factory()
        with self.Session() as db:
            seed_company(db, work_start=time(9, 0), work_end=time(17, 0), early_grace_min=10)
            self.log_id = open_session(db, check_in_time=utc(2026, 3, 2, 9, 0)).id

    def test_check_out_closes_session_with_totals(self) -> None:
        with self.Session() as db:
            result = check_out(db, employee_id=7, location=INSIDE, now_utc=utc(2026, 3, 2, 16, 30), resolver=StaticResolver("UTC"))

        self.assertIsInstance(result, AttendanceSuccess)
        with self.Session() as db:
            log = db.get(AttendanceLog, self.log_id)
            self.assertIsNotNone(log.check_out_time)
            self.assertEqual(log.total_working_hours, 7.5)
            self.assertEqual(log.early_leave_minutes, 20)
            self.assertEqual(log.checkout_reason, CheckoutReason.MANUAL)

    def test_check_out_with_weak_signal_trusts_last_known(self) -> None:
        weak = LocationSample(lat=BRANCH_LAT + 0.05, lng=BRANCH_LNG, accuracy=900)
        with self.Session() as db:
            result = check_out(db, employee_id=7, location=weak, now_utc=utc(2026, 3, 2, 17, 0), resolver=StaticResolver("UTC"))
        self.assertIsInstance(result, AttendanceSuccess)

    def test_check_out_outside_geofence_keeps_session_open(self) -> None:
        with self.Session() as db:
            result = check_out(db, employee_id=7, location=FAR_AWAY, now_utc=utc(2026, 3, 2, 17, 0), resolver=StaticResolver("UTC"))

        self.assertIsInstance(result, AttendanceFailure)
        self.assertEqual(result.code, AttendanceErrorCode.OUTSIDE_GEOFENCE)
        with self.Session() as db:
            self.assertIsNone(db.get(AttendanceLog, self.log_id).check_out_time)

    def test_second_check_out_reports_no_check_in(self) -> None:
        with self.Session() as db:
            first = check_out(db, employee_id=7, location=INSIDE, now_utc=utc(2026, 3, 2, 17, 0), resolver=StaticResolver("UTC"))
        with self.Session() as db:
            second = check_out(db, employee_id=7, location=INSIDE, now_utc=utc(2026, 3, 2, 17, 1), resolver=StaticResolver("UTC"))

        self.assertIsInstance(first, AttendanceSuccess)
        self.assertEqual(second.code, AttendanceErrorCode.NO_CHECK_IN)

    def test_unexpected_error_rolls_back_as_server_error(self) -> None:
        with patch("app.services.attendance.compute_early_leave_minutes", side_effect=RuntimeError("bad schedule")):
            with self.Session() as db:
                result = check_out(db, employee_id=7, location=INSIDE, now_utc=utc(2026, 3, 2, 17, 0), resolver=StaticResolver("UTC"))

        self.assertIsInstance(result, AttendanceFailure)
        self.assertEqual(result.code, AttendanceErrorCode.SERVER_ERROR)
        with self.Session() as db:
            self.assertIsNone(db.get(AttendanceLog, self.log_id).check_out_time)
            self.assertIsNone(db.scalar(select(AuditLog)))

    def test_losing_close_race_reports_no_check_in(self) -> None:
        with self.Session() as db:
            store = SessionStore(db)
            store.close_session_if_open(
                self.log_id,
                {"check_out_time": utc(2026, 3, 2, 12, 0), "checkout_reason": CheckoutReason.NO_HEARTBEAT},
            )
            # The session is already closed, so the conditional write must lose.
            self.assertFalse(
                store.close_session_if_open(
                    self.log_id,
                    {"check_out_time": utc(2026, 3, 2, 12, 1), "checkout_reason": CheckoutReason.MANUAL},
                )
            )
            store.commit()

        with self.Session() as db:
            log = db.get(AttendanceLog, self.log_id)
            self.assertEqual(log.checkout_reason, CheckoutReason.NO_HEARTBEAT)

    def test_manual_check_out_cancels_countdown_and_clears_heartbeat(self) -> None:
        with self.Session() as db:
            store = SessionStore(db)
            log = store.get_session(self.log_id)
            store.create_pending(
                log=log,
                reason=CheckoutReason.OUT_OF_BRANCH,
                ends_at=utc(2026, 3, 2, 17, 15),
                now_utc=utc(2026, 3, 2, 17, 0),
            )
            store.upsert_heartbeat(
                employee_id=7,
                company_id=1,
                attendance_log_id=self.log_id,
                last_seen_at=utc(2026, 3, 2, 17, 0),
                gps_ok=True,
                in_branch=False,
                reason="OUT_OF_BRANCH",
            )
            store.commit()

        with self.Session() as db:
            result = check_out(db, employee_id=7, location=INSIDE, now_utc=utc(2026, 3, 2, 17, 5), resolver=StaticResolver("UTC"))

        self.assertIsInstance(result, AttendanceSuccess)
        with self.Session() as db:
            pending = db.scalar(select(AutoCheckoutPending))
            self.assertEqual(pending.status, PendingStatus.CANCELLED)
            self.assertEqual(pending.cancel_reason, "MANUAL_CHECKOUT")
            self.assertIsNone(db.get(EmployeeLocationHeartbeat, 7))

class ForgottenCheckOutTests(unittest.TestCase):
    """A session left open overnight with no auto-checkout configured."""

    def setUp(self) -> None:
        self.Session = make_session_factory()
        with self.Session() as db:
            seed_company(db, work_start=time(9, 0), work_end=time(17, 0))
            self.log_id = open_session(db, check_in_time=utc(2026, 3, 2, 9, 0)).id
        self.next_day = utc(2026, 3, 3, 10, 0)

    def test_stale_session_still_accepts_heartbeat_and_check_out(self) -> None:
        with self.Session() as db:
            beat = record_heartbeat(db, employee_id=7, location=INSIDE, permission_state="granted", now_utc=self.next_day)
        self.assertIsInstance(beat, HeartbeatRecorded)
        self.assertEqual(beat.log.id, self.log_id)

        with self.Session() as db:
            result = check_out(db, employee_id=7, location=INSIDE, now_utc=self.next_day, resolver=StaticResolver("UTC"))
        self.assertIsInstance(result, AttendanceSuccess)
        self.assertEqual(result.log.total_working_hours, 25.0)

    def test_check_in_works_again_after_closing_stale_session(self) -> None:
        with self.Session() as db:
            blocked = check_in(db, employee_id=7, location=INSIDE, now_utc=self.next_day, resolver=StaticResolver("UTC"))
        self.assertEqual(blocked.code, AttendanceErrorCode.ALREADY_CHECKED_IN)

        with self.Session() as db:
            check_out(db, employee_id=7, location=INSIDE, now_utc=self.next_day, resolver=StaticResolver("UTC"))
        with self.Session() as db:
            result = check_in(
                db,
                employee_id=7,
                location=INSIDE,
                now_utc=self.next_day + timedelta(minutes=1),
                resolver=StaticResolver("UTC"),
            )
        self.assertIsInstance(result, AttendanceSuccess)
        with self.Session() as db:
            self.assertEqual(len(db.scalars(select(AttendanceLog)).all()), 2)



if __name__ == "__main__":
    unittest.main()
