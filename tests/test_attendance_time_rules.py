from __future__ import annotations

import unittest
from datetime import datetime, time, timezone

from app.services.attendance import (
    compute_early_leave_minutes,
    compute_late_minutes,
    compute_working_hours,
    parse_schedule_time,
)


class EarlyLeaveTests(unittest.TestCase):
    def test_day_shift_early_leave_after_grace(self) -> None:
        minutes = compute_early_leave_minutes(
            check_in_local=datetime(2026, 3, 2, 9, 0),
            check_out_local=datetime(2026, 3, 2, 16, 30),
            work_start=time(9, 0),
            work_end=time(17, 0),
            grace_minutes=10,
        )
        self.assertEqual(minutes, 20)

    def test_leaving_after_end_is_zero(self) -> None:
        minutes = compute_early_leave_minutes(
            check_in_local=datetime(2026, 3, 2, 9, 0),
            check_out_local=datetime(2026, 3, 2, 17, 45),
            work_start=time(9, 0),
            work_end=time(17, 0),
        )
        self.assertEqual(minutes, 0)

    def test_overnight_shift_within_grace(self) -> None:
        minutes = compute_early_leave_minutes(
            check_in_local=datetime(2026, 3, 2, 22, 0),
            check_out_local=datetime(2026, 3, 3, 5, 50),
            work_start=time(22, 0),
            work_end=time(6, 0),
            grace_minutes=10,
        )
        self.assertEqual(minutes, 0)

    def test_overnight_shift_leaving_early(self) -> None:
        minutes = compute_early_leave_minutes(
            check_in_local=datetime(2026, 3, 2, 22, 0),
            check_out_local=datetime(2026, 3, 3, 5, 30),
            work_start=time(22, 0),
            work_end=time(6, 0),
            grace_minutes=10,
        )
        self.assertEqual(minutes, 20)

    def test_overnight_check_in_after_midnight_ends_same_day(self) -> None:
        minutes = compute_early_leave_minutes(
            check_in_local=datetime(2026, 3, 3, 0, 30),
            check_out_local=datetime(2026, 3, 3, 5, 0),
            work_start=time(22, 0),
            work_end=time(6, 0),
        )
        self.assertEqual(minutes, 60)

    def test_missing_schedule_is_zero(self) -> None:
        minutes = compute_early_leave_minutes(
            check_in_local=datetime(2026, 3, 2, 9, 0),
            check_out_local=datetime(2026, 3, 2, 10, 0),
            work_start=None,
            work_end=None,
        )
        self.assertEqual(minutes, 0)


class LateMinutesTests(unittest.TestCase):
    def test_late_after_grace(self) -> None:
        minutes = compute_late_minutes(
            check_in_local=datetime(2026, 3, 2, 9, 25),
            work_start="09:00",
            grace_minutes=5,
        )
        self.assertEqual(minutes, 20)

    def test_early_arrival_is_zero(self) -> None:
        minutes = compute_late_minutes(check_in_local=datetime(2026, 3, 2, 8, 40), work_start=time(9, 0))
        self.assertEqual(minutes, 0)

    def test_overnight_check_in_after_midnight_counts_from_previous_evening(self) -> None:
        minutes = compute_late_minutes(
            check_in_local=datetime(2026, 3, 3, 0, 15),
            work_start=time(22, 0),
            work_end=time(6, 0),
        )
        self.assertEqual(minutes, 135)


class WorkingHoursTests(unittest.TestCase):
    def test_rounded_to_two_decimals(self) -> None:
        hours = compute_working_hours(
            datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc),
            datetime(2026, 3, 2, 10, 20, tzinfo=timezone.utc),
        )
        self.assertEqual(hours, 1.33)

    def test_naive_values_are_utc(self) -> None:
        hours = compute_working_hours(datetime(2026, 3, 2, 9, 0), datetime(2026, 3, 2, 10, 0, tzinfo=timezone.utc))
        self.assertEqual(hours, 1.0)


class ParseScheduleTimeTests(unittest.TestCase):
    def test_parses_hour_minute(self) -> None:
        self.assertEqual(parse_schedule_time("06:30"), time(6, 30))
        self.assertIsNone(parse_schedule_time("  "))


if __name__ == "__main__":
    unittest.main()
