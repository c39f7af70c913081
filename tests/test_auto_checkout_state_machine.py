from __future__ import annotations

import unittest
from datetime import datetime, timedelta, timezone

from app.models import CheckoutReason
from app.services.auto_checkout import (
    ACTION_TRANSITIONS,
    EnforcementPolicy,
    HeartbeatSnapshot,
    InvalidTransition,
    PendingSnapshot,
    SessionState,
    SweepAction,
    assert_transition,
    decide_action,
    evaluate_trigger,
)

NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)
POLICY = EnforcementPolicy(company_id=1, enabled=True, grace_seconds=900)


def _heartbeat(seconds_ago: int, *, gps_ok: bool = True, in_branch: bool = True) -> HeartbeatSnapshot:
    return HeartbeatSnapshot(last_seen_at=NOW - timedelta(seconds=seconds_ago), gps_ok=gps_ok, in_branch=in_branch)


class EvaluateTriggerTests(unittest.TestCase):
    def test_no_heartbeat_measured_from_check_in(self) -> None:
        self.assertIsNone(
            evaluate_trigger(POLICY, check_in_time=NOW - timedelta(seconds=899), heartbeat=None, now_utc=NOW)
        )
        self.assertEqual(
            evaluate_trigger(POLICY, check_in_time=NOW - timedelta(seconds=900), heartbeat=None, now_utc=NOW),
            CheckoutReason.NO_HEARTBEAT,
        )

    def test_timeout_wins_over_location_reasons(self) -> None:
        trigger = evaluate_trigger(
            POLICY,
            check_in_time=NOW - timedelta(hours=2),
            heartbeat=_heartbeat(1000, gps_ok=False, in_branch=False),
            now_utc=NOW,
        )
        self.assertEqual(trigger, CheckoutReason.HEARTBEAT_TIMEOUT)

    def test_gps_disabled_before_out_of_branch(self) -> None:
        trigger = evaluate_trigger(
            POLICY,
            check_in_time=NOW - timedelta(hours=2),
            heartbeat=_heartbeat(30, gps_ok=False, in_branch=False),
            now_utc=NOW,
        )
        self.assertEqual(trigger, CheckoutReason.GPS_DISABLED)

    def test_out_of_branch(self) -> None:
        trigger = evaluate_trigger(
            POLICY,
            check_in_time=NOW - timedelta(hours=2),
            heartbeat=_heartbeat(30, in_branch=False),
            now_utc=NOW,
        )
        self.assertEqual(trigger, CheckoutReason.OUT_OF_BRANCH)

    def test_healthy_heartbeat_has_no_trigger(self) -> None:
        self.assertIsNone(
            evaluate_trigger(POLICY, check_in_time=NOW - timedelta(hours=2), heartbeat=_heartbeat(30), now_utc=NOW)
        )

    def test_disabled_toggles_suppress_their_triggers(self) -> None:
        policy = EnforcementPolicy(
            company_id=1,
            enabled=True,
            grace_seconds=900,
            on_no_signal_enabled=False,
            on_location_disabled_enabled=False,
        )
        self.assertIsNone(evaluate_trigger(policy, check_in_time=NOW - timedelta(hours=2), heartbeat=None, now_utc=NOW))
        self.assertIsNone(
            evaluate_trigger(
                policy,
                check_in_time=NOW - timedelta(hours=2),
                heartbeat=_heartbeat(30, gps_ok=False, in_branch=False),
                now_utc=NOW,
            )
        )

    def test_grace_overrides_apply_per_reason(self) -> None:
        policy = EnforcementPolicy(
            company_id=1,
            enabled=True,
            grace_seconds=900,
            no_signal_grace_seconds=120,
            location_disabled_grace_seconds=300,
        )
        self.assertEqual(policy.countdown_seconds(CheckoutReason.NO_HEARTBEAT), 120)
        self.assertEqual(policy.countdown_seconds(CheckoutReason.HEARTBEAT_TIMEOUT), 120)
        self.assertEqual(policy.countdown_seconds(CheckoutReason.GPS_DISABLED), 300)
        self.assertEqual(policy.countdown_seconds(CheckoutReason.OUT_OF_BRANCH), 900)


class DecideActionTests(unittest.TestCase):
    def test_action_table(self) -> None:
        pending_future = PendingSnapshot(id=1, reason=CheckoutReason.OUT_OF_BRANCH, ends_at=NOW + timedelta(seconds=1))
        pending_due = PendingSnapshot(id=1, reason=CheckoutReason.OUT_OF_BRANCH, ends_at=NOW)
        cases = [
            (None, None, SweepAction.NONE),
            (None, pending_future, SweepAction.CANCEL),
            (CheckoutReason.OUT_OF_BRANCH, None, SweepAction.START),
            (CheckoutReason.OUT_OF_BRANCH, pending_future, SweepAction.HOLD),
            (CheckoutReason.OUT_OF_BRANCH, pending_due, SweepAction.EXECUTE),
        ]
        for trigger, pending, expected in cases:
            self.assertEqual(decide_action(trigger, pending, now_utc=NOW), expected)

    def test_every_action_maps_to_allowed_transition(self) -> None:
        for source, target in ACTION_TRANSITIONS.values():
            assert_transition(source, target)

    def test_closed_is_terminal(self) -> None:
        with self.assertRaises(InvalidTransition):
            assert_transition(SessionState.CLOSED, SessionState.PENDING)
        with self.assertRaises(InvalidTransition):
            assert_transition(SessionState.CANCELLED, SessionState.CLOSED)


if __name__ == "__main__":
    unittest.main()
