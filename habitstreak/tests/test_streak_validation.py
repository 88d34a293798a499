from datetime import date, datetime, timedelta, timezone

import pytest

from habitstreak.core.errors import ErrorKind
from habitstreak.features.streaks.validation import (
    FLAG_DAILY,
    FLAG_HOURLY,
    FLAG_IDENTICAL_TIMESTAMP,
    FLAG_MILESTONE_PREMATURE,
    FLAG_STREAK_EXCEEDS_COMPLETIONS,
    IntegrityLimits,
    risk_level_for_flags,
    validate_completion,
    validate_state,
)
from habitstreak.models.streak import Milestone, StreakState
from habitstreak.tests.mocks import FIXED_NOW, completion

TODAY = FIXED_NOW.date()


def _check(**overrides):
    params = dict(
        habit_id="h1",
        user_id="u1",
        actor_id="u1",
        completed_at=FIXED_NOW - timedelta(minutes=5),
        timezone="UTC",
        difficulty="medium",
        existing=[],
        now=FIXED_NOW,
        limits=IntegrityLimits(),
    )
    params.update(overrides)
    return validate_completion(**params)


def _daily(days, **kwargs):
    """One completion per day for the `days` days ending today."""
    return [
        completion(FIXED_NOW - timedelta(days=offset), id=f"e{offset}", **kwargs)
        for offset in range(days)
    ]


def _state(**kwargs):
    return StreakState(habit_id="h1", user_id="u1", **kwargs)


class TestValidateCompletion:
    def test_valid_completion_passes(self):
        result = _check()
        assert result.ok
        assert result.value.civil_date == TODAY
        assert result.value.warnings == []
        assert result.value.flags == []

    def test_future_completion_rejected(self):
        result = _check(completed_at=FIXED_NOW + timedelta(minutes=1))
        assert result.error.kind == ErrorKind.INVALID_ARGUMENT

    def test_unknown_difficulty_rejected(self):
        result = _check(difficulty="legendary")
        assert result.error.kind == ErrorKind.INVALID_ARGUMENT

    def test_second_completion_same_civil_day_rejected(self):
        existing = [completion(FIXED_NOW - timedelta(hours=3))]
        result = _check(existing=existing)
        assert result.error.kind == ErrorKind.ALREADY_EXISTS

    def test_deactivated_completion_does_not_block_same_day(self):
        existing = [completion(FIXED_NOW - timedelta(hours=3), active=False)]
        assert _check(existing=existing).ok

    def test_ownership_reported_before_other_problems(self):
        existing = [completion(FIXED_NOW - timedelta(hours=3))]
        result = _check(actor_id="intruder", difficulty="legendary", existing=existing)
        assert result.error.kind == ErrorKind.OWNERSHIP_MISMATCH
        assert len(result.error.details) == 3

    def test_invalid_timezone_warns_and_uses_utc(self):
        result = _check(timezone="Not/AZone")
        assert result.ok
        assert result.value.timezone == "UTC"
        assert any("invalid timezone" in w for w in result.value.warnings)

    def test_stale_completion_only_warns(self):
        result = _check(completed_at=FIXED_NOW - timedelta(hours=30))
        assert result.ok
        assert any("hours old" in w for w in result.value.warnings)

    def test_hourly_rate_flag(self):
        existing = [
            completion(FIXED_NOW - timedelta(days=offset), id=f"e{offset}", created_at=FIXED_NOW - timedelta(minutes=offset))
            for offset in range(1, 11)
        ]
        result = _check(existing=existing)
        assert result.ok
        assert FLAG_HOURLY in result.value.flags

    @pytest.mark.parametrize("recorded, flagged", [(49, False), (50, True)])
    def test_daily_rate_flag(self, recorded, flagged):
        # Spread over the last day so the hourly ceiling is never reached
        existing = [
            completion(FIXED_NOW - timedelta(days=n), id=f"e{n}", created_at=FIXED_NOW - timedelta(minutes=25 * n))
            for n in range(1, recorded + 1)
        ]
        result = _check(existing=existing)
        assert result.ok
        assert (FLAG_DAILY in result.value.flags) is flagged
        assert FLAG_HOURLY not in result.value.flags

    def test_completions_recorded_over_a_day_ago_do_not_count(self):
        existing = [
            completion(FIXED_NOW - timedelta(days=n), id=f"e{n}", created_at=FIXED_NOW - timedelta(days=2, minutes=n))
            for n in range(1, 61)
        ]
        result = _check(existing=existing)
        assert result.value.flags == []

    def test_identical_timestamp_flag(self):
        # Same instant, but a different civil day in the first event's zone
        instant = datetime(2024, 3, 15, 2, 0, tzinfo=timezone.utc)
        existing = [completion(instant, tz="America/New_York")]
        result = _check(completed_at=instant, timezone="UTC", existing=existing)
        assert result.ok
        assert FLAG_IDENTICAL_TIMESTAMP in result.value.flags


class TestValidateState:
    @pytest.mark.parametrize(
        "state",
        [
            _state(freezes_available=-1),
            _state(freezes_used=-2),
            _state(milestones=[Milestone(days=7, achieved_at=FIXED_NOW), Milestone(days=7, achieved_at=FIXED_NOW)]),
            _state(milestones=[Milestone(days=7, achieved_at=FIXED_NOW + timedelta(days=1))]),
        ],
    )
    def test_hard_failures(self, state):
        result = validate_state(state, [], today=TODAY, now=FIXED_NOW)
        assert result.error.kind == ErrorKind.INTEGRITY_VIOLATION

    def test_consistent_state_untouched(self):
        events = _daily(3)
        state = _state(current_streak=3, best_streak=3, last_completion_date=TODAY, streak_start_date=TODAY - timedelta(days=2))
        result = validate_state(state, events, today=TODAY, now=FIXED_NOW)
        assert result.ok
        assert result.value.corrected is False
        assert result.value.state == state

    def test_drift_within_tolerance_kept(self):
        result = validate_state(_state(current_streak=4, best_streak=4), _daily(3), today=TODAY, now=FIXED_NOW)
        assert result.value.corrected is False
        assert result.value.state.current_streak == 4

    def test_drift_beyond_tolerance_replaced_by_recount(self):
        state = _state(current_streak=9, best_streak=9)
        result = validate_state(state, _daily(3), today=TODAY, now=FIXED_NOW)
        check = result.value
        assert check.corrected is True
        assert check.state.current_streak == 3
        assert check.state.streak_start_date == date(2024, 3, 13)
        assert check.state.last_completion_date == TODAY
        # best is never lowered
        assert check.state.best_streak == 9
        assert check.corrections

    def test_best_raised_to_recount(self):
        result = validate_state(_state(current_streak=3, best_streak=1), _daily(3), today=TODAY, now=FIXED_NOW)
        assert result.value.corrected is True
        assert result.value.state.best_streak == 3

    def test_streak_longer_than_log_flagged(self):
        state = _state(current_streak=3, best_streak=3)
        result = validate_state(state, _daily(1), today=TODAY, now=FIXED_NOW, tolerance_days=5)
        assert FLAG_STREAK_EXCEEDS_COMPLETIONS in result.value.flags

    def test_milestone_before_enough_completions_flagged(self):
        state = _state(current_streak=3, best_streak=7, milestones=[Milestone(days=7, achieved_at=FIXED_NOW)])
        result = validate_state(state, _daily(3), today=TODAY, now=FIXED_NOW)
        assert f"{FLAG_MILESTONE_PREMATURE}:7" in result.value.flags


def test_risk_level_for_flags():
    assert risk_level_for_flags([]) == "low"
    assert risk_level_for_flags(["a"]) == "low"
    assert risk_level_for_flags(["a", "b"]) == "medium"
    assert risk_level_for_flags(["a", "b", "c"]) == "high"
