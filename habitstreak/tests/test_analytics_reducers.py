"""
Tests for habit analytics reducers.
"""

from datetime import date, datetime, timedelta, timezone

import pytest

from habitstreak.features.analytics.reducers import (
    best_day_of_week,
    completion_rate,
    reduce_habit_analytics,
    run_consistency,
    weekday_consistency,
)
from habitstreak.tests.mocks import completion


@pytest.fixture
def fixed_now():
    """Fixed timestamp for deterministic testing."""
    return datetime(2024, 3, 15, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def sample_events(fixed_now):
    # Two runs: 3/1-3/3 and 3/13-3/15, plus one deactivated completion
    offsets = [14, 13, 12, 2, 1, 0]
    events = [completion(fixed_now - timedelta(days=o), id=f"e{o}") for o in offsets]
    events.append(completion(fixed_now - timedelta(days=6), id="undone", active=False))
    return events


class TestHabitAnalyticsDeterminism:
    def test_same_events_same_now_produces_identical_output(self, sample_events, fixed_now):
        result1 = reduce_habit_analytics("h1", "u1", sample_events, now=fixed_now)
        result2 = reduce_habit_analytics("h1", "u1", sample_events, now=fixed_now)

        assert result1.model_dump_json() == result2.model_dump_json()
        assert result1.computed_at == fixed_now

    def test_metrics(self, sample_events, fixed_now):
        result = reduce_habit_analytics("h1", "u1", sample_events, now=fixed_now)

        assert result.total_completions == 6
        assert result.completion_rate_30_days == 20.0
        assert result.average_streak_length == 3.0
        assert 0 <= result.consistency_score <= 100

    def test_window_excludes_old_completions(self, fixed_now):
        events = [completion(fixed_now - timedelta(days=40), id="old")]

        result = reduce_habit_analytics("h1", "u1", events, now=fixed_now)

        assert result.total_completions == 1
        assert result.completion_rate_30_days == 0.0

    def test_empty_log(self, fixed_now):
        result = reduce_habit_analytics("h1", "u1", [], now=fixed_now)

        assert result.total_completions == 0
        assert result.completion_rate_30_days == 0.0
        assert result.average_streak_length == 0.0
        assert result.best_day_of_week == "Monday"
        assert result.consistency_score == 0.0


class TestComponents:
    def test_completion_rate(self):
        assert completion_rate([date(2024, 3, 1)] * 3, 30) == 3.33
        assert completion_rate([], 0) == 0.0

    def test_best_day_ties_go_to_earliest_in_week(self):
        # 2024-03-10 is a Sunday, 2024-03-16 a Saturday
        assert best_day_of_week([date(2024, 3, 16), date(2024, 3, 10)]) == "Sunday"
        assert best_day_of_week([date(2024, 3, 12), date(2024, 3, 19), date(2024, 3, 13)]) == "Tuesday"

    def test_run_consistency(self):
        assert run_consistency([]) == 0.0
        assert run_consistency([date(2024, 3, 1)]) == 100.0
        assert run_consistency([date(2024, 3, 1), date(2024, 3, 2), date(2024, 3, 4)]) == 50.0

    def test_weekday_consistency_even_spread_is_perfect(self):
        week = [date(2024, 3, 10) + timedelta(days=i) for i in range(7)]
        assert weekday_consistency(week) == 100.0
        assert weekday_consistency([]) == 0.0
