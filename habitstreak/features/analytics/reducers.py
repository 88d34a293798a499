"""
Pure deterministic reducers for habit analytics.
All reducers: (events, now) -> immutable read model.
"""

import math
from datetime import date, datetime, timedelta, timezone
from typing import Dict, List, Optional, Sequence

from habitstreak.features.streaks.calculator import run_lengths
from habitstreak.features.streaks.dates import active_dates, ensure_aware, reference_timezone, to_civil_date
from habitstreak.models.analytics import HabitAnalytics
from habitstreak.models.streak import CompletionEvent

WINDOW_DAYS = 30
DAY_NAMES = ["Sunday", "Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday"]
DEFAULT_BEST_DAY = "Monday"


def _weekday_index(day: date) -> int:
    # date.weekday() is Monday=0; DAY_NAMES starts on Sunday.
    return (day.weekday() + 1) % 7


def completion_rate(dates: Sequence[date], total_days: int) -> float:
    if total_days <= 0:
        return 0.0
    return round(len(set(dates)) / total_days * 100, 2)


def best_day_of_week(dates: Sequence[date]) -> str:
    if not dates:
        return DEFAULT_BEST_DAY
    counts = [0] * 7
    for day in set(dates):
        counts[_weekday_index(day)] += 1
    # First maximum in Sunday-first order wins ties.
    return DAY_NAMES[counts.index(max(counts))]


def run_consistency(dates: Sequence[date]) -> float:
    """Share of adjacent completion pairs that are consecutive days, 0-100."""
    unique = sorted(set(dates))
    if not unique:
        return 0.0
    if len(unique) < 2:
        return 100.0
    consecutive = sum(1 for a, b in zip(unique, unique[1:]) if b - a == timedelta(days=1))
    return min(consecutive / (len(unique) - 1) * 100, 100.0)


def weekday_consistency(dates: Sequence[date]) -> float:
    """1 - coefficient of variation of per-weekday counts, as 0-100."""
    frequencies: Dict[int, int] = {}
    for day in set(dates):
        idx = _weekday_index(day)
        frequencies[idx] = frequencies.get(idx, 0) + 1
    if not frequencies:
        return 0.0
    values = list(frequencies.values())
    mean = sum(values) / len(values)
    variance = sum((v - mean) ** 2 for v in values) / len(values)
    cv = math.sqrt(variance) / mean if mean > 0 else 1.0
    return max(0.0, min(100.0, (1 - cv) * 100))


def reduce_habit_analytics(
    habit_id: str,
    user_id: str,
    events: List[CompletionEvent],
    tz_name: Optional[str] = None,
    now: Optional[datetime] = None,
) -> HabitAnalytics:
    """
    Reduce a habit's completion log to analytics.

    Pure function: same events + same now => identical output.
    """
    if now is None:
        now = datetime.now(timezone.utc)
    now = ensure_aware(now)

    tz = tz_name or reference_timezone(events)
    today = to_civil_date(now, tz)
    window_start = today - timedelta(days=WINDOW_DAYS - 1)

    all_dates = active_dates(events)
    recent = [d for d in all_dates if window_start <= d <= today]

    rate = completion_rate(recent, WINDOW_DAYS)
    runs = run_lengths(all_dates)
    average_run = round(sum(runs) / len(runs), 2) if runs else 0.0

    if all_dates:
        score = min(rate, 100.0) * 0.4 + run_consistency(recent) * 0.3 + weekday_consistency(recent) * 0.3
        score = round(score, 2)
    else:
        score = 0.0

    return HabitAnalytics(
        habit_id=habit_id,
        user_id=user_id,
        total_completions=sum(1 for e in events if e.active),
        completion_rate_30_days=rate,
        average_streak_length=average_run,
        best_day_of_week=best_day_of_week(all_dates),
        consistency_score=score,
        computed_at=now,
    )
