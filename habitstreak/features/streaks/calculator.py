"""Pure streak calculation over civil dates."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, timedelta
from typing import Iterable, Optional


@dataclass(frozen=True)
class StreakComputation:
    current_streak: int = 0
    best_streak: int = 0
    last_completion_date: Optional[date] = None
    streak_start_date: Optional[date] = None


def calculate_streak(dates: Iterable[date], today: date) -> StreakComputation:
    """Compute current and best streak from completion dates.

    The current streak counts back from the most recent date, but only while
    that date is today or yesterday; a missing today does not break it until
    the day is over. Dates after `today` never extend the current streak.
    """
    ordered = sorted(set(dates))
    if not ordered:
        return StreakComputation(streak_start_date=today)

    one_day = timedelta(days=1)
    current = 0
    start: Optional[date] = None
    past = [d for d in ordered if d <= today]
    if past and past[-1] >= today - one_day:
        current = 1
        start = past[-1]
        for previous in reversed(past[:-1]):
            if start - previous != one_day:
                break
            current += 1
            start = previous

    best = 0
    run = 0
    prior: Optional[date] = None
    for day in ordered:
        run = run + 1 if prior is not None and day - prior == one_day else 1
        best = max(best, run)
        prior = day

    return StreakComputation(
        current_streak=current,
        best_streak=max(best, current),
        last_completion_date=ordered[-1],
        streak_start_date=start,
    )


def run_lengths(dates: Iterable[date]):
    """Lengths of maximal consecutive-day runs, in date order."""
    runs = []
    prior: Optional[date] = None
    for day in sorted(set(dates)):
        if prior is not None and day - prior == timedelta(days=1):
            runs[-1] += 1
        else:
            runs.append(1)
        prior = day
    return runs
