"""Completion and streak-state validation plus advisory fraud heuristics.

Validation has two tiers. Hard failures reject the operation with a typed
error. Soft findings (stale completions, suspicious patterns) are returned
as warnings or flags and only ever get logged and audited.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Iterable, List, Optional, Sequence, Set

from habitstreak.core.config import Settings
from habitstreak.core.errors import ErrorKind, Result
from habitstreak.features.streaks.dates import (
    UTC_NAME,
    active_dates,
    ensure_aware,
    event_date,
    resolve_timezone,
    to_civil_date,
)
from habitstreak.models.streak import CompletionEvent, StreakState

VALID_DIFFICULTIES = ("easy", "medium", "hard")

FLAG_HOURLY = "high_frequency_hourly"
FLAG_DAILY = "high_frequency_daily"
FLAG_IDENTICAL_TIMESTAMP = "identical_timestamp"
FLAG_STREAK_EXCEEDS_COMPLETIONS = "streak_exceeds_completions"
FLAG_MILESTONE_PREMATURE = "milestone_before_completions"
FLAG_SIMULTANEOUS_HABITS = "simultaneous_habit_completions"


@dataclass(frozen=True)
class IntegrityLimits:
    stale_hours: int = 24
    tolerance_days: int = 1
    max_per_hour: int = 10
    max_per_day: int = 50
    max_habits_same_instant: int = 3

    @classmethod
    def from_settings(cls, cfg: Settings) -> "IntegrityLimits":
        return cls(
            stale_hours=cfg.STALE_COMPLETION_HOURS,
            tolerance_days=cfg.STREAK_RECONCILE_TOLERANCE_DAYS,
            max_per_hour=cfg.FRAUD_MAX_COMPLETIONS_PER_HOUR,
            max_per_day=cfg.FRAUD_MAX_COMPLETIONS_PER_DAY,
            max_habits_same_instant=cfg.FRAUD_MAX_HABITS_SAME_INSTANT,
        )


@dataclass(frozen=True)
class CompletionCheck:
    civil_date: date
    timezone: str
    warnings: List[str] = field(default_factory=list)
    flags: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class StateCheck:
    state: StreakState
    corrected: bool = False
    corrections: List[str] = field(default_factory=list)
    flags: List[str] = field(default_factory=list)


def validate_completion(
    *,
    habit_id: str,
    user_id: str,
    actor_id: str,
    completed_at: datetime,
    timezone: Optional[str],
    difficulty: str,
    existing: Sequence[CompletionEvent],
    now: datetime,
    limits: IntegrityLimits = IntegrityLimits(),
) -> Result[CompletionCheck]:
    """Check a candidate completion against the existing log.

    All hard problems are collected; the reported kind is the most severe one
    (ownership, then bad arguments, then duplicates).
    """
    kinds: List[ErrorKind] = []
    errors: List[str] = []
    warnings: List[str] = []

    if not habit_id or not user_id:
        kinds.append(ErrorKind.INVALID_ARGUMENT)
        errors.append("habit_id and user_id are required")

    if actor_id != user_id:
        kinds.append(ErrorKind.OWNERSHIP_MISMATCH)
        errors.append("completion does not belong to the requesting user")

    if difficulty not in VALID_DIFFICULTIES:
        kinds.append(ErrorKind.INVALID_ARGUMENT)
        errors.append(f"difficulty must be one of {', '.join(VALID_DIFFICULTIES)}")

    tz_name = timezone
    if not resolve_timezone(timezone).ok:
        warnings.append(f"invalid timezone {timezone!r}; using {UTC_NAME}")
        tz_name = UTC_NAME

    instant = ensure_aware(completed_at)
    current = ensure_aware(now)
    if instant > current:
        kinds.append(ErrorKind.INVALID_ARGUMENT)
        errors.append("completion cannot be in the future")
    elif current - instant > timedelta(hours=limits.stale_hours):
        warnings.append(f"completion is more than {limits.stale_hours} hours old")

    civil = to_civil_date(instant, tz_name)
    if any(e.active and event_date(e) == civil for e in existing):
        kinds.append(ErrorKind.ALREADY_EXISTS)
        errors.append(f"habit already completed on {civil.isoformat()}")

    if errors:
        for kind in (ErrorKind.OWNERSHIP_MISMATCH, ErrorKind.INVALID_ARGUMENT, ErrorKind.ALREADY_EXISTS):
            if kind in kinds:
                return Result.failure(kind, errors[kinds.index(kind)], errors)

    flags = completion_flags(instant, existing, now=current, limits=limits)
    return Result.success(CompletionCheck(civil_date=civil, timezone=tz_name, warnings=warnings, flags=flags))


def completion_flags(
    completed_at: datetime,
    existing: Iterable[CompletionEvent],
    *,
    now: datetime,
    limits: IntegrityLimits,
) -> List[str]:
    """Rate and duplicate-instant heuristics for a new completion (advisory)."""
    events = list(existing)
    hour_ago = now - timedelta(hours=1)
    day_ago = now - timedelta(days=1)
    # The candidate itself counts toward the window.
    last_hour = 1 + sum(1 for e in events if e.created_at >= hour_ago)
    last_day = 1 + sum(1 for e in events if e.created_at >= day_ago)

    flags: List[str] = []
    if last_hour > limits.max_per_hour:
        flags.append(FLAG_HOURLY)
    if last_day > limits.max_per_day:
        flags.append(FLAG_DAILY)
    if any(e.active and e.completed_at == completed_at for e in events):
        flags.append(FLAG_IDENTICAL_TIMESTAMP)
    return flags


def _recount(dates: Set[date], today: date):
    """Current and best streak by set membership, independent of the calculator."""
    one_day = timedelta(days=1)
    anchor = today if today in dates else today - one_day
    current = 0
    start = None
    cursor = anchor
    while cursor in dates:
        current += 1
        start = cursor
        cursor -= one_day

    best = 0
    for day in dates:
        if day - one_day in dates:
            continue
        length = 0
        cursor = day
        while cursor in dates:
            length += 1
            cursor += one_day
        best = max(best, length)
    return current, best, start


def validate_state(
    state: StreakState,
    events: Sequence[CompletionEvent],
    *,
    today: date,
    now: datetime,
    tolerance_days: int = 1,
) -> Result[StateCheck]:
    """Validate a streak state against an independent recount of the log.

    Negative freeze counters, repeated milestones, and milestones dated in the
    future are hard failures. A current streak that drifts from the recount by
    more than `tolerance_days` is replaced by the recount; the caller audits
    the correction.
    """
    current_time = ensure_aware(now)
    errors: List[str] = []
    if state.freezes_available < 0:
        errors.append("freezes_available is negative")
    if state.freezes_used < 0:
        errors.append("freezes_used is negative")
    days = state.milestone_days()
    if len(days) != len(set(days)):
        errors.append("duplicate milestone entries")
    if any(m.achieved_at > current_time for m in state.milestones):
        errors.append("milestone achieved in the future")
    if errors:
        return Result.failure(ErrorKind.INTEGRITY_VIOLATION, errors[0], errors)

    dates = set(active_dates(events))
    current, best, start = _recount(dates, today)

    updates = {}
    corrections: List[str] = []
    if abs(state.current_streak - current) > tolerance_days:
        corrections.append(f"current_streak {state.current_streak} -> {current}")
        updates["current_streak"] = current
        updates["streak_start_date"] = start if dates else today
        updates["last_completion_date"] = max(dates) if dates else None
    effective_current = updates.get("current_streak", state.current_streak)
    floor = max(best, effective_current)
    if state.best_streak < floor:
        corrections.append(f"best_streak {state.best_streak} -> {floor}")
        updates["best_streak"] = floor

    checked = state.model_copy(update=updates) if updates else state
    flags = state_flags(checked, events)
    return Result.success(
        StateCheck(state=checked, corrected=bool(corrections), corrections=corrections, flags=flags)
    )


def state_flags(state: StreakState, events: Sequence[CompletionEvent]) -> List[str]:
    flags: List[str] = []
    active_count = sum(1 for e in events if e.active)
    if state.current_streak > active_count:
        flags.append(FLAG_STREAK_EXCEEDS_COMPLETIONS)
    for milestone in state.milestones:
        recorded = sum(1 for e in events if e.created_at <= milestone.achieved_at)
        if recorded < milestone.days:
            flags.append(f"{FLAG_MILESTONE_PREMATURE}:{milestone.days}")
    return flags


def risk_level_for_flags(flags: Sequence[str]) -> str:
    if len(flags) >= 3:
        return "high"
    if len(flags) == 2:
        return "medium"
    return "low"
