"""Shared test doubles: a controllable clock and an engine builder."""

from datetime import datetime, timedelta, timezone

from habitstreak.features.streaks.cache import StreakCache
from habitstreak.features.streaks.service import RetryPolicy, StreakEngine
from habitstreak.features.streaks.validation import IntegrityLimits
from habitstreak.models.streak import CompletionEvent

FIXED_NOW = datetime(2024, 3, 15, 12, 0, tzinfo=timezone.utc)


class FixedClock:
    """Deterministic clock for engine tests."""

    def __init__(self, now: datetime = FIXED_NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


def sequential_ids(prefix: str = "c"):
    counter = {"n": 0}

    def next_id() -> str:
        counter["n"] += 1
        return f"{prefix}{counter['n']:04d}"

    return next_id


def make_engine(store, clock, **overrides) -> StreakEngine:
    options = {
        "cache": StreakCache(ttl_seconds=300, max_entries=100),
        "clock": clock,
        "sleep": lambda seconds: None,
        "retry": RetryPolicy(max_attempts=5, base_delay_ms=1, max_delay_ms=5, timeout_seconds=30),
        "limits": IntegrityLimits(),
        "id_factory": sequential_ids(),
    }
    options.update(overrides)
    return StreakEngine(store, **options)


def completion(
    completed_at: datetime,
    *,
    id: str = "e1",
    habit_id: str = "h1",
    user_id: str = "u1",
    tz: str = "UTC",
    active: bool = True,
    created_at: datetime = None,
) -> CompletionEvent:
    return CompletionEvent(
        id=id,
        habit_id=habit_id,
        user_id=user_id,
        completed_at=completed_at,
        timezone=tz,
        created_at=created_at or completed_at,
        active=active,
    )
