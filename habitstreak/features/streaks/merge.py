from __future__ import annotations

from datetime import datetime
from typing import Optional

from habitstreak.features.streaks.calculator import StreakComputation
from habitstreak.models.streak import StreakState


def merge_state(
    computed: StreakComputation,
    persisted: Optional[StreakState],
    *,
    habit_id: str,
    user_id: str,
    now: datetime,
) -> StreakState:
    """Combine a fresh calculation with what is already stored.

    Counters derived from the log come from the calculation. Freezes and
    milestones are not derivable from the log and are carried over. Best
    streak never decreases.
    """
    base = persisted or StreakState.empty(habit_id, user_id, now)
    return base.model_copy(
        update={
            "current_streak": computed.current_streak,
            "best_streak": max(computed.best_streak, base.best_streak),
            "last_completion_date": computed.last_completion_date,
            "streak_start_date": computed.streak_start_date,
            "created_at": base.created_at or now,
            "updated_at": now,
        }
    )
