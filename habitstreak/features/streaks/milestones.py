from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import List

from habitstreak.models.streak import FREEZE_REWARD_MILESTONE, MILESTONE_DAYS, Milestone, StreakState


@dataclass(frozen=True)
class MilestoneCheck:
    state: StreakState
    new_milestones: List[Milestone] = field(default_factory=list)

    @property
    def freezes_awarded(self) -> int:
        return sum(1 for m in self.new_milestones if m.days == FREEZE_REWARD_MILESTONE)


def check_milestones(state: StreakState, now: datetime) -> MilestoneCheck:
    """Award milestones reached by the current streak that are not yet recorded.

    Each threshold is awarded at most once per (habit, user); reaching the
    30-day mark also grants one streak freeze. Running the check again on its
    own output awards nothing.
    """
    recorded = set(state.milestone_days())
    fresh = [
        Milestone(days=days, achieved_at=now)
        for days in MILESTONE_DAYS
        if state.current_streak >= days and days not in recorded
    ]
    if not fresh:
        return MilestoneCheck(state=state)

    bonus = sum(1 for m in fresh if m.days == FREEZE_REWARD_MILESTONE)
    updated = state.model_copy(
        update={
            "milestones": list(state.milestones) + fresh,
            "freezes_available": state.freezes_available + bonus,
        }
    )
    return MilestoneCheck(state=updated, new_milestones=fresh)
