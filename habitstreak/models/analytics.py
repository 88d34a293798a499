"""
Habit analytics read model. Deterministic, derived from the completion log.
"""

from pydantic import BaseModel, Field, ConfigDict
from datetime import datetime


class HabitAnalytics(BaseModel):
    """Aggregate view of one habit for one user."""

    model_config = ConfigDict(frozen=True)

    habit_id: str
    user_id: str
    total_completions: int = Field(ge=0, description="Active completions, freezes included")
    completion_rate_30_days: float = Field(ge=0, le=100, description="Percent of the last 30 civil days completed")
    average_streak_length: float = Field(ge=0, description="Mean length of consecutive-day runs")
    best_day_of_week: str = Field(description="Weekday with the most completions")
    consistency_score: float = Field(ge=0, le=100, description="Weighted rate, run and weekday consistency")
    computed_at: datetime = Field(description="When analytics were computed")
