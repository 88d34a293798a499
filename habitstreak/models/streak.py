from __future__ import annotations

import datetime as dt
from datetime import date, datetime, timezone
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

Difficulty = Literal["easy", "medium", "hard"]
CompletionSource = Literal["user", "freeze"]
RiskLevel = Literal["low", "medium", "high", "critical"]
EntityType = Literal["completion", "streak", "habit", "system"]

MILESTONE_DAYS = (7, 30, 60, 100, 365)
FREEZE_REWARD_MILESTONE = 30
FREEZE_NOTE = "Protected by streak freeze"


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class CompletionEvent(BaseModel):
    """One append-only habit completion. Deactivated, never deleted."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., min_length=1)
    habit_id: str = Field(..., min_length=1)
    user_id: str = Field(..., min_length=1)
    completed_at: datetime
    timezone: str = "UTC"
    difficulty: Difficulty = "medium"
    notes: Optional[str] = Field(None, max_length=1000)
    created_at: datetime
    active: bool = True
    source: CompletionSource = "user"
    deactivated_at: Optional[datetime] = None

    @field_validator("completed_at", "created_at", "deactivated_at")
    @classmethod
    def _utc(cls, value):
        return _as_utc(value)


class Milestone(BaseModel):
    model_config = ConfigDict(frozen=True)

    days: int = Field(..., gt=0)
    achieved_at: datetime
    celebrated: bool = False

    @field_validator("achieved_at")
    @classmethod
    def _utc(cls, value):
        return _as_utc(value)


class StreakState(BaseModel):
    """Persisted aggregate for one (habit, user). Derived from the completion log."""

    model_config = ConfigDict(frozen=True)

    habit_id: str = Field(..., min_length=1)
    user_id: str = Field(..., min_length=1)
    current_streak: int = Field(0, ge=0)
    best_streak: int = Field(0, ge=0)
    last_completion_date: Optional[date] = None
    streak_start_date: Optional[date] = None
    # Freeze counters are not range-checked here; negative values are an
    # integrity failure reported by state validation.
    freezes_available: int = 0
    freezes_used: int = 0
    milestones: List[Milestone] = Field(default_factory=list)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @field_validator("created_at", "updated_at")
    @classmethod
    def _utc(cls, value):
        return _as_utc(value)

    @classmethod
    def empty(
        cls, habit_id: str, user_id: str, now: Optional[datetime] = None, start_date: Optional[date] = None
    ) -> "StreakState":
        return cls(habit_id=habit_id, user_id=user_id, streak_start_date=start_date, created_at=now, updated_at=now)

    def milestone_days(self) -> List[int]:
        return [m.days for m in self.milestones]


class AuditLogEntry(BaseModel):
    """Immutable record of a mutation attempt, successful or not."""

    model_config = ConfigDict(frozen=True)

    id: Optional[int] = None
    user_id: str
    habit_id: Optional[str] = None
    action: str
    entity_type: EntityType
    entity_id: Optional[str] = None
    old_data: Optional[dict] = None
    new_data: Optional[dict] = None
    validation_errors: List[str] = Field(default_factory=list)
    suspicious_flags: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    risk_level: RiskLevel = "low"
    request_id: Optional[str] = None
    timestamp: datetime

    @field_validator("timestamp")
    @classmethod
    def _utc(cls, value):
        return _as_utc(value)


class SuspiciousActivity(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: Optional[int] = None
    user_id: str
    habit_id: Optional[str] = None
    flags: List[str]
    risk_level: RiskLevel = "low"
    completions_count: int = 0
    detected_at: datetime
    reviewed: bool = False
    source: Literal["commit", "sweep"] = "commit"

    @field_validator("detected_at")
    @classmethod
    def _utc(cls, value):
        return _as_utc(value)


class CalendarDay(BaseModel):
    date: dt.date
    completed: bool
    is_today: bool
    is_in_streak: bool
    completion_time: Optional[datetime] = None
    notes: Optional[str] = None


class StreakUpdate(BaseModel):
    """Hand-off to the notification collaborator after a committed operation."""

    operation: str
    habit_id: str
    user_id: str
    state: StreakState
    new_milestones: List[Milestone] = Field(default_factory=list)
    streak_broken: bool = False
    corrected: bool = False
    warnings: List[str] = Field(default_factory=list)
    flags: List[str] = Field(default_factory=list)


class ReconcileReport(BaseModel):
    habit_id: str
    user_id: str
    changed: bool
    corrected: bool
    before: Optional[StreakState] = None
    after: StreakState
