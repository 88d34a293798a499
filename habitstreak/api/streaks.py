from __future__ import annotations

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field

from habitstreak.core.auth import get_current_user_id
from habitstreak.features.streaks.service import StreakEngine

router = APIRouter(prefix="/v1/habits", tags=["streaks"])


class CompletionRequest(BaseModel):
    user_id: Optional[str] = Field(None, min_length=1)
    completed_at: Optional[datetime] = None
    timezone: str = "UTC"
    difficulty: str = "medium"
    notes: Optional[str] = None


class FreezeRequest(BaseModel):
    user_id: Optional[str] = Field(None, min_length=1)
    missed_date: str = Field(..., min_length=1)


def get_streak_engine(request: Request) -> StreakEngine:
    return request.app.state.engine


@router.post("/{habit_id}/completions", status_code=201)
def record_completion(
    habit_id: str,
    body: CompletionRequest,
    actor_id: str = Depends(get_current_user_id),
    engine: StreakEngine = Depends(get_streak_engine),
):
    """Record a habit completion for the authenticated user."""
    completion = engine.record_completion(
        habit_id,
        body.user_id or actor_id,
        completed_at=body.completed_at,
        timezone=body.timezone,
        difficulty=body.difficulty,
        notes=body.notes,
        actor_id=actor_id,
    ).unwrap()
    state = engine.get_streak(habit_id, completion.user_id).unwrap()
    return {
        "completion": completion.model_dump(mode="json"),
        "streak": state.model_dump(mode="json") if state else None,
    }


@router.delete("/{habit_id}/completions/last")
def undo_last_completion(
    habit_id: str,
    actor_id: str = Depends(get_current_user_id),
    engine: StreakEngine = Depends(get_streak_engine),
):
    undone = engine.undo_last_completion(habit_id, actor_id, actor_id=actor_id).unwrap()
    return {"completion": undone.model_dump(mode="json") if undone else None}


@router.get("/{habit_id}/streak")
def calculate_streak(
    habit_id: str,
    actor_id: str = Depends(get_current_user_id),
    engine: StreakEngine = Depends(get_streak_engine),
):
    """Recompute the streak from the completion log."""
    state = engine.calculate_streak(habit_id, actor_id).unwrap()
    return {"streak": state.model_dump(mode="json")}


@router.get("/{habit_id}/streak/cached")
def get_streak(
    habit_id: str,
    actor_id: str = Depends(get_current_user_id),
    engine: StreakEngine = Depends(get_streak_engine),
):
    state = engine.get_streak(habit_id, actor_id).unwrap()
    return {"streak": state.model_dump(mode="json") if state else None}


@router.post("/{habit_id}/streak/init", status_code=201)
def initialize_streak(
    habit_id: str,
    actor_id: str = Depends(get_current_user_id),
    engine: StreakEngine = Depends(get_streak_engine),
):
    state = engine.initialize_streak(habit_id, actor_id, actor_id=actor_id).unwrap()
    return {"streak": state.model_dump(mode="json")}


@router.post("/{habit_id}/freezes")
def use_freeze(
    habit_id: str,
    body: FreezeRequest,
    actor_id: str = Depends(get_current_user_id),
    engine: StreakEngine = Depends(get_streak_engine),
):
    """Spend a streak freeze on a missed day. `used` is false when none are left."""
    user_id = body.user_id or actor_id
    used = engine.use_freeze(habit_id, user_id, body.missed_date, actor_id=actor_id).unwrap()
    state = engine.get_streak(habit_id, user_id).unwrap()
    return {"used": used, "streak": state.model_dump(mode="json") if state else None}


@router.get("/{habit_id}/calendar")
def get_calendar(
    habit_id: str,
    days: int = Query(30),
    timezone: Optional[str] = Query(None),
    actor_id: str = Depends(get_current_user_id),
    engine: StreakEngine = Depends(get_streak_engine),
):
    calendar = engine.get_calendar(habit_id, actor_id, days=days, timezone=timezone).unwrap()
    return {"days": [day.model_dump(mode="json") for day in calendar]}


@router.get("/{habit_id}/analytics")
def get_analytics(
    habit_id: str,
    timezone: Optional[str] = Query(None),
    actor_id: str = Depends(get_current_user_id),
    engine: StreakEngine = Depends(get_streak_engine),
):
    analytics = engine.get_analytics(habit_id, actor_id, timezone=timezone).unwrap()
    return analytics.model_dump(mode="json")


@router.delete("/{habit_id}")
def purge_habit(
    habit_id: str,
    actor_id: str = Depends(get_current_user_id),
    engine: StreakEngine = Depends(get_streak_engine),
):
    counts = engine.purge_habit(habit_id, actor_id, actor_id=actor_id).unwrap()
    return {"purged": counts}
