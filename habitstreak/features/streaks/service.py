"""
Streak engine: the public operations over the habit store.

Every mutation follows the same protocol: read a snapshot, validate the
input, compute the derived state, then commit the log change, the new
aggregate and the audit entry together. A commit that loses a race is
retried with exponential backoff until attempts or the deadline run out.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Callable, Dict, Generic, List, Optional, TypeVar
from uuid import uuid4

from habitstreak.core.config import Settings, settings
from habitstreak.core.errors import ErrorKind, Result, StoreSchemaError, WriteConflict
from habitstreak.core.logging import log_event
from habitstreak.core.metrics import (
    streak_cache_entries,
    streak_fraud_flags_total,
    streak_integrity_corrections_total,
    streak_operations_total,
    streak_txn_conflicts_total,
)
from habitstreak.features.analytics.reducers import reduce_habit_analytics
from habitstreak.features.audit.service import (
    ACTION_COMPLETION_RECORDED,
    ACTION_COMPLETION_REJECTED,
    ACTION_COMPLETION_UNDONE,
    ACTION_FREEZE_REJECTED,
    ACTION_FREEZE_USED,
    ACTION_HABIT_PURGED,
    ACTION_INTEGRITY_VIOLATION,
    ACTION_OPERATION_FAILED,
    ACTION_STREAK_CALCULATED,
    ACTION_STREAK_CORRECTED,
    ACTION_STREAK_INITIALIZED,
    ACTION_STREAK_RECONCILED,
    ACTION_UNAUTHORIZED,
    build_audit_entry,
    record_audit_event,
)
from habitstreak.features.streaks.cache import StreakCache
from habitstreak.features.streaks.calculator import calculate_streak
from habitstreak.features.streaks.dates import (
    active_dates,
    civil_noon,
    date_range,
    ensure_aware,
    event_date,
    parse_civil_date,
    reference_timezone,
    today_in,
)
from habitstreak.features.streaks.merge import merge_state
from habitstreak.features.streaks.milestones import check_milestones
from habitstreak.features.streaks.store import HabitStore, HabitTransaction
from habitstreak.features.streaks.validation import (
    IntegrityLimits,
    risk_level_for_flags,
    validate_completion,
    validate_state,
)
from habitstreak.models.analytics import HabitAnalytics
from habitstreak.models.streak import (
    FREEZE_NOTE,
    AuditLogEntry,
    CalendarDay,
    CompletionEvent,
    Milestone,
    ReconcileReport,
    StreakState,
    StreakUpdate,
    SuspiciousActivity,
)

logger = logging.getLogger("habitstreak.streaks")

T = TypeVar("T")

_COMPARE_EXCLUDE = {"created_at", "updated_at"}


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 5
    base_delay_ms: int = 25
    max_delay_ms: int = 800
    timeout_seconds: float = 10.0

    @classmethod
    def from_settings(cls, cfg: Settings) -> "RetryPolicy":
        return cls(
            max_attempts=cfg.STREAK_TXN_MAX_ATTEMPTS,
            base_delay_ms=cfg.STREAK_TXN_BASE_DELAY_MS,
            max_delay_ms=cfg.STREAK_TXN_MAX_DELAY_MS,
            timeout_seconds=cfg.STREAK_OPERATION_TIMEOUT_SECONDS,
        )

    def backoff_seconds(self, attempt: int) -> float:
        """Exponential backoff after the given (1-based) failed attempt, capped."""
        delay_ms = min(self.base_delay_ms * (2 ** max(0, attempt - 1)), self.max_delay_ms)
        return delay_ms / 1000.0


@dataclass
class _Attempt(Generic[T]):
    """What one pass of an operation produced.

    `rejection` is audited outside the transaction because a rejected
    attempt writes nothing for the key. `update` is published only after
    the commit succeeds.
    """

    result: Result[T]
    rejection: Optional[AuditLogEntry] = None
    update: Optional[StreakUpdate] = None


@dataclass(frozen=True)
class _Derived:
    state: StreakState
    today: date
    tz_name: str
    new_milestones: List[Milestone] = field(default_factory=list)
    corrected: bool = False
    corrections: List[str] = field(default_factory=list)
    flags: List[str] = field(default_factory=list)


def streak_broken(prior: Optional[StreakState], state: StreakState) -> bool:
    """True when an existing streak ended or was replaced by a newer run."""
    if prior is None or prior.current_streak == 0:
        return False
    if state.current_streak == 0:
        return True
    return (
        prior.streak_start_date is not None
        and state.streak_start_date is not None
        and state.streak_start_date > prior.streak_start_date
    )


def _state_changed(before: Optional[StreakState], after: StreakState) -> bool:
    if before is None:
        return True
    return before.model_dump(exclude=_COMPARE_EXCLUDE) != after.model_dump(exclude=_COMPARE_EXCLUDE)


def _dump(model) -> Optional[dict]:
    return model.model_dump(mode="json") if model is not None else None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class StreakEngine:
    """Habit streak operations with integrity checks and an audit trail.

    Collaborators are injected: the store, the cache, the clock and the
    notifier. Nothing is held in module-level state.
    """

    def __init__(
        self,
        store: HabitStore,
        *,
        cache: Optional[StreakCache] = None,
        clock: Callable[[], datetime] = _utcnow,
        sleep: Callable[[float], None] = time.sleep,
        monotonic: Callable[[], float] = time.monotonic,
        notifier: Optional[Callable[[StreakUpdate], None]] = None,
        retry: Optional[RetryPolicy] = None,
        limits: Optional[IntegrityLimits] = None,
        config: Optional[Settings] = None,
        id_factory: Callable[[], str] = lambda: uuid4().hex,
    ):
        cfg = config or settings
        self.store = store
        self.cache = cache if cache is not None else StreakCache(
            ttl_seconds=cfg.STREAK_CACHE_TTL_SECONDS,
            max_entries=cfg.STREAK_CACHE_MAX_ENTRIES,
        )
        self.retry = retry or RetryPolicy.from_settings(cfg)
        self.limits = limits or IntegrityLimits.from_settings(cfg)
        self.calendar_max_days = cfg.CALENDAR_MAX_DAYS
        self._clock = clock
        self._sleep = sleep
        self._monotonic = monotonic
        self._notifier = notifier
        self._new_id = id_factory

    # Public operations -----------------------------------------------
    def record_completion(
        self,
        habit_id: str,
        user_id: str,
        completed_at: Optional[datetime] = None,
        timezone: str = "UTC",
        difficulty: str = "medium",
        notes: Optional[str] = None,
        *,
        actor_id: Optional[str] = None,
    ) -> Result[CompletionEvent]:
        """Append a completion and recompute the streak."""
        actor = actor_id if actor_id is not None else user_id
        if completed_at is not None and not isinstance(completed_at, datetime):
            return self._reject_now(
                "record_completion", habit_id, user_id, ErrorKind.INVALID_ARGUMENT, "completed_at must be a datetime"
            )
        clean_notes = notes.strip() if isinstance(notes, str) and notes.strip() else None
        if clean_notes is not None and len(clean_notes) > 500:
            return self._reject_now(
                "record_completion", habit_id, user_id, ErrorKind.INVALID_ARGUMENT, "notes must be at most 500 characters"
            )

        def body(txn: HabitTransaction, now: datetime) -> _Attempt[CompletionEvent]:
            events = txn.get_completions()
            instant = ensure_aware(completed_at or now)
            checked = validate_completion(
                habit_id=habit_id,
                user_id=user_id,
                actor_id=actor,
                completed_at=instant,
                timezone=timezone,
                difficulty=difficulty,
                existing=events,
                now=now,
                limits=self.limits,
            )
            if not checked.ok:
                action = ACTION_UNAUTHORIZED if checked.error.kind == ErrorKind.OWNERSHIP_MISMATCH else ACTION_COMPLETION_REJECTED
                return _Attempt(
                    result=Result(error=checked.error),
                    rejection=build_audit_entry(
                        action=action,
                        user_id=actor,
                        habit_id=habit_id,
                        entity_type="completion",
                        new_data={"user_id": user_id, "completed_at": instant, "timezone": timezone, "difficulty": difficulty},
                        validation_errors=checked.error.details,
                        now=now,
                    ),
                )
            check = checked.value

            event = CompletionEvent(
                id=self._new_id(),
                habit_id=habit_id,
                user_id=user_id,
                completed_at=instant,
                timezone=check.timezone,
                difficulty=difficulty,
                notes=clean_notes,
                created_at=now,
            )
            persisted = txn.get_streak()
            derived = self._derive(events + [event], persisted, habit_id, user_id, now, tz_fallback=check.timezone)
            if not derived.ok:
                return self._integrity_failure(derived, habit_id, user_id, persisted, now)
            d = derived.value

            flags = check.flags + d.flags
            txn.put_completion(event)
            txn.put_streak(d.state)
            txn.append_audit(
                build_audit_entry(
                    action=ACTION_COMPLETION_RECORDED,
                    user_id=user_id,
                    habit_id=habit_id,
                    entity_type="completion",
                    entity_id=event.id,
                    old_data={"streak": _dump(persisted)},
                    new_data={"completion": _dump(event), "streak": _dump(d.state)},
                    suspicious_flags=flags,
                    warnings=check.warnings,
                    now=now,
                )
            )
            self._stage_correction(txn, d, persisted, now)
            self._stage_flags(txn, habit_id, user_id, flags, len(events) + 1, now)
            return _Attempt(
                result=Result.success(event),
                update=self._update("record_completion", persisted, d, warnings=check.warnings, flags=flags),
            )

        return self._run("record_completion", habit_id, user_id, body)

    def undo_last_completion(self, habit_id: str, user_id: str, *, actor_id: Optional[str] = None) -> Result[Optional[CompletionEvent]]:
        """Deactivate the most recent active completion and recompute.

        Returns the deactivated completion, or None when there was nothing to undo.
        """
        actor = actor_id if actor_id is not None else user_id
        if actor != user_id:
            return self._reject_ownership("undo_last_completion", habit_id, user_id, actor)

        def body(txn: HabitTransaction, now: datetime) -> _Attempt[Optional[CompletionEvent]]:
            events = txn.get_completions()
            active = [e for e in events if e.active]
            if not active:
                return _Attempt(result=Result.success(None))

            last = max(active, key=lambda e: (e.completed_at, e.created_at))
            undone = last.model_copy(update={"active": False, "deactivated_at": now})
            remaining = [undone if e.id == last.id else e for e in events]
            persisted = txn.get_streak()
            derived = self._derive(remaining, persisted, habit_id, user_id, now, tz_fallback=last.timezone)
            if not derived.ok:
                return self._integrity_failure(derived, habit_id, user_id, persisted, now)
            d = derived.value

            txn.deactivate_completion(last.id, now)
            txn.put_streak(d.state)
            txn.append_audit(
                build_audit_entry(
                    action=ACTION_COMPLETION_UNDONE,
                    user_id=user_id,
                    habit_id=habit_id,
                    entity_type="completion",
                    entity_id=last.id,
                    old_data={"completion": _dump(last), "streak": _dump(persisted)},
                    new_data={"streak": _dump(d.state)},
                    suspicious_flags=d.flags,
                    now=now,
                )
            )
            self._stage_correction(txn, d, persisted, now)
            return _Attempt(
                result=Result.success(undone),
                update=self._update("undo_last_completion", persisted, d, flags=d.flags),
            )

        return self._run("undo_last_completion", habit_id, user_id, body)

    def calculate_streak(self, habit_id: str, user_id: str) -> Result[StreakState]:
        """Recompute the streak from the log and persist it if it changed."""

        def body(txn: HabitTransaction, now: datetime) -> _Attempt[StreakState]:
            events = txn.get_completions()
            persisted = txn.get_streak()
            derived = self._derive(events, persisted, habit_id, user_id, now)
            if not derived.ok:
                return self._integrity_failure(derived, habit_id, user_id, persisted, now)
            d = derived.value
            if not _state_changed(persisted, d.state):
                return _Attempt(result=Result.success(persisted))

            txn.put_streak(d.state)
            txn.append_audit(
                build_audit_entry(
                    action=ACTION_STREAK_CALCULATED,
                    user_id=user_id,
                    habit_id=habit_id,
                    entity_type="streak",
                    entity_id=f"{habit_id}:{user_id}",
                    old_data={"streak": _dump(persisted)},
                    new_data={"streak": _dump(d.state)},
                    suspicious_flags=d.flags,
                    now=now,
                )
            )
            self._stage_correction(txn, d, persisted, now)
            return _Attempt(
                result=Result.success(d.state),
                update=self._update("calculate_streak", persisted, d, flags=d.flags),
            )

        return self._run("calculate_streak", habit_id, user_id, body, cache_result=True)

    def use_freeze(self, habit_id: str, user_id: str, missed_date, *, actor_id: Optional[str] = None) -> Result[bool]:
        """Spend one streak freeze to cover a missed civil date.

        Returns False, writing nothing, when no freeze is available.
        """
        actor = actor_id if actor_id is not None else user_id
        if actor != user_id:
            return self._reject_ownership("use_freeze", habit_id, user_id, actor)
        parsed = parse_civil_date(missed_date)
        if not parsed.ok:
            return self._reject_now(
                "use_freeze", habit_id, user_id, parsed.error.kind, parsed.error.message,
                action=ACTION_FREEZE_REJECTED, entity_type="streak",
            )
        missed = parsed.value

        def body(txn: HabitTransaction, now: datetime) -> _Attempt[bool]:
            persisted = txn.get_streak()
            if persisted is None or persisted.freezes_available <= 0:
                return _Attempt(result=Result.success(False))

            events = txn.get_completions()
            tz_name = reference_timezone(events)
            today = today_in(now, tz_name)
            problem = None
            if missed > today:
                problem = (ErrorKind.INVALID_ARGUMENT, f"cannot freeze a future date {missed.isoformat()}")
            elif any(e.active and event_date(e) == missed for e in events):
                problem = (ErrorKind.ALREADY_EXISTS, f"habit already completed on {missed.isoformat()}")
            if problem is not None:
                return _Attempt(
                    result=Result.failure(problem[0], problem[1]),
                    rejection=build_audit_entry(
                        action=ACTION_FREEZE_REJECTED,
                        user_id=user_id,
                        habit_id=habit_id,
                        entity_type="streak",
                        entity_id=f"{habit_id}:{user_id}",
                        new_data={"missed_date": missed},
                        validation_errors=[problem[1]],
                        now=now,
                    ),
                )

            synthetic = CompletionEvent(
                id=self._new_id(),
                habit_id=habit_id,
                user_id=user_id,
                completed_at=min(civil_noon(missed, tz_name), now),
                timezone=tz_name,
                difficulty="easy",
                notes=FREEZE_NOTE,
                created_at=now,
                source="freeze",
            )

            def spend(state: StreakState) -> StreakState:
                return state.model_copy(
                    update={
                        "freezes_available": state.freezes_available - 1,
                        "freezes_used": state.freezes_used + 1,
                    }
                )

            derived = self._derive(events + [synthetic], persisted, habit_id, user_id, now, tz_fallback=tz_name, adjust=spend)
            if not derived.ok:
                return self._integrity_failure(derived, habit_id, user_id, persisted, now)
            d = derived.value

            txn.put_completion(synthetic)
            txn.put_streak(d.state)
            txn.append_audit(
                build_audit_entry(
                    action=ACTION_FREEZE_USED,
                    user_id=user_id,
                    habit_id=habit_id,
                    entity_type="streak",
                    entity_id=f"{habit_id}:{user_id}",
                    old_data={"streak": _dump(persisted)},
                    new_data={"completion": _dump(synthetic), "streak": _dump(d.state), "missed_date": missed},
                    suspicious_flags=d.flags,
                    now=now,
                )
            )
            self._stage_correction(txn, d, persisted, now)
            return _Attempt(result=Result.success(True), update=self._update("use_freeze", persisted, d, flags=d.flags))

        return self._run("use_freeze", habit_id, user_id, body)

    def get_calendar(self, habit_id: str, user_id: str, days: int = 30, timezone: Optional[str] = None) -> Result[List[CalendarDay]]:
        """Day-by-day view of the last `days` civil dates, oldest first."""
        if not isinstance(days, int) or isinstance(days, bool) or not 1 <= days <= self.calendar_max_days:
            return Result.failure(ErrorKind.INVALID_ARGUMENT, f"days must be between 1 and {self.calendar_max_days}")
        try:
            events = self.store.get(habit_id, user_id)
        except Exception as exc:
            return self._internal("get_calendar", habit_id, user_id, exc)

        now = ensure_aware(self._clock())
        tz_name = timezone or reference_timezone(events)
        today = today_in(now, tz_name)
        computed = calculate_streak(active_dates(events), today)

        first_by_day: Dict[date, CompletionEvent] = {}
        for event in events:
            if not event.active:
                continue
            day = event_date(event)
            if day not in first_by_day or event.completed_at < first_by_day[day].completed_at:
                first_by_day[day] = event

        in_streak = set()
        if computed.current_streak > 0:
            start = computed.streak_start_date
            in_streak = {start + timedelta(days=offset) for offset in range(computed.current_streak)}

        calendar = []
        for day in date_range(today, days):
            event = first_by_day.get(day)
            calendar.append(
                CalendarDay(
                    date=day,
                    completed=event is not None,
                    is_today=day == today,
                    is_in_streak=day in in_streak,
                    completion_time=event.completed_at if event else None,
                    notes=event.notes if event else None,
                )
            )
        streak_operations_total.inc(labels={"operation": "get_calendar", "outcome": "ok"})
        return Result.success(calendar)

    def get_streak(self, habit_id: str, user_id: str) -> Result[Optional[StreakState]]:
        """Persisted streak state, served from the cache when fresh."""
        cached = self.cache.get(habit_id, user_id)
        if cached is not None:
            return Result.success(cached)
        generation = self.cache.generation(habit_id, user_id)
        try:
            state = self.store.get_streak(habit_id, user_id)
        except StoreSchemaError as exc:
            return self._internal("get_streak", habit_id, user_id, exc)
        if state is not None:
            self.cache.put(habit_id, user_id, state, generation=generation)
            streak_cache_entries.set(self.cache.stats()["size"])
        return Result.success(state)

    def initialize_streak(self, habit_id: str, user_id: str, *, actor_id: Optional[str] = None) -> Result[StreakState]:
        """Create the zero state for a new habit. Existing state is returned unchanged."""
        actor = actor_id if actor_id is not None else user_id
        if actor != user_id:
            return self._reject_ownership("initialize_streak", habit_id, user_id, actor)

        def body(txn: HabitTransaction, now: datetime) -> _Attempt[StreakState]:
            persisted = txn.get_streak()
            if persisted is not None:
                return _Attempt(result=Result.success(persisted))
            state = StreakState.empty(habit_id, user_id, now, start_date=today_in(now, None))
            txn.put_streak(state)
            txn.append_audit(
                build_audit_entry(
                    action=ACTION_STREAK_INITIALIZED,
                    user_id=user_id,
                    habit_id=habit_id,
                    entity_type="streak",
                    entity_id=f"{habit_id}:{user_id}",
                    new_data={"streak": _dump(state)},
                    now=now,
                )
            )
            return _Attempt(result=Result.success(state))

        return self._run("initialize_streak", habit_id, user_id, body)

    def get_analytics(self, habit_id: str, user_id: str, timezone: Optional[str] = None) -> Result[HabitAnalytics]:
        try:
            events = self.store.get(habit_id, user_id)
        except Exception as exc:
            return self._internal("get_analytics", habit_id, user_id, exc)
        analytics = reduce_habit_analytics(habit_id, user_id, events, timezone, now=self._clock())
        streak_operations_total.inc(labels={"operation": "get_analytics", "outcome": "ok"})
        return Result.success(analytics)

    def purge_habit(self, habit_id: str, user_id: str, *, actor_id: Optional[str] = None) -> Result[Dict[str, int]]:
        """Remove a deleted habit's completions and streak state. Audit entries stay."""
        actor = actor_id if actor_id is not None else user_id
        if actor != user_id:
            return self._reject_ownership("purge_habit", habit_id, user_id, actor)
        now = ensure_aware(self._clock())
        try:
            counts = self.store.purge(habit_id, user_id)
        except Exception as exc:
            return self._internal("purge_habit", habit_id, user_id, exc)
        self.cache.invalidate(habit_id, user_id)
        record_audit_event(
            self.store,
            build_audit_entry(
                action=ACTION_HABIT_PURGED,
                user_id=user_id,
                habit_id=habit_id,
                entity_type="habit",
                entity_id=habit_id,
                old_data=counts,
                now=now,
            ),
        )
        streak_operations_total.inc(labels={"operation": "purge_habit", "outcome": "ok"})
        log_event("info", "habit.purged", user_id=user_id, habit_id=habit_id, extra=counts, logger_name=logger.name)
        return Result.success(counts)

    def reconcile(self, habit_id: str, user_id: str) -> Result[ReconcileReport]:
        """Re-derive one aggregate and repair drift. Writes only when something changed.

        Drift is judged against the log as it stood on the day the state was
        last written, so a streak that simply lapsed since then is refreshed
        without being reported as a correction.
        """

        def body(txn: HabitTransaction, now: datetime) -> _Attempt[ReconcileReport]:
            events = txn.get_completions()
            persisted = txn.get_streak()
            derived = self._derive(events, persisted, habit_id, user_id, now)
            if not derived.ok:
                return self._integrity_failure(derived, habit_id, user_id, persisted, now)
            d = derived.value

            drift_corrections: List[str] = []
            if persisted is not None:
                written_day = today_in(persisted.updated_at or now, d.tz_name)
                drift = validate_state(
                    persisted, events, today=written_day, now=now, tolerance_days=self.limits.tolerance_days
                )
                if not drift.ok:
                    return self._integrity_failure(drift, habit_id, user_id, persisted, now)
                drift_corrections = drift.value.corrections
            corrections = drift_corrections + d.corrections
            changed = _state_changed(persisted, d.state)
            report = ReconcileReport(
                habit_id=habit_id,
                user_id=user_id,
                changed=changed,
                corrected=bool(corrections),
                before=persisted,
                after=d.state if changed else persisted,
            )
            if not changed and not corrections:
                return _Attempt(result=Result.success(report))

            txn.put_streak(d.state)
            txn.append_audit(
                build_audit_entry(
                    action=ACTION_STREAK_RECONCILED,
                    user_id=user_id,
                    habit_id=habit_id,
                    entity_type="streak",
                    entity_id=f"{habit_id}:{user_id}",
                    old_data={"streak": _dump(persisted)},
                    new_data={"streak": _dump(d.state)},
                    suspicious_flags=d.flags,
                    now=now,
                )
            )
            if corrections:
                txn.append_audit(self._correction_entry(habit_id, user_id, persisted, d.state, corrections, now))
                streak_integrity_corrections_total.inc(labels={"operation": "reconcile"})
                log_event(
                    "warning",
                    "streak.integrity_corrected",
                    user_id=user_id,
                    habit_id=habit_id,
                    extra={"corrections": "; ".join(corrections)},
                    logger_name=logger.name,
                )
            return _Attempt(
                result=Result.success(report),
                update=self._update("reconcile", persisted, d, flags=d.flags) if changed else None,
            )

        return self._run("reconcile", habit_id, user_id, body)

    # Protocol ----------------------------------------------------------
    def _run(
        self,
        operation: str,
        habit_id: str,
        user_id: str,
        body: Callable[[HabitTransaction, datetime], _Attempt[T]],
        *,
        cache_result: bool = False,
    ) -> Result[T]:
        started = self._monotonic()
        read_generation = self.cache.generation(habit_id, user_id)
        attempt = 0
        while True:
            attempt += 1
            now = ensure_aware(self._clock())
            try:
                outcome = self.store.run_transaction(habit_id, user_id, lambda txn: body(txn, now))
            except WriteConflict as exc:
                streak_txn_conflicts_total.inc(labels={"operation": operation})
                logger.debug(
                    "streak.txn_conflict",
                    extra={"operation": operation, "habit_id": habit_id, "user_id": user_id, "attempt": attempt},
                )
                if attempt >= self.retry.max_attempts:
                    return self._fail(
                        operation, habit_id, user_id, ErrorKind.CONFLICT,
                        f"gave up after {attempt} conflicting attempts", now, exc,
                    )
                delay = self.retry.backoff_seconds(attempt)
                if self._monotonic() - started + delay > self.retry.timeout_seconds:
                    return self._fail(
                        operation, habit_id, user_id, ErrorKind.TIMEOUT,
                        f"operation exceeded {self.retry.timeout_seconds}s", now, exc,
                    )
                self._sleep(delay)
                continue
            except StoreSchemaError as exc:
                return self._fail(operation, habit_id, user_id, ErrorKind.INTERNAL, str(exc), now, exc)
            except Exception as exc:
                logger.error(
                    "streak.operation_error",
                    exc_info=True,
                    extra={"operation": operation, "habit_id": habit_id, "user_id": user_id},
                )
                return self._fail(operation, habit_id, user_id, ErrorKind.INTERNAL, "unexpected error", now, exc)
            break

        if outcome.rejection is not None:
            record_audit_event(self.store, outcome.rejection)

        result = outcome.result
        if result.ok:
            generation = self.cache.invalidate(habit_id, user_id)
            # Cache only if no other commit on this key was invalidated since
            # the snapshot was read. Later commits, including ones made by a
            # notifier, bump the generation again and evict the entry.
            if cache_result and result.value is not None and generation == read_generation + 1:
                self.cache.put(habit_id, user_id, result.value, generation=generation)
            streak_operations_total.inc(labels={"operation": operation, "outcome": "ok"})
            log_event(
                "info",
                "streak.operation",
                user_id=user_id,
                habit_id=habit_id,
                event_type=operation,
                extra={"attempts": attempt},
                logger_name=logger.name,
            )
            if outcome.update is not None:
                self._publish(outcome.update)
        else:
            streak_operations_total.inc(labels={"operation": operation, "outcome": result.error.kind.value})
            log_event(
                "warning",
                "streak.rejected",
                user_id=user_id,
                habit_id=habit_id,
                event_type=operation,
                error_code=result.error.kind.value,
                extra={"reason": result.error.message},
                logger_name=logger.name,
            )
        return result

    def _derive(
        self,
        events: List[CompletionEvent],
        persisted: Optional[StreakState],
        habit_id: str,
        user_id: str,
        now: datetime,
        *,
        tz_fallback: Optional[str] = None,
        adjust: Optional[Callable[[StreakState], StreakState]] = None,
    ) -> Result[_Derived]:
        """calculate, merge, apply milestones, then validate against a recount."""
        tz_name = reference_timezone(events, tz_fallback)
        today = today_in(now, tz_name)
        computed = calculate_streak(active_dates(events), today)
        merged = merge_state(computed, persisted, habit_id=habit_id, user_id=user_id, now=now)
        if adjust is not None:
            merged = adjust(merged)
        awarded = check_milestones(merged, now)

        checked = validate_state(awarded.state, events, today=today, now=now, tolerance_days=self.limits.tolerance_days)
        if not checked.ok:
            return Result(error=checked.error)
        state_check = checked.value
        state = state_check.state
        new_milestones = list(awarded.new_milestones)
        if state_check.corrected:
            again = check_milestones(state, now)
            state = again.state
            new_milestones.extend(again.new_milestones)

        return Result.success(
            _Derived(
                state=state,
                today=today,
                tz_name=tz_name,
                new_milestones=new_milestones,
                corrected=state_check.corrected,
                corrections=state_check.corrections,
                flags=state_check.flags,
            )
        )

    def _stage_correction(self, txn: HabitTransaction, d: _Derived, persisted: Optional[StreakState], now: datetime) -> None:
        if not d.corrected:
            return
        txn.append_audit(self._correction_entry(txn.habit_id, txn.user_id, persisted, d.state, d.corrections, now))
        streak_integrity_corrections_total.inc(labels={"operation": "commit"})
        log_event(
            "warning",
            "streak.integrity_corrected",
            user_id=txn.user_id,
            habit_id=txn.habit_id,
            extra={"corrections": "; ".join(d.corrections)},
            logger_name=logger.name,
        )

    def _correction_entry(self, habit_id, user_id, before, after, corrections, now):
        return build_audit_entry(
            action=ACTION_STREAK_CORRECTED,
            user_id=user_id,
            habit_id=habit_id,
            entity_type="streak",
            entity_id=f"{habit_id}:{user_id}",
            old_data={"streak": _dump(before)},
            new_data={"streak": _dump(after)},
            validation_errors=corrections,
            now=now,
        )

    def _stage_flags(self, txn: HabitTransaction, habit_id: str, user_id: str, flags: List[str], count: int, now: datetime) -> None:
        if not flags:
            return
        for flag in flags:
            streak_fraud_flags_total.inc(labels={"flag": flag.split(":", 1)[0]})
        txn.record_suspicious(
            SuspiciousActivity(
                user_id=user_id,
                habit_id=habit_id,
                flags=flags,
                risk_level=risk_level_for_flags(flags),
                completions_count=count,
                detected_at=now,
                source="commit",
            )
        )
        log_event(
            "warning",
            "streak.suspicious_activity",
            user_id=user_id,
            habit_id=habit_id,
            extra={"flags": ",".join(flags)},
            logger_name=logger.name,
        )

    def _integrity_failure(self, failed: Result, habit_id: str, user_id: str, persisted: Optional[StreakState], now: datetime) -> _Attempt:
        return _Attempt(
            result=Result(error=failed.error),
            rejection=build_audit_entry(
                action=ACTION_INTEGRITY_VIOLATION,
                user_id=user_id,
                habit_id=habit_id,
                entity_type="streak",
                entity_id=f"{habit_id}:{user_id}",
                old_data={"streak": _dump(persisted)},
                validation_errors=failed.error.details,
                now=now,
            ),
        )

    def _update(
        self,
        operation: str,
        prior: Optional[StreakState],
        d: _Derived,
        *,
        warnings: Optional[List[str]] = None,
        flags: Optional[List[str]] = None,
    ) -> StreakUpdate:
        return StreakUpdate(
            operation=operation,
            habit_id=d.state.habit_id,
            user_id=d.state.user_id,
            state=d.state,
            new_milestones=d.new_milestones,
            streak_broken=streak_broken(prior, d.state),
            corrected=d.corrected,
            warnings=list(warnings or []),
            flags=list(flags or []),
        )

    def _publish(self, update: StreakUpdate) -> None:
        if self._notifier is None:
            return
        try:
            self._notifier(update)
        except Exception as exc:
            logger.warning(
                f"Streak notification failed: {exc}",
                extra={"operation": update.operation, "habit_id": update.habit_id, "user_id": update.user_id},
            )

    def _reject_now(
        self,
        operation: str,
        habit_id: str,
        user_id: str,
        kind: ErrorKind,
        message: str,
        *,
        action: str = ACTION_COMPLETION_REJECTED,
        entity_type: str = "completion",
        actor_id: Optional[str] = None,
    ) -> Result:
        """Reject before any store read and audit the attempt."""
        now = ensure_aware(self._clock())
        record_audit_event(
            self.store,
            build_audit_entry(
                action=action,
                user_id=actor_id or user_id,
                habit_id=habit_id,
                entity_type=entity_type,
                entity_id=habit_id,
                new_data={"user_id": user_id, "operation": operation},
                validation_errors=[message],
                now=now,
            ),
        )
        streak_operations_total.inc(labels={"operation": operation, "outcome": kind.value})
        log_event(
            "warning",
            "streak.rejected",
            user_id=user_id,
            habit_id=habit_id,
            event_type=operation,
            error_code=kind.value,
            extra={"reason": message},
            logger_name=logger.name,
        )
        return Result.failure(kind, message)

    def _reject_ownership(self, operation: str, habit_id: str, user_id: str, actor_id: str) -> Result:
        return self._reject_now(
            operation,
            habit_id,
            user_id,
            ErrorKind.OWNERSHIP_MISMATCH,
            "habit does not belong to the requesting user",
            action=ACTION_UNAUTHORIZED,
            entity_type="habit",
            actor_id=actor_id,
        )

    def _fail(self, operation: str, habit_id: str, user_id: str, kind: ErrorKind, message: str, now: datetime, exc: Exception) -> Result:
        record_audit_event(
            self.store,
            build_audit_entry(
                action=ACTION_OPERATION_FAILED,
                user_id=user_id,
                habit_id=habit_id,
                entity_type="streak",
                entity_id=f"{habit_id}:{user_id}",
                new_data={"operation": operation, "error": kind.value},
                validation_errors=[message],
                now=now,
            ),
        )
        streak_operations_total.inc(labels={"operation": operation, "outcome": kind.value})
        log_event(
            "error",
            "streak.operation_failed",
            user_id=user_id,
            habit_id=habit_id,
            event_type=operation,
            error_code=kind.value,
            extra={"reason": message, "exception": type(exc).__name__},
            logger_name=logger.name,
        )
        return Result.failure(kind, message)

    def _internal(self, operation: str, habit_id: str, user_id: str, exc: Exception) -> Result:
        logger.error(
            "streak.read_error",
            exc_info=True,
            extra={"operation": operation, "habit_id": habit_id, "user_id": user_id},
        )
        streak_operations_total.inc(labels={"operation": operation, "outcome": ErrorKind.INTERNAL.value})
        return Result.failure(ErrorKind.INTERNAL, f"{operation} failed: {type(exc).__name__}")
