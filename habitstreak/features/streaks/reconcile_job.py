"""
Scheduled reconciliation and fraud scan.

Runs the engine's reconcile path for every stored aggregate, then scans
recent completions across all users for suspicious patterns. One failing
key never aborts the sweep; the sweep stops at its deadline.
"""
from __future__ import annotations

import logging
import time
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from habitstreak.core.metrics import streak_fraud_flags_total
from habitstreak.features.audit.service import ACTION_SUSPICIOUS, build_audit_entry, record_audit_event
from habitstreak.features.streaks.service import StreakEngine
from habitstreak.features.streaks.store import HabitStore
from habitstreak.features.streaks.validation import (
    FLAG_HOURLY,
    FLAG_IDENTICAL_TIMESTAMP,
    FLAG_SIMULTANEOUS_HABITS,
    IntegrityLimits,
    risk_level_for_flags,
)
from habitstreak.models.streak import CompletionEvent, SuspiciousActivity

logger = logging.getLogger("habitstreak.sweep")


def run_reconcile_sweep(
    engine: StreakEngine,
    *,
    keys: Optional[Iterable[Tuple[str, str]]] = None,
    deadline: Optional[float] = None,
    monotonic: Callable[[], float] = time.monotonic,
) -> Dict[str, Any]:
    checked = changed = corrected = failed = 0
    errors: List[Dict[str, str]] = []
    timed_out = False

    for habit_id, user_id in list(keys if keys is not None else engine.store.active_keys()):
        if deadline is not None and monotonic() >= deadline:
            timed_out = True
            break
        try:
            result = engine.reconcile(habit_id, user_id)
        except Exception as exc:
            failed += 1
            errors.append({"habit_id": habit_id, "user_id": user_id, "error": type(exc).__name__})
            logger.error("[sweep] reconcile crashed", exc_info=True, extra={"habit_id": habit_id, "user_id": user_id})
            continue
        if not result.ok:
            failed += 1
            errors.append({"habit_id": habit_id, "user_id": user_id, "error": result.error.kind.value})
            continue
        checked += 1
        changed += int(result.value.changed)
        corrected += int(result.value.corrected)

    return {
        "checked": checked,
        "changed": changed,
        "corrected": corrected,
        "failed": failed,
        "errors": errors,
        "timed_out": timed_out,
    }


def sweep_flags(events: List[CompletionEvent], *, now: datetime, limits: IntegrityLimits) -> List[str]:
    """Cross-habit heuristics for one user's recent completions (advisory)."""
    flags: List[str] = []
    hour_ago = now - timedelta(hours=1)
    if sum(1 for e in events if e.created_at >= hour_ago) > limits.max_per_hour:
        flags.append(FLAG_HOURLY)

    habits_by_instant: Dict[datetime, set] = defaultdict(set)
    counts_by_instant: Dict[datetime, int] = defaultdict(int)
    for event in events:
        habits_by_instant[event.completed_at].add(event.habit_id)
        counts_by_instant[event.completed_at] += 1
    if any(count > 1 for count in counts_by_instant.values()):
        flags.append(FLAG_IDENTICAL_TIMESTAMP)
    if any(len(habits) > limits.max_habits_same_instant for habits in habits_by_instant.values()):
        flags.append(FLAG_SIMULTANEOUS_HABITS)
    return flags


def run_fraud_scan(
    store: HabitStore,
    *,
    now: Optional[datetime] = None,
    window_hours: int = 1,
    limits: IntegrityLimits = IntegrityLimits(),
    deadline: Optional[float] = None,
    monotonic: Callable[[], float] = time.monotonic,
) -> Dict[str, Any]:
    ts = now or datetime.now(timezone.utc)
    recent = [e for e in store.completions_created_since(ts - timedelta(hours=window_hours)) if e.active]

    by_user: Dict[str, List[CompletionEvent]] = defaultdict(list)
    for event in recent:
        by_user[event.user_id].append(event)

    flagged: List[Dict[str, Any]] = []
    failed = 0
    timed_out = False
    for user_id in sorted(by_user):
        if deadline is not None and monotonic() >= deadline:
            timed_out = True
            break
        events = by_user[user_id]
        try:
            flags = sweep_flags(events, now=ts, limits=limits)
            if not flags:
                continue
            risk = risk_level_for_flags(flags)
            store.record_suspicious(
                SuspiciousActivity(
                    user_id=user_id,
                    flags=flags,
                    risk_level=risk,
                    completions_count=len(events),
                    detected_at=ts,
                    source="sweep",
                )
            )
            record_audit_event(
                store,
                build_audit_entry(
                    action=ACTION_SUSPICIOUS,
                    user_id=user_id,
                    entity_type="system",
                    entity_id="fraud_scan",
                    new_data={"completions": len(events), "habits": sorted({e.habit_id for e in events})},
                    suspicious_flags=flags,
                    now=ts,
                ),
            )
            for flag in flags:
                streak_fraud_flags_total.inc(labels={"flag": flag})
            flagged.append({"user_id": user_id, "flags": flags, "risk_level": risk})
        except Exception:
            failed += 1
            logger.error("[sweep] fraud scan failed for user", exc_info=True, extra={"user_id": user_id})

    logger.info(
        "[sweep] fraud scan",
        extra={"users_scanned": len(by_user), "users_flagged": len(flagged), "failed": failed},
    )
    return {
        "users_scanned": len(by_user),
        "flagged": flagged,
        "failed": failed,
        "timed_out": timed_out,
    }
