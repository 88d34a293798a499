import logging
from collections import deque
from datetime import date, datetime, timezone
from typing import Any, Deque, Dict, List, Optional, Sequence

from habitstreak.core.config import settings
from habitstreak.core.logging import get_request_id
from habitstreak.models.streak import AuditLogEntry

logger = logging.getLogger("habitstreak.audit")

# Fallback buffer when the store write fails; the oldest entry is dropped when full
_memory_events: Deque[AuditLogEntry] = deque(maxlen=settings.AUDIT_BUFFER_MAX_ENTRIES)

ACTION_COMPLETION_RECORDED = "completion_recorded"
ACTION_COMPLETION_REJECTED = "completion_validation_failed"
ACTION_COMPLETION_UNDONE = "completion_undone"
ACTION_STREAK_INITIALIZED = "streak_initialized"
ACTION_STREAK_CALCULATED = "streak_calculated"
ACTION_STREAK_CORRECTED = "streak_integrity_corrected"
ACTION_STREAK_RECONCILED = "streak_reconciled"
ACTION_INTEGRITY_VIOLATION = "data_integrity_violation"
ACTION_UNAUTHORIZED = "unauthorized_access_attempt"
ACTION_FREEZE_USED = "streak_freeze_used"
ACTION_FREEZE_REJECTED = "freeze_validation_failed"
ACTION_SUSPICIOUS = "suspicious_activity_detected"
ACTION_HABIT_PURGED = "habit_purged"
ACTION_OPERATION_FAILED = "operation_failed"

_CRITICAL_ACTIONS = {ACTION_UNAUTHORIZED, ACTION_INTEGRITY_VIOLATION}
_HIGH_ACTIONS = {ACTION_SUSPICIOUS, ACTION_COMPLETION_REJECTED, ACTION_FREEZE_REJECTED}
_MEDIUM_ACTIONS = {ACTION_STREAK_CORRECTED, ACTION_OPERATION_FAILED}

MAX_STRING_LENGTH = 1000


def _safe_truncate(value: Any, limit: int = MAX_STRING_LENGTH):
    try:
        text = str(value)
    except Exception:
        return "<unserializable>"
    if len(text) <= limit:
        return text
    return text[:limit] + "...<truncated>"


def risk_level_for(action: str, suspicious_flags: Optional[Sequence[str]] = None) -> str:
    if action in _CRITICAL_ACTIONS:
        return "critical"
    if action in _HIGH_ACTIONS:
        return "high"
    if action in _MEDIUM_ACTIONS or suspicious_flags:
        return "medium"
    return "low"


def sanitize(value: Any) -> Any:
    """Make audit payloads JSON-safe and compact.

    Empty values are dropped, long strings are truncated, dates become ISO
    strings. Returns None when nothing is left.
    """
    if isinstance(value, dict):
        cleaned = {}
        for key, item in value.items():
            item = sanitize(item)
            if item is not None:
                cleaned[str(key)] = item
        return cleaned or None
    if isinstance(value, (list, tuple, set)):
        items = [sanitize(item) for item in value]
        items = [item for item in items if item is not None]
        return items or None
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, str):
        return _safe_truncate(value) if value else None
    if value is None or isinstance(value, (bool, int, float)):
        return value
    return _safe_truncate(value)


def build_audit_entry(
    *,
    action: str,
    user_id: str,
    entity_type: str,
    habit_id: Optional[str] = None,
    entity_id: Optional[str] = None,
    old_data: Optional[Dict[str, Any]] = None,
    new_data: Optional[Dict[str, Any]] = None,
    validation_errors: Optional[Sequence[str]] = None,
    suspicious_flags: Optional[Sequence[str]] = None,
    warnings: Optional[Sequence[str]] = None,
    now: Optional[datetime] = None,
    request_id: Optional[str] = None,
) -> AuditLogEntry:
    flags = list(suspicious_flags or [])
    return AuditLogEntry(
        user_id=user_id,
        habit_id=habit_id,
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        old_data=sanitize(old_data),
        new_data=sanitize(new_data),
        validation_errors=[_safe_truncate(e) for e in validation_errors or []],
        suspicious_flags=flags,
        warnings=[_safe_truncate(w) for w in warnings or []],
        risk_level=risk_level_for(action, flags),
        request_id=request_id or get_request_id(),
        timestamp=now or datetime.now(timezone.utc),
    )


def record_audit_event(store, entry: AuditLogEntry) -> bool:
    """Write an audit entry outside a transaction (rejected attempts, sweeps).

    Entries that cannot be written are kept in a process-local buffer so the
    attempt is never lost silently.
    """
    try:
        store.append_audit(entry)
    except Exception as exc:
        logger.warning(f"Audit event write failed: {exc}", extra={"action": entry.action, "user_id": entry.user_id})
        if len(_memory_events) == _memory_events.maxlen:
            dropped = _memory_events[0]
            logger.error(
                "audit.buffer_full",
                extra={"action": dropped.action, "user_id": dropped.user_id, "buffer_size": _memory_events.maxlen},
            )
        _memory_events.append(entry)
        return False

    if entry.risk_level in ("high", "critical"):
        logger.warning(
            "audit.high_risk",
            extra={"action": entry.action, "user_id": entry.user_id, "habit_id": entry.habit_id, "risk_level": entry.risk_level},
        )
    return True


def get_buffered_audit_events() -> List[AuditLogEntry]:
    return list(_memory_events)


def clear_buffered_audit_events() -> None:
    _memory_events.clear()
