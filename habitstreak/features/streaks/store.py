"""
Habit event store: completion log, streak aggregate, audit and fraud tables.

Writes for one (habit, user) go through a transaction that reads a snapshot,
buffers its writes, and applies them atomically on commit. A commit that
races another commit on the same key raises WriteConflict; the engine
retries with backoff.
"""

from __future__ import annotations

import copy
import logging
import threading
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple, TypeVar

from pydantic import ValidationError as SchemaValidationError

from habitstreak.core.errors import StoreSchemaError, WriteConflict
from habitstreak.models.streak import AuditLogEntry, CompletionEvent, StreakState, SuspiciousActivity

logger = logging.getLogger("habitstreak.store")

T = TypeVar("T")
Key = Tuple[str, str]


class HabitTransaction(ABC):
    """Snapshot reads plus buffered writes for a single (habit, user)."""

    def __init__(self, store: "HabitStore", habit_id: str, user_id: str):
        self.store = store
        self.habit_id = habit_id
        self.user_id = user_id
        self.new_completions: List[CompletionEvent] = []
        self.deactivations: Dict[str, datetime] = {}
        self.streak: Optional[StreakState] = None
        self.audit_entries: List[AuditLogEntry] = []
        self.suspicious: List[SuspiciousActivity] = []

    @abstractmethod
    def get_streak(self) -> Optional[StreakState]:
        ...

    @abstractmethod
    def get_completions(self) -> List[CompletionEvent]:
        ...

    @abstractmethod
    def commit(self) -> None:
        ...

    def put_completion(self, event: CompletionEvent) -> None:
        self.new_completions.append(event)

    def deactivate_completion(self, event_id: str, at: datetime) -> None:
        self.deactivations[event_id] = at

    def put_streak(self, state: StreakState) -> None:
        self.streak = state

    def append_audit(self, entry: AuditLogEntry) -> None:
        self.audit_entries.append(entry)

    def record_suspicious(self, record: SuspiciousActivity) -> None:
        self.suspicious.append(record)

    @property
    def has_writes(self) -> bool:
        return bool(
            self.new_completions
            or self.deactivations
            or self.streak is not None
            or self.audit_entries
            or self.suspicious
        )


class HabitStore(ABC):
    def __init__(self):
        self.quarantined: List[Dict[str, Any]] = []

    @abstractmethod
    def begin(self, habit_id: str, user_id: str) -> HabitTransaction:
        ...

    def run_transaction(self, habit_id: str, user_id: str, fn: Callable[[HabitTransaction], T]) -> T:
        """Run `fn` against a fresh snapshot and commit its buffered writes.

        Raises WriteConflict when another commit on the same key got there
        first. Nothing is written if `fn` raises.
        """
        txn = self.begin(habit_id, user_id)
        result = fn(txn)
        if txn.has_writes:
            txn.commit()
        return result

    @abstractmethod
    def get(self, habit_id: str, user_id: str) -> List[CompletionEvent]:
        ...

    @abstractmethod
    def put(self, event: CompletionEvent) -> None:
        ...

    @abstractmethod
    def get_streak(self, habit_id: str, user_id: str) -> Optional[StreakState]:
        ...

    @abstractmethod
    def append_audit(self, entry: AuditLogEntry) -> None:
        ...

    @abstractmethod
    def list_audit(self, *, user_id: Optional[str] = None, habit_id: Optional[str] = None, action: Optional[str] = None) -> List[AuditLogEntry]:
        ...

    @abstractmethod
    def record_suspicious(self, record: SuspiciousActivity) -> None:
        ...

    @abstractmethod
    def list_suspicious(self, *, user_id: Optional[str] = None) -> List[SuspiciousActivity]:
        ...

    @abstractmethod
    def completions_created_since(self, instant: datetime) -> List[CompletionEvent]:
        ...

    @abstractmethod
    def active_keys(self) -> List[Key]:
        """Keys that have a streak aggregate."""

    @abstractmethod
    def purge(self, habit_id: str, user_id: str) -> Dict[str, int]:
        ...

    def check(self) -> bool:
        return True

    def close(self) -> None:
        """Release connections held by the store."""

    # Schema boundary -------------------------------------------------
    def decode_completions(self, docs: List[Dict[str, Any]]) -> List[CompletionEvent]:
        """Validate raw completion documents; invalid ones are quarantined."""
        events: List[CompletionEvent] = []
        for doc in docs:
            try:
                events.append(CompletionEvent.model_validate(doc))
            except SchemaValidationError as exc:
                if self._quarantine("completion", doc, exc):
                    logger.warning(
                        "store.quarantined",
                        extra={"kind": "completion", "document_id": doc.get("id"), "error_count": exc.error_count()},
                    )
        events.sort(key=lambda e: (e.completed_at, e.created_at, e.id))
        return events

    def _quarantine(self, kind: str, doc: Dict[str, Any], exc: SchemaValidationError) -> bool:
        """Remember a bad document once. Returns True the first time it is seen."""
        marker = (kind, str(doc.get("id", doc.get("habit_id"))), str(doc.get("user_id")))
        if any(q["marker"] == marker for q in self.quarantined):
            return False
        self.quarantined.append({"kind": kind, "marker": marker, "document": doc, "error": str(exc)})
        return True

    def decode_streak(self, doc: Optional[Dict[str, Any]]) -> Optional[StreakState]:
        if doc is None:
            return None
        try:
            return StreakState.model_validate(doc)
        except SchemaValidationError as exc:
            self._quarantine("streak", doc, exc)
            raise StoreSchemaError(f"streak document failed validation: {exc.error_count()} error(s)") from exc


def dump_completion(event: CompletionEvent) -> Dict[str, Any]:
    return event.model_dump()


def dump_streak(state: StreakState) -> Dict[str, Any]:
    return state.model_dump(mode="json")


class _MemoryTransaction(HabitTransaction):
    def __init__(self, store: "InMemoryHabitStore", habit_id: str, user_id: str):
        super().__init__(store, habit_id, user_id)
        key = (habit_id, user_id)
        with store._lock:
            self.version = store._versions.get(key, 0)
            self._completion_docs = copy.deepcopy(list(store._completions.get(key, {}).values()))
            self._streak_doc = copy.deepcopy(store._streaks.get(key))

    def get_streak(self) -> Optional[StreakState]:
        return self.store.decode_streak(self._streak_doc)

    def get_completions(self) -> List[CompletionEvent]:
        return self.store.decode_completions(self._completion_docs)

    def commit(self) -> None:
        self.store._apply(self)


class InMemoryHabitStore(HabitStore):
    """
    Process-local store. Documents are kept as plain dicts so reads pass the
    same schema boundary as the SQL store.
    """

    def __init__(self):
        super().__init__()
        self._lock = threading.RLock()
        self._completions: Dict[Key, Dict[str, Dict[str, Any]]] = {}
        self._streaks: Dict[Key, Dict[str, Any]] = {}
        self._versions: Dict[Key, int] = {}
        self._audit: List[Dict[str, Any]] = []
        self._suspicious: List[Dict[str, Any]] = []

    def begin(self, habit_id: str, user_id: str) -> HabitTransaction:
        return _MemoryTransaction(self, habit_id, user_id)

    def _apply(self, txn: _MemoryTransaction) -> None:
        key = (txn.habit_id, txn.user_id)
        with self._lock:
            if self._versions.get(key, 0) != txn.version:
                raise WriteConflict(f"concurrent update on {key[0]}/{key[1]}")
            docs = self._completions.setdefault(key, {})
            for event_id, at in txn.deactivations.items():
                doc = docs.get(event_id)
                if doc is None or not doc.get("active", True):
                    raise WriteConflict(f"completion {event_id} is no longer active")
                doc["active"] = False
                doc["deactivated_at"] = at
            for event in txn.new_completions:
                docs[event.id] = dump_completion(event)
            if txn.streak is not None:
                self._streaks[key] = dump_streak(txn.streak)
            for entry in txn.audit_entries:
                self._append_audit_locked(entry)
            for record in txn.suspicious:
                self._record_suspicious_locked(record)
            self._versions[key] = txn.version + 1

    def get(self, habit_id: str, user_id: str) -> List[CompletionEvent]:
        with self._lock:
            docs = copy.deepcopy(list(self._completions.get((habit_id, user_id), {}).values()))
        return self.decode_completions(docs)

    def put(self, event: CompletionEvent) -> None:
        key = (event.habit_id, event.user_id)
        with self._lock:
            self._completions.setdefault(key, {})[event.id] = dump_completion(event)
            self._versions[key] = self._versions.get(key, 0) + 1

    def put_raw_completion(self, habit_id: str, user_id: str, doc: Dict[str, Any]) -> None:
        """Store a document without validation. FOR TESTING ONLY."""
        with self._lock:
            self._completions.setdefault((habit_id, user_id), {})[str(doc.get("id"))] = doc

    def put_raw_streak(self, habit_id: str, user_id: str, doc: Dict[str, Any]) -> None:
        """Store a streak document without validation. FOR TESTING ONLY."""
        with self._lock:
            self._streaks[(habit_id, user_id)] = doc

    def get_streak(self, habit_id: str, user_id: str) -> Optional[StreakState]:
        with self._lock:
            doc = copy.deepcopy(self._streaks.get((habit_id, user_id)))
        return self.decode_streak(doc)

    def append_audit(self, entry: AuditLogEntry) -> None:
        with self._lock:
            self._append_audit_locked(entry)

    def _append_audit_locked(self, entry: AuditLogEntry) -> None:
        doc = entry.model_dump()
        doc["id"] = len(self._audit) + 1
        self._audit.append(doc)

    def list_audit(self, *, user_id: Optional[str] = None, habit_id: Optional[str] = None, action: Optional[str] = None) -> List[AuditLogEntry]:
        with self._lock:
            docs = list(self._audit)
        entries = [AuditLogEntry.model_validate(doc) for doc in docs]
        return [
            e for e in entries
            if (user_id is None or e.user_id == user_id)
            and (habit_id is None or e.habit_id == habit_id)
            and (action is None or e.action == action)
        ]

    def record_suspicious(self, record: SuspiciousActivity) -> None:
        with self._lock:
            self._record_suspicious_locked(record)

    def _record_suspicious_locked(self, record: SuspiciousActivity) -> None:
        doc = record.model_dump()
        doc["id"] = len(self._suspicious) + 1
        self._suspicious.append(doc)

    def list_suspicious(self, *, user_id: Optional[str] = None) -> List[SuspiciousActivity]:
        with self._lock:
            docs = list(self._suspicious)
        records = [SuspiciousActivity.model_validate(doc) for doc in docs]
        return [r for r in records if user_id is None or r.user_id == user_id]

    def completions_created_since(self, instant: datetime) -> List[CompletionEvent]:
        with self._lock:
            docs = [copy.deepcopy(doc) for key in self._completions for doc in self._completions[key].values()]
        return [e for e in self.decode_completions(docs) if e.created_at >= instant]

    def active_keys(self) -> List[Key]:
        with self._lock:
            return sorted(self._streaks.keys())

    def purge(self, habit_id: str, user_id: str) -> Dict[str, int]:
        key = (habit_id, user_id)
        with self._lock:
            removed = len(self._completions.pop(key, {}))
            had_streak = self._streaks.pop(key, None) is not None
            self._versions[key] = self._versions.get(key, 0) + 1
        return {"completions": removed, "streaks": int(had_streak)}

    def clear(self) -> None:
        """Drop everything. FOR TESTING ONLY."""
        with self._lock:
            self._completions.clear()
            self._streaks.clear()
            self._versions.clear()
            self._audit.clear()
            self._suspicious.clear()
            self.quarantined.clear()
