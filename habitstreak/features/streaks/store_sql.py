"""
SQL-backed habit store (SQLAlchemy Core).

Same interface as InMemoryHabitStore. Commits are optimistic: the streak row
carries a version, and a commit only succeeds if the version it read is
still current.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import and_, delete, insert, select, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from habitstreak.core.database import (
    audit_log,
    create_all_tables,
    check_connection,
    get_db_session,
    habit_completions,
    habit_streaks,
    suspicious_activity,
)
from habitstreak.core.errors import WriteConflict
from habitstreak.features.streaks.store import HabitStore, HabitTransaction, Key, dump_completion, dump_streak
from habitstreak.models.streak import AuditLogEntry, CompletionEvent, StreakState, SuspiciousActivity


def _completion_doc(row) -> Dict[str, Any]:
    return dict(row._mapping)


def _audit_values(entry: AuditLogEntry) -> Dict[str, Any]:
    return {
        "ts": entry.timestamp,
        "user_id": entry.user_id,
        "habit_id": entry.habit_id,
        "action": entry.action,
        "entity_type": entry.entity_type,
        "entity_id": entry.entity_id,
        "old_data": entry.old_data,
        "new_data": entry.new_data,
        "validation_errors": entry.validation_errors,
        "suspicious_flags": entry.suspicious_flags,
        "warnings": entry.warnings,
        "risk_level": entry.risk_level,
        "request_id": entry.request_id,
    }


def _suspicious_values(record: SuspiciousActivity) -> Dict[str, Any]:
    return record.model_dump(exclude={"id"})


class _SqlTransaction(HabitTransaction):
    def __init__(self, store: "SqlHabitStore", habit_id: str, user_id: str):
        super().__init__(store, habit_id, user_id)
        with get_db_session(store.engine) as session:
            row = session.execute(
                select(habit_streaks.c.document, habit_streaks.c.version).where(
                    and_(habit_streaks.c.habit_id == habit_id, habit_streaks.c.user_id == user_id)
                )
            ).first()
            rows = session.execute(
                select(habit_completions).where(
                    and_(habit_completions.c.habit_id == habit_id, habit_completions.c.user_id == user_id)
                )
            ).fetchall()
        self.version: Optional[int] = row.version if row else None
        self._streak_doc = dict(row.document) if row else None
        self._completion_docs = [_completion_doc(r) for r in rows]

    def get_streak(self) -> Optional[StreakState]:
        return self.store.decode_streak(self._streak_doc)

    def get_completions(self) -> List[CompletionEvent]:
        return self.store.decode_completions(self._completion_docs)

    def commit(self) -> None:
        self.store._apply(self)


class SqlHabitStore(HabitStore):
    def __init__(self, engine: Engine, *, create_tables: bool = True):
        super().__init__()
        self.engine = engine
        if create_tables:
            create_all_tables(engine)

    def begin(self, habit_id: str, user_id: str) -> HabitTransaction:
        return _SqlTransaction(self, habit_id, user_id)

    def _apply(self, txn: _SqlTransaction) -> None:
        key_filter = and_(habit_streaks.c.habit_id == txn.habit_id, habit_streaks.c.user_id == txn.user_id)
        now = txn.streak.updated_at if txn.streak is not None and txn.streak.updated_at else datetime.now(timezone.utc)
        try:
            with get_db_session(self.engine) as session:
                if txn.version is None:
                    if txn.streak is not None:
                        session.execute(
                            insert(habit_streaks).values(
                                habit_id=txn.habit_id,
                                user_id=txn.user_id,
                                document=dump_streak(txn.streak),
                                version=1,
                                updated_at=now,
                            )
                        )
                else:
                    values: Dict[str, Any] = {"version": txn.version + 1, "updated_at": now}
                    if txn.streak is not None:
                        values["document"] = dump_streak(txn.streak)
                    result = session.execute(
                        update(habit_streaks)
                        .where(and_(key_filter, habit_streaks.c.version == txn.version))
                        .values(**values)
                    )
                    if result.rowcount != 1:
                        raise WriteConflict(f"concurrent update on {txn.habit_id}/{txn.user_id}")

                for event_id, at in txn.deactivations.items():
                    result = session.execute(
                        update(habit_completions)
                        .where(and_(habit_completions.c.id == event_id, habit_completions.c.active.is_(True)))
                        .values(active=False, deactivated_at=at)
                    )
                    if result.rowcount != 1:
                        raise WriteConflict(f"completion {event_id} is no longer active")

                for event in txn.new_completions:
                    session.execute(insert(habit_completions).values(**dump_completion(event)))
                for entry in txn.audit_entries:
                    session.execute(insert(audit_log).values(**_audit_values(entry)))
                for record in txn.suspicious:
                    session.execute(insert(suspicious_activity).values(**_suspicious_values(record)))
        except IntegrityError as exc:
            raise WriteConflict(f"concurrent insert on {txn.habit_id}/{txn.user_id}") from exc

    def get(self, habit_id: str, user_id: str) -> List[CompletionEvent]:
        with get_db_session(self.engine) as session:
            rows = session.execute(
                select(habit_completions).where(
                    and_(habit_completions.c.habit_id == habit_id, habit_completions.c.user_id == user_id)
                )
            ).fetchall()
        return self.decode_completions([_completion_doc(r) for r in rows])

    def put(self, event: CompletionEvent) -> None:
        with get_db_session(self.engine) as session:
            session.execute(insert(habit_completions).values(**dump_completion(event)))
            session.execute(
                update(habit_streaks)
                .where(and_(habit_streaks.c.habit_id == event.habit_id, habit_streaks.c.user_id == event.user_id))
                .values(version=habit_streaks.c.version + 1)
            )

    def get_streak(self, habit_id: str, user_id: str) -> Optional[StreakState]:
        with get_db_session(self.engine) as session:
            row = session.execute(
                select(habit_streaks.c.document).where(
                    and_(habit_streaks.c.habit_id == habit_id, habit_streaks.c.user_id == user_id)
                )
            ).first()
        return self.decode_streak(dict(row.document) if row else None)

    def append_audit(self, entry: AuditLogEntry) -> None:
        with get_db_session(self.engine) as session:
            session.execute(insert(audit_log).values(**_audit_values(entry)))

    def list_audit(self, *, user_id: Optional[str] = None, habit_id: Optional[str] = None, action: Optional[str] = None) -> List[AuditLogEntry]:
        query = select(audit_log)
        filters = []
        if user_id:
            filters.append(audit_log.c.user_id == user_id)
        if habit_id:
            filters.append(audit_log.c.habit_id == habit_id)
        if action:
            filters.append(audit_log.c.action == action)
        if filters:
            query = query.where(and_(*filters))
        with get_db_session(self.engine) as session:
            rows = session.execute(query.order_by(audit_log.c.id)).fetchall()
        return [
            AuditLogEntry(
                id=row.id,
                user_id=row.user_id,
                habit_id=row.habit_id,
                action=row.action,
                entity_type=row.entity_type,
                entity_id=row.entity_id,
                old_data=row.old_data,
                new_data=row.new_data,
                validation_errors=row.validation_errors or [],
                suspicious_flags=row.suspicious_flags or [],
                warnings=row.warnings or [],
                risk_level=row.risk_level,
                request_id=row.request_id,
                timestamp=row.ts,
            )
            for row in rows
        ]

    def record_suspicious(self, record: SuspiciousActivity) -> None:
        with get_db_session(self.engine) as session:
            session.execute(insert(suspicious_activity).values(**_suspicious_values(record)))

    def list_suspicious(self, *, user_id: Optional[str] = None) -> List[SuspiciousActivity]:
        query = select(suspicious_activity)
        if user_id:
            query = query.where(suspicious_activity.c.user_id == user_id)
        with get_db_session(self.engine) as session:
            rows = session.execute(query.order_by(suspicious_activity.c.id)).fetchall()
        return [SuspiciousActivity.model_validate(dict(row._mapping)) for row in rows]

    def completions_created_since(self, instant: datetime) -> List[CompletionEvent]:
        with get_db_session(self.engine) as session:
            rows = session.execute(
                select(habit_completions).where(habit_completions.c.created_at >= instant)
            ).fetchall()
        return self.decode_completions([_completion_doc(r) for r in rows])

    def active_keys(self) -> List[Key]:
        with get_db_session(self.engine) as session:
            rows = session.execute(
                select(habit_streaks.c.habit_id, habit_streaks.c.user_id).order_by(
                    habit_streaks.c.habit_id, habit_streaks.c.user_id
                )
            ).fetchall()
        return [(row.habit_id, row.user_id) for row in rows]

    def purge(self, habit_id: str, user_id: str) -> Dict[str, int]:
        with get_db_session(self.engine) as session:
            completions = session.execute(
                delete(habit_completions).where(
                    and_(habit_completions.c.habit_id == habit_id, habit_completions.c.user_id == user_id)
                )
            ).rowcount
            streaks = session.execute(
                delete(habit_streaks).where(
                    and_(habit_streaks.c.habit_id == habit_id, habit_streaks.c.user_id == user_id)
                )
            ).rowcount
        return {"completions": completions, "streaks": streaks}

    def check(self) -> bool:
        return check_connection(self.engine)

    def close(self) -> None:
        self.engine.dispose()
