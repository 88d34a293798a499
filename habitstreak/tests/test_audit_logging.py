import logging
from collections import deque
from datetime import date, datetime, timezone

from habitstreak.core.logging import request_id_ctx_var
from habitstreak.features.audit import service as audit_service
from habitstreak.features.audit.service import (
    ACTION_COMPLETION_RECORDED,
    ACTION_FREEZE_REJECTED,
    ACTION_OPERATION_FAILED,
    ACTION_UNAUTHORIZED,
    build_audit_entry,
    get_buffered_audit_events,
    record_audit_event,
    risk_level_for,
    sanitize,
)
from habitstreak.tests.mocks import FIXED_NOW


class BrokenStore:
    def append_audit(self, entry):
        raise RuntimeError("audit table unavailable")


def test_audit_entry_written_to_store(store):
    entry = build_audit_entry(
        action=ACTION_COMPLETION_RECORDED,
        user_id="user-123",
        habit_id="habit-123",
        entity_type="completion",
        entity_id="c1",
        new_data={"completed_at": FIXED_NOW},
        request_id="rid-123",
        now=FIXED_NOW,
    )

    assert record_audit_event(store, entry) is True

    rows = store.list_audit(user_id="user-123")
    assert len(rows) == 1
    assert rows[0].request_id == "rid-123"
    assert rows[0].habit_id == "habit-123"
    assert rows[0].new_data == {"completed_at": FIXED_NOW.isoformat()}


def test_audit_buffer_when_store_fails():
    entry = build_audit_entry(action=ACTION_COMPLETION_RECORDED, user_id="u1", entity_type="completion", now=FIXED_NOW)

    before = len(get_buffered_audit_events())
    assert record_audit_event(BrokenStore(), entry) is False
    after = len(get_buffered_audit_events())

    assert after == before + 1


def test_audit_buffer_keeps_newest_entries_when_full(monkeypatch, caplog):
    monkeypatch.setattr(audit_service, "_memory_events", deque(maxlen=2))
    entries = [
        build_audit_entry(action=ACTION_COMPLETION_RECORDED, user_id=f"u{n}", entity_type="completion", now=FIXED_NOW)
        for n in range(3)
    ]

    with caplog.at_level(logging.WARNING, logger="habitstreak"):
        for entry in entries:
            record_audit_event(BrokenStore(), entry)

    assert [e.user_id for e in get_buffered_audit_events()] == ["u1", "u2"]
    dropped = [r for r in caplog.records if r.getMessage() == "audit.buffer_full"]
    assert len(dropped) == 1
    assert dropped[0].user_id == "u0"


def test_request_id_taken_from_context():
    token = request_id_ctx_var.set("rid-from-context")
    try:
        entry = build_audit_entry(action=ACTION_COMPLETION_RECORDED, user_id="u1", entity_type="completion")
    finally:
        request_id_ctx_var.reset(token)

    assert entry.request_id == "rid-from-context"
    assert entry.timestamp.tzinfo is not None


def test_risk_levels():
    assert risk_level_for(ACTION_UNAUTHORIZED) == "critical"
    assert risk_level_for(ACTION_FREEZE_REJECTED) == "high"
    assert risk_level_for(ACTION_OPERATION_FAILED) == "medium"
    assert risk_level_for(ACTION_COMPLETION_RECORDED, ["identical_timestamp"]) == "medium"
    assert risk_level_for(ACTION_COMPLETION_RECORDED) == "low"


def test_sanitize_compacts_payloads():
    payload = {
        "streak": None,
        "notes": "",
        "day": date(2024, 3, 15),
        "at": datetime(2024, 3, 15, 12, tzinfo=timezone.utc),
        "long": "x" * 1500,
        "flags": [],
    }

    cleaned = sanitize(payload)

    assert set(cleaned) == {"day", "at", "long"}
    assert cleaned["day"] == "2024-03-15"
    assert cleaned["long"].endswith("...<truncated>")
    assert sanitize({"streak": None}) is None
