"""Tests for structured logging and request_id propagation."""

import json
import logging

from fastapi.testclient import TestClient

from habitstreak.core.logging import JsonFormatter, log_event
from habitstreak.main import app, create_app


def test_request_id_in_response_and_logs(caplog):
    client = TestClient(app)
    with caplog.at_level(logging.INFO, logger="habitstreak"):
        response = client.get("/healthz")
    rid = response.headers.get("x-request-id")
    assert rid
    records = [r for r in caplog.records if getattr(r, "request_id", None) == rid]
    assert records, "Expected logs to contain request_id from response"
    assert len({r.request_id for r in records}) == 1


def test_incoming_request_id_is_kept():
    client = TestClient(app)
    response = client.get("/healthz", headers={"x-request-id": "rid-upstream"})
    assert response.headers["x-request-id"] == "rid-upstream"


def test_request_id_in_error_response(engine):
    client = TestClient(create_app(engine))
    response = client.get("/v1/habits/h1/calendar", params={"days": 0}, headers={"X-User-Id": "u1"})
    rid = response.headers.get("x-request-id")
    assert response.status_code == 400
    assert rid
    payload = response.json()
    assert payload["error"]["request_id"] == rid


def test_engine_logs_carry_habit_and_user(engine, caplog):
    with caplog.at_level(logging.INFO, logger="habitstreak"):
        engine.record_completion("h1", "u1")
    records = [r for r in caplog.records if r.getMessage() == "streak.operation"]
    assert records
    assert records[0].habit_id == "h1"
    assert records[0].user_id == "u1"
    assert records[0].event_type == "record_completion"


def test_json_formatter_includes_structured_fields():
    record = logging.makeLogRecord({"name": "habitstreak", "levelname": "INFO", "msg": "streak.rejected"})
    record.error_code = "already_exists"
    record.request_id = "rid-1"

    payload = json.loads(JsonFormatter().format(record))

    assert payload["message"] == "streak.rejected"
    assert payload["error_code"] == "already_exists"
    assert payload["request_id"] == "rid-1"


def test_log_event_truncates_extra(caplog):
    with caplog.at_level(logging.INFO, logger="habitstreak"):
        log_event("info", "audit.note", user_id="u1", extra={"reason": "x" * 800})
    record = next(r for r in caplog.records if r.getMessage() == "audit.note")
    assert record.reason.endswith("...<truncated>")
