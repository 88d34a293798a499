from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

from habitstreak.main import create_app
from habitstreak.tests.mocks import FIXED_NOW

USER = {"X-User-Id": "u1"}


@pytest.fixture
def client(engine):
    return TestClient(create_app(engine))


def test_record_completion_returns_streak(client):
    resp = client.post("/v1/habits/h1/completions", json={"difficulty": "hard", "notes": "5k"}, headers=USER)

    assert resp.status_code == 201
    body = resp.json()
    assert body["completion"]["user_id"] == "u1"
    assert body["completion"]["difficulty"] == "hard"
    assert body["streak"]["current_streak"] == 1


def test_duplicate_completion_conflict_shape(client):
    client.post("/v1/habits/h1/completions", json={}, headers=USER)

    resp = client.post("/v1/habits/h1/completions", json={}, headers=USER)

    assert resp.status_code == 409
    body = resp.json()
    assert body["error"]["code"] == "already_exists"
    assert body["error"]["request_id"] == resp.headers["x-request-id"]
    assert body["detail"] == body["error"]["message"]


def test_missing_identity_is_unauthorized(client):
    resp = client.post("/v1/habits/h1/completions", json={})

    assert resp.status_code == 401
    assert resp.json()["error"]["request_id"] == resp.headers["x-request-id"]


def test_completion_for_another_user_forbidden(client, store):
    resp = client.post("/v1/habits/h1/completions", json={"user_id": "u2"}, headers=USER)

    assert resp.status_code == 403
    assert resp.json()["error"]["code"] == "forbidden"
    assert store.get("h1", "u2") == []


def test_future_completion_is_validation_error(client):
    future = (FIXED_NOW + timedelta(hours=2)).isoformat()

    resp = client.post("/v1/habits/h1/completions", json={"completed_at": future}, headers=USER)

    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "validation_error"


def test_undo_then_streak(client):
    client.post("/v1/habits/h1/completions", json={}, headers=USER)

    undo = client.delete("/v1/habits/h1/completions/last", headers=USER)
    assert undo.status_code == 200
    assert undo.json()["completion"]["active"] is False

    streak = client.get("/v1/habits/h1/streak", headers=USER)
    assert streak.json()["streak"]["current_streak"] == 0

    nothing = client.delete("/v1/habits/h1/completions/last", headers=USER)
    assert nothing.json() == {"completion": None}


def test_init_and_cached_streak(client):
    assert client.get("/v1/habits/h1/streak/cached", headers=USER).json() == {"streak": None}

    created = client.post("/v1/habits/h1/streak/init", headers=USER)
    assert created.status_code == 201
    assert created.json()["streak"]["freezes_available"] == 0

    cached = client.get("/v1/habits/h1/streak/cached", headers=USER)
    assert cached.json()["streak"]["habit_id"] == "h1"


def test_freeze_without_freezes(client):
    client.post("/v1/habits/h1/streak/init", headers=USER)

    resp = client.post("/v1/habits/h1/freezes", json={"missed_date": "2024-03-14"}, headers=USER)

    assert resp.status_code == 200
    assert resp.json()["used"] is False


def test_calendar_and_analytics(client):
    client.post("/v1/habits/h1/completions", json={}, headers=USER)

    calendar = client.get("/v1/habits/h1/calendar", params={"days": 3}, headers=USER)
    days = calendar.json()["days"]
    assert [d["date"] for d in days] == ["2024-03-13", "2024-03-14", "2024-03-15"]
    assert days[-1]["completed"] is True

    analytics = client.get("/v1/habits/h1/analytics", headers=USER).json()
    assert analytics["total_completions"] == 1
    assert analytics["best_day_of_week"] == "Friday"


def test_calendar_rejects_too_many_days(client):
    resp = client.get("/v1/habits/h1/calendar", params={"days": 400}, headers=USER)
    assert resp.status_code == 400


def test_purge_habit(client, store):
    client.post("/v1/habits/h1/completions", json={}, headers=USER)

    resp = client.delete("/v1/habits/h1", headers=USER)

    assert resp.json() == {"purged": {"completions": 1, "streaks": 1}}
    assert store.get("h1", "u1") == []


def test_metrics_exposed(client):
    client.post("/v1/habits/h1/completions", json={}, headers=USER)

    text = client.get("/metrics").text

    assert 'streak_operations_total{operation="record_completion",outcome="ok"} 1.0' in text
    assert "http_requests_total" in text
    assert "# TYPE streak_operations_total counter" in text
    assert "# HELP streak_cache_entries" in text
    assert 'http_requests_total{method="POST",path="/v1/habits/h1/completions",status="201"} 1.0' in text
