from __future__ import annotations

import logging
from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

from app import create_app
from backend.domain.models import MeetingType

from conftest import BASE_TIME, FakeClock, build_test_settings


@pytest.fixture
def api(tmp_path):
    settings = build_test_settings(tmp_path, "api.db", seed_demo_interpreters=True)
    clock = FakeClock()
    app = create_app(settings=settings, clock=clock)
    with TestClient(app) as client:
        yield client, app.state.repository, clock


def _create_booking(repository, days_ahead: float = 20, meeting_type=MeetingType.GENERAL) -> int:
    start = BASE_TIME + timedelta(days=days_ahead)
    return repository.create_booking(
        meeting_type=meeting_type,
        time_start=start,
        time_end=start + timedelta(hours=2),
    )


def test_policy_endpoints(api) -> None:
    client, _, _ = api

    response = client.get("/policy")
    assert response.status_code == 200
    assert response.json()["mode"] == "NORMAL"

    locked = client.patch("/policy", json={"w_fair": 3.0})
    assert locked.status_code == 400

    custom = client.post("/policy/mode", json={"mode": "CUSTOM"})
    assert custom.status_code == 200
    updated = client.patch("/policy", json={"w_fair": 3.0})
    assert updated.status_code == 200
    assert updated.json()["w_fair"] == 3.0

    out_of_range = client.patch("/policy", json={"max_gap_hours": 0.1})
    assert out_of_range.status_code == 400
    assert client.get("/policy").json()["max_gap_hours"] == 5.0

    assert client.patch("/policy", json={"bogus": 1}).status_code == 422
    assert client.patch("/policy", json={}).status_code == 400

    urgent = client.post("/policy/mode", json={"mode": "URGENT"})
    assert urgent.json()["w_fair"] == 0.5


def test_meeting_type_endpoints(api) -> None:
    client, _, _ = api

    priorities = client.get("/policy/meeting-types").json()
    assert [item["meeting_type"] for item in priorities][0] == "DR"
    assert len(priorities) == 5

    updated = client.patch("/policy/meeting-types/VIP", json={"priority_value": 6})
    assert updated.status_code == 200
    assert updated.json()["priority_value"] == 6

    invalid = client.patch("/policy/meeting-types/VIP", json={"urgent_threshold_days": 20})
    assert invalid.status_code == 400
    assert client.patch("/policy/meeting-types/Board", json={"priority_value": 2}).status_code == 400


def test_pool_lifecycle_over_http(api) -> None:
    client, repository, clock = api
    booking_id = _create_booking(repository)

    admitted = client.post(f"/bookings/{booking_id}/admit")
    assert admitted.status_code == 200
    assert admitted.json()["decision"] == "POOLED"
    assert client.post(f"/bookings/{booking_id}/admit").json()["decision"] == "SKIPPED"

    duplicate = client.post(
        f"/pool/{booking_id}",
        json={"deadline_time": (BASE_TIME + timedelta(days=1)).isoformat()},
    )
    assert duplicate.status_code == 409
    missing = client.post("/pool/9999", json={"deadline_time": BASE_TIME.isoformat()})
    assert missing.status_code == 404

    stats = client.get("/pool/stats").json()
    assert stats["total_in_pool"] == 1
    assert stats["ready_for_processing"] == 0

    expedited = client.post(f"/pool/{booking_id}/expedite")
    assert expedited.status_code == 200
    assert expedited.json()["pool_status"] == "ready"
    assert client.post(f"/pool/{booking_id}/expedite").status_code == 409

    entries = client.get("/pool/entries", params={"status": "ready"}).json()
    assert [entry["booking_id"] for entry in entries] == [booking_id]

    processed = client.post("/pool/process", json={"trigger": "ready"})
    assert processed.status_code == 200
    body = processed.json()
    assert body["assigned"] == 1
    assert body["outcomes"][0]["interpreter_id"] == "INT001"

    status_body = client.get("/pool/status").json()
    assert status_body["pool_size"] == 0

    removed = client.delete(f"/pool/{booking_id}")
    assert removed.status_code == 200
    assert removed.json()["removed"] is False


def test_add_remove_and_health_over_http(api) -> None:
    client, repository, clock = api
    booking_id = _create_booking(repository)

    created = client.post(
        f"/pool/{booking_id}",
        json={"deadline_time": (BASE_TIME + timedelta(days=3)).isoformat()},
    )
    assert created.status_code == 201
    assert created.json()["pool_status"] == "waiting"

    health = client.get("/pool/health").json()
    assert health["is_healthy"] is True

    assert client.delete(f"/pool/{booking_id}").json()["removed"] is True
    assert client.delete(f"/pool/{booking_id}").json()["removed"] is False


def test_retry_and_recover_endpoints(api) -> None:
    client, repository, clock = api

    retried = client.post("/pool/retry-failed", json={"include_exhausted": True})
    assert retried.status_code == 200
    assert retried.json() == {"requeued": 0}

    recovered = client.post("/pool/recover")
    assert recovered.status_code == 200
    assert recovered.json() == {"reset_stuck_booking_ids": [], "outcomes": []}


def test_daily_processor_endpoints(api) -> None:
    client, repository, clock = api
    _create_booking(repository, days_ahead=2)

    status_before = client.get("/pool/daily-processor").json()
    assert status_before["is_running"] is False
    assert status_before["last_run_at"] is None

    run = client.post("/pool/daily-processor/run")
    assert run.status_code == 200
    assert run.json()["admitted"] == 1

    status_after = client.get("/pool/daily-processor").json()
    assert status_after["last_result"]["batch_id"] == run.json()["batch_id"]

    statistics = client.get("/pool/daily-processor/statistics", params={"days": 7}).json()
    assert statistics["totals"]["runs"] == 1
    assert statistics["days"][0]["date"] == BASE_TIME.date().isoformat()


def test_app_settings_control_log_level(tmp_path) -> None:
    root = logging.getLogger()
    previous = root.level
    try:
        create_app(settings=build_test_settings(tmp_path, "quiet.db", log_level="warning"))
        assert root.level == logging.WARNING
    finally:
        root.setLevel(previous)
