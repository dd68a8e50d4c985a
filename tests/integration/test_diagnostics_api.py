"""Test the diagnostics and emergency endpoints."""
import json

import pytest
from fastapi.testclient import TestClient

from qr_guard.api_server import create_app


@pytest.fixture
def app(manager, emergency_breaker):
    """App sharing the test manager and breaker, guarded by a token."""
    return create_app(manager=manager, breaker=emergency_breaker, diagnostics_token="s3cret")


@pytest.fixture
def client(app):
    return TestClient(app)


AUTH = {"X-Diagnostics-Token": "s3cret"}


def test_health_check(client):
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "healthy"
    assert response.headers["X-Request-ID"].startswith("req-")


def test_stats_empty(client):
    response = client.get("/api/v1/qr/stats")

    assert response.status_code == 200
    assert response.json() == {
        "count": 0,
        "per_instance": [],
        "tripped_instances": [],
        "global_trip": False
    }


def test_stats_reports_registrations(client, manager, clock):
    manager.register("clinic-downtown", "qr-1-abc")
    manager.record_request("clinic-downtown", "qr-1-abc")
    manager.register("clinic-uptown", "qr-2-def")
    clock.advance(5)

    data = client.get("/api/v1/qr/stats").json()

    assert data["count"] == 2
    by_instance = {item["instance_id"]: item for item in data["per_instance"]}
    assert by_instance["clinic-downtown"]["component_id"] == "qr-1-abc"
    assert by_instance["clinic-downtown"]["request_count_in_window"] == 1
    assert by_instance["clinic-downtown"]["seconds_since_last_request"] == pytest.approx(5)
    assert by_instance["clinic-uptown"]["seconds_since_last_request"] is None


def test_stats_reports_tripped_instances(client, emergency_breaker):
    for _ in range(4):
        emergency_breaker.should_allow_request("clinic-downtown", "test")

    data = client.get("/api/v1/qr/stats").json()

    assert data["tripped_instances"] == ["clinic-downtown"]


def test_emergency_stop_requires_token(client, manager):
    manager.register("clinic-downtown", "qr-1-abc")

    response = client.post("/api/v1/qr/emergency-stop")

    assert response.status_code == 401
    assert response.json()["code"] == "UNAUTHORIZED"
    assert manager.get_stats().count == 1


def test_emergency_stop_rejects_wrong_token(client):
    response = client.post("/api/v1/qr/emergency-stop", headers={"X-Diagnostics-Token": "nope"})

    assert response.status_code == 401


def test_emergency_stop_clears_registry(client, manager, emergency_breaker, make_timer):
    timer = make_timer()
    manager.register("clinic-downtown", "qr-1-abc")
    manager.set_timer_handle("clinic-downtown", "qr-1-abc", timer)
    manager.register("clinic-uptown", "qr-2-def")

    response = client.post("/api/v1/qr/emergency-stop", headers=AUTH)

    assert response.status_code == 200
    assert response.json() == {"cleared": 2, "breaker_tripped": True}
    assert manager.get_stats().count == 0
    assert timer.cancelled is True
    assert not emergency_breaker.should_allow_request("clinic-downtown", "test").allowed

    # A fresh registration is possible right away.
    assert manager.register("clinic-downtown", "qr-3-ghi").accepted


def test_emergency_stop_without_tripping_breaker(client, emergency_breaker):
    response = client.post("/api/v1/qr/emergency-stop?trip_breaker=false", headers=AUTH)

    assert response.json() == {"cleared": 0, "breaker_tripped": False}
    assert emergency_breaker.should_allow_request("clinic-downtown", "test").allowed


def test_circuit_reset(client, emergency_breaker):
    emergency_breaker.trip_all()

    response = client.post("/api/v1/qr/circuit/reset", headers=AUTH)

    assert response.status_code == 200
    assert response.json() == {"reset": "all"}
    assert emergency_breaker.should_allow_request("clinic-downtown", "test").allowed


def test_open_guard_when_no_token_configured(manager):
    client = TestClient(create_app(manager=manager, diagnostics_token=""))
    manager.register("clinic-downtown", "qr-1-abc")

    response = client.post("/api/v1/qr/emergency-stop")

    assert response.status_code == 200
    assert response.json()["cleared"] == 1


def test_invalid_query_returns_error_schema(client):
    response = client.get("/api/v1/qr/stats/stream?interval=0")

    assert response.status_code == 422
    assert response.json()["code"] == "VALIDATION_ERROR"


def test_stats_stream(client, manager):
    manager.register("clinic-downtown", "qr-1-abc")

    with client.stream("GET", "/api/v1/qr/stats/stream?interval=0.01&limit=2") as response:
        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/event-stream")
        events = [
            json.loads(line[len("data: "):])
            for line in response.iter_lines()
            if line.startswith("data: ")
        ]

    assert len(events) == 3
    assert events[0]["count"] == 1
    assert events[0]["per_instance"][0]["instance_id"] == "clinic-downtown"
    assert events[-1] == {"done": True}


def test_shutdown_releases_registrations(app, manager, make_timer):
    timer = make_timer()

    with TestClient(app):
        manager.register("clinic-downtown", "qr-1-abc")
        manager.set_timer_handle("clinic-downtown", "qr-1-abc", timer)

    assert manager.get_stats().count == 0
    assert timer.cancelled is True
