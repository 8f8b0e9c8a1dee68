# tests/test_http_api.py
"""End-to-end tests for the HTTP surface (memory backend)."""
import pytest
from fastapi.testclient import TestClient

from cadcore.transport.http_app import app

DISPATCHER = {"X-Actor-Id": "dispatcher-1"}


@pytest.fixture
def client():
    with TestClient(app) as test_client:
        yield test_client


def _unit(client, callsign, department="POLICE", sign_on=True, **extra):
    resp = client.post(
        "/api/cad/units", json={"callsign": callsign, "department": department, **extra}, headers=DISPATCHER,
    )
    assert resp.status_code == 201, resp.text
    unit = resp.json()
    if sign_on:
        resp = client.post(
            f"/api/cad/units/{unit['id']}/transition",
            json={"action": "set_status", "params": {"status": "AVAILABLE"}},
            headers={"X-Actor-Id": callsign},
        )
        assert resp.status_code == 200, resp.text
        unit = resp.json()
    return unit


def _call(client, priority="HIGH"):
    resp = client.post(
        "/api/cad/calls",
        json={"type": "Robbery", "priority": priority, "location": "12 Main St"},
        headers=DISPATCHER,
    )
    assert resp.status_code == 201, resp.text
    return resp.json()


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------

class TestHealthEndpoints:
    """Liveness, readiness, metrics."""

    def test_health(self, client):
        resp = client.get("/health")
        assert resp.status_code == 200
        assert resp.json() == {"status": "healthy"}

    def test_ready_memory_backend(self, client):
        resp = client.get("/ready")
        assert resp.status_code == 200

    def test_metrics(self, client):
        client.get("/health")
        resp = client.get("/metrics")
        assert resp.status_code == 200
        assert "counters" in resp.json()

    def test_security_headers_and_request_id(self, client):
        resp = client.get("/health", headers={"X-Request-ID": "req-1"})
        assert resp.headers["X-Request-ID"] == "req-1"
        assert resp.headers["X-Content-Type-Options"] == "nosniff"
        assert resp.headers["X-Frame-Options"] == "DENY"


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class TestErrorMapping:
    """DispatchError -> status code + body."""

    def test_missing_actor_header(self, client):
        resp = client.post("/api/cad/calls", json={"type": "x", "priority": "LOW", "location": "y"})
        assert resp.status_code == 400
        assert resp.json()["error"] == "validation_error"

    def test_unknown_family(self, client):
        resp = client.get("/api/cad/spaceships")
        assert resp.status_code == 404
        assert resp.json()["error"] == "not_found"

    def test_unknown_entity(self, client):
        resp = client.get("/api/cad/calls/does-not-exist")
        assert resp.status_code == 404

    def test_bad_enum_value(self, client):
        resp = client.post(
            "/api/cad/calls",
            json={"type": "Robbery", "priority": "URGENTISH", "location": "x"},
            headers=DISPATCHER,
        )
        assert resp.status_code == 400
        assert "priority" in resp.json()["detail"]

    def test_invalid_transition_carries_current(self, client):
        call = _call(client)
        resp = client.post(
            f"/api/cad/calls/{call['id']}/transition", json={"action": "close"}, headers=DISPATCHER,
        )
        assert resp.status_code == 409
        body = resp.json()
        assert body["error"] == "invalid_transition"
        assert body["current"]["status"] == "PENDING"

    def test_reserved_params_rejected(self, client):
        call = _call(client)
        resp = client.post(
            f"/api/cad/calls/{call['id']}/transition",
            json={"action": "cancel", "params": {"actor": "someone-else"}},
            headers=DISPATCHER,
        )
        assert resp.status_code == 400

    def test_pydantic_validation(self, client):
        resp = client.post("/api/cad/calls", json={"type": "Robbery"}, headers=DISPATCHER)
        assert resp.status_code == 422


# ---------------------------------------------------------------------------
# Workflows
# ---------------------------------------------------------------------------

class TestCallWorkflow:
    """Create, assign, close through the API."""

    def test_assign_and_close(self, client):
        unit = _unit(client, "1A-01")
        call = _call(client)

        resp = client.post(
            f"/api/cad/calls/{call['id']}/transition",
            json={"action": "assign", "params": {"unit_id": unit["id"]}},
            headers=DISPATCHER,
        )
        assert resp.status_code == 200
        assert resp.json()["status"] == "ACTIVE"
        assert client.get(f"/api/cad/units/{unit['id']}").json()["status"] == "BUSY"

        second = _call(client)
        resp = client.post(
            f"/api/cad/calls/{second['id']}/transition",
            json={"action": "assign", "params": {"unit_id": unit["id"]}},
            headers=DISPATCHER,
        )
        assert resp.status_code == 409
        assert resp.json()["error"] == "unit_unavailable"

        resp = client.post(
            f"/api/cad/calls/{call['id']}/transition",
            json={"action": "close", "params": {"outcome": "Report taken"}},
            headers=DISPATCHER,
        )
        assert resp.status_code == 200
        assert resp.json()["outcome"] == "Report taken"
        assert client.get(f"/api/cad/units/{unit['id']}").json()["status"] == "AVAILABLE"

        resp = client.post(f"/api/cad/calls/{call['id']}/notes", json={"content": "Follow-up"}, headers=DISPATCHER)
        assert resp.status_code == 201
        assert resp.json()["notes"][0]["content"] == "Follow-up"

    def test_list_filters(self, client):
        _call(client, priority="LOW")
        high = _call(client, priority="HIGH")
        resp = client.get("/api/cad/calls", params={"priority": ["high"]})
        assert resp.status_code == 200
        assert [c["id"] for c in resp.json()["items"]] == [high["id"]]

    def test_eligible_and_history(self, client):
        unit = _unit(client, "1A-01")
        _unit(client, "1A-02", sign_on=False)

        resp = client.get("/api/cad/units/eligible", params={"department": "POLICE"})
        assert [u["callsign"] for u in resp.json()["units"]] == ["1A-01"]

        resp = client.get("/api/cad/units/eligible", params={"department": "POLICE", "include_offline": "true"})
        assert [u["callsign"] for u in resp.json()["units"]] == ["1A-01", "1A-02"]

        resp = client.get(f"/api/cad/units/{unit['id']}/history")
        history = resp.json()["history"]
        assert history[0]["to_status"] == "AVAILABLE"
        assert history[0]["actor"] == "1A-01"


class TestBackupAndTacticalWorkflow:
    """Backup acknowledge and tactical paging through the API."""

    def test_backup_acknowledge_race_loser(self, client):
        requester = _unit(client, "1A-01")
        first = _unit(client, "1A-02")
        late = _unit(client, "1A-03")

        resp = client.post(
            "/api/cad/backup",
            json={"unit": requester["id"], "department": "POLICE", "location": "Pier 4", "urgency": "URGENT"},
            headers={"X-Actor-Id": "1A-01"},
        )
        assert resp.status_code == 201
        backup = resp.json()

        resp = client.post(
            f"/api/cad/backup/{backup['id']}/transition",
            json={"action": "acknowledge", "params": {"responding_unit": first["id"]}},
            headers={"X-Actor-Id": "1A-02"},
        )
        assert resp.status_code == 200

        resp = client.post(
            f"/api/cad/backup/{backup['id']}/transition",
            json={"action": "acknowledge", "params": {"responding_unit": late["id"]}},
            headers={"X-Actor-Id": "1A-03"},
        )
        assert resp.status_code == 409
        assert resp.json()["error"] == "already_acknowledged"
        assert resp.json()["current"]["responding_unit"] == first["id"]

        items = client.get("/api/cad/backup/open").json()["items"]
        assert [i["status"] for i in items] == ["ACKNOWLEDGED"]

    def test_tactical_page_and_feed(self, client):
        officer = _unit(client, "CIRT-1", sign_on=False, tactical_team="CIRT")

        resp = client.post("/api/cad/tactical/page", json={"team": "CIRT", "message": "Muster"}, headers=DISPATCHER)
        assert resp.status_code == 200
        assert resp.json()["event_type"] == "TacticalPage"

        resp = client.get("/api/cad/events", params={"viewer": officer["id"]})
        body = resp.json()
        assert [e["event_type"] for e in body["events"]] == ["TacticalPage"]
        assert body["latest_seq"] >= body["events"][0]["seq"]
        assert body["poll_interval_hint_seconds"] > 0

        cursor = body["events"][-1]["seq"]
        resp = client.get("/api/cad/events", params={"viewer": officer["id"], "after": cursor})
        assert resp.json()["events"] == []

    def test_bolo_snapshot_has_effective_status(self, client):
        resp = client.post(
            "/api/cad/bolos",
            json={"subject_type": "VEHICLE", "description": "Red pickup", "expires_at": "2000-01-01T00:00:00Z"},
            headers=DISPATCHER,
        )
        assert resp.status_code == 201
        bolo = resp.json()
        assert bolo["status"] == "ACTIVE"
        assert bolo["effective_status"] == "RESOLVED"

        active = client.get("/api/cad/bolos", params={"status": ["ACTIVE"]}).json()["items"]
        assert active == []

        resp = client.post("/api/cad/bolos/sweep", headers=DISPATCHER)
        assert resp.json() == {"announced": 1}


class TestEventFeedWindow:
    """Cursor bookkeeping on /api/cad/events."""

    def test_cursor_inside_window_needs_no_resync(self, client):
        _call(client)
        body = client.get("/api/cad/events").json()
        assert body["oldest_seq"] == 1
        assert body["resync"] is False

    def test_cursor_behind_window_asks_for_resync(self, monkeypatch):
        from cadcore.config import settings

        monkeypatch.setattr(settings, "event_feed_max_events", 2)
        with TestClient(app) as small_client:
            for _ in range(4):
                _call(small_client)
            body = small_client.get("/api/cad/events", params={"after": 1}).json()
            assert body["oldest_seq"] == 3
            assert body["resync"] is True
            assert [e["seq"] for e in body["events"]] == [3, 4]

            caught_up = small_client.get("/api/cad/events", params={"after": 2}).json()
            assert caught_up["resync"] is False
