"""
Tests for FastAPI Endpoints

Integration tests for the call and wallet API.
"""

import pytest
from fastapi.testclient import TestClient

from callmeter.api import server
from callmeter.api.server import app


@pytest.fixture
def client(tmp_path, monkeypatch):
    """Create test client against a fresh database."""
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path / 'api-test.db'}")
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def auth_headers():
    """Headers with valid API key."""
    return {"X-API-Key": "test-key-12345"}


@pytest.fixture
def funded(client, auth_headers):
    """Give alice enough for a few units."""
    client.post("/wallets/alice/credit", json={"amount_micros": 5000}, headers=auth_headers)
    return "alice"


def _start_call(client, headers, **body):
    payload = {"caller_id": "alice", "callee_id": "bob"}
    payload.update(body)
    call = client.post("/calls", json=payload, headers=headers).json()
    client.post(f"/calls/{call['call_id']}/connect", headers=headers)
    return call["call_id"]


class TestHealthEndpoint:
    """Test health check endpoint."""

    def test_health_no_auth_required(self, client):
        """Health check should not require authentication."""
        response = client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["store_ready"] is True
        assert data["scheduler_running"] is False
        assert "uptime_seconds" in data

    def test_health_degraded_when_store_down(self, client, monkeypatch):
        monkeypatch.setattr(server.app_state.db, "ping", lambda: False)

        response = client.get("/health")

        assert response.status_code == 503
        assert response.json()["status"] == "degraded"


class TestAuth:
    def test_missing_key(self, client):
        response = client.get("/wallets/alice")

        assert response.status_code == 422  # Missing header

    def test_wrong_key(self, client):
        response = client.get("/wallets/alice", headers={"X-API-Key": "wrong-key"})

        assert response.status_code == 401


class TestWalletEndpoints:
    def test_credit_and_read_balance(self, client, auth_headers):
        response = client.post(
            "/wallets/alice/credit",
            json={"amount_micros": 5000, "reference": "pay_123"},
            headers=auth_headers,
        )
        assert response.status_code == 200
        assert response.json()["balance_micros"] == 5000

        data = client.get("/wallets/alice", headers=auth_headers).json()
        assert data["balance_micros"] == 5000
        assert data["transactions"][0]["reference"] == "pay_123"

    def test_non_positive_credit_rejected(self, client, auth_headers):
        response = client.post("/wallets/alice/credit", json={"amount_micros": 0}, headers=auth_headers)

        assert response.status_code == 422


class TestCallEndpoints:
    def test_create_call_uses_configured_rate(self, client, auth_headers, funded):
        response = client.post("/calls", json={"caller_id": "alice", "callee_id": "bob"}, headers=auth_headers)

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "ringing"
        assert data["rate_micros_per_second"] == 2100

    def test_create_call_without_funds(self, client, auth_headers):
        response = client.post("/calls", json={"caller_id": "broke", "callee_id": "bob"}, headers=auth_headers)

        assert response.status_code == 402

    def test_duplicate_call_id(self, client, auth_headers, funded):
        body = {"caller_id": "alice", "callee_id": "bob", "call_id": "call-1"}
        client.post("/calls", json=body, headers=auth_headers)

        response = client.post("/calls", json=body, headers=auth_headers)

        assert response.status_code == 409

    def test_connect_twice_conflicts(self, client, auth_headers, funded):
        call_id = _start_call(client, auth_headers)

        response = client.post(f"/calls/{call_id}/connect", headers=auth_headers)

        assert response.status_code == 409

    def test_unknown_call(self, client, auth_headers):
        assert client.get("/calls/missing", headers=auth_headers).status_code == 404
        assert client.post("/calls/missing/hangup", headers=auth_headers).status_code == 404

    def test_hangup(self, client, auth_headers, funded):
        call_id = _start_call(client, auth_headers)

        response = client.post(f"/calls/{call_id}/hangup", headers=auth_headers)

        assert response.status_code == 200
        assert response.json()["end_reason"] == "normal"
        assert client.post(f"/calls/{call_id}/hangup", headers=auth_headers).status_code == 409

        events = client.get(f"/calls/{call_id}/events", headers=auth_headers).json()["events"]
        assert events[-1]["endReason"] == "normal"


class TestBillingThroughApi:
    """Drive the scheduler by hand and read the results back over HTTP."""

    def test_billed_call_visible_in_ledger_and_audit(self, client, auth_headers, funded):
        call_id = _start_call(client, auth_headers)

        server.app_state.scheduler.run_once()

        call = client.get(f"/calls/{call_id}", headers=auth_headers).json()
        assert call["seconds_used"] == 1
        assert call["amount_charged_micros"] == 2100

        ledger = client.get(f"/calls/{call_id}/ledger", headers=auth_headers).json()
        assert ledger["total"] == 1
        assert ledger["total_micros"] == 2100

        audit = client.get(f"/calls/{call_id}/audit", headers=auth_headers).json()
        assert audit["consistent"] is True
        assert audit["drift_micros"] == 0

        wallet = client.get("/wallets/alice", headers=auth_headers).json()
        assert wallet["balance_micros"] == 2900

    def test_metrics(self, client, auth_headers, funded):
        _start_call(client, auth_headers)
        server.app_state.scheduler.run_once()

        data = client.get("/metrics", headers=auth_headers).json()

        assert data["calls"]["connected"] == 1
        assert data["metering"]["outcomes"]["CHARGED"] == 1
        assert data["scheduler"]["cycles_run"] == 1
        assert data["scheduler"]["last_cycle"]["candidates"] == 1


class TestReconciliationEndpoints:
    def test_flag_listed_and_resolved(self, client, auth_headers, funded):
        call_id = _start_call(client, auth_headers)
        flag = server.app_state.flags.flag(call_id, "alice", 2100, error="timeout")

        report = client.get("/reconciliation", headers=auth_headers).json()
        assert report["open"] == 1
        assert report["flags"][0]["flag"]["flag_id"] == flag.flag_id

        response = client.post(f"/reconciliation/{flag.flag_id}/resolve", headers=auth_headers)
        assert response.status_code == 200
        assert client.post(f"/reconciliation/{flag.flag_id}/resolve", headers=auth_headers).status_code == 404
        assert client.get("/reconciliation", headers=auth_headers).json()["open"] == 0
