import types

import pytest
from fastapi.testclient import TestClient

from automation_engine import api
from automation_engine.api import API_TOKEN_HEADER_NAME, create_app
from automation_engine.config import EngineSettings
from automation_engine.server import build_app

API_TOKEN = "secret-token"

SUMMARY = {
    "tenants_processed": 1,
    "steps_advanced": 4,
    "skipped_quota": 0,
    "skipped_circuit_breaker": 0,
    "message": "Automation run completed. Processed 4 steps, skipped 0 (quota), 0 (circuit breaker) across 1 tenants.",
}


class DummyService:
    def __init__(self):
        self.calls = []
        self.metrics = types.SimpleNamespace(generate_latest=lambda: b"metrics-data")

    async def status(self):
        return {"ok": True, "active": False, "providers": ["brevo", "sender", "smtp"], "last_run": None}

    async def handle_command(self, cmd, payload):
        self.calls.append((cmd, payload))
        if cmd == "run now":
            return {"ok": True, "summary": SUMMARY}
        if cmd == "getTracking":
            if payload["tenant_id"] == "ghost":
                return {"ok": False, "error": "tenant 'ghost' not found"}
            return {"ok": True, "tracking": {"sent_today": 3}}
        if cmd == "listStates":
            return {"ok": True, "states": [{"id": "s1", "status": payload["status"] or "active"}]}
        if cmd == "reactivateState":
            return {"ok": payload["state_id"] == "s1"}
        return {"ok": True}


@pytest.fixture(autouse=True)
def reset_service():
    original = api.service
    original_token = getattr(api.app.state, "api_token", None)
    api.service = None
    api.app.state.api_token = None
    try:
        yield
    finally:
        api.service = original
        api.app.state.api_token = original_token


@pytest.fixture
def client_and_service():
    svc = DummyService()
    client = TestClient(create_app(svc, api_token=API_TOKEN))
    client.headers.update({API_TOKEN_HEADER_NAME: API_TOKEN})
    return client, svc


def test_returns_500_when_service_missing():
    create_app(DummyService(), api_token=API_TOKEN)
    api.service = None
    client = TestClient(api.app)
    response = client.post("/commands/run-now", headers={API_TOKEN_HEADER_NAME: API_TOKEN})
    assert response.status_code == 500
    assert response.json()["detail"] == "Service not initialized"


def test_rejects_missing_token():
    client = TestClient(create_app(DummyService(), api_token=API_TOKEN))
    response = client.get("/status")
    assert response.status_code == 401
    assert response.json()["detail"] == "Invalid or missing API token"


def test_health_needs_no_token():
    client = TestClient(create_app(DummyService(), api_token=API_TOKEN))
    assert client.get("/health").json() == {"status": "ok"}


def test_run_now_forwards_deadline(client_and_service):
    client, svc = client_and_service

    response = client.post("/commands/run-now", json={"deadline_seconds": 20})
    assert response.status_code == 200
    assert response.json()["summary"]["steps_advanced"] == 4

    assert client.post("/commands/run-now").status_code == 200
    assert client.post("/commands/run-now", json={"deadline_seconds": -1}).status_code == 422
    assert svc.calls == [("run now", {"deadline_seconds": 20.0}), ("run now", {})]


def test_scheduler_and_tenant_endpoints(client_and_service):
    client, svc = client_and_service

    assert client.get("/status").json()["providers"] == ["brevo", "sender", "smtp"]
    assert client.post("/commands/suspend").json()["ok"] is True
    assert client.post("/commands/activate").json()["ok"] is True
    assert client.get("/tenants/acme/tracking").json()["tracking"] == {"sent_today": 3}
    assert client.get("/tenants/ghost/tracking").status_code == 404
    states = client.get("/tenants/acme/states", params={"state_status": "error"}).json()["states"]
    assert states == [{"id": "s1", "status": "error"}]
    assert client.post("/tenants/acme/states/s1/reactivate").json() == {"ok": True}
    assert client.post("/tenants/acme/states/s9/reactivate").status_code == 404

    assert [cmd for cmd, _ in svc.calls] == [
        "suspend",
        "activate",
        "getTracking",
        "getTracking",
        "listStates",
        "reactivateState",
        "reactivateState",
    ]


def test_metrics_endpoint_uses_service_metrics(client_and_service):
    client, _ = client_and_service
    response = client.get("/metrics")
    assert response.status_code == 200
    assert response.text == "metrics-data"


def test_built_app_runs_real_service(tmp_path):
    settings = EngineSettings(db_path=str(tmp_path / "api.db"), api_token=API_TOKEN)
    with TestClient(build_app(settings)) as client:
        client.headers.update({API_TOKEN_HEADER_NAME: API_TOKEN})

        status = client.get("/status").json()
        assert status["active"] is False
        assert "last_run" not in status

        summary = client.post("/commands/run-now").json()["summary"]
        assert summary["tenants_processed"] == 0
        assert summary["message"].startswith("Automation run completed.")

        assert client.get("/status").json()["last_run"]["tenants_processed"] == 0
        assert client.get("/tenants/ghost/tracking").status_code == 404
        assert b"ae_last_run_timestamp" in client.get("/metrics").content
