import base64

import httpx
import pytest
from fastapi.testclient import TestClient

from svcsup import app as app_mod
from svcsup.app import create_app
from svcsup.models import DesiredState
from svcsup.settings import Settings
from svcsup.supervisor import Supervisor


def _basic_auth(user: str, password: str) -> dict:
    token = base64.b64encode(f"{user}:{password}".encode()).decode()
    return {"Authorization": f"Basic {token}"}


AUTH = _basic_auth("admin", "pw")


@pytest.fixture
def supervisor(store, runtime, pool):
    return Supervisor(
        store=store,
        runtime=runtime,
        pool=pool,
        http_transport=httpx.MockTransport(lambda request: httpx.Response(200)),
    )


@pytest.fixture
def client(supervisor):
    app = create_app(supervisor=supervisor, admin_user="admin", admin_password="pw", start_monitor=False)
    with TestClient(app) as c:
        yield c


def test_health_is_public(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json()["status"] == "healthy"
    assert r.json()["lockdown"] is False


def test_requires_basic_auth(client, make_service):
    make_service()
    assert client.get("/services").status_code == 401
    assert client.get("/services", headers=_basic_auth("admin", "wrong")).status_code == 401
    r = client.get("/services", headers=AUTH)
    assert r.status_code == 200
    assert [s["name"] for s in r.json()] == ["web"]


def test_start_service(client, make_service, runtime, store):
    svc = make_service()
    runtime.add_container(svc.id, "abc123")

    r = client.post(f"/services/{svc.id}/start", headers=AUTH)
    assert r.status_code == 200
    assert r.json()["container_id"] == "abc123"
    assert r.json()["action"] == "start"

    audit = client.get("/audit", headers=AUTH).json()
    assert audit[0]["action"] == "service_start"
    assert audit[0]["actor"] == "admin"


def test_unknown_service_is_404(client):
    r = client.post("/services/999/restart", headers=AUTH)
    assert r.status_code == 404
    assert r.json()["error"] == "not_found"
    assert client.get("/services/999", headers=AUTH).status_code == 404


def test_unresolvable_container_is_503(client, make_service, runtime):
    svc = make_service()
    r = client.post(f"/services/{svc.id}/stop", headers=AUTH)
    assert r.status_code == 503
    assert r.json()["error"] == "container_unresolvable"
    assert runtime.runtime_calls() == []


def test_runtime_failure_is_502(client, make_service, runtime):
    svc = make_service(container_id="abc123")
    runtime.fail_ops.add("restart")
    r = client.post(f"/services/{svc.id}/restart", headers=AUTH)
    assert r.status_code == 502
    assert r.json()["error"] == "runtime_operation_failed"


def test_invalid_timeout_is_rejected(client, make_service):
    svc = make_service(container_id="abc123")
    assert client.post(f"/services/{svc.id}/start?timeout_s=0", headers=AUTH).status_code == 422


def test_unlock_requires_crash_loop(client, make_service, store):
    svc = make_service()
    r = client.post(f"/services/{svc.id}/unlock", headers=AUTH)
    assert r.status_code == 409
    assert r.json()["error"] == "invalid_operation"

    store.update_service_state(svc.id, DesiredState.LOCKED, True)
    r = client.post(f"/services/{svc.id}/unlock", headers=AUTH)
    assert r.status_code == 200
    assert r.json()["crash_looping"] is False
    assert r.json()["desired_state"] == "running"


def test_probe_endpoint(client, make_service, store):
    svc = make_service()
    r = client.post(f"/services/{svc.id}/probe", headers=AUTH)
    assert r.status_code == 200
    assert r.json()["status"] == "ok"
    assert r.json()["target"] == "http://localhost:8080/health"

    store.update_service_state(svc.id, DesiredState.LOCKED, True)
    r = client.post(f"/services/{svc.id}/probe", headers=AUTH)
    assert r.json()["skipped"] is True


def test_diagnostics_endpoint(client, make_service):
    svc = make_service()
    r = client.get(f"/services/{svc.id}/diagnostics", headers=AUTH)
    assert r.status_code == 200
    body = r.json()
    assert body["phase"] == "running"
    assert body["probe_result"]["status"] == "ok"
    assert body["hints"]


def test_system_lockdown_blocks_mutations(client, make_service, runtime):
    svc = make_service(container_id="abc123")

    r = client.post("/system/lockdown", json={"reason": "incident"}, headers=AUTH)
    assert r.status_code == 200
    assert r.json()["is_locked"] is True
    assert r.json()["initiated_by"] == "admin"

    r = client.post(f"/services/{svc.id}/start", headers=AUTH)
    assert r.status_code == 503
    assert r.json()["detail"]["error"] == "system_lockdown"
    assert r.json()["detail"]["reason"] == "incident"
    assert runtime.calls == []

    # Reads stay available.
    assert client.get("/services", headers=AUTH).status_code == 200
    assert client.get("/system/lockdown").json()["is_locked"] is True

    r = client.post("/system/lockdown/lift", headers=AUTH)
    assert r.json()["is_locked"] is False
    assert client.post(f"/services/{svc.id}/start", headers=AUTH).status_code == 200


def test_lockdown_reason_is_required(client):
    assert client.post("/system/lockdown", json={"reason": ""}, headers=AUTH).status_code == 422


def test_events_endpoint(client, make_service, runtime):
    svc = make_service(container_id="abc123")
    client.post(f"/services/{svc.id}/stop", headers=AUTH)
    events = client.get("/events?limit=5", headers=AUTH).json()
    assert any("Service stopped" in e["message"] for e in events)


def test_auth_disabled_without_password(supervisor, store, make_service, monkeypatch):
    monkeypatch.setattr(app_mod, "settings", Settings(admin_password=None))
    app = create_app(supervisor=supervisor, start_monitor=False)
    with TestClient(app) as c:
        assert c.get("/services").status_code == 200
    assert any("authentication is disabled" in e["message"] for e in store.latest_events())
