import httpx

from svcsup.diagnostics import build_diagnostics
from svcsup.health import Prober
from svcsup.models import DesiredState, HealthCheckType, HealthStatus, ServiceStatus


def _prober(store, status_code):
    return Prober(store=store, http_transport=httpx.MockTransport(lambda request: httpx.Response(status_code)))


def test_snapshot_for_healthy_service(make_service, store):
    svc = make_service(health_path="/ready", status=ServiceStatus.RUNNING, container_id="abc")
    snap = build_diagnostics(svc.id, store=store, prober=_prober(store, 200))

    assert snap["service_name"] == "web"
    assert snap["probe_target"] == "http://localhost:8080/ready"
    assert snap["probe_result"]["status"] == "ok"
    assert snap["ports"] == [{"container": 80, "host": 8080}]
    assert snap["routes"] == []
    assert any("localhost port" in h for h in snap["hints"])
    assert not any(h.startswith("Health probe failed") for h in snap["hints"])


def test_failing_probe_suggests_manual_curl(make_service, store):
    svc = make_service()
    snap = build_diagnostics(svc.id, store=store, prober=_prober(store, 500))

    hints = snap["hints"]
    assert "Health probe failed: HTTP 500" in hints
    assert "Try manually: curl -v http://localhost:8080/health" in hints
    assert any("not running" in h for h in hints)
    assert any("default '/health'" in h for h in hints)


def test_route_target_is_reported(make_service, store):
    svc = make_service()
    store.insert_route(svc.id, "web.example.com", tls=True)
    snap = build_diagnostics(svc.id, store=store, prober=_prober(store, 200))
    assert snap["probe_target"].startswith("https://web.example.com/health")
    assert any("external route" in h for h in snap["hints"])
    assert snap["routes"][0]["domain"] == "web.example.com"


def test_no_ports_no_routes(make_service, store):
    svc = make_service(ports=(), health_check_type=HealthCheckType.TCP)
    snap = build_diagnostics(svc.id, store=store, prober=_prober(store, 200))
    assert snap["probe_target"] is None
    assert snap["probe_result"]["cause"] == "no target"
    assert any("No ports configured" in h for h in snap["hints"])
    assert any("No probe target" in h for h in snap["hints"])
    assert snap["hints"][-1].startswith("TCP health check")


def test_crash_looping_service_is_still_diagnosed(make_service, store):
    svc = make_service()
    store.update_service_state(svc.id, DesiredState.LOCKED, True)
    snap = build_diagnostics(svc.id, store=store, prober=_prober(store, 200))
    assert snap["crash_looping"] is True
    assert snap["probe_result"]["status"] == "ok"
    assert any("crash-looping" in h for h in snap["hints"])


def test_diagnostics_write_nothing(make_service, store):
    svc = make_service()
    before = store.get_service(svc.id)
    build_diagnostics(svc.id, store=store, prober=_prober(store, 503))
    after = store.get_service(svc.id)
    assert after == before
    assert after.health_status is HealthStatus.UNKNOWN
    assert after.last_probe_at is None
