from __future__ import annotations

from dataclasses import asdict
from typing import Any, Sequence

from . import db
from .health import Prober, resolve_probe_target
from .interfaces import ServiceStore
from .models import HealthCheckType, ProbeResult, Route, Service, ServiceStatus, to_iso
from .runtime import Deadline
from .settings import settings

_TYPE_HINTS = {
    HealthCheckType.HTTP: "HTTP health check: the service must answer GET requests on its health path",
    HealthCheckType.TCP: "TCP health check: the port must accept connections",
    HealthCheckType.POSTGRES: "PostgreSQL health check: SSL negotiation handshake, falling back to a TCP connect",
    HealthCheckType.MYSQL: "MySQL health check: server greeting, falling back to a TCP connect",
    HealthCheckType.REDIS: "Redis health check: PING, falling back to a TCP connect",
}


def troubleshooting_hints(service: Service, routes: Sequence[Route], target: str | None, result: ProbeResult) -> list[str]:
    hints: list[str] = []
    if service.status is not ServiceStatus.RUNNING:
        hints.append("Service is not running - health checks will fail until it is started")
    if service.crash_looping:
        hints.append("Service is crash-looping - automatic checks and restarts are disabled until unlocked")
    if service.health_path is None:
        hints.append(f"No health path configured - using default '{settings.default_health_path}'")
    if not service.ports:
        hints.append("No ports configured - port-based checks are impossible")

    if target is None:
        hints.append("No probe target could be resolved - add a port or a route")
    elif routes:
        hints.append(f"Using external route for health check: {target}")
    else:
        hints.append(f"Using localhost port for health check: {target}")

    if not result.ok:
        hints.append(f"Health probe failed: {result.cause}")
        if service.ports and service.health_check_type is HealthCheckType.HTTP:
            path = service.health_path or settings.default_health_path
            hints.append(f"Try manually: curl -v http://{settings.probe_host}:{service.ports[0].host}{path}")

    hints.append(_TYPE_HINTS[service.health_check_type])
    return hints


def build_diagnostics(
    service_id: int,
    store: ServiceStore = db,
    prober: Prober | None = None,
    deadline: Deadline | None = None,
) -> dict[str, Any]:
    """Read-only troubleshooting snapshot; runs a fresh probe but writes nothing."""
    service = store.get_service(service_id)
    try:
        routes = store.list_routes(service_id)
    except Exception as e:
        db.log_event("WARN", f"Route lookup failed for diagnostics: {e}", service_id=service_id)
        routes = []

    prober = prober or Prober(store=store)
    target = resolve_probe_target(service, routes)
    result = prober.probe(service, routes, deadline=deadline)
    target_desc = target.describe() if target else None

    return {
        "service_id": service.id,
        "service_name": service.name,
        "project_id": service.project_id,
        "service_status": service.status.value,
        "desired_state": service.desired_state.value,
        "crash_looping": service.crash_looping,
        "current_health": service.health_status.value,
        "last_probe_at": to_iso(service.last_probe_at),
        "restart_count": service.restart_count,
        "restart_window_at": to_iso(service.restart_window_at),
        "last_exit_code": service.last_exit_code,
        "container_id": service.container_id,
        "health_path": service.health_path,
        "health_check_type": service.health_check_type.value,
        "probe_target": target_desc,
        "ports": [asdict(p) for p in service.ports],
        "routes": [asdict(r) for r in routes],
        "probe_result": {
            "status": result.status.value,
            "cause": result.cause,
            "timestamp": to_iso(result.timestamp),
            "latency_ms": result.latency_ms,
        },
        "hints": troubleshooting_hints(service, routes, target_desc, result),
    }
