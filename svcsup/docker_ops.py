from __future__ import annotations

from typing import Any

import docker
import requests
from docker.errors import DockerException, NotFound

from .db import log_event
from .models import ContainerState, ServiceStatus, from_iso
from .settings import settings


class ContainerNotFound(Exception):
    """No container carries the labels of the requested service."""


class RuntimeCallError(Exception):
    """The docker daemon rejected or failed a call."""


_STATUS_MAP = {
    "running": ServiceStatus.RUNNING,
    "restarting": ServiceStatus.RUNNING,
    "exited": ServiceStatus.STOPPED,
    "created": ServiceStatus.STOPPED,
    "dead": ServiceStatus.STOPPED,
    "paused": ServiceStatus.STOPPED,
}


def service_labels(service_id: int) -> dict[str, str]:
    """Labels a managed container must carry to be discoverable for `service_id`."""
    return {
        f"{settings.label_prefix}.service_id": str(service_id),
        f"{settings.label_prefix}.managed": "true",
    }


def _client(timeout_s: float | None = None) -> docker.DockerClient:
    if timeout_s is None:
        return docker.from_env(timeout=settings.runtime_timeout_s)
    if timeout_s <= 0:
        raise RuntimeCallError("deadline exhausted before the runtime call")
    return docker.from_env(timeout=float(timeout_s))


def _grace(timeout_s: float | None) -> int:
    # The stop grace has to fit inside the HTTP timeout or the call reads as a failure.
    if timeout_s is None:
        return settings.stop_grace_s
    return max(0, min(settings.stop_grace_s, int(timeout_s) - 1))


def docker_available() -> bool:
    try:
        c = _client()
        c.ping()
        return True
    except (DockerException, requests.exceptions.RequestException):
        return False


def _call(container_id: str, op: str, timeout_s: float | None, **kwargs: Any) -> None:
    try:
        cont = _client(timeout_s).containers.get(container_id)
        getattr(cont, op)(**kwargs)
    except NotFound as e:
        raise RuntimeCallError(f"container {container_id[:12]} not found") from e
    except (DockerException, requests.exceptions.RequestException) as e:
        raise RuntimeCallError(f"{op} {container_id[:12]} failed: {type(e).__name__}: {e}") from e


def start_container(container_id: str, timeout_s: float | None = None) -> None:
    _call(container_id, "start", timeout_s)


def stop_container(container_id: str, timeout_s: float | None = None) -> None:
    _call(container_id, "stop", timeout_s, timeout=_grace(timeout_s))


def restart_container(container_id: str, timeout_s: float | None = None) -> None:
    _call(container_id, "restart", timeout_s, timeout=_grace(timeout_s))


def inspect_container(container_id: str, timeout_s: float | None = None) -> ContainerState:
    try:
        cont = _client(timeout_s).containers.get(container_id)
    except NotFound as e:
        raise RuntimeCallError(f"container {container_id[:12]} not found") from e
    except (DockerException, requests.exceptions.RequestException) as e:
        raise RuntimeCallError(f"inspect {container_id[:12]} failed: {type(e).__name__}: {e}") from e

    attrs = cont.attrs or {}
    state = attrs.get("State", {})
    started_raw = (state.get("StartedAt") or "")[:19]
    started_at = from_iso(f"{started_raw}Z") if started_raw and not started_raw.startswith("0001") else None
    return ContainerState(
        id=cont.id,
        status=_STATUS_MAP.get(cont.status, ServiceStatus.UNKNOWN),
        exit_code=state.get("ExitCode"),
        restart_count=int(attrs.get("RestartCount") or 0),
        started_at=started_at,
    )


def discover_container(service_id: int, timeout_s: float | None = None) -> str:
    """Resolve a service's container by label, including stopped containers."""
    filters: dict[str, Any] = {"label": [f"{k}={v}" for k, v in service_labels(service_id).items()]}
    try:
        containers = _client(timeout_s).containers.list(all=True, filters=filters)
    except (DockerException, requests.exceptions.RequestException) as e:
        raise RuntimeCallError(f"container listing failed: {type(e).__name__}: {e}") from e

    if not containers:
        raise ContainerNotFound(f"no container found with service_id={service_id}")
    if len(containers) > 1:
        log_event("WARN", f"{len(containers)} containers match, using the first", service_id=service_id)

    log_event("INFO", f"Discovered container {containers[0].id[:12]} by label", service_id=service_id)
    return containers[0].id
