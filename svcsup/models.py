from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(ts: datetime | None) -> str | None:
    if ts is None:
        return None
    return ts.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def from_iso(raw: str | None) -> datetime | None:
    if not raw:
        return None
    return datetime.strptime(raw, "%Y-%m-%dT%H:%M:%SZ").replace(tzinfo=timezone.utc)


class HealthCheckType(str, Enum):
    HTTP = "http"
    TCP = "tcp"
    POSTGRES = "postgres"
    MYSQL = "mysql"
    REDIS = "redis"


class ServiceStatus(str, Enum):
    """Runtime-observed container state."""

    RUNNING = "running"
    STOPPED = "stopped"
    UNKNOWN = "unknown"


class DesiredState(str, Enum):
    """Operator/automation intent."""

    RUNNING = "running"
    STOPPED = "stopped"
    LOCKED = "locked"


class HealthStatus(str, Enum):
    UNKNOWN = "unknown"
    OK = "ok"
    FAILING = "failing"


class SupervisedPhase(str, Enum):
    RUNNING = "running"
    RESTARTING = "restarting"
    LOCKED = "locked"


@dataclass(frozen=True)
class PortMap:
    container: int
    host: int


@dataclass(frozen=True)
class Route:
    service_id: int
    domain: str
    path: str = "/"
    tls: bool = False
    id: int | None = None

    def external_url(self) -> str:
        scheme = "https" if self.tls else "http"
        prefix = (self.path or "/").rstrip("/")
        return f"{scheme}://{self.domain}{prefix}"


@dataclass(frozen=True)
class Service:
    id: int
    name: str
    project_id: int
    ports: tuple[PortMap, ...] = ()
    health_path: str | None = None
    health_check_type: HealthCheckType = HealthCheckType.HTTP
    status: ServiceStatus = ServiceStatus.UNKNOWN
    desired_state: DesiredState = DesiredState.RUNNING
    health_status: HealthStatus = HealthStatus.UNKNOWN
    last_probe_at: datetime | None = None
    crash_looping: bool = False
    restart_count: int = 0
    restart_window_at: datetime | None = None
    last_exit_code: int | None = None
    container_id: str | None = None

    @property
    def locked(self) -> bool:
        return self.crash_looping


@dataclass(frozen=True)
class ProbeResult:
    status: HealthStatus  # ok|failing
    cause: str | None = None
    timestamp: datetime = field(default_factory=utc_now)
    target: str | None = None
    latency_ms: float | None = None

    @property
    def ok(self) -> bool:
        return self.status is HealthStatus.OK


@dataclass(frozen=True)
class ContainerState:
    id: str
    status: ServiceStatus
    exit_code: int | None
    restart_count: int
    started_at: datetime | None = None
