from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field

from .models import ProbeResult, Service


class PortOut(BaseModel):
    container: int
    host: int


class ServiceOut(BaseModel):
    id: int
    name: str
    project_id: int
    ports: list[PortOut]
    health_path: str | None = None
    health_check_type: str
    status: str
    desired_state: str
    health_status: str
    last_probe_at: datetime | None = None
    crash_looping: bool
    restart_count: int
    restart_window_at: datetime | None = None
    last_exit_code: int | None = None
    container_id: str | None = None

    @classmethod
    def from_service(cls, s: Service) -> "ServiceOut":
        return cls(
            id=s.id,
            name=s.name,
            project_id=s.project_id,
            ports=[PortOut(container=p.container, host=p.host) for p in s.ports],
            health_path=s.health_path,
            health_check_type=s.health_check_type.value,
            status=s.status.value,
            desired_state=s.desired_state.value,
            health_status=s.health_status.value,
            last_probe_at=s.last_probe_at,
            crash_looping=s.crash_looping,
            restart_count=s.restart_count,
            restart_window_at=s.restart_window_at,
            last_exit_code=s.last_exit_code,
            container_id=s.container_id,
        )


class ActionResponse(BaseModel):
    service_id: int
    action: str
    container_id: str
    message: str


class ProbeOut(BaseModel):
    service_id: int
    status: str
    cause: str | None = None
    target: str | None = None
    latency_ms: float | None = None
    timestamp: datetime
    skipped: bool = False

    @classmethod
    def from_result(cls, service_id: int, r: ProbeResult) -> "ProbeOut":
        return cls(
            service_id=service_id,
            status=r.status.value,
            cause=r.cause,
            target=r.target,
            latency_ms=r.latency_ms,
            timestamp=r.timestamp,
        )


class LockdownRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=500)


class LockdownOut(BaseModel):
    is_locked: bool
    reason: str = ""
    initiated_by: str = ""
    since: datetime | None = None


class ErrorOut(BaseModel):
    error: str
    detail: str
