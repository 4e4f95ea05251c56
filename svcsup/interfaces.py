"""Contracts the supervisor core requires of its collaborators.

`svcsup.db` and `svcsup.docker_ops` satisfy these as modules; tests pass
in-memory objects with the same methods.
"""
from __future__ import annotations

from datetime import datetime
from typing import Any, Callable, Protocol

from .models import ContainerState, DesiredState, HealthStatus, Route, Service, ServiceStatus


class ServiceStore(Protocol):
    def get_service(self, service_id: int) -> Service: ...

    def list_routes(self, service_id: int) -> list[Route]: ...

    def update_service_health(
        self, service_id: int, health_status: HealthStatus, probed_at: datetime | None = None
    ) -> None: ...

    def update_service_restart(
        self, service_id: int, exit_code: int | None, restart_count: int, window_start: datetime | None
    ) -> None: ...

    def update_service_state(self, service_id: int, desired_state: DesiredState, crash_looping: bool) -> None: ...

    def update_service_desired_state(self, service_id: int, desired_state: DesiredState) -> bool: ...

    def unlock_service(self, service_id: int) -> None: ...

    def update_service_container_id(self, service_id: int, container_id: str) -> None: ...

    def update_service_status(self, service_id: int, status: ServiceStatus) -> None: ...


class ContainerRuntime(Protocol):
    def start_container(self, container_id: str, timeout_s: float | None = None) -> None: ...

    def stop_container(self, container_id: str, timeout_s: float | None = None) -> None: ...

    def restart_container(self, container_id: str, timeout_s: float | None = None) -> None: ...

    def inspect_container(self, container_id: str, timeout_s: float | None = None) -> ContainerState: ...

    def discover_container(self, service_id: int, timeout_s: float | None = None) -> str: ...


class BackgroundSubmitter(Protocol):
    def submit(self, name: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> bool: ...
