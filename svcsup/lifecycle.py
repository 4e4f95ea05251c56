from __future__ import annotations

from . import db, docker_ops
from .audit import AuditLogger
from .docker_ops import ContainerNotFound, RuntimeCallError
from .errors import ContainerUnresolvable, RuntimeOperationFailed
from .interfaces import ContainerRuntime, ServiceStore
from .models import DesiredState, Service, ServiceStatus
from .runtime import Deadline
from .settings import settings

# action -> (runtime primitive, observed status after success, desired state, past tense for logs)
_ACTIONS = {
    "start": ("start_container", ServiceStatus.RUNNING, DesiredState.RUNNING, "started"),
    "stop": ("stop_container", ServiceStatus.STOPPED, DesiredState.STOPPED, "stopped"),
    "restart": ("restart_container", ServiceStatus.RUNNING, DesiredState.RUNNING, "restarted"),
}


class LifecycleController:
    """Start/stop/restart a service's container, discovering it by label when the cached id is missing."""

    def __init__(
        self,
        store: ServiceStore = db,
        runtime: ContainerRuntime = docker_ops,
        audit: AuditLogger | None = None,
        timeout_s: float | None = None,
    ) -> None:
        self.store = store
        self.runtime = runtime
        self.audit = audit
        self.timeout_s = settings.runtime_timeout_s if timeout_s is None else timeout_s

    def start(self, service_id: int, actor: str = "system", deadline: Deadline | None = None) -> str:
        return self._run("start", service_id, actor, deadline)

    def stop(self, service_id: int, actor: str = "system", deadline: Deadline | None = None) -> str:
        return self._run("stop", service_id, actor, deadline)

    def restart(self, service_id: int, actor: str = "system", deadline: Deadline | None = None) -> str:
        return self._run("restart", service_id, actor, deadline)

    def resolve_container_id(self, service: Service, deadline: Deadline | None = None) -> str:
        """Cached container id, else discovery by label (persisted best-effort)."""
        if service.container_id:
            return service.container_id

        deadline = deadline or Deadline(self.timeout_s)
        deadline.check("container discovery", service_id=service.id)
        try:
            container_id = self.runtime.discover_container(service.id, timeout_s=deadline.remaining(self.timeout_s))
        except (ContainerNotFound, RuntimeCallError) as e:
            db.log_event("WARN", f"Container discovery failed: {e}", service_id=service.id, service_name=service.name)
            raise ContainerUnresolvable(f"service container not found: {e}", service_id=service.id) from e

        try:
            self.store.update_service_container_id(service.id, container_id)
        except Exception as e:
            db.log_event(
                "WARN",
                f"Could not cache discovered container id {container_id[:12]}: {type(e).__name__}: {e}",
                service_id=service.id,
                service_name=service.name,
            )
        return container_id

    def _run(self, action: str, service_id: int, actor: str, deadline: Deadline | None) -> str:
        primitive, observed, desired, done = _ACTIONS[action]
        deadline = deadline or Deadline(self.timeout_s)

        service = self.store.get_service(service_id)
        container_id = self.resolve_container_id(service, deadline)

        deadline.check(f"{action} service", service_id=service_id)
        try:
            getattr(self.runtime, primitive)(container_id, timeout_s=deadline.remaining(self.timeout_s))
        except RuntimeCallError as e:
            db.log_event("ERROR", f"Failed to {action} container {container_id[:12]}: {e}", service_id=service_id, service_name=service.name)
            raise RuntimeOperationFailed(f"failed to {action} service: {e}", service_id=service_id) from e

        try:
            self.store.update_service_status(service_id, observed)
            # Leaves a crash-loop lock in place.
            self.store.update_service_desired_state(service_id, desired)
        except Exception as e:
            db.log_event("WARN", f"Could not record status '{observed.value}': {e}", service_id=service_id)

        if self.audit is not None:
            self.audit.record_service_action(
                actor,
                f"service_{action}",
                service_id,
                {
                    "service_name": service.name,
                    "project_id": service.project_id,
                    "container_id": container_id,
                    f"{done}_by": actor,
                },
            )

        db.log_event("INFO", f"Service {done} (container {container_id[:12]})", service_id=service_id, service_name=service.name)
        return container_id
