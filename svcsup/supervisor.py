from __future__ import annotations

from typing import Any

import httpx

from . import db, docker_ops
from .alerts import crash_loop_message, email_configured, send_email
from .audit import AuditLogger, BackgroundPool
from .crashloop import CrashLoopDetector
from .diagnostics import build_diagnostics
from .health import Prober
from .interfaces import ContainerRuntime, ServiceStore
from .lifecycle import LifecycleController
from .models import Service
from .monitor import HealthMonitor
from .runtime import Deadline, SupervisorState


class Supervisor:
    """Wires prober, lifecycle controller, crash-loop detector and monitor to one store/runtime."""

    def __init__(
        self,
        store: ServiceStore = db,
        runtime: ContainerRuntime = docker_ops,
        pool: BackgroundPool | None = None,
        http_transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.store = store
        self.runtime = runtime
        self.pool = pool or BackgroundPool()
        self.audit = AuditLogger(self.pool)
        self.state = SupervisorState()
        self.prober = Prober(store=store, http_transport=http_transport)
        self.detector = CrashLoopDetector(store=store, audit=self.audit, state=self.state, on_lock=self._notify_lock)
        self.lifecycle = LifecycleController(store=store, runtime=runtime, audit=self.audit)
        self.monitor = HealthMonitor(
            prober=self.prober,
            controller=self.lifecycle,
            detector=self.detector,
            store=store,
            runtime=runtime,
        )

    def _notify_lock(self, service: Service, restart_count: int, exit_code: int | None) -> None:
        if not email_configured():
            return
        subject, body = crash_loop_message(service, restart_count, exit_code, int(self.detector.window.total_seconds()))
        self.pool.submit("email:crashloop", send_email, subject, body)

    def diagnostics(self, service_id: int, deadline: Deadline | None = None) -> dict[str, Any]:
        snapshot = build_diagnostics(service_id, store=self.store, prober=self.prober, deadline=deadline)
        snapshot["phase"] = self.detector.phase(self.store.get_service(service_id)).value
        return snapshot

    def shutdown(self) -> None:
        self.monitor.stop()
        self.pool.shutdown(wait=False)
