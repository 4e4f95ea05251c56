from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta
from threading import Event, Thread

from . import db, docker_ops
from .crashloop import CrashLoopDetector
from .docker_ops import RuntimeCallError
from .errors import SupervisorError
from .health import Prober
from .interfaces import ContainerRuntime, ServiceStore
from .lifecycle import LifecycleController
from .models import DesiredState, Service, ServiceStatus, utc_now
from .settings import settings


class HealthMonitor:
    """Periodically syncs runtime status, probes services and self-heals within crash-loop limits."""

    def __init__(
        self,
        prober: Prober,
        controller: LifecycleController,
        detector: CrashLoopDetector,
        store: ServiceStore = db,
        runtime: ContainerRuntime = docker_ops,
        interval_s: int | None = None,
        fail_threshold: int | None = None,
        workers: int | None = None,
        stable_after_s: int | None = None,
    ) -> None:
        self.prober = prober
        self.controller = controller
        self.detector = detector
        self.store = store
        self.runtime = runtime
        self.interval_s = max(1, settings.poll_interval_s if interval_s is None else interval_s)
        self.fail_threshold = max(1, settings.fail_threshold if fail_threshold is None else int(fail_threshold))
        self.workers = max(1, settings.probe_workers if workers is None else workers)
        self.stable_after = timedelta(seconds=settings.stable_after_s if stable_after_s is None else stable_after_s)
        self._stop = Event()
        self._thr: Thread | None = None

    @property
    def state(self):
        return self.detector.state

    def start(self) -> None:
        if self._thr and self._thr.is_alive():
            return
        self._stop.clear()
        self._thr = Thread(target=self._loop, name="svcsup-monitor", daemon=True)
        self._thr.start()

    def stop(self, wait: bool = False) -> None:
        self._stop.set()
        if wait and self._thr:
            self._thr.join(timeout=self.interval_s + settings.probe_timeout_s)

    @property
    def running(self) -> bool:
        return bool(self._thr and self._thr.is_alive())

    def _loop(self) -> None:
        db.log_event("INFO", f"Health monitor started (interval {self.interval_s}s)")
        while not self._stop.is_set():
            try:
                self.tick()
            except Exception as e:
                db.log_event("ERROR", f"Monitor tick failed: {type(e).__name__}: {e}")
            self._stop.wait(self.interval_s)
        db.log_event("INFO", "Health monitor stopped")

    def tick(self) -> None:
        services = [s for s in self.store.list_services() if self.monitorable(s)]
        if not services:
            return
        with ThreadPoolExecutor(max_workers=min(self.workers, len(services)), thread_name_prefix="svcsup-probe") as pool:
            list(pool.map(self.supervise, services))

    @staticmethod
    def monitorable(service: Service) -> bool:
        return not service.crash_looping and service.desired_state is DesiredState.RUNNING

    def supervise(self, service: Service) -> None:
        try:
            self._supervise(service)
        except SupervisorError as e:
            db.log_event("WARN", f"Supervision step failed ({e.kind}): {e}", service_id=service.id, service_name=service.name)
        except Exception as e:
            db.log_event("ERROR", f"Supervision step crashed: {type(e).__name__}: {e}", service_id=service.id, service_name=service.name)

    def _supervise(self, service: Service) -> None:
        self._sync_runtime(service)
        current = self.store.get_service(service.id)
        if current.crash_looping or current.status is not ServiceStatus.RUNNING:
            return

        result = self.prober.probe_and_update(service.id)
        if result is None:
            return
        if result.ok:
            self.state.mark_probe(service.id, True)
            self.detector.mark_stable(service.id)
            return

        fails = self.state.mark_probe(service.id, False)
        if fails < self.fail_threshold:
            return

        db.log_event(
            "ERROR",
            f"Self-healing: restarting after {fails} failed checks ({result.cause})",
            service_id=service.id,
            service_name=service.name,
        )
        self.state.mark_probe(service.id, True)
        self.controller.restart(service.id, actor="system")
        # No exit code: supervised restarts always count towards the lock.
        self.detector.observe_restart(service.id, None)

    def _sync_runtime(self, service: Service) -> None:
        """Refresh observed status and report runtime-side restarts to the detector."""
        container_id = service.container_id or self.controller.resolve_container_id(service)
        try:
            observed = self.runtime.inspect_container(container_id, timeout_s=settings.probe_timeout_s)
        except RuntimeCallError as e:
            db.log_event("WARN", f"Inspect failed: {e}", service_id=service.id, service_name=service.name)
            if service.status is not ServiceStatus.UNKNOWN:
                self.store.update_service_status(service.id, ServiceStatus.UNKNOWN)
            return

        if observed.status is not service.status:
            self.store.update_service_status(service.id, observed.status)

        prev = self.state.swap_runtime_restarts(service.id, observed.restart_count)
        if prev is not None and observed.restart_count > prev:
            for _ in range(observed.restart_count - prev):
                if self.detector.observe_restart(service.id, observed.exit_code).crash_looping:
                    break

        if (
            observed.status is ServiceStatus.RUNNING
            and observed.started_at is not None
            and utc_now() - observed.started_at >= self.stable_after
        ):
            self.detector.mark_stable(service.id)
