from __future__ import annotations

from datetime import datetime, timedelta

from . import db
from .audit import AuditLogger
from .errors import InvalidOperation
from .interfaces import ServiceStore
from .models import DesiredState, Service, SupervisedPhase, utc_now
from .runtime import SupervisorState
from .settings import settings


def next_restart_window(
    restart_count: int, window_at: datetime | None, now: datetime, window: timedelta
) -> tuple[int, datetime]:
    """Apply the window policy to one observed restart.

    The first restart with no window, or once `window_at + window` has passed,
    opens a new window with a count of 1; later restarts inside it increment.
    """
    if window_at is None or now >= window_at + window:
        return 1, now
    return restart_count + 1, window_at


def in_window(service: Service, now: datetime, window: timedelta) -> bool:
    return service.restart_window_at is not None and now < service.restart_window_at + window


class CrashLoopDetector:
    """Counts restarts per rolling window and locks services that exceed the threshold."""

    def __init__(
        self,
        store: ServiceStore = db,
        audit: AuditLogger | None = None,
        state: SupervisorState | None = None,
        threshold: int | None = None,
        window_s: int | None = None,
        on_lock=None,
    ) -> None:
        self.store = store
        self.audit = audit
        self.state = state or SupervisorState()
        self.threshold = max(1, settings.crash_loop_threshold if threshold is None else int(threshold))
        self.window = timedelta(seconds=settings.crash_loop_window_s if window_s is None else window_s)
        self.on_lock = on_lock

    def observe_restart(self, service_id: int, exit_code: int | None = None, now: datetime | None = None) -> Service:
        """Record one restart/crash. Returns the service as it now stands.

        A clean exit (code 0) is counted but never locks the service.
        """
        now = now or utc_now()
        service = self.store.get_service(service_id)
        if service.crash_looping:
            return service

        count, window_at = next_restart_window(service.restart_count, service.restart_window_at, now, self.window)
        self.store.update_service_restart(service_id, exit_code, count, window_at)
        self.state.set_phase(service_id, SupervisedPhase.RESTARTING)

        if count >= self.threshold and exit_code != 0:
            self._lock(service, count, exit_code)
        return self.store.get_service(service_id)

    def _lock(self, service: Service, restart_count: int, exit_code: int | None) -> None:
        self.store.update_service_state(service.id, DesiredState.LOCKED, True)
        self.state.set_phase(service.id, SupervisedPhase.LOCKED)
        db.log_event(
            "ERROR",
            f"Crash loop detected: {restart_count} restarts within {int(self.window.total_seconds())}s, service locked",
            service_id=service.id,
            service_name=service.name,
        )
        if self.audit is not None:
            self.audit.record_service_action(
                "system",
                "service_crashloop_lock",
                service.id,
                {
                    "service_name": service.name,
                    "project_id": service.project_id,
                    "restart_count": restart_count,
                    "last_exit_code": exit_code,
                    "window_seconds": int(self.window.total_seconds()),
                },
            )
        if self.on_lock is not None:
            self.on_lock(service, restart_count, exit_code)

    def mark_stable(self, service_id: int) -> None:
        """Restarting -> Running after a successful probe or enough uptime. Bookkeeping is untouched."""
        if self.state.phase(service_id) is SupervisedPhase.RESTARTING:
            self.state.set_phase(service_id, SupervisedPhase.RUNNING)

    def phase(self, service: Service) -> SupervisedPhase:
        if service.crash_looping:
            return SupervisedPhase.LOCKED
        phase = self.state.phase(service.id)
        if phase is SupervisedPhase.LOCKED:
            # Unlocked elsewhere (another process or the store directly).
            return SupervisedPhase.RUNNING
        return phase

    def unlock(self, service_id: int, actor: str = "system") -> Service:
        service = self.store.get_service(service_id)
        if not service.crash_looping:
            raise InvalidOperation(f"service {service_id} is not in crash loop state", service_id=service_id)

        self.store.unlock_service(service_id)
        self.state.set_phase(service_id, SupervisedPhase.RUNNING)
        self.state.mark_probe(service_id, True)
        db.log_event("INFO", f"Crash loop lock cleared by {actor}", service_id=service_id, service_name=service.name)
        if self.audit is not None:
            self.audit.record_service_action(
                actor,
                "service_crashloop_unlock",
                service_id,
                {"service_name": service.name, "project_id": service.project_id, "unlocked_by": actor},
            )
        return self.store.get_service(service_id)
