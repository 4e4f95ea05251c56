from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import datetime
from threading import Event, Lock

from .errors import OperationCancelled
from .models import SupervisedPhase, utc_now


class Deadline:
    """Time budget and cancellation signal handed down from the triggering request.

    Network-bound steps ask for `remaining(cap)` to size their own timeout and
    call `check()` before starting so a cancelled request never reaches the
    runtime or the store.
    """

    def __init__(self, timeout_s: float | None = None, cancel_event: Event | None = None) -> None:
        self._expires_at = None if timeout_s is None else time.monotonic() + max(0.0, float(timeout_s))
        self._cancel_event = cancel_event or Event()

    def cancel(self) -> None:
        self._cancel_event.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    @property
    def expired(self) -> bool:
        if self.cancelled:
            return True
        return self._expires_at is not None and time.monotonic() >= self._expires_at

    def remaining(self, cap: float | None = None) -> float | None:
        if self._expires_at is None:
            return cap
        left = max(0.0, self._expires_at - time.monotonic())
        return left if cap is None else min(cap, left)

    def check(self, what: str, service_id: int | None = None) -> None:
        if self.cancelled:
            raise OperationCancelled(f"{what} cancelled", service_id=service_id)
        if self.expired:
            raise OperationCancelled(f"{what} deadline exceeded", service_id=service_id)


class SupervisorState:
    """In-memory per-service bookkeeping for the monitor and crash-loop detector.

    Keyed by service id. Entries are only ever read or replaced whole, so
    services never contend with each other on a shared lock.
    """

    def __init__(self) -> None:
        self.phases: dict[int, SupervisedPhase] = {}
        self.fail_counts: dict[int, int] = {}  # service_id -> consecutive failing probes
        self.runtime_restarts: dict[int, int] = {}  # service_id -> last seen runtime restart counter

    def phase(self, service_id: int) -> SupervisedPhase:
        return self.phases.get(service_id, SupervisedPhase.RUNNING)

    def set_phase(self, service_id: int, phase: SupervisedPhase) -> None:
        self.phases[service_id] = phase

    def mark_probe(self, service_id: int, ok: bool) -> int:
        """Record a probe outcome and return the consecutive failure count."""
        if ok:
            self.fail_counts[service_id] = 0
            return 0
        count = self.fail_counts.get(service_id, 0) + 1
        self.fail_counts[service_id] = count
        return count

    def swap_runtime_restarts(self, service_id: int, current: int) -> int | None:
        """Store the runtime restart counter and return the previous one (None if unseen)."""
        prev = self.runtime_restarts.get(service_id)
        self.runtime_restarts[service_id] = current
        return prev

    def forget(self, service_id: int) -> None:
        self.phases.pop(service_id, None)
        self.fail_counts.pop(service_id, None)
        self.runtime_restarts.pop(service_id, None)


@dataclass
class LockdownStatus:
    is_locked: bool = False
    reason: str = ""
    initiated_by: str = ""
    since: datetime | None = None


@dataclass
class SystemLockdown:
    """System-wide access lockdown, independent of per-service crash-loop locks."""

    _status: LockdownStatus = field(default_factory=LockdownStatus)
    _lock: Lock = field(default_factory=Lock)

    def engage(self, reason: str, actor: str) -> LockdownStatus:
        with self._lock:
            self._status = LockdownStatus(is_locked=True, reason=reason, initiated_by=actor, since=utc_now())
            return LockdownStatus(**vars(self._status))

    def lift(self) -> None:
        with self._lock:
            self._status = LockdownStatus()

    def status(self) -> LockdownStatus:
        with self._lock:
            return LockdownStatus(**vars(self._status))

    @property
    def is_locked(self) -> bool:
        return self.status().is_locked


_lockdown: SystemLockdown | None = None
_lockdown_guard = Lock()


def get_lockdown() -> SystemLockdown:
    global _lockdown
    with _lockdown_guard:
        if _lockdown is None:
            _lockdown = SystemLockdown()
        return _lockdown


def install_lockdown(instance: SystemLockdown) -> None:
    global _lockdown
    with _lockdown_guard:
        _lockdown = instance


def reset_lockdown() -> None:
    """Drop the process-wide instance; the next get_lockdown() starts unlocked."""
    global _lockdown
    with _lockdown_guard:
        _lockdown = None
