from __future__ import annotations

import random
from concurrent.futures import ThreadPoolExecutor
from threading import BoundedSemaphore
from typing import Any, Callable

from . import db
from .interfaces import BackgroundSubmitter
from .settings import settings


class LogSampler:
    """Lets the first occurrence per key through, then every Nth."""

    def __init__(self, every: int) -> None:
        self.every = max(1, int(every))
        self.counts: dict[str, int] = {}

    def should_log(self, key: str) -> bool:
        n = self.counts.get(key, 0) + 1
        self.counts[key] = n
        return n == 1 or n % self.every == 0

    def seen(self, key: str) -> int:
        return self.counts.get(key, 0)


class BackgroundPool:
    """Bounded fire-and-forget executor.

    `submit` never blocks: once `queue_size` jobs are in flight further jobs
    are dropped. Job failures are retried `retries` times and then logged
    through a sampler; nothing is ever raised back to the submitter.
    """

    def __init__(
        self,
        workers: int | None = None,
        queue_size: int | None = None,
        retries: int | None = None,
        sample_every: int | None = None,
    ) -> None:
        self.executor = ThreadPoolExecutor(
            max_workers=max(1, settings.background_workers if workers is None else workers),
            thread_name_prefix="svcsup-bg",
        )
        self.slots = BoundedSemaphore(max(1, settings.background_queue if queue_size is None else queue_size))
        self.retries = max(0, settings.background_retries if retries is None else retries)
        self.sampler = LogSampler(settings.log_sample_every if sample_every is None else sample_every)

    def submit(self, name: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> bool:
        if not self.slots.acquire(blocking=False):
            if self.sampler.should_log(f"drop:{name}"):
                db.log_event("WARN", f"Background queue full, dropped '{name}' ({self.sampler.seen(f'drop:{name}')} so far)")
            return False
        try:
            self.executor.submit(self._run, name, fn, args, kwargs)
        except RuntimeError:
            # executor already shut down
            self.slots.release()
            return False
        return True

    def _run(self, name: str, fn: Callable[..., Any], args: tuple[Any, ...], kwargs: dict[str, Any]) -> None:
        try:
            for attempt in range(self.retries + 1):
                try:
                    fn(*args, **kwargs)
                    return
                except Exception as e:
                    if attempt < self.retries:
                        continue
                    key = f"fail:{name}"
                    if self.sampler.should_log(key):
                        db.log_event(
                            "ERROR",
                            f"Background job '{name}' failed ({self.sampler.seen(key)} failures so far): {type(e).__name__}: {e}",
                        )
        finally:
            self.slots.release()

    def shutdown(self, wait: bool = True) -> None:
        self.executor.shutdown(wait=wait)


class AuditLogger:
    """Best-effort audit trail; records are written off the request path."""

    def __init__(self, pool: BackgroundSubmitter, sink: Callable[..., None] = db.record_audit) -> None:
        self.pool = pool
        self.sink = sink

    def record(
        self, actor: str, action: str, target_type: str, target_id: str, meta: dict[str, Any] | None = None
    ) -> None:
        self.pool.submit(f"audit:{action}", self.sink, actor or "system", action, target_type, target_id, dict(meta or {}))

    def record_sampled(
        self,
        actor: str,
        action: str,
        target_type: str,
        target_id: str,
        meta: dict[str, Any] | None = None,
        sample_rate: int = 20,
    ) -> None:
        if random.randrange(max(1, sample_rate)) != 0:
            return
        meta = dict(meta or {})
        meta["sampled"] = True
        meta["sample_rate"] = f"1:{sample_rate}"
        self.record(actor, action, target_type, target_id, meta)

    def record_service_action(self, actor: str, action: str, service_id: int, meta: dict[str, Any] | None = None) -> None:
        self.record(actor, action, "service", str(service_id), meta)

    def record_system_action(self, actor: str, action: str, meta: dict[str, Any] | None = None) -> None:
        self.record(actor, action, "system", "", meta)
