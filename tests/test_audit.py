import threading

import pytest

from svcsup import audit as audit_mod
from svcsup.audit import AuditLogger, BackgroundPool, LogSampler


def test_sampler_logs_first_then_every_nth():
    sampler = LogSampler(3)
    decisions = [sampler.should_log("k") for _ in range(7)]
    assert decisions == [True, False, True, False, False, True, False]
    assert sampler.seen("k") == 7
    assert sampler.should_log("other") is True


def test_pool_runs_jobs(store):
    done = []
    pool = BackgroundPool(workers=2, queue_size=8, retries=0)
    for i in range(5):
        assert pool.submit("job", done.append, i) is True
    pool.shutdown(wait=True)
    assert sorted(done) == [0, 1, 2, 3, 4]


def test_failed_job_is_retried_then_logged(store):
    attempts = []

    def flaky():
        attempts.append(1)
        raise ValueError("smtp down")

    pool = BackgroundPool(workers=1, queue_size=4, retries=2)
    pool.submit("email:test", flaky)
    pool.shutdown(wait=True)

    assert len(attempts) == 3
    errors = [e for e in store.latest_events() if e["level"] == "ERROR"]
    assert len(errors) == 1
    assert "email:test" in errors[0]["message"]
    assert "smtp down" in errors[0]["message"]


def test_retry_can_recover(store):
    attempts = []

    def second_time_lucky():
        attempts.append(1)
        if len(attempts) == 1:
            raise OSError("transient")

    pool = BackgroundPool(workers=1, queue_size=4, retries=1)
    pool.submit("job", second_time_lucky)
    pool.shutdown(wait=True)
    assert len(attempts) == 2
    assert store.latest_events() == []


def test_full_queue_drops_without_blocking(store):
    gate = threading.Event()
    pool = BackgroundPool(workers=1, queue_size=1, retries=0)
    assert pool.submit("slow", gate.wait, 5) is True
    assert pool.submit("slow", gate.wait, 5) is False
    gate.set()
    pool.shutdown(wait=True)
    assert any("queue full" in e["message"] for e in store.latest_events())


def test_submit_after_shutdown_is_refused(store):
    pool = BackgroundPool(workers=1, queue_size=2)
    pool.shutdown(wait=True)
    assert pool.submit("late", lambda: None) is False


def test_audit_logger_writes_through_pool(store, pool):
    audit = AuditLogger(pool)
    audit.record_service_action("alice", "service_start", 7, {"container_id": "abc"})
    audit.record_system_action("", "system_lockdown", {"reason": "incident"})

    rows = store.latest_audit()
    assert [(r.actor, r.action, r.target_type, r.target_id) for r in rows] == [
        ("system", "system_lockdown", "system", ""),
        ("alice", "service_start", "service", "7"),
    ]
    assert rows[1].meta == {"container_id": "abc"}
    assert pool.jobs == ["audit:service_start", "audit:system_lockdown"]


def test_audit_sink_failure_does_not_reach_caller(pool):
    def broken_sink(*args):
        raise RuntimeError("disk full")

    AuditLogger(pool, sink=broken_sink).record("bob", "service_stop", "service", "1")
    assert len(pool.failures) == 1


@pytest.mark.parametrize("draw,recorded", [(0, True), (3, False)])
def test_sampled_audit(monkeypatch, pool, draw, recorded):
    rows = []
    monkeypatch.setattr(audit_mod.random, "randrange", lambda n: draw)
    AuditLogger(pool, sink=lambda *a: rows.append(a)).record_sampled("bob", "probe", "service", "1", sample_rate=10)
    assert bool(rows) is recorded
    if recorded:
        assert rows[0][-1] == {"sampled": True, "sample_rate": "1:10"}
