from __future__ import annotations

import json
import logging
import os
import sqlite3
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Iterable

from .errors import NotFound
from .models import (
    DesiredState,
    HealthCheckType,
    HealthStatus,
    PortMap,
    Route,
    Service,
    ServiceStatus,
    from_iso,
    to_iso,
    utc_now,
)
from .settings import settings

logger = logging.getLogger("svcsup")


def _resolve_db_path() -> str:
    """Return a file path usable by sqlite.

    If the configured path is a directory (e.g. a bind mount Docker created
    for a missing file), the DB file is placed inside it.
    """

    p = os.path.abspath(settings.db_path)

    if os.path.isdir(p):
        p = os.path.join(p, "svcsup.db")

    parent = os.path.dirname(p)
    if parent and not os.path.exists(parent):
        os.makedirs(parent, exist_ok=True)

    return p


def connect() -> sqlite3.Connection:
    conn = sqlite3.connect(_resolve_db_path(), timeout=5.0, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys=ON")
    return conn


def init_db() -> None:
    """Create tables if they do not exist."""
    with connect() as conn:
        conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS services (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              project_id INTEGER NOT NULL,
              name TEXT NOT NULL,
              ports TEXT NOT NULL DEFAULT '[]',
              health_path TEXT,
              health_check_type TEXT NOT NULL DEFAULT 'http',
              status TEXT NOT NULL DEFAULT 'unknown', -- running|stopped|unknown
              desired_state TEXT NOT NULL DEFAULT 'running', -- running|stopped|locked
              health_status TEXT NOT NULL DEFAULT 'unknown', -- unknown|ok|failing
              last_probe_at TEXT,
              crash_looping INTEGER NOT NULL DEFAULT 0,
              restart_count INTEGER NOT NULL DEFAULT 0,
              restart_window_at TEXT,
              last_exit_code INTEGER,
              container_id TEXT,
              created_at TEXT NOT NULL,
              UNIQUE(project_id, name),
              CHECK ((desired_state = 'locked') = (crash_looping = 1))
            );

            CREATE TABLE IF NOT EXISTS routes (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              service_id INTEGER NOT NULL,
              domain TEXT NOT NULL,
              path TEXT NOT NULL DEFAULT '/',
              tls INTEGER NOT NULL DEFAULT 0,
              created_at TEXT NOT NULL,
              FOREIGN KEY(service_id) REFERENCES services(id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS events (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              ts TEXT NOT NULL,
              level TEXT NOT NULL,
              service_id INTEGER,
              service_name TEXT,
              message TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS audit_logs (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              ts TEXT NOT NULL,
              actor TEXT NOT NULL,
              action TEXT NOT NULL,
              target_type TEXT NOT NULL,
              target_id TEXT NOT NULL,
              meta TEXT NOT NULL DEFAULT '{}'
            );

            CREATE INDEX IF NOT EXISTS idx_events_ts ON events(ts);
            CREATE INDEX IF NOT EXISTS idx_routes_service_id ON routes(service_id);
            """
        )


_LEVELS = {"INFO": logging.INFO, "WARN": logging.WARNING, "ERROR": logging.ERROR, "DEBUG": logging.DEBUG}


def log_event(level: str, message: str, service_id: int | None = None, service_name: str | None = None) -> None:
    """Append to the event log. Never raises: the store may be the thing that failed."""
    level = level.upper()
    logger.log(_LEVELS.get(level, logging.INFO), "%s%s", f"[service {service_id}] " if service_id else "", message)
    try:
        with connect() as conn:
            conn.execute(
                "INSERT INTO events (ts, level, service_id, service_name, message) VALUES (?, ?, ?, ?, ?)",
                (to_iso(utc_now()), level, service_id, service_name, message),
            )
    except sqlite3.Error as e:
        logger.warning("event log write failed: %s", e)


def _row_to_service(row: sqlite3.Row) -> Service:
    ports = tuple(PortMap(container=int(p["container"]), host=int(p["host"])) for p in json.loads(row["ports"] or "[]"))
    return Service(
        id=row["id"],
        name=row["name"],
        project_id=row["project_id"],
        ports=ports,
        health_path=row["health_path"],
        health_check_type=HealthCheckType(row["health_check_type"]),
        status=ServiceStatus(row["status"]),
        desired_state=DesiredState(row["desired_state"]),
        health_status=HealthStatus(row["health_status"]),
        last_probe_at=from_iso(row["last_probe_at"]),
        crash_looping=bool(row["crash_looping"]),
        restart_count=row["restart_count"],
        restart_window_at=from_iso(row["restart_window_at"]),
        last_exit_code=row["last_exit_code"],
        container_id=row["container_id"],
    )


@dataclass(frozen=True)
class AuditRow:
    id: int
    ts: str
    actor: str
    action: str
    target_type: str
    target_id: str
    meta: dict[str, Any]


def insert_service(
    name: str,
    project_id: int,
    ports: Iterable[PortMap] = (),
    health_path: str | None = None,
    health_check_type: HealthCheckType = HealthCheckType.HTTP,
    container_id: str | None = None,
    status: ServiceStatus = ServiceStatus.UNKNOWN,
) -> Service:
    ports_json = json.dumps([{"container": p.container, "host": p.host} for p in ports])
    with connect() as conn:
        cur = conn.execute(
            """
            INSERT INTO services (project_id, name, ports, health_path, health_check_type, status, container_id, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                project_id,
                name,
                ports_json,
                health_path,
                HealthCheckType(health_check_type).value,
                ServiceStatus(status).value,
                container_id,
                to_iso(utc_now()),
            ),
        )
        row = conn.execute("SELECT * FROM services WHERE id=?", (cur.lastrowid,)).fetchone()
        return _row_to_service(row)


def get_service(service_id: int) -> Service:
    with connect() as conn:
        row = conn.execute("SELECT * FROM services WHERE id=?", (service_id,)).fetchone()
    if row is None:
        raise NotFound(f"service {service_id} not found", service_id=service_id)
    return _row_to_service(row)


def list_services() -> list[Service]:
    with connect() as conn:
        rows = conn.execute("SELECT * FROM services ORDER BY id").fetchall()
        return [_row_to_service(r) for r in rows]


def insert_route(service_id: int, domain: str, path: str = "/", tls: bool = False) -> Route:
    get_service(service_id)
    with connect() as conn:
        cur = conn.execute(
            "INSERT INTO routes (service_id, domain, path, tls, created_at) VALUES (?, ?, ?, ?, ?)",
            (service_id, domain, path, int(tls), to_iso(utc_now())),
        )
        return Route(service_id=service_id, domain=domain, path=path, tls=tls, id=cur.lastrowid)


def list_routes(service_id: int) -> list[Route]:
    with connect() as conn:
        rows = conn.execute("SELECT * FROM routes WHERE service_id=? ORDER BY id", (service_id,)).fetchall()
        return [
            Route(service_id=r["service_id"], domain=r["domain"], path=r["path"], tls=bool(r["tls"]), id=r["id"])
            for r in rows
        ]


def _update_one(sql: str, params: tuple[Any, ...], service_id: int) -> None:
    with connect() as conn:
        cur = conn.execute(sql, params)
        if cur.rowcount == 0:
            raise NotFound(f"service {service_id} not found", service_id=service_id)


def update_service_health(service_id: int, health_status: HealthStatus, probed_at: datetime | None = None) -> None:
    """Persist health_status and last_probe_at in one statement."""
    _update_one(
        "UPDATE services SET health_status=?, last_probe_at=? WHERE id=?",
        (HealthStatus(health_status).value, to_iso(probed_at or utc_now()), service_id),
        service_id,
    )


def update_service_restart(
    service_id: int, exit_code: int | None, restart_count: int, window_start: datetime | None
) -> None:
    _update_one(
        "UPDATE services SET last_exit_code=?, restart_count=?, restart_window_at=? WHERE id=?",
        (exit_code, restart_count, to_iso(window_start), service_id),
        service_id,
    )


def update_service_state(service_id: int, desired_state: DesiredState, crash_looping: bool) -> None:
    _update_one(
        "UPDATE services SET desired_state=?, crash_looping=? WHERE id=?",
        (DesiredState(desired_state).value, int(crash_looping), service_id),
        service_id,
    )


def update_service_desired_state(service_id: int, desired_state: DesiredState) -> bool:
    """Record operator intent unless the service is crash-loop locked. Returns False when locked."""
    if DesiredState(desired_state) is DesiredState.LOCKED:
        raise ValueError("the locked state is only set together with crash_looping")
    with connect() as conn:
        cur = conn.execute(
            "UPDATE services SET desired_state=? WHERE id=? AND crash_looping=0",
            (DesiredState(desired_state).value, service_id),
        )
        if cur.rowcount:
            return True
        if conn.execute("SELECT 1 FROM services WHERE id=?", (service_id,)).fetchone() is None:
            raise NotFound(f"service {service_id} not found", service_id=service_id)
    return False


def unlock_service(service_id: int) -> None:
    """Clear the crash-loop lock and zero the restart bookkeeping."""
    _update_one(
        """
        UPDATE services
        SET crash_looping=0, desired_state=?, restart_count=0, restart_window_at=NULL
        WHERE id=?
        """,
        (DesiredState.RUNNING.value, service_id),
        service_id,
    )


def update_service_container_id(service_id: int, container_id: str) -> None:
    _update_one("UPDATE services SET container_id=? WHERE id=?", (container_id, service_id), service_id)


def update_service_status(service_id: int, status: ServiceStatus) -> None:
    _update_one("UPDATE services SET status=? WHERE id=?", (ServiceStatus(status).value, service_id), service_id)


def record_audit(actor: str, action: str, target_type: str, target_id: str, meta: dict[str, Any] | None = None) -> None:
    with connect() as conn:
        conn.execute(
            "INSERT INTO audit_logs (ts, actor, action, target_type, target_id, meta) VALUES (?, ?, ?, ?, ?, ?)",
            (to_iso(utc_now()), actor, action, target_type, target_id, json.dumps(meta or {}, default=str)),
        )


def latest_audit(limit: int = 50) -> list[AuditRow]:
    with connect() as conn:
        rows = conn.execute("SELECT * FROM audit_logs ORDER BY id DESC LIMIT ?", (limit,)).fetchall()
    return [
        AuditRow(
            id=r["id"],
            ts=r["ts"],
            actor=r["actor"],
            action=r["action"],
            target_type=r["target_type"],
            target_id=r["target_id"],
            meta=json.loads(r["meta"]),
        )
        for r in rows
    ]


def latest_events(limit: int = 100) -> list[dict[str, Any]]:
    with connect() as conn:
        rows = conn.execute("SELECT * FROM events ORDER BY id DESC LIMIT ?", (limit,)).fetchall()
        return [dict(r) for r in rows]
