from __future__ import annotations

import socket
import struct
import time
from dataclasses import dataclass
from functools import partial
from typing import Callable, Sequence

import httpx

from . import db
from .interfaces import ServiceStore
from .models import HealthCheckType, HealthStatus, ProbeResult, Route, Service
from .runtime import Deadline
from .settings import settings

NO_TARGET = "no target"


@dataclass(frozen=True)
class ProbeTarget:
    url: str | None
    host: str | None
    port: int | None

    def describe(self) -> str:
        if self.url:
            return self.url
        return f"{self.host}:{self.port}"


# A strategy returns (healthy, cause). It may raise; Prober.probe folds that into failing.
Strategy = Callable[[ProbeTarget, float], tuple[bool, str | None]]


def resolve_probe_target(service: Service, routes: Sequence[Route] = ()) -> ProbeTarget | None:
    """Build the probe target: first route's external URL, else localhost + first host port."""
    path = service.health_path or settings.default_health_path
    if not path.startswith("/"):
        path = f"/{path}"

    host = settings.probe_host
    port = service.ports[0].host if service.ports else None

    if routes:
        return ProbeTarget(url=f"{routes[0].external_url()}{path}", host=host if port else None, port=port)
    if port is None:
        return None
    return ProbeTarget(url=f"http://{host}:{port}{path}", host=host, port=port)


def _connect(target: ProbeTarget, timeout_s: float) -> socket.socket:
    if not target.host or not target.port:
        raise LookupError(NO_TARGET)
    return socket.create_connection((target.host, target.port), timeout=timeout_s)


def _socket_cause(e: OSError) -> str:
    if isinstance(e, socket.timeout):
        return "timeout"
    if isinstance(e, ConnectionRefusedError):
        return "connection refused"
    return f"connection error: {e}"


def probe_http(target: ProbeTarget, timeout_s: float, transport: httpx.BaseTransport | None = None) -> tuple[bool, str | None]:
    if not target.url:
        return False, NO_TARGET
    headers = {"User-Agent": "svcsup-healthcheck/1.0", "Accept": "application/json, text/plain, */*"}
    try:
        with httpx.Client(timeout=timeout_s, follow_redirects=False, transport=transport) as client:
            resp = client.get(target.url, headers=headers)
    except httpx.TimeoutException:
        return False, "timeout"
    except httpx.ConnectError as e:
        return False, f"connection refused: {e}"
    except httpx.HTTPError as e:
        return False, f"http error: {type(e).__name__}: {e}"
    if 200 <= resp.status_code < 400:
        return True, None
    return False, f"HTTP {resp.status_code}"


def probe_tcp(target: ProbeTarget, timeout_s: float) -> tuple[bool, str | None]:
    try:
        conn = _connect(target, timeout_s)
    except LookupError:
        return False, NO_TARGET
    except OSError as e:
        return False, _socket_cause(e)
    conn.close()
    return True, None


def _handshake(target: ProbeTarget, timeout_s: float, hello: bytes, accept: Callable[[bytes], bool]) -> bool:
    """Send `hello` (if any), read the first reply bytes and let `accept` judge them."""
    with _connect(target, timeout_s) as conn:
        if hello:
            conn.sendall(hello)
        reply = conn.recv(64)
    return bool(reply) and accept(reply)


def _with_tcp_fallback(target: ProbeTarget, timeout_s: float, hello: bytes, accept: Callable[[bytes], bool]) -> tuple[bool, str | None]:
    started = time.monotonic()
    try:
        if _handshake(target, timeout_s, hello, accept):
            return True, None
    except LookupError:
        return False, NO_TARGET
    except OSError:
        pass
    left = timeout_s - (time.monotonic() - started)
    if left <= 0:
        return False, "timeout"
    return probe_tcp(target, left)


# Postgres SSLRequest: length 8 + magic 80877103; the server answers a single 'S' or 'N'.
_PG_SSL_REQUEST = struct.pack("!ii", 8, 80877103)


def probe_postgres(target: ProbeTarget, timeout_s: float) -> tuple[bool, str | None]:
    return _with_tcp_fallback(target, timeout_s, _PG_SSL_REQUEST, lambda r: r[:1] in (b"S", b"N", b"E"))


def _mysql_greeting(reply: bytes) -> bool:
    # 3-byte length + sequence id, then protocol version 10 or an 0xff error packet.
    return len(reply) >= 5 and reply[4] in (0x0A, 0xFF)


def probe_mysql(target: ProbeTarget, timeout_s: float) -> tuple[bool, str | None]:
    return _with_tcp_fallback(target, timeout_s, b"", _mysql_greeting)


def probe_redis(target: ProbeTarget, timeout_s: float) -> tuple[bool, str | None]:
    # "-NOAUTH" still proves a redis server is answering.
    return _with_tcp_fallback(target, timeout_s, b"PING\r\n", lambda r: r[:1] in (b"+", b"-"))


STRATEGIES: dict[HealthCheckType, Strategy] = {
    HealthCheckType.HTTP: probe_http,
    HealthCheckType.TCP: probe_tcp,
    HealthCheckType.POSTGRES: probe_postgres,
    HealthCheckType.MYSQL: probe_mysql,
    HealthCheckType.REDIS: probe_redis,
}

_missing = set(HealthCheckType) - set(STRATEGIES)
if _missing:
    raise RuntimeError(f"health check types without a strategy: {sorted(t.value for t in _missing)}")


class Prober:
    """Runs one health check per call and folds every outcome into a ProbeResult."""

    def __init__(
        self,
        store: ServiceStore = db,
        timeout_s: float | None = None,
        http_transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.store = store
        self.timeout_s = settings.probe_timeout_s if timeout_s is None else timeout_s
        self.http_transport = http_transport
        self.strategies: dict[HealthCheckType, Strategy] = dict(STRATEGIES)
        if http_transport is not None:
            self.strategies[HealthCheckType.HTTP] = partial(probe_http, transport=http_transport)

    def probe(self, service: Service, routes: Sequence[Route] = (), deadline: Deadline | None = None) -> ProbeResult:
        target = resolve_probe_target(service, routes)
        if target is None:
            return ProbeResult(status=HealthStatus.FAILING, cause=NO_TARGET)

        timeout_s = self.timeout_s if deadline is None else deadline.remaining(self.timeout_s)
        if (deadline is not None and deadline.cancelled) or not timeout_s:
            return ProbeResult(status=HealthStatus.FAILING, cause="cancelled", target=target.describe())

        check_type = HealthCheckType(service.health_check_type)
        start = time.monotonic()
        try:
            ok, cause = self.strategies[check_type](target, timeout_s)
        except Exception as e:
            ok, cause = False, f"error: {type(e).__name__}: {e}"
        latency_ms = round((time.monotonic() - start) * 1000.0, 2)

        return ProbeResult(
            status=HealthStatus.OK if ok else HealthStatus.FAILING,
            cause=cause,
            target=target.describe(),
            latency_ms=latency_ms,
        )

    def probe_and_update(self, service_id: int, deadline: Deadline | None = None) -> ProbeResult | None:
        """Probe one service and persist health_status + last_probe_at.

        Returns None without probing when the service is crash-looping.
        """
        service = self.store.get_service(service_id)
        if service.crash_looping:
            return None

        try:
            routes = self.store.list_routes(service_id)
        except Exception as e:
            db.log_event("WARN", f"Route lookup failed, probing without routes: {e}", service_id=service_id)
            routes = []

        result = self.probe(service, routes, deadline=deadline)
        if deadline is not None:
            deadline.check("health probe", service_id=service_id)

        self.store.update_service_health(service_id, result.status, result.timestamp)
        if not result.ok:
            db.log_event("WARN", f"Health check failed ({result.target}): {result.cause}", service_id=service_id, service_name=service.name)
        return result
