import socket
import threading
from dataclasses import replace

import pytest

from svcsup import db
from svcsup.docker_ops import ContainerNotFound, RuntimeCallError
from svcsup.models import ContainerState, PortMap, ServiceStatus
from svcsup.runtime import reset_lockdown
from svcsup.settings import Settings


@pytest.fixture
def store(tmp_path, monkeypatch):
    """Isolated sqlite store per test; the db module itself is the store object."""
    monkeypatch.setattr(db, "settings", Settings(db_path=str(tmp_path / "svcsup.db")))
    db.init_db()
    return db


@pytest.fixture(autouse=True)
def _fresh_lockdown():
    reset_lockdown()
    yield
    reset_lockdown()


@pytest.fixture
def make_service(store):
    def _make(name="web", project_id=1, ports=(PortMap(80, 8080),), **kwargs):
        return store.insert_service(name=name, project_id=project_id, ports=ports, **kwargs)

    return _make


class FakeRuntime:
    """In-memory ContainerRuntime recording every call."""

    def __init__(self):
        self.labels = {}  # service_id -> container_id
        self.states = {}  # container_id -> ContainerState
        self.calls = []
        self.fail_ops = set()

    def add_container(self, service_id, container_id, status=ServiceStatus.RUNNING, restart_count=0, exit_code=0):
        self.labels[service_id] = container_id
        self.states[container_id] = ContainerState(
            id=container_id, status=status, exit_code=exit_code, restart_count=restart_count
        )

    def _op(self, op, container_id, status=None):
        self.calls.append((op, container_id))
        if op in self.fail_ops:
            raise RuntimeCallError(f"{op} {container_id} failed: boom")
        if status is not None and container_id in self.states:
            self.states[container_id] = replace(self.states[container_id], status=status)

    def start_container(self, container_id, timeout_s=None):
        self._op("start", container_id, ServiceStatus.RUNNING)

    def stop_container(self, container_id, timeout_s=None):
        self._op("stop", container_id, ServiceStatus.STOPPED)

    def restart_container(self, container_id, timeout_s=None):
        self._op("restart", container_id, ServiceStatus.RUNNING)

    def inspect_container(self, container_id, timeout_s=None):
        self._op("inspect", container_id)
        if container_id not in self.states:
            raise RuntimeCallError(f"container {container_id} not found")
        return self.states[container_id]

    def discover_container(self, service_id, timeout_s=None):
        self.calls.append(("discover", service_id))
        if service_id not in self.labels:
            raise ContainerNotFound(f"no container found with service_id={service_id}")
        return self.labels[service_id]

    def runtime_calls(self):
        return [c for c in self.calls if c[0] in ("start", "stop", "restart")]


@pytest.fixture
def runtime():
    return FakeRuntime()


class SyncPool:
    """Runs background jobs inline so tests can assert on their effects."""

    def __init__(self):
        self.jobs = []
        self.failures = []

    def submit(self, name, fn, *args, **kwargs):
        self.jobs.append(name)
        try:
            fn(*args, **kwargs)
        except Exception as e:
            self.failures.append((name, e))
        return True

    def shutdown(self, wait=True):
        pass


@pytest.fixture
def pool():
    return SyncPool()


class SocketServer:
    """Throw-away TCP server on 127.0.0.1 that optionally greets and answers once per connection."""

    def __init__(self, greeting=b"", reply=b""):
        self.greeting = greeting
        self.reply = reply
        self.sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self.sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        self.sock.bind(("127.0.0.1", 0))
        self.sock.listen(8)
        self.sock.settimeout(0.2)
        self.port = self.sock.getsockname()[1]
        self.received = []
        self._stop = threading.Event()
        self._thr = threading.Thread(target=self._serve, daemon=True)
        self._thr.start()

    def _serve(self):
        while not self._stop.is_set():
            try:
                conn, _ = self.sock.accept()
            except OSError:
                continue
            with conn:
                conn.settimeout(0.5)
                try:
                    if self.greeting:
                        conn.sendall(self.greeting)
                    if self.reply:
                        self.received.append(conn.recv(64))
                        conn.sendall(self.reply)
                except OSError:
                    pass

    def close(self):
        self._stop.set()
        self._thr.join(timeout=2)
        self.sock.close()


@pytest.fixture
def socket_server():
    servers = []

    def _start(greeting=b"", reply=b""):
        srv = SocketServer(greeting=greeting, reply=reply)
        servers.append(srv)
        return srv

    yield _start
    for srv in servers:
        srv.close()


@pytest.fixture
def closed_port():
    s = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    s.bind(("127.0.0.1", 0))
    port = s.getsockname()[1]
    s.close()
    return port
