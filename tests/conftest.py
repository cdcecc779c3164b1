# tests/conftest.py
import socket
from pathlib import Path

import httpx
import pytest
import structlog
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey

from sessionledger.config import DaemonSettings, LedgerPaths
from sessionledger.daemon.platform import ProcessInspector
from sessionledger.storage import JsonlStorage


@pytest.fixture(autouse=True)
def isolated_env(monkeypatch):
    """Never touch the real ~/.sessionledger or a real daemon port."""
    monkeypatch.delenv("SESSIONLEDGER_HOME", raising=False)
    monkeypatch.delenv("SESSIONLEDGER_PORT", raising=False)
    monkeypatch.delenv("SESSIONLEDGER_DB_PATH", raising=False)


@pytest.fixture(autouse=True)
def reset_logging():
    """CLI invocations point structlog at CliRunner streams that close afterwards."""
    yield
    structlog.reset_defaults()


@pytest.fixture
def paths(tmp_path: Path) -> LedgerPaths:
    p = LedgerPaths(tmp_path / "home")
    p.ensure_dirs()
    return p


@pytest.fixture
def storage(paths: LedgerPaths) -> JsonlStorage:
    s = JsonlStorage(paths.data_dir)
    yield s
    s.close()


@pytest.fixture
def signing_key() -> Ed25519PrivateKey:
    return Ed25519PrivateKey.generate()


def free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


@pytest.fixture
def settings() -> DaemonSettings:
    return DaemonSettings(port=free_port(), spawn_wait=0.0, poll_interval=0.0, kill_grace=1.0)


class FakeWorld(ProcessInspector):
    """Process table plus the daemons answering /health, all in memory."""

    def __init__(self):
        self.running = set()
        self.listeners = {}          # port -> pid
        self.healthy = {}            # port -> health body
        self.spawned = []
        self.terminated = []
        self.next_pid = 4242
        self.on_spawn = None         # (world, pid) -> None
        self.spawn_error = None
        self.stubborn = set()

    # inspector
    def is_process_running(self, pid):
        return pid in self.running

    def find_pids_by_port(self, port):
        pid = self.listeners.get(port)
        return {pid} if pid else set()

    def terminate(self, pid, grace=5.0):
        self.terminated.append(pid)
        if pid in self.stubborn:
            return False
        self.running.discard(pid)
        for port, owner in list(self.listeners.items()):
            if owner == pid:
                del self.listeners[port]
                self.healthy.pop(port, None)
        return True

    def spawn_detached(self, cmd, log_path, env=None):
        if self.spawn_error:
            raise self.spawn_error
        pid = self.next_pid
        self.next_pid += 1
        self.spawned.append((cmd, env))
        self.running.add(pid)
        if self.on_spawn:
            self.on_spawn(self, pid)
        return pid

    # helpers
    def serve(self, port, pid, version="0.1.0"):
        self.running.add(pid)
        self.listeners[port] = pid
        self.healthy[port] = {"status": "ok", "pid": pid, "version": version, "port": port}

    def handler(self, request: httpx.Request) -> httpx.Response:
        body = self.healthy.get(request.url.port)
        if body is None:
            raise httpx.ConnectError("connection refused", request=request)
        return httpx.Response(200, json=body)


def binds_on_spawn(port, version="0.1.0"):
    def _bind(world, pid):
        world.serve(port, pid, version)
    return _bind
