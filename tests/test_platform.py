# tests/test_platform.py
import socket
import subprocess
import sys
import time

import psutil
import pytest

from sessionledger.daemon import platform as platform_mod
from sessionledger.daemon.platform import (
    MacProcessInspector,
    ProcessInspector,
    WindowsProcessInspector,
    detect_platform,
    get_inspector,
)


def test_detect_platform_is_known():
    assert detect_platform() in {"macos", "linux", "windows", "unsupported"}


@pytest.mark.parametrize("name, cls", [
    ("macos", MacProcessInspector),
    ("windows", WindowsProcessInspector),
    ("linux", ProcessInspector),
    ("unsupported", ProcessInspector),
])
def test_get_inspector(name, cls):
    assert type(get_inspector(name)) is cls


def test_windows_spawn_detaches_without_sessions():
    kwargs = WindowsProcessInspector()._popen_kwargs()
    assert "start_new_session" not in kwargs
    assert "creationflags" in kwargs
    assert ProcessInspector()._popen_kwargs() == {"start_new_session": True}


def test_invalid_pids_are_not_running():
    inspector = ProcessInspector()
    assert not inspector.is_process_running(0)
    assert not inspector.is_process_running(-5)


def test_spawn_detached_and_terminate(tmp_path):
    inspector = get_inspector()
    log = tmp_path / "logs" / "child.log"
    pid = inspector.spawn_detached(
        [sys.executable, "-c", "import os, time; print(os.environ['MARKER'], flush=True); time.sleep(60)"],
        log,
        env={"MARKER": "child-started"},
    )
    try:
        assert inspector.is_process_running(pid)
        deadline = time.monotonic() + 10
        while "child-started" not in log.read_text() and time.monotonic() < deadline:
            time.sleep(0.05)
        assert "child-started" in log.read_text()
    finally:
        assert inspector.terminate(pid, grace=2.0)
    assert not inspector.is_process_running(pid)
    # Already gone counts as stopped
    assert inspector.terminate(pid, grace=0.1)


@pytest.mark.skipif(not sys.platform.startswith("linux"), reason="socket table needs privileges elsewhere")
def test_find_pids_by_port_sees_own_listener():
    import os
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        s.listen(1)
        port = s.getsockname()[1]
        assert os.getpid() in ProcessInspector().find_pids_by_port(port)
    assert os.getpid() not in ProcessInspector().find_pids_by_port(port)


def test_port_lookup_denied_is_empty(monkeypatch):
    def denied(kind):
        raise psutil.AccessDenied()

    monkeypatch.setattr(platform_mod.psutil, "net_connections", denied)
    assert ProcessInspector().find_pids_by_port(1234) == set()


def test_mac_falls_back_to_lsof(monkeypatch):
    monkeypatch.setattr(platform_mod.psutil, "net_connections", lambda kind: [])
    monkeypatch.setattr(platform_mod.shutil, "which", lambda name: "/usr/sbin/lsof")
    monkeypatch.setattr(
        platform_mod.subprocess, "run",
        lambda *a, **kw: subprocess.CompletedProcess(a, 0, stdout="321\n654\n", stderr=""),
    )
    assert MacProcessInspector().find_pids_by_port(19200) == {321, 654}
