# sessionledger/daemon/platform.py
"""
OS process capabilities behind one small interface.

The supervisor only ever talks to a ProcessInspector; detect_platform() picks
the implementation once. psutil supplies the process table everywhere, the
subclasses patch the places where it falls short (macOS needs root to list
other processes' sockets, Windows has no sessions to detach into).
"""

import os
import shutil
import subprocess
import sys
from pathlib import Path
from typing import Dict, List, Optional, Set

import psutil
import structlog

logger = structlog.get_logger(__name__)


def detect_platform() -> str:
    if sys.platform == "darwin":
        return "macos"
    if sys.platform.startswith("linux"):
        return "linux"
    if sys.platform.startswith("win"):
        return "windows"
    return "unsupported"


class ProcessInspector:
    """Linux / generic POSIX implementation."""

    def is_process_running(self, pid: int) -> bool:
        if pid <= 0:
            return False
        try:
            return psutil.Process(pid).status() != psutil.STATUS_ZOMBIE
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            # AccessDenied still means the pid exists, but it is not ours to manage
            return psutil.pid_exists(pid)

    def find_pids_by_port(self, port: int) -> Set[int]:
        try:
            conns = psutil.net_connections(kind="tcp")
        except (psutil.AccessDenied, OSError) as e:
            logger.debug("port_lookup_denied", port=port, error=str(e))
            return set()
        return {
            c.pid for c in conns
            if c.pid and c.laddr and c.laddr.port == port and c.status == psutil.CONN_LISTEN
        }

    def terminate(self, pid: int, grace: float = 5.0) -> bool:
        """Graceful stop, then force after `grace` seconds. True once the process is gone."""
        try:
            proc = psutil.Process(pid)
            proc.terminate()
            try:
                proc.wait(timeout=grace)
            except psutil.TimeoutExpired:
                logger.warning("process_kill_forced", pid=pid, grace=grace)
                proc.kill()
                proc.wait(timeout=grace)
        except psutil.NoSuchProcess:
            return True
        except (psutil.AccessDenied, psutil.TimeoutExpired) as e:
            logger.warning("process_terminate_failed", pid=pid, error=str(e))
            return False
        return True

    def _popen_kwargs(self) -> dict:
        return {"start_new_session": True}

    def spawn_detached(self, cmd: List[str], log_path: Path, env: Optional[Dict[str, str]] = None) -> int:
        """Start `cmd` outside our process group with output appended to log_path. Returns its pid."""
        log_path.parent.mkdir(parents=True, exist_ok=True)
        with open(log_path, "ab") as log:
            proc = subprocess.Popen(
                cmd,
                stdin=subprocess.DEVNULL,
                stdout=log,
                stderr=subprocess.STDOUT,
                env={**os.environ, **(env or {})},
                close_fds=True,
                **self._popen_kwargs(),
            )
        return proc.pid


class MacProcessInspector(ProcessInspector):

    def find_pids_by_port(self, port: int) -> Set[int]:
        pids = super().find_pids_by_port(port)
        if pids or not shutil.which("lsof"):
            return pids
        try:
            out = subprocess.run(
                ["lsof", "-ti", f"tcp:{port}", "-sTCP:LISTEN"],
                capture_output=True, text=True, timeout=5,
            ).stdout
        except (OSError, subprocess.SubprocessError):
            return set()
        return {int(line) for line in out.split() if line.strip().isdigit()}


class WindowsProcessInspector(ProcessInspector):

    def _popen_kwargs(self) -> dict:
        flags = getattr(subprocess, "DETACHED_PROCESS", 0) | getattr(subprocess, "CREATE_NEW_PROCESS_GROUP", 0)
        return {"creationflags": flags}


def get_inspector(platform: Optional[str] = None) -> ProcessInspector:
    platform = platform or detect_platform()
    if platform == "macos":
        return MacProcessInspector()
    if platform == "windows":
        return WindowsProcessInspector()
    return ProcessInspector()
