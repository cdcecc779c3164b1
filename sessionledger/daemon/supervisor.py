# sessionledger/daemon/supervisor.py
"""
Keeps exactly one daemon reachable on the configured port.

Discovery goes through two paths: the PID record (fast, may be stale) and the
OS socket table (slow, authoritative about who owns the port). The health
probe decides whether *our* daemon is actually serving. Nothing here is a
lock: independent CLI invocations may race, and the port bind in the daemon
process is what guarantees a single listener.
"""

import os
import shutil
import sys
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Set

import httpx
import structlog

from sessionledger.config import DIST_NAME, HOME_ENV, DaemonSettings, LedgerPaths
from sessionledger.core.fsutil import read_json, write_json
from sessionledger.core.types import PidRecord, utc_iso_now
from sessionledger.daemon.platform import ProcessInspector, get_inspector

logger = structlog.get_logger(__name__)

PYPI_JSON_URL = "https://pypi.org/pypi/{name}/json"
UPDATE_CHECK_TIMEOUT = 5.0


def daemon_command(paths: LedgerPaths, settings: DaemonSettings, prefer_online: bool = False) -> List[str]:
    """argv that starts a daemon serving `paths.home` on `settings.port`. Also used for autostart registrations."""
    args = ["--home", str(paths.home), "daemon", "serve", "--port", str(settings.port)]
    if prefer_online:
        pipx = shutil.which("pipx")
        if pipx:
            return [pipx, "run", "--no-cache", DIST_NAME, *args]
        logger.warning("pipx_not_found", fallback="local install")
    return [sys.executable, "-m", "sessionledger", *args]


@dataclass(frozen=True)
class EnsureOptions:
    # Spawn through the package index instead of the local install (update flows)
    prefer_online: bool = False
    # Restart a healthy daemon that reports a different version
    require_version: Optional[str] = None


class DaemonSupervisor:

    def __init__(
        self,
        paths: LedgerPaths,
        settings: Optional[DaemonSettings] = None,
        inspector: Optional[ProcessInspector] = None,
        http_client: Optional[httpx.Client] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.paths = paths
        self.settings = settings or DaemonSettings.from_env()
        self.inspector = inspector or get_inspector()
        self._http = http_client or httpx.Client(timeout=self.settings.health_timeout)
        self._sleep = sleep

    def close(self) -> None:
        self._http.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    # ── health ────────────────────────────────────────────────────────────

    def check_health(self, port: Optional[int] = None) -> Optional[Dict[str, Any]]:
        """Health body of the daemon on `port`, or None. Never raises."""
        url = f"http://{self.settings.host}:{port or self.settings.port}/health"
        try:
            resp = self._http.get(url, timeout=self.settings.health_timeout)
        except httpx.HTTPError:
            return None
        if resp.status_code != 200:
            return None
        try:
            body = resp.json()
        except ValueError:
            return None
        if not isinstance(body, dict) or body.get("status") != "ok":
            return None
        return body

    def wait_for_health(self, timeout: Optional[float] = None) -> Optional[Dict[str, Any]]:
        deadline = time.monotonic() + (self.settings.spawn_wait if timeout is None else timeout)
        while True:
            health = self.check_health()
            if health is not None:
                return health
            if time.monotonic() >= deadline:
                return None
            self._sleep(self.settings.poll_interval)

    # ── PID record ────────────────────────────────────────────────────────

    def read_pid_record(self) -> Optional[PidRecord]:
        raw = read_json(self.paths.pid_file, None)
        if not isinstance(raw, dict):
            return None
        try:
            return PidRecord.from_dict(raw)
        except (KeyError, TypeError, ValueError):
            return None

    def write_pid_record(self, record: PidRecord) -> None:
        write_json(self.paths.pid_file, record.to_dict())

    def remove_pid_record(self) -> None:
        try:
            self.paths.pid_file.unlink()
        except FileNotFoundError:
            pass

    # ── process table ─────────────────────────────────────────────────────

    def is_process_running(self, pid: int) -> bool:
        return self.inspector.is_process_running(pid)

    def find_pids_by_port(self, port: Optional[int] = None) -> Set[int]:
        return self.inspector.find_pids_by_port(port or self.settings.port)

    # ── lifecycle ─────────────────────────────────────────────────────────

    def daemon_command(self, prefer_online: bool = False) -> List[str]:
        return daemon_command(self.paths, self.settings, prefer_online)

    def ensure_daemon(self, options: Optional[EnsureOptions] = None) -> bool:
        """
        Idempotent: returns True immediately when a healthy daemon answers.
        Otherwise discards a stale PID record, spawns a detached daemon and waits
        (bounded) for it to pass the health probe.
        """
        options = options or EnsureOptions()

        health = self.check_health()
        if health is not None:
            if not options.require_version or health.get("version") == options.require_version:
                return True
            logger.info(
                "daemon_version_mismatch",
                running=health.get("version"),
                required=options.require_version,
            )
            self.kill_daemon()

        record = self.read_pid_record()
        if record is not None:
            if not self.is_process_running(record.pid) or self.check_health(record.port) is None:
                logger.info("stale_pid_record_removed", pid=record.pid, port=record.port)
                self.remove_pid_record()

        cmd = self.daemon_command(options.prefer_online)
        try:
            pid = self.inspector.spawn_detached(cmd, self.paths.log_file, env={HOME_ENV: str(self.paths.home)})
        except OSError as e:
            logger.error("daemon_spawn_failed", cmd=cmd, error=str(e))
            return False
        logger.info("daemon_spawned", pid=pid, port=self.settings.port)
        self.write_pid_record(PidRecord(pid=pid, port=self.settings.port))

        health = self.wait_for_health()
        if health is None:
            logger.error("daemon_unhealthy", pid=pid, waited=self.settings.spawn_wait)
            return False

        # A concurrent caller's daemon may have won the bind; record whoever answered
        served_pid = health.get("pid")
        if isinstance(served_pid, int) and served_pid != pid:
            self.write_pid_record(PidRecord(
                pid=served_pid,
                port=self.settings.port,
                started_at=health.get("started_at") or utc_iso_now(),
            ))
        return True

    def _daemon_pids(self) -> Set[int]:
        port_pids = self.find_pids_by_port()
        pids = set(port_pids)

        record = self.read_pid_record()
        if record is not None and self.is_process_running(record.pid):
            # A recycled pid belongs to someone else unless it holds our port or answers our probe
            health = self.check_health(record.port)
            if record.pid in port_pids or (health and health.get("pid") == record.pid):
                pids.add(record.pid)

        pids.discard(os.getpid())
        return pids

    def kill_daemon(self) -> bool:
        """Stop the daemon if it runs. Already stopped counts as success."""
        pids = self._daemon_pids()
        ok = True
        for pid in sorted(pids):
            if self.inspector.terminate(pid, self.settings.kill_grace):
                logger.info("daemon_stopped", pid=pid)
            else:
                ok = False
        if ok:
            self.remove_pid_record()
        return ok

    def restart_daemon(self, options: Optional[EnsureOptions] = None) -> bool:
        if not self.kill_daemon():
            return False
        return self.ensure_daemon(options)

    def status(self) -> Dict[str, Any]:
        record = self.read_pid_record()
        health = self.check_health()
        return {
            "running": health is not None,
            "health": health,
            "pid_record": record.to_dict() if record else None,
        }

    def fetch_latest_version(self) -> Optional[str]:
        """Latest release published on PyPI, or None when the index can't be reached."""
        try:
            resp = self._http.get(PYPI_JSON_URL.format(name=DIST_NAME), timeout=UPDATE_CHECK_TIMEOUT)
        except httpx.HTTPError as e:
            logger.debug("update_check_failed", error=str(e))
            return None
        if resp.status_code != 200:
            return None
        try:
            version = resp.json()["info"]["version"]
        except (ValueError, KeyError, TypeError):
            return None
        return version if isinstance(version, str) else None
