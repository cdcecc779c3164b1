# sessionledger/daemon/autostart.py
"""
Start-at-login registration for the daemon.

    macOS    launchd user agent (plist in ~/Library/LaunchAgents)
    Linux    systemd user unit (~/.config/systemd/user)
    Windows  hidden VBS launcher in the Startup folder

A convenience on top of the supervisor: every operation returns an OpResult
and none of them is needed for the ledger or ensure/kill to work.
"""

import os
import subprocess
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Callable, List, Optional
from xml.sax.saxutils import escape

import structlog

from sessionledger.config import (
    SERVICE_LABEL,
    SYSTEMD_UNIT_NAME,
    AutostartPaths,
    DaemonSettings,
    LedgerPaths,
)
from sessionledger.core.fsutil import write_text_atomic
from sessionledger.core.result import OpResult
from sessionledger.daemon.platform import detect_platform
from sessionledger.daemon.supervisor import daemon_command

logger = structlog.get_logger(__name__)

Runner = Callable[..., subprocess.CompletedProcess]


class AutostartManager(ABC):
    platform = "unsupported"

    def __init__(self, command: List[str], registration: Path, log_path: Path, runner: Runner = subprocess.run):
        self.command = command
        self.registration = Path(registration)
        self.log_path = log_path
        self._runner = runner

    @abstractmethod
    def render(self) -> str:
        """Exact content install() writes to the registration file."""

    def _activate(self) -> OpResult:
        return OpResult.ok(f"registered at {self.registration}")

    def _deactivate(self) -> None:
        pass

    def _restart(self) -> OpResult:
        return OpResult.ok("registration intact; nothing to recover")

    def _run(self, *args: str) -> bool:
        try:
            proc = self._runner(list(args), capture_output=True, text=True, timeout=15)
        except (OSError, subprocess.SubprocessError) as e:
            logger.warning("service_command_failed", cmd=list(args), error=str(e))
            return False
        if proc.returncode != 0:
            logger.warning("service_command_failed", cmd=list(args), code=proc.returncode, stderr=proc.stderr)
        return proc.returncode == 0

    def is_installed(self) -> bool:
        return self.registration.exists()

    def install(self) -> OpResult:
        """Idempotent: rewrites the registration and (re)loads it."""
        try:
            write_text_atomic(self.registration, self.render())
        except OSError as e:
            return OpResult.failed(f"Cannot write {self.registration}: {e}")
        logger.info("autostart_installed", platform=self.platform, path=str(self.registration))
        return self._activate()

    def remove(self) -> OpResult:
        self._deactivate()
        try:
            self.registration.unlink()
        except FileNotFoundError:
            return OpResult.ok("autostart was not installed")
        except OSError as e:
            return OpResult.failed(f"Cannot remove {self.registration}: {e}")
        logger.info("autostart_removed", platform=self.platform)
        return OpResult.ok(f"removed {self.registration}")

    def recover(self, expected: bool = True) -> OpResult:
        """
        Self-heal: reinstall a registration that should exist but is missing or
        differs from what install() would write; otherwise clear the service
        manager's failed state and start it again.
        """
        if not expected:
            return OpResult.ok("autostart not expected; nothing to recover")
        try:
            current = self.registration.read_text(encoding="utf-8")
        except OSError:
            current = None
        if current != self.render():
            logger.info("autostart_reinstall", platform=self.platform, missing=current is None)
            result = self.install()
            if result:
                return OpResult.degraded(f"registration was {'missing' if current is None else 'stale'}; reinstalled")
            return result
        return self._restart()


class LaunchdAutostart(AutostartManager):
    platform = "macos"

    @property
    def _domain(self) -> str:
        return f"gui/{os.getuid()}"

    @property
    def _target(self) -> str:
        return f"{self._domain}/{SERVICE_LABEL}"

    def render(self) -> str:
        args = "\n".join(f"    <string>{escape(a)}</string>" for a in self.command)
        log = escape(str(self.log_path))
        return f"""<?xml version="1.0" encoding="UTF-8"?>
<!DOCTYPE plist PUBLIC "-//Apple//DTD PLIST 1.0//EN" "http://www.apple.com/DTDs/PropertyList-1.0.dtd">
<plist version="1.0">
<dict>
  <key>Label</key>
  <string>{SERVICE_LABEL}</string>
  <key>ProgramArguments</key>
  <array>
{args}
  </array>
  <key>RunAtLoad</key>
  <true/>
  <key>KeepAlive</key>
  <dict>
    <key>SuccessfulExit</key>
    <false/>
  </dict>
  <key>ThrottleInterval</key>
  <integer>10</integer>
  <key>ProcessType</key>
  <string>Background</string>
  <key>StandardOutPath</key>
  <string>{log}</string>
  <key>StandardErrorPath</key>
  <string>{log}</string>
</dict>
</plist>
"""

    def _activate(self) -> OpResult:
        self._run("launchctl", "bootout", self._target)  # not loaded yet is fine
        self._run("launchctl", "enable", self._target)
        if self._run("launchctl", "bootstrap", self._domain, str(self.registration)):
            return OpResult.ok("launchd agent loaded")
        return OpResult.degraded("plist written but launchctl bootstrap failed")

    def _deactivate(self) -> None:
        self._run("launchctl", "bootout", self._target)

    def _restart(self) -> OpResult:
        # Crash loops leave the agent disabled
        self._run("launchctl", "enable", self._target)
        self._run("launchctl", "bootout", self._target)
        if self._run("launchctl", "bootstrap", self._domain, str(self.registration)):
            return OpResult.ok("re-enabled and bootstrapped launchd agent")
        return OpResult.failed("launchctl bootstrap failed")


class SystemdAutostart(AutostartManager):
    platform = "linux"

    def render(self) -> str:
        exec_start = " ".join(f'"{a}"' if " " in a else a for a in self.command)
        return f"""[Unit]
Description=Sessionledger daemon
After=network.target
StartLimitBurst=5
StartLimitIntervalSec=60

[Service]
Type=simple
ExecStart={exec_start}
Restart=on-failure
RestartSec=10

[Install]
WantedBy=default.target
"""

    def _systemctl(self, *args: str) -> bool:
        return self._run("systemctl", "--user", *args)

    def _activate(self) -> OpResult:
        self._systemctl("reset-failed", SYSTEMD_UNIT_NAME)
        self._systemctl("daemon-reload")
        if self._systemctl("enable", "--now", SYSTEMD_UNIT_NAME):
            return OpResult.ok("systemd user unit enabled")
        return OpResult.degraded("unit written but systemctl enable failed")

    def _deactivate(self) -> None:
        self._systemctl("disable", "--now", SYSTEMD_UNIT_NAME)

    def remove(self) -> OpResult:
        result = super().remove()
        self._systemctl("daemon-reload")
        return result

    def _restart(self) -> OpResult:
        self._systemctl("reset-failed", SYSTEMD_UNIT_NAME)
        if self._systemctl("start", SYSTEMD_UNIT_NAME):
            return OpResult.ok("reset failed state and started unit")
        return OpResult.failed("systemctl start failed")


class WindowsStartupAutostart(AutostartManager):
    platform = "windows"

    def render(self) -> str:
        # VBS doubles quotes inside a string literal; window style 0 = hidden
        cmdline = " ".join(f'""{a}""' for a in self.command)
        return f'Set WshShell = CreateObject("WScript.Shell")\nWshShell.Run "{cmdline}", 0, False\n'


class UnsupportedAutostart(AutostartManager):

    def render(self) -> str:
        return ""

    def is_installed(self) -> bool:
        return False

    def install(self) -> OpResult:
        return OpResult.failed("autostart is not supported on this platform")

    def remove(self) -> OpResult:
        return OpResult.ok("nothing to remove")

    def recover(self, expected: bool = True) -> OpResult:
        return OpResult.failed("autostart is not supported on this platform")


def get_autostart_manager(
    paths: LedgerPaths,
    settings: DaemonSettings,
    autostart_paths: Optional[AutostartPaths] = None,
    platform: Optional[str] = None,
    runner: Runner = subprocess.run,
) -> AutostartManager:
    autostart_paths = autostart_paths or AutostartPaths()
    platform = platform or detect_platform()
    command = daemon_command(paths, settings)

    if platform == "macos":
        return LaunchdAutostart(command, autostart_paths.launchd_plist, paths.log_file, runner)
    if platform == "linux":
        return SystemdAutostart(command, autostart_paths.systemd_unit, paths.log_file, runner)
    if platform == "windows":
        return WindowsStartupAutostart(command, autostart_paths.windows_startup_script, paths.log_file, runner)
    return UnsupportedAutostart(command, Path(os.devnull), paths.log_file, runner)
