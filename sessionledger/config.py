# sessionledger/config.py
"""
Paths and daemon settings.

Everything persisted lives under one home directory, resolved in this order:
    1. explicit --home flag
    2. SESSIONLEDGER_HOME environment variable
    3. default: ~/.sessionledger

Nothing here is a module-level singleton: callers build a LedgerPaths /
DaemonSettings and hand it to whatever needs it, so tests can point
everything at a tmp_path.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

HOME_ENV = "SESSIONLEDGER_HOME"
PORT_ENV = "SESSIONLEDGER_PORT"

DEFAULT_PORT = 19200
DEFAULT_HOST = "127.0.0.1"

SERVICE_LABEL = "dev.sessionledger.daemon"
SYSTEMD_UNIT_NAME = "sessionledger-daemon.service"
DIST_NAME = "sessionledger"


def resolve_home(home_flag: Optional[Path] = None) -> Path:
    if home_flag:
        return Path(home_flag).expanduser().resolve()
    env_home = os.environ.get(HOME_ENV)
    if env_home:
        return Path(env_home).expanduser().resolve()
    return Path.home() / ".sessionledger"


@dataclass(frozen=True)
class LedgerPaths:
    """Well-known locations derived from the home directory."""
    home: Path

    @classmethod
    def from_env(cls, home_flag: Optional[Path] = None) -> "LedgerPaths":
        return cls(resolve_home(home_flag))

    @property
    def data_dir(self) -> Path:
        return self.home / "data"

    @property
    def active_dir(self) -> Path:
        return self.data_dir / "active"

    @property
    def sealed_dir(self) -> Path:
        return self.data_dir / "sealed"

    @property
    def sessions_file(self) -> Path:
        return self.data_dir / "sessions.json"

    @property
    def session_map_file(self) -> Path:
        return self.data_dir / "session-map.json"

    @property
    def keystore_file(self) -> Path:
        return self.home / "keystore.json"

    @property
    def pid_file(self) -> Path:
        return self.home / "daemon.pid"

    @property
    def log_file(self) -> Path:
        return self.home / "daemon.log"

    @property
    def storage_uri(self) -> str:
        return f"jsonl://{self.data_dir}"

    def ensure_dirs(self) -> None:
        for d in (self.home, self.data_dir, self.active_dir, self.sealed_dir):
            d.mkdir(parents=True, exist_ok=True)


@dataclass(frozen=True)
class AutostartPaths:
    """Per-platform registration files. Overridable so tests never touch the real user profile."""
    launchd_plist: Path = field(
        default_factory=lambda: Path.home() / "Library" / "LaunchAgents" / f"{SERVICE_LABEL}.plist"
    )
    systemd_unit: Path = field(
        default_factory=lambda: Path.home() / ".config" / "systemd" / "user" / SYSTEMD_UNIT_NAME
    )
    windows_startup_script: Path = field(
        default_factory=lambda: Path(os.environ.get("APPDATA", Path.home() / "AppData" / "Roaming"))
        / "Microsoft" / "Windows" / "Start Menu" / "Programs" / "Startup" / "sessionledger-daemon.vbs"
    )


@dataclass(frozen=True)
class DaemonSettings:
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    health_timeout: float = 3.0         # seconds, per probe
    spawn_wait: float = 60.0            # total window for a fresh daemon to come up
    poll_interval: float = 0.5
    kill_grace: float = 5.0             # SIGTERM -> SIGKILL
    bind_retries: int = 3
    idle_timeout: float = 30 * 60
    orphan_sweep_interval: float = 15 * 60

    @classmethod
    def from_env(cls, port: Optional[int] = None) -> "DaemonSettings":
        if port is None:
            env_port = os.environ.get(PORT_ENV)
            port = int(env_port) if env_port else DEFAULT_PORT
        return cls(port=port)

    @property
    def base_url(self) -> str:
        return f"http://{self.host}:{self.port}"

    @property
    def health_url(self) -> str:
        return f"{self.base_url}/health"
