# sessionledger/daemon/server.py
"""
The daemon process: a FastAPI app over a SessionHost, served by uvicorn on a
socket we bind ourselves.

Binding before uvicorn starts lets the port act as the cross-process mutex:
the loser of a spawn race sees EADDRINUSE, finds a healthy daemon already
answering, and exits 0. The PID record is only written after a successful bind.
"""

import errno
import os
import socket
import threading
import time
from contextlib import asynccontextmanager
from typing import Callable, Optional

import structlog
import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from sessionledger import __version__
from sessionledger.config import DaemonSettings, LedgerPaths
from sessionledger.core.errors import InvalidStateError, SessionNotFoundError, StorageError
from sessionledger.core.types import PidRecord
from sessionledger.daemon.host import SessionHost
from sessionledger.daemon.models import (
    EndRequest,
    EventRequest,
    HeartbeatRequest,
    OpenSessionRequest,
    StartRequest,
)
from sessionledger.daemon.supervisor import DaemonSupervisor
from sessionledger.logs import configure_logging

logger = structlog.get_logger(__name__)

WINDOWS_EADDRINUSE = 10048
SWEEP_TICK = 60.0


class Sweeper(threading.Thread):
    """Periodic idle-connection and orphan sweeps, off the event loop."""

    def __init__(self, host: SessionHost, tick: float = SWEEP_TICK):
        super().__init__(name="sessionledger-sweeper", daemon=True)
        self.host = host
        self.tick = tick
        self._halt = threading.Event()

    def run(self):
        # Orphans from a previous daemon are sealed right away, then on the interval
        last_orphan_sweep = float("-inf")
        while not self._halt.is_set():
            now = time.monotonic()
            if now - last_orphan_sweep >= self.host.settings.orphan_sweep_interval:
                last_orphan_sweep = now
                try:
                    self.host.seal_orphans()
                except Exception as e:
                    logger.error("orphan_sweep_failed", error=repr(e))
            try:
                self.host.sweep_idle(now)
            except Exception as e:
                logger.error("idle_sweep_failed", error=repr(e))
            self._halt.wait(self.tick)

    def stop(self):
        self._halt.set()


def create_app(host: SessionHost, on_shutdown: Optional[Callable[[], None]] = None, sweep: bool = True) -> FastAPI:

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        sweeper = Sweeper(host) if sweep else None
        if sweeper:
            sweeper.start()
        logger.info("daemon_started", pid=host.pid, port=host.settings.port, version=__version__)
        yield
        if sweeper:
            sweeper.stop()
        host.shutdown()
        if on_shutdown:
            on_shutdown()
        logger.info("daemon_stopped", pid=host.pid)

    app = FastAPI(title="Sessionledger Daemon", version=__version__, lifespan=lifespan)
    app.state.host = host

    # ── error mapping ─────────────────────────────────────────────────────

    def _error(status: int, exc: Exception) -> JSONResponse:
        return JSONResponse(status_code=status, content={"error": str(exc)})

    @app.exception_handler(InvalidStateError)
    async def invalid_state(request: Request, exc: InvalidStateError):
        return _error(409, exc)

    @app.exception_handler(SessionNotFoundError)
    async def not_found(request: Request, exc: SessionNotFoundError):
        return _error(404, exc)

    @app.exception_handler(ValueError)
    async def bad_value(request: Request, exc: ValueError):
        return _error(422, exc)

    @app.exception_handler(StorageError)
    async def storage_failed(request: Request, exc: StorageError):
        logger.error("storage_error", path=request.url.path, error=str(exc))
        return _error(500, exc)

    # ── routes ────────────────────────────────────────────────────────────

    @app.get("/health")
    def health():
        return host.health()

    @app.post("/sessions")
    def open_session(body: OpenSessionRequest):
        return host.open(body.external_id, body.client).describe()

    @app.get("/sessions/{external_id}")
    def get_session(external_id: str):
        return host.get(external_id).describe()

    @app.post("/sessions/{external_id}/start")
    def start_session(external_id: str, body: StartRequest):
        record = host.start(
            external_id,
            client=body.client,
            task_type=body.task_type,
            project=body.project,
            title=body.title,
            metadata=body.metadata,
        )
        return record.to_dict()

    @app.post("/sessions/{external_id}/events")
    def record_event(external_id: str, body: EventRequest):
        return host.record_event(external_id, body.type, body.data).to_dict()

    @app.post("/sessions/{external_id}/heartbeat")
    def heartbeat(external_id: str, body: HeartbeatRequest):
        return host.heartbeat(external_id, body.data).to_dict()

    @app.post("/sessions/{external_id}/end")
    def end_session(external_id: str, body: EndRequest):
        return host.end(external_id, body.title).to_dict()

    @app.delete("/sessions/{external_id}")
    def close_session(external_id: str, seal: bool = False):
        result = host.close(external_id, seal=seal)
        return {"closed": True, "seal": result.to_dict() if result else None}

    @app.post("/api/seal-active")
    def seal_active():
        seals = host.seal_active()
        return {"sealed": len(seals), "seals": [s.to_dict() for s in seals]}

    return app


def bind_with_retry(
    settings: DaemonSettings,
    supervisor: DaemonSupervisor,
    sleep: Callable[[float], None] = time.sleep,
) -> Optional[socket.socket]:
    """
    Bind and listen on the daemon port. None means "do not serve": either a
    healthy daemon already owns the port or every attempt failed.
    """
    for attempt in range(1, settings.bind_retries + 1):
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        if os.name != "nt":
            # TIME_WAIT reuse only; a live listener still makes bind fail
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            sock.bind((settings.host, settings.port))
            sock.listen(128)
            return sock
        except OSError as e:
            sock.close()
            if e.errno not in (errno.EADDRINUSE, WINDOWS_EADDRINUSE):
                raise

        if supervisor.check_health() is not None:
            logger.info("daemon_already_running", port=settings.port)
            return None

        squatters = supervisor.find_pids_by_port() - {os.getpid()}
        logger.warning("port_in_use", port=settings.port, attempt=attempt, pids=sorted(squatters))
        for pid in squatters:
            supervisor.inspector.terminate(pid, settings.kill_grace)
        sleep(1.0)

    logger.error("bind_failed", port=settings.port, attempts=settings.bind_retries)
    return None


def run_daemon(paths: LedgerPaths, settings: DaemonSettings) -> int:
    """Serve until terminated. Exit code 0 also covers "another daemon already serves this port"."""
    configure_logging(json_output=True)
    paths.ensure_dirs()

    supervisor = DaemonSupervisor(paths, settings)
    sock = bind_with_retry(settings, supervisor)
    if sock is None:
        supervisor.close()
        return 0

    supervisor.write_pid_record(PidRecord(pid=os.getpid(), port=settings.port))

    def _remove_own_pid_record():
        record = supervisor.read_pid_record()
        if record is not None and record.pid == os.getpid():
            supervisor.remove_pid_record()
        supervisor.close()

    host = SessionHost(paths, settings)
    host.initialize_signing()
    app = create_app(host, on_shutdown=_remove_own_pid_record)

    # uvicorn installs its own SIGTERM/SIGINT handlers and runs the lifespan shutdown
    config = uvicorn.Config(app, log_config=None, access_log=False, lifespan="on")
    uvicorn.Server(config).run(sockets=[sock])
    return 0
