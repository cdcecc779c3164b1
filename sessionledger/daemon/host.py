# sessionledger/daemon/host.py
"""
In-daemon session state: one SessionLedger per connected tool, keyed by the
tool's external session id and resolved through the SessionRegistry so a
reconnecting tool picks its chain back up instead of starting over.
"""

import os
import threading
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Set

import structlog
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey

from sessionledger import __version__
from sessionledger.chain.registry import SessionRegistry
from sessionledger.chain.session import LedgerState, SessionLedger
from sessionledger.config import DaemonSettings, LedgerPaths
from sessionledger.core.errors import InvalidStateError, SessionNotFoundError, StorageError
from sessionledger.core.result import OpResult
from sessionledger.core.types import ChainRecord, SessionSeal, parse_iso, utc_iso_now
from sessionledger.crypto.keystore import load_or_create_signing_key
from sessionledger.storage import StorageBackend, create_storage

logger = structlog.get_logger(__name__)


@dataclass
class Connection:
    external_id: str
    ledger: SessionLedger
    last_activity: float = field(default_factory=time.monotonic)
    # Serializes multi-step transitions (seal-then-reset on a new start)
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def touch(self) -> None:
        self.last_activity = time.monotonic()

    def describe(self) -> Dict[str, Any]:
        ledger = self.ledger
        return {
            "external_id": self.external_id,
            "session_id": ledger.session_id,
            "state": ledger.state.value,
            "client": ledger.client_name,
            "task_type": ledger.task_type,
            "project": ledger.project,
            "title": ledger.title,
            "record_count": ledger.record_count,
            "heartbeat_count": ledger.heartbeat_count,
            "chain_tip": ledger.chain_tip,
            "duration_seconds": ledger.get_session_duration(),
            "signed": ledger.signing_available,
        }


class SessionHost:

    def __init__(
        self,
        paths: LedgerPaths,
        settings: DaemonSettings,
        storage: Optional[StorageBackend] = None,
        signing_key: Optional[Ed25519PrivateKey] = None,
    ):
        self.paths = paths
        self.settings = settings
        self.storage = storage or create_storage(paths.storage_uri)
        self.registry = SessionRegistry(paths.session_map_file)
        self.signing_key = signing_key
        self.connections: Dict[str, Connection] = {}
        # Orphans being sealed; open() must not resume these
        self._sealing: Set[str] = set()
        self._lock = threading.Lock()
        self.pid = os.getpid()
        self.started_at = utc_iso_now()
        self._started = time.monotonic()

    def initialize_signing(self) -> OpResult:
        """Load the keystore once; the key is shared read-only by every ledger."""
        if self.signing_key is not None:
            return OpResult.ok("signing key already loaded")
        result = load_or_create_signing_key(self.paths.keystore_file)
        if result:
            self.signing_key = result.value
        logger.info("signing_initialized", outcome=result.outcome.value, message=result.message)
        return result

    def health(self) -> Dict[str, Any]:
        with self._lock:
            conns = list(self.connections.values())
        return {
            "status": "ok",
            "version": __version__,
            "pid": self.pid,
            "port": self.settings.port,
            "started_at": self.started_at,
            "active_sessions": sum(1 for c in conns if c.ledger.state is LedgerState.ACTIVE),
            "connections": len(conns),
            "uptime_seconds": round(time.monotonic() - self._started),
            "signing": self.signing_key is not None,
        }

    # ── connections ───────────────────────────────────────────────────────

    def _new_ledger(self, external_id: str) -> SessionLedger:
        return SessionLedger(
            storage=self.storage,
            keystore_path=self.paths.keystore_file,
            signing_key=self.signing_key,
            external_session_id=external_id,
        )

    def _resume_ledger(self, external_id: str) -> Optional[SessionLedger]:
        """Called with self._lock held."""
        session_id = self.registry.lookup(external_id)
        if not session_id or not self.storage.is_active(session_id):
            return None
        if session_id in self._sealing:
            logger.info("resume_skipped_while_sealing", external_id=external_id, session_id=session_id)
            return None
        records = self.storage.load_records(session_id)
        if not records:
            return None
        ledger = SessionLedger.resume(
            records,
            storage=self.storage,
            signing_key=self.signing_key,
            keystore_path=self.paths.keystore_file,
            external_session_id=external_id,
        )
        logger.info("session_resumed", external_id=external_id, session_id=session_id, records=len(records))
        return ledger

    def open(self, external_id: Optional[str] = None, client: Optional[str] = None) -> Connection:
        external_id = external_id or str(uuid.uuid4())
        with self._lock:
            conn = self.connections.get(external_id)
            if conn is None:
                ledger = self._resume_ledger(external_id) or self._new_ledger(external_id)
                conn = Connection(external_id, ledger)
                self.connections[external_id] = conn
        if client and not conn.ledger.is_sealed:
            conn.ledger.set_client(client)
        conn.touch()
        return conn

    def get(self, external_id: str) -> Connection:
        with self._lock:
            conn = self.connections.get(external_id)
        if conn is None:
            raise SessionNotFoundError(f"No open session for '{external_id}'")
        conn.touch()
        return conn

    # ── session lifecycle ─────────────────────────────────────────────────

    def _begin(self, conn: Connection, metadata: Optional[Dict[str, Any]] = None) -> ChainRecord:
        record = conn.ledger.start(**(metadata or {}))
        self.registry.write(conn.external_id, conn.ledger.session_id)
        return record

    def start(
        self,
        external_id: str,
        client: Optional[str] = None,
        task_type: Optional[str] = None,
        project: Optional[str] = None,
        title: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> ChainRecord:
        """Begin a new session on this connection, sealing whatever was in progress."""
        conn = self.get(external_id)
        with conn.lock:
            ledger = conn.ledger
            if ledger.state is LedgerState.ACTIVE and ledger.record_count:
                previous = ledger.session_id
                ledger.seal(auto_sealed=True)
                self.registry.remove_by_internal_id(previous)
            if ledger.is_sealed:
                ledger.reset()
            if client:
                ledger.set_client(client)
            if task_type:
                ledger.set_task_type(task_type)
            if project:
                ledger.set_project(project)
            if title:
                ledger.set_title(title)
            return self._begin(conn, metadata)

    def record_event(self, external_id: str, type: str, data: Optional[Dict[str, Any]] = None) -> ChainRecord:
        conn = self.get(external_id)
        with conn.lock:
            if conn.ledger.record_count == 0:
                self._begin(conn)
            return conn.ledger.append_to_chain(type, data or {})

    def heartbeat(self, external_id: str, data: Optional[Dict[str, Any]] = None) -> ChainRecord:
        conn = self.get(external_id)
        with conn.lock:
            if conn.ledger.record_count == 0:
                self._begin(conn)
            return conn.ledger.heartbeat(**(data or {}))

    def end(self, external_id: str, title: Optional[str] = None) -> SessionSeal:
        """Seal the current session. The ledger stays Sealed until the next start."""
        conn = self.get(external_id)
        with conn.lock:
            ledger = conn.ledger
            if title and not ledger.is_sealed:
                ledger.set_title(title)
            seal = ledger.seal()
            self.registry.remove_by_internal_id(ledger.session_id)
            return seal

    def close(self, external_id: str, seal: bool = False) -> Optional[SessionSeal]:
        """
        Drop a connection. Its chain stays in active/ for the tool to resume,
        unless `seal` is set or nothing maps to it any more.
        """
        with self._lock:
            conn = self.connections.pop(external_id, None)
        if conn is None:
            raise SessionNotFoundError(f"No open session for '{external_id}'")
        with conn.lock:
            ledger = conn.ledger
            if ledger.state is not LedgerState.ACTIVE or not ledger.record_count:
                return None
            mapped = self.registry.lookup(external_id) == ledger.session_id
            if mapped and not seal:
                return None
            result = ledger.seal(auto_sealed=not seal)
            self.registry.remove_by_internal_id(ledger.session_id)
            return result

    # ── sweeps ────────────────────────────────────────────────────────────

    def _try_seal(self, conn: Connection) -> Optional[SessionSeal]:
        with conn.lock:
            ledger = conn.ledger
            if ledger.state is not LedgerState.ACTIVE or not ledger.record_count:
                return None
            try:
                seal = ledger.seal(auto_sealed=True)
            except (InvalidStateError, StorageError) as e:
                logger.warning("auto_seal_failed", session_id=ledger.session_id, error=str(e))
                return None
            self.registry.remove_by_internal_id(ledger.session_id)
            return seal

    def sweep_idle(self, now: Optional[float] = None) -> List[SessionSeal]:
        """Seal and drop connections that have been silent for longer than the idle timeout."""
        now = time.monotonic() if now is None else now
        with self._lock:
            idle = [
                c for c in self.connections.values()
                if now - c.last_activity > self.settings.idle_timeout
            ]
            for conn in idle:
                del self.connections[conn.external_id]

        seals = []
        for conn in idle:
            seal = self._try_seal(conn)
            logger.info("idle_connection_dropped", external_id=conn.external_id, sealed=seal is not None)
            if seal:
                seals.append(seal)
        return seals

    def seal_orphans(self) -> List[SessionSeal]:
        """
        Seal chains left in active/ by a previous daemon: not held by any
        connection, and either unmapped or mapped but silent past the idle timeout.
        The end time is the last record's timestamp, not now.
        """
        mapped = self.registry.internal_ids()
        now = datetime.now(timezone.utc)

        seals = []
        for session_id in self.storage.list_active():
            if not self._claim(session_id):
                continue
            try:
                seal = self._seal_orphan(session_id, session_id in mapped, now)
            except Exception as e:
                # One unreadable chain must not stop the rest of the sweep
                logger.warning("orphan_seal_failed", session_id=session_id, error=repr(e))
                continue
            finally:
                with self._lock:
                    self._sealing.discard(session_id)
            if seal is not None:
                seals.append(seal)
        return seals

    def _claim(self, session_id: str) -> bool:
        """Reserve an orphan for sealing unless a connection holds it or another sweep has it."""
        with self._lock:
            if session_id in self._sealing:
                return False
            if any(c.ledger.session_id == session_id for c in self.connections.values()):
                return False
            self._sealing.add(session_id)
            return True

    def _seal_orphan(self, session_id: str, mapped: bool, now: datetime) -> Optional[SessionSeal]:
        records = self.storage.load_records(session_id)
        if not records:
            return None
        last_ts = records[-1].timestamp
        if mapped and (now - parse_iso(last_ts)).total_seconds() < self.settings.idle_timeout:
            return None

        ledger = SessionLedger.resume(records, storage=self.storage, signing_key=self.signing_key)
        seal = None
        if ledger.is_sealed:
            # Seal record written, but the move to sealed/ or the index update never happened
            self.storage.finalize(session_id)
            if ledger.last_seal is not None:
                self.storage.upsert_seal(ledger.last_seal)
        else:
            seal = ledger.seal(end_timestamp=last_ts, auto_sealed=True)
        self.registry.remove_by_internal_id(session_id)
        logger.info("orphan_sealed", session_id=session_id, ended_at=last_ts)
        return seal

    def seal_active(self) -> List[SessionSeal]:
        """Seal every in-progress session, connected or orphaned."""
        with self._lock:
            conns = list(self.connections.values())
        seals = [s for s in (self._try_seal(c) for c in conns) if s]
        return seals + self.seal_orphans()

    def shutdown(self) -> None:
        """Mapped sessions stay in active/ for the next daemon; unmapped ones are sealed."""
        with self._lock:
            conns = list(self.connections.values())
            self.connections.clear()
        mapped = self.registry.internal_ids()
        for conn in conns:
            if conn.ledger.session_id not in mapped:
                self._try_seal(conn)
        self.storage.close()
        logger.info("session_host_stopped", connections=len(conns))
