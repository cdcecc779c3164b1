# sessionledger/chain/session.py
import threading
import time
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

import structlog
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey

from sessionledger.chain.record import build_chain_record, generate_session_id
from sessionledger.core.errors import InvalidStateError
from sessionledger.core.result import OpResult
from sessionledger.core.types import (
    GENESIS_HASH,
    UNSIGNED,
    ChainRecord,
    ChainRecordType,
    SessionSeal,
    parse_iso,
    utc_iso_now,
)
from sessionledger.crypto.hashing import seal_digest, sign_hash
from sessionledger.crypto.keystore import load_or_create_signing_key
from sessionledger.storage import StorageBackend

logger = structlog.get_logger(__name__)


class LedgerState(str, Enum):
    IDLE = "idle"
    ACTIVE = "active"
    SEALED = "sealed"


@dataclass
class SessionLedger:
    """
    Owns one in-progress session: identity, timers, counters and the chain tip.

    Idle -> Active on the first metadata change or append; Active -> Sealed on seal().
    A sealed ledger rejects every mutation until reset() starts a fresh session on it.
    Appends are serialized by an internal lock so each record links to the tip it observed.
    """
    storage: Optional[StorageBackend] = None
    keystore_path: Optional[Path] = None
    signing_key: Optional[Ed25519PrivateKey] = field(default=None, repr=False)
    client_name: str = "unknown"
    task_type: str = "coding"
    project: Optional[str] = None
    title: Optional[str] = None
    external_session_id: Optional[str] = None

    # Survive reset(): one conversation may hold several sessions
    conversation_id: str = field(default_factory=generate_session_id)
    conversation_index: int = 0

    session_id: str = field(init=False)
    started_at: str = field(init=False)
    heartbeat_count: int = field(init=False)
    record_count: int = field(init=False)
    chain_tip: str = field(init=False)
    signing_available: bool = field(init=False, default=False)
    last_seal: Optional[SessionSeal] = field(init=False, default=None)

    def __post_init__(self):
        self._lock = threading.RLock()
        self.signing_available = self.signing_key is not None
        if self.project is None:
            self.project = Path.cwd().name
        self._start_session()

    def _start_session(self) -> None:
        self.session_id = generate_session_id()
        self.started_at = utc_iso_now()
        self._start_monotonic = time.monotonic()
        self.heartbeat_count = 0
        self.record_count = 0
        self.chain_tip = GENESIS_HASH
        self.last_seal = None
        self._state = LedgerState.IDLE
        self._first_timestamp: Optional[str] = None
        self._first_prev_hash = GENESIS_HASH
        self._last_timestamp: Optional[str] = None
        self._last_type: Optional[str] = None
        self._sealed_duration: Optional[int] = None

    # ── lifecycle ─────────────────────────────────────────────────────────

    @property
    def state(self) -> LedgerState:
        return self._state

    @property
    def is_sealed(self) -> bool:
        return self._state is LedgerState.SEALED

    def _require_open(self, action: str) -> None:
        if self._state is LedgerState.SEALED:
            raise InvalidStateError(f"Cannot {action}: session {self.session_id} is sealed")

    def _activate(self) -> None:
        if self._state is LedgerState.IDLE:
            self._state = LedgerState.ACTIVE

    def reset(self) -> None:
        """Discard the current session and go back to Idle with a fresh session id.
        Client name and conversation id are kept; the conversation index moves on."""
        with self._lock:
            self._start_session()
            self.conversation_index += 1
            self.task_type = "coding"
            self.title = None

    # ── metadata ──────────────────────────────────────────────────────────

    def set_client(self, name: str) -> None:
        if not isinstance(name, str) or not name.strip():
            raise ValueError("Client name must be a non-empty string")
        with self._lock:
            self._require_open("set client")
            self.client_name = name
            self._activate()

    def set_task_type(self, task_type: str) -> None:
        if not isinstance(task_type, str) or not task_type.strip():
            raise ValueError("Task type must be a non-empty string")
        with self._lock:
            self._require_open("set task type")
            self.task_type = task_type
            self._activate()

    def set_project(self, project: str) -> None:
        with self._lock:
            self._require_open("set project")
            self.project = project

    def set_title(self, title: Optional[str]) -> None:
        with self._lock:
            self._require_open("set title")
            self.title = title

    def increment_heartbeat(self) -> None:
        with self._lock:
            self._require_open("record heartbeat")
            self.heartbeat_count += 1

    def get_session_duration(self) -> int:
        """Whole seconds since the session started, on the monotonic clock. Frozen once sealed."""
        if self._sealed_duration is not None:
            return self._sealed_duration
        return round(time.monotonic() - self._start_monotonic)

    # ── signing ───────────────────────────────────────────────────────────

    def initialize_keystore(self) -> OpResult:
        """
        Obtain a signing key. Never raises: on failure the ledger keeps recording unsigned.
        Safe to call repeatedly; once a key is loaded further calls are no-ops.
        """
        if self.signing_available:
            return OpResult.ok("signing key already loaded")
        if self.keystore_path is None:
            return OpResult.failed("no keystore configured; recording unsigned")

        try:
            result = load_or_create_signing_key(self.keystore_path)
        except Exception as e:
            logger.warning("keystore_init_failed", error=str(e))
            result = OpResult.failed(f"keystore initialization failed: {e}")

        if result:
            self.signing_key = result.value
            self.signing_available = True
        else:
            logger.warning("signing_unavailable", session_id=self.session_id, reason=result.message)
        return result

    # ── chain ─────────────────────────────────────────────────────────────

    def _next_timestamp(self, requested: Optional[str] = None) -> str:
        ts = requested or utc_iso_now()
        if self._last_timestamp and parse_iso(ts) < parse_iso(self._last_timestamp):
            return self._last_timestamp
        return ts

    def _append_locked(
        self, type: ChainRecordType, data: Dict[str, Any], timestamp: Optional[str] = None
    ) -> ChainRecord:
        record = build_chain_record(
            type, self.session_id, data, self.chain_tip, self.signing_key,
            timestamp=self._next_timestamp(timestamp),
        )
        # Persist before advancing the tip: a failed write leaves the chain where it was
        if self.storage is not None:
            self.storage.append(record)

        if self.record_count == 0:
            self._first_timestamp = record.timestamp
            self._first_prev_hash = record.prev_hash
        self.chain_tip = record.hash
        self.record_count += 1
        self._last_timestamp = record.timestamp
        self._last_type = record.type
        return record

    def append_to_chain(self, type: ChainRecordType, data: Optional[Dict[str, Any]] = None) -> ChainRecord:
        """
        Build a record linked to the current tip, persist it, then advance the tip.
        Sole mutator of the chain tip.
        """
        if type == "session_seal":
            raise ValueError("session_seal records are written by seal()")
        with self._lock:
            self._require_open("append to chain")
            self._activate()
            return self._append_locked(type, dict(data or {}))

    def start(self, **metadata: Any) -> ChainRecord:
        """Record the session_start event carrying the declared metadata."""
        with self._lock:
            data = {
                "client": self.client_name,
                "task_type": self.task_type,
                "project": self.project,
                "title": self.title,
                "conversation_id": self.conversation_id,
                "conversation_index": self.conversation_index,
                **metadata,
            }
            return self.append_to_chain("session_start", {k: v for k, v in data.items() if v is not None})

    def heartbeat(self, **data: Any) -> ChainRecord:
        with self._lock:
            # Counted only once the record is persisted
            record = self.append_to_chain("heartbeat", {"heartbeat_number": self.heartbeat_count + 1, **data})
            self.increment_heartbeat()
            return record

    def seal(self, end_timestamp: Optional[str] = None, auto_sealed: bool = False) -> SessionSeal:
        """
        Freeze the session. Appends session_end unless the chain already ends with one,
        snapshots counters and the final tip into a signed SessionSeal, records it as a
        session_seal entry, then finalizes storage.
        """
        with self._lock:
            self._require_open("seal")
            if self.record_count == 0:
                raise InvalidStateError(f"Cannot seal session {self.session_id}: no records")

            if self._last_type != "session_end":
                end_ts = self._next_timestamp(end_timestamp)
                self._append_locked("session_end", {
                    "duration_seconds": self._elapsed(self._first_timestamp, end_ts),
                    "task_type": self.task_type,
                    "heartbeat_count": self.heartbeat_count,
                    "auto_sealed": auto_sealed,
                }, timestamp=end_ts)

            seal = SessionSeal(
                session_id=self.session_id,
                client=self.client_name,
                task_type=self.task_type,
                started_at=self._first_timestamp,
                ended_at=self._last_timestamp,
                duration_seconds=self._elapsed(self._first_timestamp, self._last_timestamp),
                heartbeat_count=self.heartbeat_count,
                record_count=self.record_count,
                chain_start_hash=self._first_prev_hash,
                chain_end_hash=self.chain_tip,
                conversation_id=self.conversation_id,
                conversation_index=self.conversation_index,
                project=self.project,
                title=self.title,
                auto_sealed=auto_sealed,
            )
            signature = sign_hash(seal_digest(seal), self.signing_key)
            seal = replace(seal, seal_signature=signature)

            self._append_locked("session_seal", {
                "seal": seal.body(),
                "seal_signature": signature,
                "auto_sealed": auto_sealed,
            })
            self._sealed_duration = self.get_session_duration()
            self._state = LedgerState.SEALED
            self.last_seal = seal

            if self.storage is not None:
                self.storage.finalize(self.session_id)
                self.storage.upsert_seal(seal)

            logger.info(
                "session_sealed",
                session_id=self.session_id,
                records=seal.record_count,
                duration_seconds=seal.duration_seconds,
                auto_sealed=auto_sealed,
            )
            return seal

    @staticmethod
    def _elapsed(start: str, end: str) -> int:
        return max(0, round((parse_iso(end) - parse_iso(start)).total_seconds()))

    # ── views ─────────────────────────────────────────────────────────────

    @property
    def length(self) -> int:
        return self.record_count

    def get_last_hash(self) -> Optional[str]:
        """Hash of the last record, None for an empty session"""
        return self.chain_tip if self.record_count else None

    @property
    def last_timestamp(self) -> Optional[str]:
        return self._last_timestamp

    def get_chain(self) -> List[ChainRecord]:
        if self.storage is None:
            return []
        return self.storage.load_records(self.session_id)

    # ── recovery ──────────────────────────────────────────────────────────

    @classmethod
    def resume(
        cls,
        records: List[ChainRecord],
        storage: Optional[StorageBackend] = None,
        signing_key: Optional[Ed25519PrivateKey] = None,
        keystore_path: Optional[Path] = None,
        external_session_id: Optional[str] = None,
    ) -> "SessionLedger":
        """Rebuild a ledger from a persisted chain, e.g. after a daemon restart."""
        if not records:
            raise ValueError("Cannot resume a session without records")

        first, last = records[0], records[-1]
        start_data = first.data if first.type == "session_start" else {}
        ledger = cls(
            storage=storage,
            keystore_path=keystore_path,
            signing_key=signing_key,
            client_name=start_data.get("client", "unknown"),
            task_type=start_data.get("task_type", "coding"),
            project=start_data.get("project", "unknown"),
            title=start_data.get("title"),
            external_session_id=external_session_id,
        )
        ledger.session_id = first.session_id
        ledger.conversation_id = start_data.get("conversation_id", ledger.conversation_id)
        ledger.conversation_index = start_data.get("conversation_index", 0)
        ledger.started_at = first.timestamp
        elapsed = (datetime.now(timezone.utc) - parse_iso(first.timestamp)).total_seconds()
        ledger._start_monotonic = time.monotonic() - max(0.0, elapsed)
        ledger.heartbeat_count = sum(1 for r in records if r.type == "heartbeat")
        ledger.record_count = len(records)
        ledger.chain_tip = last.hash
        ledger._first_timestamp = first.timestamp
        ledger._first_prev_hash = first.prev_hash
        ledger._last_timestamp = last.timestamp
        ledger._last_type = last.type
        if last.type == "session_seal":
            ledger._state = LedgerState.SEALED
            ledger._sealed_duration = ledger._elapsed(first.timestamp, last.timestamp)
            seal_body = last.data.get("seal")
            if isinstance(seal_body, dict):
                ledger.last_seal = SessionSeal.from_dict(
                    {**seal_body, "seal_signature": last.data.get("seal_signature", UNSIGNED)}
                )
                ledger._sealed_duration = ledger.last_seal.duration_seconds
        else:
            ledger._state = LedgerState.ACTIVE
        return ledger
