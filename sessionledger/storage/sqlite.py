# sessionledger/storage/sqlite.py
import os
import sqlite3
import json
import threading
from pathlib import Path
from typing import List, Optional

from sessionledger.core.errors import StorageError
from sessionledger.core.types import ChainRecord, SessionSeal
from . import StorageBackend


class SQLiteStorage(StorageBackend):
    """SQLite persistent storage for session chains and seals."""

    def __init__(self, db_path: str | Path | None = None):
        if db_path is None:
            env_path = os.environ.get("SESSIONLEDGER_DB_PATH")
            db_path = env_path if env_path else Path.cwd() / "sessionledger.db"

        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.db_path = self.db_path.resolve()

        # One connection shared by the daemon's worker threads
        self._lock = threading.Lock()
        self._conn: Optional[sqlite3.Connection] = None
        self._connect()

    def _connect(self):
        self._conn = sqlite3.connect(str(self.db_path), isolation_level=None, check_same_thread=False)
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._create_schema()

    def _create_schema(self):
        self.conn.execute("""
            CREATE TABLE IF NOT EXISTS chain_records (
                session_id      TEXT    NOT NULL,
                sequence        INTEGER NOT NULL,
                record_id       TEXT    NOT NULL,
                type            TEXT    NOT NULL,
                timestamp       TEXT    NOT NULL,
                data_json       TEXT    NOT NULL,
                prev_hash       TEXT    NOT NULL,
                hash            TEXT    NOT NULL,
                signature       TEXT    NOT NULL,
                PRIMARY KEY (session_id, sequence)
            )
        """)
        self.conn.execute("""
            CREATE TABLE IF NOT EXISTS session_seals (
                session_id      TEXT    PRIMARY KEY,
                ended_at        TEXT    NOT NULL,
                seal_json       TEXT    NOT NULL
            )
        """)
        self.conn.execute("CREATE INDEX IF NOT EXISTS idx_timestamp ON chain_records(session_id, timestamp)")

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            raise RuntimeError("Storage connection is closed")
        return self._conn

    def append(self, record: ChainRecord) -> None:
        try:
            with self._lock:
                if self.conn.execute(
                    "SELECT 1 FROM session_seals WHERE session_id = ?", (record.session_id,)
                ).fetchone():
                    raise StorageError(f"Session {record.session_id} is already sealed; refusing record {record.id}")
                cursor = self.conn.execute(
                    "SELECT COUNT(*) FROM chain_records WHERE session_id = ?", (record.session_id,)
                )
                sequence = cursor.fetchone()[0]
                self.conn.execute("""
                    INSERT INTO chain_records
                    (session_id, sequence, record_id, type, timestamp,
                     data_json, prev_hash, hash, signature)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """, (
                    record.session_id, sequence, record.id, record.type, record.timestamp,
                    json.dumps(record.data, separators=(",", ":")),
                    record.prev_hash, record.hash, record.signature,
                ))
        except sqlite3.Error as e:
            raise StorageError(f"Failed to persist record {record.id}: {e}") from e

    def _rows_to_records(self, session_id: str, rows) -> List[ChainRecord]:
        loaded = []
        for rid, rtype, ts, djson, prev, rhash, sig in rows:
            loaded.append(ChainRecord(
                id=rid,
                type=rtype,
                session_id=session_id,
                timestamp=ts,
                data=json.loads(djson),
                prev_hash=prev,
                hash=rhash,
                signature=sig,
            ))
        return loaded

    def load_records(self, session_id: str) -> List[ChainRecord]:
        cursor = self.conn.execute("""
            SELECT record_id, type, timestamp, data_json, prev_hash, hash, signature
            FROM chain_records WHERE session_id = ? ORDER BY sequence ASC
        """, (session_id,))
        return self._rows_to_records(session_id, cursor.fetchall())

    def finalize(self, session_id: str) -> None:
        # A session counts as sealed once its seal row exists; nothing to move.
        pass

    def is_active(self, session_id: str) -> bool:
        cursor = self.conn.execute("""
            SELECT 1 FROM chain_records r
            WHERE r.session_id = ?
              AND NOT EXISTS (SELECT 1 FROM session_seals s WHERE s.session_id = r.session_id)
            LIMIT 1
        """, (session_id,))
        return cursor.fetchone() is not None

    def list_active(self) -> List[str]:
        cursor = self.conn.execute("""
            SELECT DISTINCT session_id FROM chain_records
            WHERE session_id NOT IN (SELECT session_id FROM session_seals)
            ORDER BY session_id
        """)
        return [row[0] for row in cursor.fetchall()]

    def list_sessions(self) -> List[str]:
        """
        List all unique session_ids, sorted by most recent activity (latest timestamp).
        """
        cursor = self.conn.execute("""
            SELECT session_id
            FROM chain_records
            GROUP BY session_id
            ORDER BY MAX(timestamp) DESC
        """)
        return [row[0] for row in cursor.fetchall()]

    def upsert_seal(self, seal: SessionSeal) -> None:
        try:
            with self._lock:
                row = self.conn.execute(
                    "SELECT seal_json FROM session_seals WHERE session_id = ?", (seal.session_id,)
                ).fetchone()
                if row and SessionSeal.from_dict(json.loads(row[0])).richness() > seal.richness():
                    return
                self.conn.execute(
                    "INSERT OR REPLACE INTO session_seals (session_id, ended_at, seal_json) VALUES (?, ?, ?)",
                    (seal.session_id, seal.ended_at, json.dumps(seal.to_dict(), separators=(",", ":"))),
                )
        except sqlite3.Error as e:
            raise StorageError(f"Failed to write seal for {seal.session_id}: {e}") from e

    def load_seals(self) -> List[SessionSeal]:
        cursor = self.conn.execute("SELECT seal_json FROM session_seals ORDER BY ended_at ASC")
        return [SessionSeal.from_dict(json.loads(row[0])) for row in cursor.fetchall()]

    def close(self) -> None:
        if self._conn:
            self._conn.close()
            self._conn = None
