# sessionledger/storage/jsonl.py
import json
import os
import threading
from pathlib import Path
from typing import List, Optional

import structlog

from sessionledger.core.errors import StorageError
from sessionledger.core.fsutil import read_json, write_json
from sessionledger.core.types import ChainRecord, SessionSeal
from . import StorageBackend

logger = structlog.get_logger(__name__)


class JsonlStorage(StorageBackend):
    """
    One JSON document per line, one file per session.

        <data_dir>/active/<session_id>.jsonl   chains still being written
        <data_dir>/sealed/<session_id>.jsonl   finalized chains
        <data_dir>/sessions.json               seal index (one entry per session)

    This is the durable export format; the export command reads these files directly.
    """

    def __init__(self, data_dir: Path):
        self.data_dir = Path(data_dir)
        self.active_dir = self.data_dir / "active"
        self.sealed_dir = self.data_dir / "sealed"
        self.sessions_file = self.data_dir / "sessions.json"
        for d in (self.active_dir, self.sealed_dir):
            d.mkdir(parents=True, exist_ok=True)
        self._index_lock = threading.Lock()

    def _active_path(self, session_id: str) -> Path:
        return self.active_dir / f"{session_id}.jsonl"

    def _sealed_path(self, session_id: str) -> Path:
        return self.sealed_dir / f"{session_id}.jsonl"

    def chain_path(self, session_id: str) -> Optional[Path]:
        for path in (self._active_path(session_id), self._sealed_path(session_id)):
            if path.exists():
                return path
        return None

    def append(self, record: ChainRecord) -> None:
        # Appending to active/ after the move would start a second, headless chain file
        if self._sealed_path(record.session_id).exists():
            raise StorageError(f"Session {record.session_id} is already sealed; refusing record {record.id}")
        line = json.dumps(record.to_dict(), separators=(",", ":"))
        try:
            with open(self._active_path(record.session_id), "a", encoding="utf-8") as f:
                f.write(line + "\n")
                f.flush()
        except OSError as e:
            raise StorageError(f"Failed to persist record {record.id}: {e}") from e

    def load_records(self, session_id: str) -> List[ChainRecord]:
        path = self.chain_path(session_id)
        if path is None:
            return []

        records = []
        with open(path, "rb") as f:
            for lineno, raw in enumerate(f, start=1):
                if not raw.strip():
                    continue
                try:
                    records.append(ChainRecord.from_dict(json.loads(raw.decode("utf-8"))))
                except (ValueError, KeyError, TypeError) as e:
                    logger.warning("chain_line_unreadable", path=str(path), line=lineno, error=str(e))
        return records

    def finalize(self, session_id: str) -> None:
        active = self._active_path(session_id)
        if not active.exists():
            return
        try:
            os.replace(active, self._sealed_path(session_id))
        except OSError as e:
            raise StorageError(f"Failed to move chain {session_id} to sealed/: {e}") from e

    def is_active(self, session_id: str) -> bool:
        return self._active_path(session_id).exists()

    def list_active(self) -> List[str]:
        return sorted(p.stem for p in self.active_dir.glob("*.jsonl"))

    def list_sessions(self) -> List[str]:
        files = list(self.active_dir.glob("*.jsonl")) + list(self.sealed_dir.glob("*.jsonl"))
        mtimes = {}
        for p in files:
            try:
                mtimes[p.stem] = p.stat().st_mtime
            except OSError:
                continue  # moved to sealed/ between glob and stat
        return sorted(mtimes, key=mtimes.get, reverse=True)

    def upsert_seal(self, seal: SessionSeal) -> None:
        with self._index_lock:
            seals = self.load_seals()
            for i, existing in enumerate(seals):
                if existing.session_id == seal.session_id:
                    if seal.richness() >= existing.richness():
                        seals[i] = seal
                    break
            else:
                seals.append(seal)
            try:
                write_json(self.sessions_file, [s.to_dict() for s in seals])
            except OSError as e:
                raise StorageError(f"Failed to write seal index: {e}") from e

    def load_seals(self) -> List[SessionSeal]:
        raw = read_json(self.sessions_file, [])
        if not isinstance(raw, list):
            return []
        seals = []
        for entry in raw:
            try:
                seals.append(SessionSeal.from_dict(entry))
            except (TypeError, AttributeError):
                continue
        return seals

    def close(self) -> None:
        pass
