# sessionledger/chain/registry.py
import threading
from pathlib import Path
from typing import Dict, Optional

import structlog

from sessionledger.core.fsutil import read_json, write_json

logger = structlog.get_logger(__name__)


class SessionRegistry:
    """
    Persisted {external_id -> internal session_id} table.

    Read whole, written whole: every mutation rewrites the file through a temp
    file + rename. A missing or corrupt file reads as an empty mapping.
    """

    def __init__(self, path: Path):
        self.path = Path(path)
        self._lock = threading.Lock()

    def read_all(self) -> Dict[str, str]:
        raw = read_json(self.path, {})
        if not isinstance(raw, dict):
            logger.warning("session_map_corrupt", path=str(self.path))
            return {}
        return {str(k): str(v) for k, v in raw.items() if isinstance(v, str)}

    def lookup(self, external_id: Optional[str]) -> Optional[str]:
        if not external_id:
            return None
        return self.read_all().get(external_id)

    def write(self, external_id: Optional[str], internal_id: str) -> None:
        if not external_id:
            return
        with self._lock:
            mapping = self.read_all()
            if mapping.get(external_id) == internal_id:
                return
            mapping[external_id] = internal_id
            write_json(self.path, mapping)

    def remove_by_external_id(self, external_id: Optional[str]) -> None:
        if not external_id:
            return
        with self._lock:
            mapping = self.read_all()
            if external_id not in mapping:
                return
            del mapping[external_id]
            write_json(self.path, mapping)

    def remove_by_internal_id(self, internal_id: str) -> None:
        """Drop every external id pointing at this session (a tool may have reconnected under new ids)."""
        with self._lock:
            mapping = self.read_all()
            kept = {ext: sid for ext, sid in mapping.items() if sid != internal_id}
            if len(kept) == len(mapping):
                return
            write_json(self.path, kept)

    def internal_ids(self) -> set:
        return set(self.read_all().values())
