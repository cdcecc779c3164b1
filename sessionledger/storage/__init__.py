# sessionledger/storage/__init__.py
"""
Storage backends for session chains and their seals.
"""

from abc import ABC, abstractmethod
from typing import List
from pathlib import Path
from sessionledger.core.types import ChainRecord, SessionSeal


class StorageBackend(ABC):
    """Abstract base for all persistent storage implementations."""

    @abstractmethod
    def append(self, record: ChainRecord) -> None:
        """Persist one record; raise StorageError if it did not make it to disk."""

    @abstractmethod
    def load_records(self, session_id: str) -> List[ChainRecord]:
        pass

    @abstractmethod
    def finalize(self, session_id: str) -> None:
        """Mark a session's chain as sealed (no further appends expected)."""

    @abstractmethod
    def is_active(self, session_id: str) -> bool:
        pass

    @abstractmethod
    def list_active(self) -> List[str]:
        pass

    @abstractmethod
    def list_sessions(self) -> List[str]:
        """All session ids with a chain, most recent activity first."""

    @abstractmethod
    def upsert_seal(self, seal: SessionSeal) -> None:
        pass

    @abstractmethod
    def load_seals(self) -> List[SessionSeal]:
        pass

    @abstractmethod
    def close(self) -> None:
        pass

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()


def _uri_path(uri: str, scheme: str) -> Path:
    raw_path = uri[len(scheme):]
    return Path(raw_path).expanduser().resolve()


def create_storage(uri: str) -> StorageBackend:
    if uri.startswith("sqlite://"):
        from .sqlite import SQLiteStorage
        return SQLiteStorage(_uri_path(uri, "sqlite://"))

    elif uri.startswith("jsonl://"):
        from .jsonl import JsonlStorage
        return JsonlStorage(_uri_path(uri, "jsonl://"))

    elif "://" in uri:
        raise ValueError(f"Unsupported storage URI: {uri}")
    else:
        # Plain file path -> SQLite, so storage="/path/to/db.sqlite" just works
        from .sqlite import SQLiteStorage
        return SQLiteStorage(Path(uri).expanduser().resolve())


from .jsonl import JsonlStorage
from .sqlite import SQLiteStorage

__all__ = ["StorageBackend", "create_storage", "JsonlStorage", "SQLiteStorage"]
