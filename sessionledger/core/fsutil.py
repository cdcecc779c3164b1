# sessionledger/core/fsutil.py
import json
import os
import threading
from pathlib import Path
from typing import Any


def read_json(path: Path, fallback: Any) -> Any:
    """Read a JSON document. Missing, unreadable or corrupt files yield `fallback`."""
    try:
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)
    except (OSError, ValueError):
        return fallback


def write_text_atomic(path: Path, text: str) -> None:
    """
    Write-temp-then-rename so readers never observe a half-written file.
    The temp name is unique per process and thread; os.replace is atomic on POSIX and Windows.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(f"{path.name}.{os.getpid()}.{threading.get_ident()}.tmp")
    try:
        with open(tmp, "w", encoding="utf-8") as f:
            f.write(text)
        os.replace(tmp, path)
    finally:
        if tmp.exists():
            tmp.unlink()


def write_json(path: Path, data: Any) -> None:
    write_text_atomic(path, json.dumps(data, indent=2) + "\n")
