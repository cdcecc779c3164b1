# sessionledger/core/canon.py
from typing import Any, Dict

import jcs

# Fields covered by a record's hash. prev_hash is appended separately; hash and signature are outputs.
HASHED_FIELDS = ("id", "type", "session_id", "timestamp", "data")


def canonical_json(obj: Any) -> bytes:
    """RFC 8785 (JCS) bytes: sorted keys, no insignificant whitespace, ECMAScript number form."""
    return jcs.canonicalize(obj)


def record_body(fields: Dict[str, Any]) -> bytes:
    """Canonical bytes of the hashed subset of a record's fields. Raises KeyError if one is missing."""
    return canonical_json({name: fields[name] for name in HASHED_FIELDS})
