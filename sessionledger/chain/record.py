# sessionledger/chain/record.py
import uuid
from typing import Any, Dict, Optional

from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey

from sessionledger.core.canon import record_body
from sessionledger.core.types import ChainRecord, ChainRecordType, RECORD_TYPES, utc_iso_now
from sessionledger.crypto.hashing import compute_hash, sign_hash


def generate_session_id() -> str:
    return str(uuid.uuid4())


def generate_record_id() -> str:
    return f"r_{uuid.uuid4().hex[:12]}"


def build_chain_record(
    type: ChainRecordType,
    session_id: str,
    data: Dict[str, Any],
    prev_hash: str,
    signing_key: Optional[Ed25519PrivateKey],
    timestamp: Optional[str] = None,
) -> ChainRecord:
    """
    Assign id + timestamp, canonicalize the core fields, hash against prev_hash, sign.
    Records are only ever constructed here (or rehydrated from storage).
    """
    if type not in RECORD_TYPES:
        raise ValueError(f"Unknown record type: {type!r}")

    record_id = generate_record_id()
    ts = timestamp or utc_iso_now()
    core = {"id": record_id, "type": type, "session_id": session_id, "timestamp": ts, "data": data}
    record_hash = compute_hash(record_body(core), prev_hash)

    return ChainRecord(
        id=record_id,
        type=type,
        session_id=session_id,
        timestamp=ts,
        data=data,
        prev_hash=prev_hash,
        hash=record_hash,
        signature=sign_hash(record_hash, signing_key),
    )
