# sessionledger/core/types.py
from dataclasses import dataclass, field, asdict, fields
from datetime import datetime, timezone
from typing import Any, Dict, Literal, Optional, get_args

GENESIS_HASH = "GENESIS"
UNSIGNED = "unsigned"

ChainRecordType = Literal["session_start", "heartbeat", "milestone", "session_end", "session_seal"]
RECORD_TYPES = get_args(ChainRecordType)


def utc_iso_now() -> str:
    """UTC ISO 8601 with millis and a trailing Z, e.g. 2026-02-13T10:55:00.123Z"""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_iso(ts: str) -> datetime:
    return datetime.fromisoformat(ts.replace("Z", "+00:00"))


@dataclass(frozen=True)
class ChainRecord:
    """Single hash-linked entry in a session's chain."""
    id: str                         # r_<12 hex>
    type: ChainRecordType
    session_id: str
    timestamp: str                  # ISO 8601 UTC with millis
    data: Dict[str, Any]
    prev_hash: str                  # hash of previous record, GENESIS for the first one
    hash: str                       # sha256(canonical core || prev_hash)
    signature: str = UNSIGNED       # hex Ed25519 over hash, or "unsigned"

    def core_dict(self) -> dict:
        """The fields covered by the hash, in the shape that gets canonicalized."""
        return {
            "id": self.id,
            "type": self.type,
            "session_id": self.session_id,
            "timestamp": self.timestamp,
            "data": self.data,
        }

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, d: dict) -> "ChainRecord":
        return cls(
            id=d["id"],
            type=d["type"],
            session_id=d["session_id"],
            timestamp=d["timestamp"],
            data=d.get("data") or {},
            prev_hash=d["prev_hash"],
            hash=d["hash"],
            signature=d.get("signature", UNSIGNED),
        )


@dataclass(frozen=True)
class SessionSeal:
    """Finalized summary of a completed session. Stored in the seal index and exported as-is."""
    session_id: str
    client: str
    task_type: str
    started_at: str
    ended_at: str
    duration_seconds: int
    heartbeat_count: int
    record_count: int
    chain_start_hash: str
    chain_end_hash: str
    seal_signature: str = UNSIGNED
    conversation_id: Optional[str] = None
    conversation_index: Optional[int] = None
    project: Optional[str] = None
    title: Optional[str] = None
    auto_sealed: bool = False

    def body(self) -> dict:
        """Everything except the signature; this is what seal_signature covers."""
        d = self.to_dict()
        d.pop("seal_signature")
        return d

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, d: dict) -> "SessionSeal":
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in d.items() if k in known})

    def richness(self) -> int:
        """Rough completeness score; used to pick between two seals of the same session."""
        score = 0
        if self.title:
            score += 10
        if self.conversation_id:
            score += 20
        if self.project and self.project not in ("untitled", "unknown"):
            score += 5
        if not self.auto_sealed:
            score += 5
        return score


@dataclass(frozen=True)
class PidRecord:
    """Persisted supervisor state for the running daemon."""
    pid: int
    port: int
    started_at: str = field(default_factory=utc_iso_now)

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, d: dict) -> "PidRecord":
        return cls(pid=int(d["pid"]), port=int(d["port"]), started_at=str(d.get("started_at", "")))


@dataclass(frozen=True)
class Keystore:
    """On-disk keystore: Ed25519 private key encrypted with a machine-derived AES-GCM key (all hex)."""
    public_key_pem: str
    encrypted_private_key: str
    iv: str
    tag: str
    salt: str
    created_at: str = field(default_factory=utc_iso_now)

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, d: dict) -> "Keystore":
        return cls(**{f.name: d[f.name] for f in fields(cls) if f.name in d})
