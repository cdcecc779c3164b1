# sessionledger/crypto/hashing.py
import hashlib
from typing import Optional, Union

import structlog
from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey

from sessionledger.core.canon import canonical_json, record_body
from sessionledger.core.types import ChainRecord, SessionSeal, UNSIGNED

logger = structlog.get_logger(__name__)


def sha256_hex(data: Union[bytes, str]) -> str:
    if isinstance(data, str):
        data = data.encode("utf-8")
    return hashlib.sha256(data).hexdigest()


def compute_hash(body: Union[bytes, str], prev_hash: str) -> str:
    """sha256(canonical record body || prev_hash) as lowercase hex. Pure and deterministic."""
    if isinstance(body, str):
        body = body.encode("utf-8")
    return hashlib.sha256(body + prev_hash.encode("utf-8")).hexdigest()


def record_hash(record: ChainRecord, prev_hash: Optional[str] = None) -> str:
    """Recompute a record's hash from its stored fields (and its own prev_hash unless given)."""
    prev = record.prev_hash if prev_hash is None else prev_hash
    return compute_hash(record_body(record.core_dict()), prev)


def seal_digest(seal: SessionSeal) -> str:
    """What seal_signature signs: sha256 of the canonical seal body (everything but the signature)."""
    return sha256_hex(canonical_json(seal.body()))


def sign_hash(hash_hex: str, signing_key: Optional[Ed25519PrivateKey]) -> str:
    """
    Detached Ed25519 signature over the hex hash, hex encoded.
    Never raises: no key or any signing failure yields the "unsigned" sentinel.
    """
    if signing_key is None:
        return UNSIGNED
    try:
        return signing_key.sign(hash_hex.encode("utf-8")).hex()
    except Exception as e:
        logger.warning("signing_failed", error=str(e))
        return UNSIGNED


def verify_signature(hash_hex: str, signature: str, public_key_pem: str) -> bool:
    if signature == UNSIGNED:
        return False
    try:
        public_key = serialization.load_pem_public_key(public_key_pem.encode("utf-8"))
        public_key.verify(bytes.fromhex(signature), hash_hex.encode("utf-8"))
        return True
    except (InvalidSignature, UnsupportedAlgorithm, ValueError, TypeError):
        return False
