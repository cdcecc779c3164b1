# sessionledger/verify/verifier.py
from dataclasses import dataclass, field
from typing import List, Optional

from sessionledger.core.types import GENESIS_HASH, UNSIGNED, ChainRecord
from sessionledger.crypto.hashing import record_hash, verify_signature
from sessionledger.storage import StorageBackend

LINKAGE_CATEGORIES = ("hash", "hash_chain")


@dataclass
class VerificationFailure:
    index: int                      # position in the chain, -1 when the chain could not be loaded
    message: str
    category: str = "general"       # "session", "hash", "hash_chain", "signature", "storage"


@dataclass
class VerificationResult:
    is_valid: bool
    message: str = ""
    failures: List[VerificationFailure] = field(default_factory=list)
    # None when no public key was supplied or every record is unsigned
    signature_valid: Optional[bool] = None

    def fail(self, index: int, message: str, category: str) -> None:
        self.failures.append(VerificationFailure(index, message, category))
        self.is_valid = False

    @property
    def first_failure(self) -> Optional[VerificationFailure]:
        return self.failures[0] if self.failures else None

    @property
    def broken_at(self) -> Optional[int]:
        """Index of the first record whose hash linkage does not hold."""
        return next((f.index for f in self.failures if f.category in LINKAGE_CATEGORIES), None)

    def __bool__(self):
        return self.is_valid

    def __str__(self):
        if self.is_valid:
            return "Chain is valid ✓"
        head = f"Verification FAILED ({len(self.failures)} issues"
        head += f", chain broken at record {self.broken_at}):" if self.broken_at is not None else "):"
        return "\n".join([head] + [f"  • [{f.index}] {f.category}: {f.message}" for f in self.failures])


def verify_chain_record(record: ChainRecord, prev_hash: str) -> bool:
    """True if the record links to prev_hash and its stored hash matches its contents."""
    return record.prev_hash == prev_hash and record_hash(record, prev_hash) == record.hash


class ChainVerifier:
    """
    Offline verifier for session chains, either already loaded or read from storage.

    Checks run in order: every record belongs to the same session, each record
    links to the recomputed hash of its predecessor starting at GENESIS, and
    (given the keystore's public key) every signed record's signature holds.
    Unsigned records are not signature failures; they are reported through
    signature_valid staying None.
    """

    def __init__(self, public_key_pem: Optional[str] = None):
        self.public_key_pem = public_key_pem

    def verify(self, chain: List[ChainRecord]) -> VerificationResult:
        if not chain:
            return VerificationResult(True, "Empty chain is valid")

        result = VerificationResult(True)

        session_id = chain[0].session_id
        for i, rec in enumerate(chain):
            if rec.session_id != session_id:
                result.fail(i, f"Session mismatch: {rec.session_id}", "session")

        # The expected link rolls forward on recomputed hashes, so a record
        # edited in place breaks itself and every record after it.
        expected_prev = GENESIS_HASH
        for i, rec in enumerate(chain):
            if rec.prev_hash != expected_prev:
                result.fail(i, "prev_hash does not match previous record hash", "hash_chain")
            recomputed = record_hash(rec, expected_prev)
            if recomputed != rec.hash:
                result.fail(i, "Stored hash does not match record contents", "hash")
            expected_prev = recomputed

        if self.public_key_pem:
            signed = [(i, rec) for i, rec in enumerate(chain) if rec.signature != UNSIGNED]
            if signed:
                result.signature_valid = True
            for i, rec in signed:
                if not verify_signature(rec.hash, rec.signature, self.public_key_pem):
                    result.fail(i, "Invalid signature", "signature")
                    result.signature_valid = False

        result.message = (
            f"{len(chain)} records, chain intact" if result.is_valid
            else f"Failed with {len(result.failures)} issues"
        )
        return result

    def verify_from_storage(self, session_id: str, storage: StorageBackend) -> VerificationResult:
        """Load a session's chain and verify it. A failed load is a failed result, not an exception."""
        try:
            chain = storage.load_records(session_id)
        except (OSError, ValueError) as e:
            result = VerificationResult(False, f"Failed to load session '{session_id}' from storage: {e}")
            result.fail(-1, str(e), "storage")
            return result

        if not chain:
            result = VerificationResult(False, f"Session '{session_id}' not found")
            result.fail(-1, "No records", "storage")
            return result
        return self.verify(chain)
