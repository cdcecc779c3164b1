# sessionledger/core/errors.py
"""
Exception hierarchy. Best-effort paths (signing, autostart) report through OpResult instead.
"""


class LedgerError(Exception):
    """Base for all sessionledger errors."""


class InvalidStateError(LedgerError):
    """Lifecycle misuse, e.g. appending to a sealed session."""


class StorageError(LedgerError):
    """A record or seal could not be persisted."""


class KeystoreError(LedgerError):
    """Keystore could not be read, decrypted or written. Never escapes the ledger."""


class SessionNotFoundError(LedgerError):
    """No connection is open for the given external session id."""
