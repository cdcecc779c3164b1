# sessionledger/crypto/keystore.py
"""
Local Ed25519 signing key, encrypted at rest.

The private key (PKCS8 PEM) is sealed with AES-256-GCM under a key derived
from hostname + username with PBKDF2. That ties the keystore to this machine
and user; it is tamper-evidence, not an identity certified by anyone else.
"""

import getpass
import os
import socket
from pathlib import Path
from typing import Tuple

import structlog
from cryptography.exceptions import InvalidTag, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from sessionledger.core.errors import KeystoreError
from sessionledger.core.fsutil import read_json, write_json
from sessionledger.core.result import OpResult
from sessionledger.core.types import Keystore

logger = structlog.get_logger(__name__)

PBKDF2_ITERATIONS = 100_000
GCM_TAG_BYTES = 16


def _machine_secret() -> bytes:
    try:
        user = getpass.getuser()
    except (KeyError, OSError):
        user = "unknown"
    return f"{socket.gethostname()}:{user}:sessionledger-keystore".encode("utf-8")


def derive_encryption_key(salt: bytes) -> bytes:
    kdf = PBKDF2HMAC(algorithm=hashes.SHA256(), length=32, salt=salt, iterations=PBKDF2_ITERATIONS)
    return kdf.derive(_machine_secret())


def generate_keystore() -> Tuple[Keystore, Ed25519PrivateKey]:
    private_key = Ed25519PrivateKey.generate()
    private_pem = private_key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    )
    public_pem = private_key.public_key().public_bytes(
        serialization.Encoding.PEM,
        serialization.PublicFormat.SubjectPublicKeyInfo,
    )

    salt = os.urandom(32)
    iv = os.urandom(12)
    sealed = AESGCM(derive_encryption_key(salt)).encrypt(iv, private_pem, None)
    # AESGCM appends the tag; store it separately
    encrypted, tag = sealed[:-GCM_TAG_BYTES], sealed[-GCM_TAG_BYTES:]

    keystore = Keystore(
        public_key_pem=public_pem.decode("utf-8"),
        encrypted_private_key=encrypted.hex(),
        iv=iv.hex(),
        tag=tag.hex(),
        salt=salt.hex(),
    )
    return keystore, private_key


def decrypt_keystore(ks: Keystore) -> Ed25519PrivateKey:
    try:
        key = derive_encryption_key(bytes.fromhex(ks.salt))
        sealed = bytes.fromhex(ks.encrypted_private_key) + bytes.fromhex(ks.tag)
        private_pem = AESGCM(key).decrypt(bytes.fromhex(ks.iv), sealed, None)
        private_key = serialization.load_pem_private_key(private_pem, password=None)
    except (InvalidTag, UnsupportedAlgorithm, ValueError, TypeError) as e:
        raise KeystoreError(f"Cannot decrypt keystore: {e}") from e
    if not isinstance(private_key, Ed25519PrivateKey):
        raise KeystoreError("Keystore does not hold an Ed25519 key")
    return private_key


def read_keystore(path: Path) -> Keystore:
    raw = read_json(path, None)
    if not isinstance(raw, dict):
        raise KeystoreError(f"No readable keystore at {path}")
    try:
        return Keystore.from_dict(raw)
    except TypeError as e:
        raise KeystoreError(f"Malformed keystore: {e}") from e


def read_public_key_pem(path: Path) -> str:
    return read_keystore(path).public_key_pem


def load_or_create_signing_key(path: Path) -> OpResult:
    """
    SUCCESS   existing keystore decrypted (value = private key)
    DEGRADED  existing keystore unusable (corrupt, other machine), a fresh one replaced it
    FAILED    no key could be loaded or written; the caller records unsigned
    """
    path = Path(path)
    replaced = False
    if path.exists():
        try:
            return OpResult.ok("keystore loaded", decrypt_keystore(read_keystore(path)))
        except KeystoreError as e:
            logger.warning("keystore_unusable", path=str(path), error=str(e))
            replaced = True

    try:
        keystore, private_key = generate_keystore()
        write_json(path, keystore.to_dict())
        try:
            os.chmod(path, 0o600)
        except OSError:
            pass  # no unix permissions on windows
    except OSError as e:
        logger.warning("keystore_unavailable", path=str(path), error=str(e))
        return OpResult.failed(f"Cannot create keystore at {path}: {e}")

    if replaced:
        return OpResult.degraded("keystore was unusable and has been regenerated", private_key)
    return OpResult.ok("keystore created", private_key)
