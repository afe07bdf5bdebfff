# =====================================================
# FILE: credvault/services/crypto_service.py
# Hashing, identifier validation and authenticated encryption
# =====================================================
"""
Crypto primitives for the credential pipeline.

* Document identity is the SHA-256 of the plaintext, rendered "0x" + 64 hex.
* Each document gets a fresh AES-256-GCM key; the document hash is bound in
  as associated data so a ciphertext cannot be replayed under another hash.
* Keys never reach the database in the clear: KeyWrapper seals them under a
  key derived from MASTER_ENCRYPTION_KEY.
"""

import base64
import hashlib
import hmac
import json
import logging
import re
import secrets
from dataclasses import dataclass

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from credvault.core.exceptions import InternalError, InvalidAddress, InvalidHash

logger = logging.getLogger(__name__)

HASH_PATTERN = re.compile(r"^0x[0-9a-fA-F]{64}$")
ADDRESS_PATTERN = re.compile(r"^0x[0-9a-fA-F]{40}$")

ALGORITHM = "AES-256-GCM"
KEY_SIZE = 32
NONCE_SIZE = 12
ZERO_ADDRESS = "0x" + "0" * 40
ZERO_HASH = "0x" + "0" * 64


def compute_document_hash(data: bytes) -> str:
    """SHA-256 of the plaintext as 0x-prefixed lowercase hex"""
    return "0x" + hashlib.sha256(data).hexdigest()


def is_valid_hash(value) -> bool:
    return isinstance(value, str) and bool(HASH_PATTERN.match(value))


def is_valid_address(value) -> bool:
    return isinstance(value, str) and bool(ADDRESS_PATTERN.match(value))


def normalize_hash(value: str) -> str:
    if not is_valid_hash(value):
        raise InvalidHash(f"Not a 0x-prefixed 32-byte hex digest: {value!r}")
    return value.lower()


def normalize_address(value: str) -> str:
    if not is_valid_address(value):
        raise InvalidAddress(f"Not a 0x-prefixed 20-byte address: {value!r}")
    return value.lower()


def constant_time_equals(a: str, b: str) -> bool:
    """Compare two hex strings without leaking timing, ignoring case"""
    if a is None or b is None:
        return False
    return hmac.compare_digest(a.lower().encode(), b.lower().encode())


def generate_document_key() -> bytes:
    return AESGCM.generate_key(bit_length=256)


def generate_nonce() -> bytes:
    return secrets.token_bytes(NONCE_SIZE)


def secure_token(nbytes: int = 32) -> str:
    return secrets.token_hex(nbytes)


def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def _unb64(data: str) -> bytes:
    return base64.b64decode(data.encode("ascii"))


@dataclass
class EncryptedEnvelope:
    """Nonce plus ciphertext-with-tag. This is what lands in the object store."""

    nonce: bytes
    ciphertext: bytes
    algorithm: str = ALGORITHM
    version: int = 1

    def to_bytes(self) -> bytes:
        return json.dumps(
            {
                "v": self.version,
                "alg": self.algorithm,
                "nonce": _b64(self.nonce),
                "ciphertext": _b64(self.ciphertext),
            },
            sort_keys=True,
        ).encode("utf-8")

    @classmethod
    def from_bytes(cls, raw: bytes) -> "EncryptedEnvelope":
        try:
            payload = json.loads(raw.decode("utf-8"))
            return cls(
                nonce=_unb64(payload["nonce"]),
                ciphertext=_unb64(payload["ciphertext"]),
                algorithm=payload.get("alg", ALGORITHM),
                version=int(payload.get("v", 1)),
            )
        except (ValueError, KeyError, TypeError) as e:
            raise InternalError(f"Malformed encrypted envelope: {str(e)}")


def encrypt_document(plaintext: bytes, key: bytes, document_hash: str, nonce: bytes = None) -> EncryptedEnvelope:
    if len(key) != KEY_SIZE:
        raise InternalError("Document key must be 256 bits")
    nonce = nonce or generate_nonce()
    ciphertext = AESGCM(key).encrypt(nonce, plaintext, document_hash.lower().encode("ascii"))
    return EncryptedEnvelope(nonce=nonce, ciphertext=ciphertext)


def decrypt_document(envelope_bytes: bytes, key: bytes, document_hash: str) -> bytes:
    envelope = EncryptedEnvelope.from_bytes(envelope_bytes)
    try:
        return AESGCM(key).decrypt(
            envelope.nonce, envelope.ciphertext, document_hash.lower().encode("ascii")
        )
    except InvalidTag:
        raise InternalError("Ciphertext failed authentication")


class KeyWrapper:
    """Seals per-document keys at rest under a key derived from the master secret"""

    INFO = b"credvault document key wrapping v1"

    def __init__(self, master_secret: str):
        if not master_secret:
            raise ValueError("MASTER_ENCRYPTION_KEY must be set")
        self._kek = HKDF(
            algorithm=hashes.SHA256(),
            length=KEY_SIZE,
            salt=None,
            info=self.INFO,
        ).derive(master_secret.encode("utf-8"))

    def wrap(self, key: bytes, document_hash: str) -> str:
        nonce = generate_nonce()
        sealed = AESGCM(self._kek).encrypt(nonce, key, document_hash.lower().encode("ascii"))
        return _b64(nonce + sealed)

    def unwrap(self, wrapped: str, document_hash: str) -> bytes:
        raw = _unb64(wrapped)
        try:
            return AESGCM(self._kek).decrypt(
                raw[:NONCE_SIZE], raw[NONCE_SIZE:], document_hash.lower().encode("ascii")
            )
        except InvalidTag:
            raise InternalError("Wrapped key failed authentication")
