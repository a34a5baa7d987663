"""Content encryption gate.

AES-256-GCM with a fresh 96-bit nonce per call. The iv and ciphertext travel
as lowercase hex strings; the key travels only inside a capability link
fragment, exported as a JWK JSON document.
"""
from __future__ import annotations

import base64
import binascii
import json
import secrets
from dataclasses import dataclass

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from rdo.errors import DecryptionError
from rdo.observability import Layer, RDOLogger

log = RDOLogger("gate", Layer.CRYPTO)

KEY_BITS = 256
NONCE_BYTES = 12
JWK_ALG = "A256GCM"
KEY_OPS = ["encrypt", "decrypt"]


def _b64url_encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def _b64url_decode(text: str) -> bytes:
    padded = text + "=" * (-len(text) % 4)
    return base64.urlsafe_b64decode(padded.encode("ascii"))


class SymmetricKey:
    """A 256-bit AES-GCM key. The repr never shows key material."""

    __slots__ = ("_raw",)

    def __init__(self, raw: bytes):
        if len(raw) * 8 != KEY_BITS:
            raise ValueError(f"key must be {KEY_BITS} bits, got {len(raw) * 8}")
        self._raw = bytes(raw)

    @property
    def raw(self) -> bytes:
        return self._raw

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, SymmetricKey):
            return NotImplemented
        return secrets.compare_digest(self._raw, other._raw)

    def __hash__(self) -> int:
        return hash(self._raw)

    def __repr__(self) -> str:
        return "SymmetricKey(<redacted>)"


@dataclass(frozen=True)
class EncryptedPayload:
    """Hex-encoded nonce and ciphertext (tag appended)."""
    iv: str
    ciphertext: str


def generate_key() -> SymmetricKey:
    """Create a fresh random 256-bit key."""
    key = SymmetricKey(AESGCM.generate_key(bit_length=KEY_BITS))
    log.debug("Content key generated", operation="generate_key", bits=KEY_BITS)
    return key


def encrypt(key: SymmetricKey, plaintext: bytes) -> EncryptedPayload:
    """Encrypt plaintext under key with a fresh random nonce."""
    if isinstance(plaintext, str):
        plaintext = plaintext.encode("utf-8")
    iv = secrets.token_bytes(NONCE_BYTES)
    ciphertext = AESGCM(key.raw).encrypt(iv, plaintext, None)
    log.debug("Payload sealed", operation="encrypt", plaintext_bytes=len(plaintext))
    return EncryptedPayload(iv=iv.hex(), ciphertext=ciphertext.hex())


def decrypt(key: SymmetricKey, iv: str, ciphertext: str) -> bytes:
    """Decrypt and authenticate.

    Raises DecryptionError for a wrong key, a corrupted ciphertext or a
    mismatched iv. The cause is deliberately not distinguished.
    """
    try:
        iv_bytes = bytes.fromhex(iv)
        ct_bytes = bytes.fromhex(ciphertext)
    except (TypeError, ValueError) as e:
        log.warning("Decryption rejected", operation="decrypt", error_code="BAD_ENCODING")
        raise DecryptionError("cannot open: iv/ciphertext are not hex") from e
    if len(iv_bytes) != NONCE_BYTES:
        log.warning("Decryption rejected", operation="decrypt", error_code="BAD_IV", iv_bytes=len(iv_bytes))
        raise DecryptionError(f"cannot open: iv must be {NONCE_BYTES} bytes")
    try:
        return AESGCM(key.raw).decrypt(iv_bytes, ct_bytes, None)
    except InvalidTag as e:
        log.warning("Decryption rejected", operation="decrypt", error_code="AUTH_FAILED")
        raise DecryptionError("cannot open: authentication failed") from e


def export_key(key: SymmetricKey) -> str:
    """Serialize key as a JWK JSON string (sorted keys, compact)."""
    jwk = {
        "alg": JWK_ALG,
        "ext": True,
        "k": _b64url_encode(key.raw),
        "key_ops": list(KEY_OPS),
        "kty": "oct",
    }
    return json.dumps(jwk, sort_keys=True, separators=(",", ":"))


def import_key(jwk_text: str) -> SymmetricKey:
    """Parse a JWK JSON string produced by export_key (or a browser's subtle.exportKey)."""
    try:
        jwk = json.loads(jwk_text)
    except (TypeError, ValueError) as e:
        raise ValueError("exported key is not valid JSON") from e
    if not isinstance(jwk, dict) or jwk.get("kty") != "oct":
        raise ValueError("exported key must be an 'oct' JWK")
    alg = jwk.get("alg")
    if alg is not None and alg != JWK_ALG:
        raise ValueError(f"unsupported key algorithm: {alg}")
    k = jwk.get("k")
    if not isinstance(k, str):
        raise ValueError("exported key is missing 'k'")
    try:
        raw = _b64url_decode(k)
    except (binascii.Error, ValueError) as e:
        raise ValueError("exported key material is not base64url") from e
    return SymmetricKey(raw)


__all__ = [
    "KEY_BITS",
    "NONCE_BYTES",
    "SymmetricKey",
    "EncryptedPayload",
    "generate_key",
    "encrypt",
    "decrypt",
    "export_key",
    "import_key",
]
