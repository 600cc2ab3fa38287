from __future__ import annotations

import base64
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from helpdesk.core.config import get_settings

_NONCE_BYTES = 12


class EncryptionKeyError(RuntimeError):
    pass


class DecryptionError(ValueError):
    pass


def _cipher() -> AESGCM:
    raw = get_settings().ENCRYPTION_KEY_BASE64
    try:
        key = base64.b64decode(raw, validate=True)
    except Exception as e:  # noqa: BLE001
        raise EncryptionKeyError("ENCRYPTION_KEY_BASE64 must be valid base64") from e
    if len(key) != 32:
        raise EncryptionKeyError("ENCRYPTION_KEY_BASE64 must decode to 32 bytes (AES-256)")
    return AESGCM(key)


def encrypt_text(value: str, *, aad: str) -> bytes:
    """Seal `value` with AES-256-GCM; the nonce is stored as the first 12 bytes."""
    nonce = os.urandom(_NONCE_BYTES)
    return nonce + _cipher().encrypt(nonce, value.encode("utf-8"), aad.encode("utf-8"))


def decrypt_text(blob: bytes, *, aad: str) -> str:
    if len(blob) <= _NONCE_BYTES:
        raise DecryptionError("Encrypted blob is too short")
    nonce, ciphertext = blob[:_NONCE_BYTES], blob[_NONCE_BYTES:]
    try:
        plaintext = _cipher().decrypt(nonce, ciphertext, aad.encode("utf-8"))
    except InvalidTag as e:
        raise DecryptionError("Encrypted blob failed authentication") from e
    return plaintext.decode("utf-8")
