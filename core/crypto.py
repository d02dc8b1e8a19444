"""
core/crypto.py -- Symmetric encryption for stored per-assignment credentials.

Fernet (AES-128-CBC + HMAC-SHA256) from the cryptography package, keyed by
Settings.encryption_key. Callers treat the ciphertext as an opaque string.

Layer rule: core/ is the kernel. No imports from api/, auth/, or portal/.
"""

from __future__ import annotations

from functools import lru_cache

from cryptography.fernet import Fernet, InvalidToken

from core.config import get_settings


@lru_cache
def _fernet() -> Fernet:
    return Fernet(get_settings().encryption_key.encode("ascii"))


def encrypt_secret(plain: str) -> str:
    """Encrypt a UTF-8 string and return the Fernet token as text."""
    return _fernet().encrypt(plain.encode("utf-8")).decode("ascii")


def decrypt_secret(token: str) -> str:
    """Decrypt a Fernet token produced by encrypt_secret().

    Raises ValueError if the token was tampered with or was encrypted under a
    different key.
    """
    try:
        return _fernet().decrypt(token.encode("ascii")).decode("utf-8")
    except InvalidToken as exc:
        raise ValueError("Stored secret could not be decrypted with the current ENCRYPTION_KEY.") from exc
