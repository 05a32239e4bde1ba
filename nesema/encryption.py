"""Fernet helpers for encrypting uploaded documents at rest.

The key comes from ``DOCUMENT_ENCRYPTION_KEY``.  When it is unset a stable key
is derived from ``JWT_SECRET`` so that development setups keep working across
restarts without extra configuration.
"""

from __future__ import annotations

import base64
import hashlib
from functools import lru_cache

from cryptography.fernet import Fernet, InvalidToken

from nesema.config import get_settings


def _document_key() -> bytes:
    settings = get_settings()
    if settings.document_encryption_key:
        return settings.document_encryption_key.encode("utf-8")
    digest = hashlib.sha256(settings.jwt_secret.encode("utf-8")).digest()
    return base64.urlsafe_b64encode(digest)


@lru_cache(maxsize=2)
def _cipher_for(key: bytes) -> Fernet:
    return Fernet(key)


def _document_cipher() -> Fernet:
    return _cipher_for(_document_key())


def encrypt_document(data: bytes) -> bytes:
    """Encrypt *data* for storage on disk."""

    if not isinstance(data, (bytes, bytearray)):
        raise TypeError("document payload must be bytes-like")
    return _document_cipher().encrypt(bytes(data))


def decrypt_document(blob: bytes) -> bytes:
    """Decrypt previously stored document *blob*."""

    if not isinstance(blob, (bytes, bytearray)):
        raise TypeError("document ciphertext must be bytes-like")
    try:
        return _document_cipher().decrypt(bytes(blob))
    except InvalidToken as exc:
        raise ValueError("Document ciphertext could not be decrypted") from exc


__all__ = ["encrypt_document", "decrypt_document"]
