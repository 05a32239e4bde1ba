"""Encrypted on-disk storage for patient documents and signed download links."""

from __future__ import annotations

import re
from datetime import timedelta
from pathlib import Path
from typing import Dict, Optional

import jwt
import structlog

from nesema.auth import JWT_ALGORITHM, decode_token
from nesema.config import get_settings
from nesema.encryption import decrypt_document, encrypt_document
from nesema.time_utils import utc_now

logger = structlog.get_logger(__name__)

SIGNED_URL_TTL_SECONDS = 5 * 60
_SAFE_NAME = re.compile(r"[^A-Za-z0-9._-]+")


def _root() -> Path:
    root = get_settings().document_storage_dir
    root.mkdir(parents=True, exist_ok=True)
    return root


def _resolve(storage_path: str) -> Path:
    root = _root().resolve()
    path = (root / storage_path).resolve()
    if root not in path.parents:
        raise ValueError("Invalid storage path")
    return path


def store_document(patient_id: str, document_id: str, filename: str, data: bytes) -> str:
    """Encrypt *data* to disk and return its storage path relative to the root."""

    safe = _SAFE_NAME.sub("_", filename or "document").strip("._") or "document"
    storage_path = f"{patient_id}/{document_id}-{safe}"
    path = _resolve(storage_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(encrypt_document(data))
    logger.info("document_stored", document_id=document_id, size=len(data))
    return storage_path


def load_document(storage_path: str) -> bytes:
    return decrypt_document(_resolve(storage_path).read_bytes())


def delete_document(storage_path: Optional[str]) -> bool:
    """Remove the stored file; returns ``False`` when it was already gone."""

    if not storage_path:
        return False
    path = _resolve(storage_path)
    if not path.exists():
        return False
    path.unlink()
    return True


def create_download_token(document_id: str, expires_in: int = SIGNED_URL_TTL_SECONDS) -> str:
    payload = {
        "sub": document_id,
        "type": "document",
        "exp": utc_now() + timedelta(seconds=expires_in),
    }
    return jwt.encode(payload, get_settings().jwt_secret, algorithm=JWT_ALGORITHM)


def signed_url(document_id: str) -> Dict[str, object]:
    token = create_download_token(document_id)
    return {
        "url": f"{get_settings().app_url}/api/documents/download?token={token}",
        "expires_in": SIGNED_URL_TTL_SECONDS,
    }


def document_id_from_token(token: str) -> str:
    """Return the document id for a download *token* (raises ``jwt.PyJWTError``)."""

    return decode_token(token, expected_type="document")["sub"]


__all__ = [
    "SIGNED_URL_TTL_SECONDS",
    "store_document",
    "load_document",
    "delete_document",
    "create_download_token",
    "signed_url",
    "document_id_from_token",
]
