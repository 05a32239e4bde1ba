"""Database helpers for Nesema."""

from __future__ import annotations

from .config import DatabaseSettings, get_database_settings
from .models import metadata, new_id, row_to_dict
from .session import SessionLocal, engine, get_db, init_db, session_scope, set_session_factory

__all__ = [
    "DatabaseSettings",
    "get_database_settings",
    "metadata",
    "new_id",
    "row_to_dict",
    "SessionLocal",
    "engine",
    "get_db",
    "init_db",
    "session_scope",
    "set_session_factory",
]
