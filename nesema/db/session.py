"""Engine and session helpers."""

from __future__ import annotations

from contextlib import contextmanager
from typing import Generator, Optional

import structlog
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from .config import get_database_settings
from .models import metadata


LOGGER = structlog.get_logger(__name__)


def _create_engine() -> Engine:
    settings = get_database_settings()
    return create_engine(settings.url, **settings.engine_options())


engine = _create_engine()
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)

_override_sessionmaker: Optional[sessionmaker] = None


def _session_factory() -> sessionmaker:
    return _override_sessionmaker or SessionLocal


def set_session_factory(factory: Optional[sessionmaker]) -> None:
    """Route every session through *factory* (``None`` restores the default)."""

    global _override_sessionmaker
    _override_sessionmaker = factory


def init_db(bind: Optional[Engine] = None) -> None:
    """Create all tables on *bind* (defaults to the configured engine)."""

    target = bind or engine
    metadata.create_all(target)
    LOGGER.info("database_initialised", url=str(target.url))


def get_db() -> Generator[Session, None, None]:
    """FastAPI dependency that yields a SQLAlchemy session."""

    session: Session = _session_factory()()
    try:
        yield session
    finally:
        session.close()


@contextmanager
def session_scope() -> Generator[Session, None, None]:
    """Yield a session that commits on success and rolls back on error."""

    session: Session = _session_factory()()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


__all__ = [
    "engine",
    "SessionLocal",
    "set_session_factory",
    "init_db",
    "get_db",
    "session_scope",
]
