import os
import sys
from typing import Callable, Dict, Iterator

# Environment must be settled before the nesema modules resolve settings or
# build their default engine.
os.environ.setdefault("JWT_SECRET", "test-secret-key-with-enough-length-for-hs256")
os.environ["ENVIRONMENT"] = "test"
os.environ["USE_OFFLINE_MODEL"] = "1"
os.environ["NESEMA_DATABASE_URL"] = "sqlite://"
for _name in (
    "OPENAI_API_KEY",
    "RESEND_API_KEY",
    "GHL_API_KEY",
    "GHL_LOCATION_ID",
    "DAILY_API_KEY",
    "CRON_SECRET",
    "SEED_SECRET",
    "ADMIN_EMAIL",
    "ADMIN_PASSWORD",
    "ENABLE_SCHEDULER",
):
    os.environ.pop(_name, None)

ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from nesema import foods
from nesema.auth import create_access_token, register_user
from nesema.config import get_settings
from nesema.db.models import metadata
from nesema.db.session import get_db, set_session_factory
from nesema.encryption import _cipher_for


def _env_flag(name: str) -> bool:
    return os.getenv(name, "0").lower() in {"1", "true", "yes"}


def pytest_addoption(parser: pytest.Parser) -> None:
    parser.addoption(
        "--run-postgres",
        action="store_true",
        default=_env_flag("RUN_PG_TESTS"),
        dest="run_postgres",
        help="Execute tests marked with @pytest.mark.postgres that require PostgreSQL.",
    )


def pytest_collection_modifyitems(config: pytest.Config, items) -> None:
    if config.getoption("run_postgres"):
        return
    skip_pg = pytest.mark.skip(reason="PostgreSQL tests require RUN_PG_TESTS=1 or --run-postgres")
    for item in items:
        if "postgres" in item.keywords:
            item.add_marker(skip_pg)


@pytest.fixture(autouse=True)
def _reset_caches(tmp_path, monkeypatch):
    """Give every test fresh settings, an empty food cache and its own document dir."""

    monkeypatch.setenv("DOCUMENT_STORAGE_DIR", str(tmp_path / "documents"))
    get_settings.cache_clear()
    _cipher_for.cache_clear()
    foods.clear_cache()
    yield
    get_settings.cache_clear()
    foods.clear_cache()


@pytest.fixture
def session_factory() -> Iterator[sessionmaker]:
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    metadata.create_all(engine)
    factory = sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)
    set_session_factory(factory)
    try:
        yield factory
    finally:
        set_session_factory(None)
        engine.dispose()


@pytest.fixture
def db_session(session_factory) -> Iterator[Session]:
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def api_client(session_factory) -> Iterator[TestClient]:
    from nesema import main

    def _override_get_db() -> Iterator[Session]:
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    main.app.dependency_overrides[get_db] = _override_get_db
    client = TestClient(main.app)
    try:
        yield client
    finally:
        client.close()
        main.app.dependency_overrides.pop(get_db, None)


@pytest.fixture
def make_user(db_session) -> Callable[..., Dict[str, str]]:
    """Create a user and return its ids plus a ready-made access token."""

    counter = {"n": 0}

    def _make(role: str, first_name: str = "Test", last_name: str = "User", **kwargs) -> Dict[str, str]:
        counter["n"] += 1
        email = kwargs.pop("email", f"{role}{counter['n']}@example.com")
        created = register_user(db_session, email, "Password123", role, first_name, last_name, **kwargs)
        db_session.commit()
        created["email"] = email
        created["token"] = create_access_token(created["user_id"], role)
        return created

    return _make


@pytest.fixture
def admin_user(make_user):
    return make_user("admin", "Ada", "Admin")


@pytest.fixture
def practitioner_user(make_user):
    return make_user("practitioner", "Priya", "Shah")


@pytest.fixture
def patient_user(make_user):
    return make_user("patient", "Sam", "Jones")


def auth_headers(token: str) -> Dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def headers() -> Callable[[Dict[str, str]], Dict[str, str]]:
    """Return a helper turning a user fixture into Authorization headers."""

    return lambda user: auth_headers(user["token"])
