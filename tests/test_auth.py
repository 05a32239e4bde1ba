"""Authentication endpoint regression tests."""

from datetime import timedelta

import jwt
import pytest
from sqlalchemy import insert, select, update

from nesema import auth, email_service
from nesema.config import get_settings
from nesema.db.models import new_id, platform_settings, users
from nesema.time_utils import utc_now


@pytest.fixture()
def client(api_client, monkeypatch):
    """Return a test client with outbound e-mail silenced."""

    sent = []
    monkeypatch.setattr(email_service, "send_practitioner_welcome", lambda *args: sent.append(args))
    api_client.sent_emails = sent
    return api_client


def _register(client, **overrides):
    body = {
        "email": "Priya@Example.com",
        "password": "Password123",
        "role": "practitioner",
        "first_name": "Priya",
        "last_name": "Shah",
    }
    body.update(overrides)
    return client.post("/api/auth/register", json=body)


def test_register_and_login(client, db_session):
    """Users can register, log in and receive JWT tokens with their role."""

    resp = _register(client)
    assert resp.status_code == 201
    data = resp.json()
    assert data["user"]["email"] == "priya@example.com"
    assert data["token_type"] == "bearer"
    assert client.sent_emails and client.sent_emails[0][0] == "priya@example.com"

    resp = client.post("/api/auth/login", json={"email": "priya@example.com", "password": "Password123"})
    assert resp.status_code == 200
    token = resp.json()["access_token"]
    payload = jwt.decode(token, get_settings().jwt_secret, algorithms=[auth.JWT_ALGORITHM])
    assert payload["role"] == "practitioner"

    stored = db_session.execute(select(users.c.password_hash)).scalar()
    assert stored.startswith("$2b$")
    assert auth.verify_password("Password123", stored)


def test_me_includes_role_record(client):
    token = _register(client, role="patient", email="sam@example.com").json()["access_token"]
    resp = client.get("/api/auth/me", headers={"Authorization": f"Bearer {token}"})
    assert resp.status_code == 200
    body = resp.json()
    assert body["role"] == "patient"
    assert body["patient_id"]
    assert body["practitioner_id"] is None


def test_register_rejects_admin_role(client):
    resp = _register(client, role="admin")
    assert resp.status_code == 400
    assert resp.json()["error"]["message"] == "Invalid role"


def test_duplicate_email_conflicts(client):
    assert _register(client).status_code == 201
    resp = _register(client, email="priya@example.com")
    assert resp.status_code == 409


def test_weak_password_rejected(client):
    resp = _register(client, password="short")
    assert resp.status_code == 400


def test_signups_closed(client, db_session):
    db_session.execute(
        insert(platform_settings).values(
            id=new_id(), allow_practitioner_signup=False, allow_patient_signup=True, maintenance_mode=False
        )
    )
    db_session.commit()
    resp = _register(client)
    assert resp.status_code == 403
    assert resp.json()["error"]["message"] == "Sign-ups are currently closed"
    assert _register(client, role="patient", email="sam@example.com").status_code == 201


def test_login_failure_and_lockout(client):
    """Repeated bad passwords lock the account."""

    _register(client)
    for _ in range(auth.LOCKOUT_THRESHOLD):
        resp = client.post("/api/auth/login", json={"email": "priya@example.com", "password": "wrong-one"})
        assert resp.status_code == 401
    resp = client.post("/api/auth/login", json={"email": "priya@example.com", "password": "wrong-one"})
    assert resp.status_code == 423
    assert resp.json()["error"]["message"] == "Account locked. Try again later."
    resp = client.post("/api/auth/login", json={"email": "priya@example.com", "password": "Password123"})
    assert resp.status_code == 423


def test_suspended_user_cannot_login(client, db_session):
    _register(client)
    db_session.execute(update(users).values(suspended=True))
    db_session.commit()
    resp = client.post("/api/auth/login", json={"email": "priya@example.com", "password": "Password123"})
    assert resp.status_code == 403


def test_missing_and_invalid_tokens(client):
    """Requests without a token or with a malformed one are rejected with a 401."""

    assert client.get("/api/auth/me").status_code == 401
    resp = client.get("/api/auth/me", headers={"Authorization": "Bearer not-a-token"})
    assert resp.status_code == 401
    assert resp.json()["error"]["message"] == "Invalid or expired token"


def test_expired_token_rejected(client, practitioner_user):
    expired = jwt.encode(
        {"sub": practitioner_user["user_id"], "role": "practitioner", "type": "access", "exp": utc_now() - timedelta(minutes=1)},
        get_settings().jwt_secret,
        algorithm=auth.JWT_ALGORITHM,
    )
    assert client.get("/api/auth/me", headers={"Authorization": f"Bearer {expired}"}).status_code == 401


def test_refresh_rotates_token(client):
    tokens = _register(client).json()
    resp = client.post("/api/auth/refresh", json={"refresh_token": tokens["refresh_token"]})
    assert resp.status_code == 200
    rotated = resp.json()
    assert rotated["refresh_token"] != tokens["refresh_token"]

    # The old token is single use.
    resp = client.post("/api/auth/refresh", json={"refresh_token": tokens["refresh_token"]})
    assert resp.status_code == 401

    assert client.post("/api/auth/logout", json={"refresh_token": rotated["refresh_token"]}).json() == {"success": True}
    assert client.post("/api/auth/refresh", json={"refresh_token": rotated["refresh_token"]}).status_code == 401


def test_maintenance_mode_blocks_non_admins(client, db_session, headers, patient_user, admin_user):
    db_session.execute(
        insert(platform_settings).values(
            id=new_id(), allow_practitioner_signup=True, allow_patient_signup=True, maintenance_mode=True
        )
    )
    db_session.commit()
    resp = client.get("/api/notifications", headers=headers(patient_user))
    assert resp.status_code == 503
    assert client.get("/api/auth/me", headers=headers(patient_user)).status_code == 200
    assert client.get("/api/notifications", headers=headers(admin_user)).status_code == 200


def test_role_enforcement(client, headers, patient_user):
    """Patients cannot reach the admin console."""

    resp = client.get("/api/admin/overview", headers=headers(patient_user))
    assert resp.status_code == 403
    assert resp.json()["error"]["message"] == "Insufficient privileges"
