"""Authentication helpers: password hashing, registration, login and tokens."""

from __future__ import annotations

import hashlib
import re
import secrets
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

import jwt
from passlib.context import CryptContext
from sqlalchemy import func, insert, select, update
from sqlalchemy.orm import Session

from nesema.config import get_settings
from nesema.db.models import auth_sessions, new_id, patients, practitioners, users
from nesema.time_utils import ensure_utc, utc_now

# Password hashing context using bcrypt
pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

JWT_ALGORITHM = "HS256"
LOCKOUT_THRESHOLD = 5
LOCKOUT_DURATION_SECONDS = 15 * 60
ROLES = ("practitioner", "patient", "admin")


class AuthenticationError(Exception):
    """Raised when credentials are invalid or the account is locked."""

    def __init__(self, message: str = "Invalid credentials", *, locked: bool = False) -> None:
        super().__init__(message)
        self.locked = locked


class AccountSuspendedError(Exception):
    """Raised when a suspended account attempts to sign in."""


def hash_password(password: str) -> str:
    """Hash a plaintext password using a secure algorithm."""

    return pwd_context.hash(password)


def verify_password(password: str, hashed: str) -> bool:
    """Verify a plaintext password against a stored hash."""

    try:
        return pwd_context.verify(password, hashed)
    except Exception:
        return False


def validate_password(password: str) -> None:
    if len(password or "") < 8:
        raise ValueError("Password must be at least 8 characters")
    if not any(ch.isalpha() for ch in password):
        raise ValueError("Password must include a letter")
    if not any(ch.isdigit() for ch in password):
        raise ValueError("Password must include a number")


def slugify(value: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", (value or "").lower()).strip("-")
    return slug or "practitioner"


def _unique_booking_slug(session: Session, first_name: str, last_name: str) -> str:
    base = slugify(f"{first_name} {last_name}")
    candidate = base
    while session.execute(
        select(practitioners.c.id).where(practitioners.c.booking_slug == candidate)
    ).first():
        candidate = f"{base}-{secrets.token_hex(2)}"
    return candidate


def register_user(
    session: Session,
    email: str,
    password: str,
    role: str,
    first_name: str,
    last_name: str,
    *,
    phone: Optional[str] = None,
) -> Dict[str, Any]:
    """Create a user together with its practitioner or patient row.

    Returns a mapping with the new ``user_id`` and the role row id under
    ``practitioner_id`` or ``patient_id``.
    """

    if role not in ROLES:
        raise ValueError(f"Unsupported role: {role}")
    validate_password(password)
    normalised = email.strip().lower()
    existing = session.execute(
        select(users.c.id).where(func.lower(users.c.email) == normalised)
    ).first()
    if existing:
        raise ValueError("Email already registered")

    user_id = new_id()
    now = utc_now()
    session.execute(
        insert(users).values(
            id=user_id,
            email=normalised,
            password_hash=hash_password(password),
            role=role,
            first_name=first_name.strip(),
            last_name=last_name.strip(),
            phone=phone,
            suspended=False,
            failed_login_attempts=0,
            created_at=now,
            updated_at=now,
        )
    )
    result: Dict[str, Any] = {"user_id": user_id}
    if role == "practitioner":
        practitioner_id = new_id()
        session.execute(
            insert(practitioners).values(
                id=practitioner_id,
                user_id=user_id,
                booking_slug=_unique_booking_slug(session, first_name, last_name),
                verification_status="pending",
                is_live=False,
                created_at=now,
            )
        )
        result["practitioner_id"] = practitioner_id
    elif role == "patient":
        patient_id = new_id()
        session.execute(insert(patients).values(id=patient_id, user_id=user_id, created_at=now))
        result["patient_id"] = patient_id
    session.flush()
    return result


def authenticate_user(
    session: Session, email: str, password: str, *, now: Optional[datetime] = None
) -> Dict[str, Any]:
    """Validate credentials and return the user row.

    Raises :class:`AuthenticationError` for bad credentials or a locked
    account and :class:`AccountSuspendedError` for suspended users.
    """

    now = now or utc_now()
    row = (
        session.execute(select(users).where(users.c.email == email.strip().lower()))
        .mappings()
        .first()
    )
    if not row:
        raise AuthenticationError()

    locked_until = row["account_locked_until"]
    if locked_until and ensure_utc(locked_until) > now:
        raise AuthenticationError("Account locked", locked=True)

    if verify_password(password, row["password_hash"]):
        if row["suspended"]:
            raise AccountSuspendedError("Account suspended")
        session.execute(
            update(users)
            .where(users.c.id == row["id"])
            .values(failed_login_attempts=0, account_locked_until=None, last_login=now, updated_at=now)
        )
        session.flush()
        return dict(row)

    attempts = (row["failed_login_attempts"] or 0) + 1
    lock_until: Optional[datetime] = None
    if attempts >= LOCKOUT_THRESHOLD:
        lock_until = now + timedelta(seconds=LOCKOUT_DURATION_SECONDS)
    session.execute(
        update(users)
        .where(users.c.id == row["id"])
        .values(failed_login_attempts=attempts, account_locked_until=lock_until, updated_at=now)
    )
    session.flush()
    raise AuthenticationError()


def create_access_token(user_id: str, role: str, *, expires_minutes: Optional[int] = None) -> str:
    """Create a signed JWT access token for the given user."""

    settings = get_settings()
    minutes = expires_minutes or settings.access_token_expire_minutes
    payload = {
        "sub": user_id,
        "role": role,
        "type": "access",
        "exp": utc_now() + timedelta(minutes=minutes),
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm=JWT_ALGORITHM)


def decode_token(token: str, *, expected_type: str = "access") -> Dict[str, Any]:
    """Decode *token*, raising :class:`jwt.PyJWTError` when invalid."""

    data = jwt.decode(token, get_settings().jwt_secret, algorithms=[JWT_ALGORITHM])
    if data.get("type") != expected_type:
        raise jwt.InvalidTokenError("Unexpected token type")
    return data


def _hash_refresh(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def create_refresh_token(session: Session, user_id: str, *, now: Optional[datetime] = None) -> str:
    """Issue an opaque refresh token and persist its hash."""

    now = now or utc_now()
    token = secrets.token_urlsafe(48)
    session.execute(
        insert(auth_sessions).values(
            id=new_id(),
            user_id=user_id,
            refresh_token_hash=_hash_refresh(token),
            expires_at=now + timedelta(days=get_settings().refresh_token_expire_days),
            created_at=now,
        )
    )
    session.flush()
    return token


def rotate_refresh_token(
    session: Session, token: str, *, now: Optional[datetime] = None
) -> Optional[Dict[str, Any]]:
    """Revoke *token* and return ``{"user": row, "refresh_token": new}``.

    ``None`` is returned for unknown, revoked or expired tokens.
    """

    now = now or utc_now()
    record = (
        session.execute(
            select(auth_sessions).where(auth_sessions.c.refresh_token_hash == _hash_refresh(token))
        )
        .mappings()
        .first()
    )
    if not record or record["revoked_at"] is not None or ensure_utc(record["expires_at"]) <= now:
        return None
    user = session.execute(select(users).where(users.c.id == record["user_id"])).mappings().first()
    if not user or user["suspended"]:
        return None
    session.execute(
        update(auth_sessions).where(auth_sessions.c.id == record["id"]).values(revoked_at=now)
    )
    return {"user": dict(user), "refresh_token": create_refresh_token(session, user["id"], now=now)}


def revoke_refresh_token(session: Session, token: str, *, now: Optional[datetime] = None) -> bool:
    result = session.execute(
        update(auth_sessions)
        .where(auth_sessions.c.refresh_token_hash == _hash_refresh(token))
        .where(auth_sessions.c.revoked_at.is_(None))
        .values(revoked_at=now or utc_now())
    )
    return bool(result.rowcount)


__all__ = [
    "AuthenticationError",
    "AccountSuspendedError",
    "LOCKOUT_THRESHOLD",
    "LOCKOUT_DURATION_SECONDS",
    "hash_password",
    "verify_password",
    "validate_password",
    "slugify",
    "register_user",
    "authenticate_user",
    "create_access_token",
    "create_refresh_token",
    "rotate_refresh_token",
    "revoke_refresh_token",
    "decode_token",
]
