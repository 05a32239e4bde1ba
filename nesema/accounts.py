"""Account lifecycle helpers: cascading deletes and the bootstrap admin."""

from __future__ import annotations

from typing import Any, Dict, List

import structlog
from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.orm import Session

from nesema.auth import register_user
from nesema.db.models import (
    ai_usage_log,
    appointments,
    auth_sessions,
    availability,
    care_plans,
    check_ins,
    documents,
    education_assignments,
    education_content,
    meal_plans,
    messages,
    notifications,
    patients,
    practitioners,
    users,
)
from nesema.document_store import delete_document

logger = structlog.get_logger(__name__)


def _delete_patient_rows(session: Session, patient_id: str) -> List[str]:
    """Remove every row owned by *patient_id*; returns document storage paths."""

    paths = [
        p
        for p in session.execute(
            select(documents.c.storage_path).where(documents.c.patient_id == patient_id)
        ).scalars()
        if p
    ]
    for table in (check_ins, care_plans, meal_plans, documents, education_assignments, appointments):
        session.execute(delete(table).where(table.c.patient_id == patient_id))
    session.execute(delete(patients).where(patients.c.id == patient_id))
    return paths


def _delete_practitioner_rows(session: Session, practitioner_id: str) -> None:
    content_ids = select(education_content.c.id).where(education_content.c.practitioner_id == practitioner_id)
    session.execute(delete(education_assignments).where(education_assignments.c.content_id.in_(content_ids)))
    session.execute(delete(education_content).where(education_content.c.practitioner_id == practitioner_id))
    for table in (availability, appointments, care_plans, meal_plans):
        session.execute(delete(table).where(table.c.practitioner_id == practitioner_id))
    session.execute(
        update(patients).where(patients.c.practitioner_id == practitioner_id).values(practitioner_id=None)
    )
    session.execute(
        update(documents).where(documents.c.practitioner_id == practitioner_id).values(practitioner_id=None)
    )
    session.execute(delete(practitioners).where(practitioners.c.id == practitioner_id))


def delete_user(session: Session, user_id: str) -> bool:
    """Delete a user together with their role row and its dependants.

    Returns ``False`` when the user does not exist.  The caller commits.
    """

    if not session.execute(select(users.c.id).where(users.c.id == user_id)).first():
        return False

    stored_files: List[str] = []
    patient_id = session.execute(select(patients.c.id).where(patients.c.user_id == user_id)).scalar()
    if patient_id:
        stored_files = _delete_patient_rows(session, patient_id)
    practitioner_id = session.execute(
        select(practitioners.c.id).where(practitioners.c.user_id == user_id)
    ).scalar()
    if practitioner_id:
        _delete_practitioner_rows(session, practitioner_id)

    session.execute(
        delete(messages).where(or_(messages.c.sender_id == user_id, messages.c.recipient_id == user_id))
    )
    for table in (notifications, auth_sessions, ai_usage_log):
        session.execute(delete(table).where(table.c.user_id == user_id))
    session.execute(delete(users).where(users.c.id == user_id))

    for path in stored_files:
        try:
            delete_document(path)
        except (OSError, ValueError):
            logger.warning("document_cleanup_failed", storage_path=path, exc_info=True)
    logger.info("user_deleted", user_id=user_id, patient=bool(patient_id), practitioner=bool(practitioner_id))
    return True


def seed_admin(session: Session, email: str, password: str) -> Dict[str, Any]:
    """Create the first admin account ("Admin User").

    Raises ``ValueError`` when the account already exists or the password is
    too weak.
    """

    normalised = email.strip().lower()
    if session.execute(select(users.c.id).where(func.lower(users.c.email) == normalised)).first():
        raise ValueError("Admin account already exists")
    created = register_user(session, normalised, password, "admin", "Admin", "User")
    session.commit()
    logger.info("admin_seeded", user_id=created["user_id"])
    return {"success": True, "message": f"Admin account created for {normalised}", "user_id": created["user_id"]}


__all__ = ["delete_user", "seed_admin"]
