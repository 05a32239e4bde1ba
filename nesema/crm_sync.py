"""Higher level CRM flows combining API calls with local record updates.

Each ``sync_*`` function takes a session plus ids, never raises and leaves a
marker row in ``crm_sync_log`` named after the flow so that an admin can
replay it with :func:`retry_sync`.
"""

from __future__ import annotations

import functools
import inspect
import re
from typing import Any, Callable, Dict, List, Mapping, Optional

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from nesema.config import get_settings
from nesema.crm_client import CrmClient
from nesema.db.models import appointments, patients, practitioners, users
from nesema.time_utils import format_day_month_year, format_time, utc_now


logger = structlog.get_logger(__name__)


def _tag_slug(value: str) -> str:
    return re.sub(r"\s+", "-", value.strip().lower())


def _full_name(first: Optional[str], last: Optional[str]) -> str:
    return " ".join(part for part in (first, last) if part)


def _stage_id(client: CrmClient, pipeline_id: Optional[str], stage_name: str, user_id: Optional[str]) -> Optional[str]:
    if not pipeline_id:
        return None
    wanted = stage_name.lower()
    for stage in client.get_pipeline_stages(pipeline_id, user_id=user_id):
        if str(stage.get("name", "")).lower() == wanted:
            return stage.get("id")
    return None


def _user(session: Session, user_id: str) -> Optional[Dict[str, Any]]:
    row = session.execute(select(users).where(users.c.id == user_id)).mappings().first()
    return dict(row) if row else None


def _practitioner(session: Session, practitioner_id: str) -> Optional[Dict[str, Any]]:
    row = (
        session.execute(select(practitioners).where(practitioners.c.id == practitioner_id))
        .mappings()
        .first()
    )
    return dict(row) if row else None


def _patient(session: Session, patient_id: str) -> Optional[Dict[str, Any]]:
    row = session.execute(select(patients).where(patients.c.id == patient_id)).mappings().first()
    return dict(row) if row else None


def practitioner_display_name(session: Session, practitioner: Optional[Mapping[str, Any]], default: str) -> str:
    """Return the practice name, else the practitioner's full name, else *default*."""

    if not practitioner:
        return default
    if practitioner.get("practice_name"):
        return practitioner["practice_name"]
    user = _user(session, practitioner["user_id"])
    if user:
        name = _full_name(user.get("first_name"), user.get("last_name"))
        if name:
            return name
    return default


def sync_flow(event_type: str) -> Callable:
    """Wrap a flow so it never raises and records a replayable marker row.

    The wrapped function receives ``(client, session, **ids)`` and returns the
    user id the marker should be attributed to (``None`` when nothing ran).
    A flow that raises has its writes rolled back to a savepoint before the
    failure marker is recorded.
    """

    def decorator(fn: Callable[..., Optional[str]]) -> Callable[..., bool]:
        signature = inspect.signature(fn)

        @functools.wraps(fn)
        def wrapper(session: Session, *args: Any, **kwargs: Any) -> bool:
            client = CrmClient(session)
            bound = signature.bind(client, session, *args, **kwargs)
            marker: Dict[str, Any] = {
                _camel(name): value
                for name, value in list(bound.arguments.items())[2:]
            }
            try:
                with session.begin_nested():
                    user_id = fn(client, session, *args, **kwargs)
            except Exception as exc:
                logger.exception("crm_sync_failed", flow=event_type)
                client.write_log(event_type, payload=marker, success=False, error=str(exc))
                return False
            client.write_log(event_type, user_id=user_id, payload=marker, success=user_id is not None)
            logger.info("crm_sync_complete", flow=event_type, ran=user_id is not None)
            return user_id is not None

        wrapper.event_type = event_type  # type: ignore[attr-defined]
        return wrapper

    return decorator


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.title() for part in rest)


# ----------------------------------------------------------------------
# Contacts
# ----------------------------------------------------------------------


def ensure_contact(
    client: CrmClient,
    session: Session,
    user: Mapping[str, Any],
    *,
    tags: Optional[List[str]] = None,
) -> Optional[str]:
    """Return the CRM contact id for *user*, creating the contact if needed."""

    location_id = get_settings().ghl_location_id or ""
    details = {
        "firstName": user.get("first_name") or "",
        "lastName": user.get("last_name") or "",
        "email": user["email"],
        "locationId": location_id,
    }
    if user.get("phone"):
        details["phone"] = user["phone"]

    if user.get("crm_contact_id"):
        client.update_contact(user["crm_contact_id"], details, user_id=user["id"])
        return user["crm_contact_id"]

    contact = client.get_contact_by_email(user["email"], user_id=user["id"])
    if not contact:
        create_payload = dict(details)
        if tags:
            create_payload["tags"] = list(tags)
        contact = client.create_contact(create_payload, user_id=user["id"])
    if not contact or not contact.get("id"):
        return None
    session.execute(update(users).where(users.c.id == user["id"]).values(crm_contact_id=contact["id"]))
    return contact["id"]


# ----------------------------------------------------------------------
# Practitioner lifecycle
# ----------------------------------------------------------------------


@sync_flow("practitioner_signup")
def sync_practitioner_signup(client: CrmClient, session: Session, practitioner_id: str) -> Optional[str]:
    prac = _practitioner(session, practitioner_id)
    if not prac:
        return None
    user = _user(session, prac["user_id"])
    if not user or not user.get("email"):
        return None
    user_id = user["id"]
    tags = ["practitioner", "onboarding-complete"]
    contact_id = ensure_contact(client, session, user, tags=tags)
    if not contact_id:
        return None

    if prac.get("discipline"):
        tags.append(f"discipline-{_tag_slug(prac['discipline'])}")
    client.add_contact_tags(contact_id, tags, user_id=user_id)

    pipeline_id = get_settings().ghl_practitioner_pipeline_id
    stage_id = _stage_id(client, pipeline_id, "Pending Verification", user_id)
    if pipeline_id and stage_id:
        opportunity = client.create_opportunity(
            {
                "name": f"{user.get('first_name') or ''} {user.get('last_name') or ''} — Practitioner",
                "pipelineId": pipeline_id,
                "pipelineStageId": stage_id,
                "contactId": contact_id,
                "status": "open",
            },
            user_id=user_id,
        )
        if opportunity and opportunity.get("id"):
            session.execute(
                update(practitioners)
                .where(practitioners.c.id == practitioner_id)
                .values(crm_opportunity_id=opportunity["id"])
            )

    registration = f"{prac.get('registration_body') or ''} {prac.get('registration_number') or ''}"
    client.add_note(
        contact_id,
        f"Practitioner signed up via Nesema. Discipline: {prac.get('discipline') or 'Not specified'}. "
        f"Registration: {registration}.",
        user_id=user_id,
    )
    return user_id


@sync_flow("practitioner_verified")
def sync_practitioner_verified(client: CrmClient, session: Session, practitioner_id: str) -> Optional[str]:
    prac = _practitioner(session, practitioner_id)
    if not prac:
        return None
    user = _user(session, prac["user_id"])
    contact_id = user.get("crm_contact_id") if user else None
    if not contact_id:
        return None
    user_id = prac["user_id"]
    client.add_contact_tags(contact_id, ["verified"], user_id=user_id)
    if prac.get("crm_opportunity_id"):
        stage_id = _stage_id(client, get_settings().ghl_practitioner_pipeline_id, "Verified & Live", user_id)
        if stage_id:
            client.move_opportunity_stage(prac["crm_opportunity_id"], stage_id, user_id=user_id)
    client.add_note(
        contact_id,
        f"Practitioner verified by admin on {format_day_month_year(utc_now())}.",
        user_id=user_id,
    )
    return user_id


@sync_flow("practitioner_rejected")
def sync_practitioner_rejected(
    client: CrmClient, session: Session, practitioner_id: str, reason: str
) -> Optional[str]:
    prac = _practitioner(session, practitioner_id)
    if not prac:
        return None
    user = _user(session, prac["user_id"])
    contact_id = user.get("crm_contact_id") if user else None
    if not contact_id:
        return None
    user_id = prac["user_id"]
    client.add_contact_tags(contact_id, ["rejected"], user_id=user_id)
    if prac.get("crm_opportunity_id"):
        stage_id = _stage_id(client, get_settings().ghl_practitioner_pipeline_id, "Rejected", user_id)
        if stage_id:
            client.move_opportunity_stage(prac["crm_opportunity_id"], stage_id, user_id=user_id)
        client.update_opportunity(prac["crm_opportunity_id"], {"status": "lost"}, user_id=user_id)
    client.add_note(contact_id, f"Rejected. Reason: {reason}", user_id=user_id)
    return user_id


# ----------------------------------------------------------------------
# Patient lifecycle
# ----------------------------------------------------------------------


def _patient_contact(session: Session, patient_id: str) -> tuple[Optional[Dict[str, Any]], Optional[str]]:
    patient = _patient(session, patient_id)
    if not patient:
        return None, None
    user = _user(session, patient["user_id"])
    return patient, (user.get("crm_contact_id") if user else None)


@sync_flow("patient_signup")
def sync_patient_signup(client: CrmClient, session: Session, patient_id: str) -> Optional[str]:
    patient = _patient(session, patient_id)
    if not patient:
        return None
    user = _user(session, patient["user_id"])
    if not user or not user.get("email"):
        return None
    user_id = user["id"]
    goals = [str(goal) for goal in (patient.get("goals") or [])]
    tags = ["patient", "in-queue", *[f"goal-{_tag_slug(goal)}" for goal in goals]]
    contact_id = ensure_contact(client, session, user, tags=tags)
    if not contact_id:
        return None
    client.add_contact_tags(contact_id, tags, user_id=user_id)

    client.update_contact(
        contact_id,
        {
            "firstName": user.get("first_name") or "",
            "lastName": user.get("last_name") or "",
            "email": user["email"],
            "locationId": get_settings().ghl_location_id or "",
            "customFields": [
                {"key": "motivation_level", "field_value": patient.get("motivation_level") or ""},
                {"key": "diet_type", "field_value": patient.get("diet_type") or ""},
                {"key": "programme_week", "field_value": "1"},
            ],
        },
        user_id=user_id,
    )

    pipeline_id = get_settings().ghl_pipeline_id
    stage_id = _stage_id(client, pipeline_id, "In Queue", user_id)
    if pipeline_id and stage_id:
        opportunity = client.create_opportunity(
            {
                "name": f"{user.get('first_name') or ''} {user.get('last_name') or ''} — Patient",
                "pipelineId": pipeline_id,
                "pipelineStageId": stage_id,
                "contactId": contact_id,
                "status": "open",
            },
            user_id=user_id,
        )
        if opportunity and opportunity.get("id"):
            session.execute(
                update(patients).where(patients.c.id == patient_id).values(crm_opportunity_id=opportunity["id"])
            )

    goals_text = ", ".join(goals) if goals else "None specified"
    client.add_note(
        contact_id,
        f"Patient signed up via Nesema. Health goals: {goals_text}. "
        f"Motivation level: {patient.get('motivation_level') or 'not specified'}.",
        user_id=user_id,
    )
    return user_id


@sync_flow("patient_matched")
def sync_patient_matched(
    client: CrmClient, session: Session, patient_id: str, practitioner_id: str
) -> Optional[str]:
    patient, contact_id = _patient_contact(session, patient_id)
    if not patient or not contact_id:
        return None
    user_id = patient["user_id"]
    name = practitioner_display_name(session, _practitioner(session, practitioner_id), "your practitioner")
    client.remove_contact_tags(contact_id, ["in-queue"], user_id=user_id)
    client.add_contact_tags(contact_id, ["matched", "active"], user_id=user_id)
    if patient.get("crm_opportunity_id"):
        stage_id = _stage_id(client, get_settings().ghl_pipeline_id, "Matched", user_id)
        if stage_id:
            client.move_opportunity_stage(patient["crm_opportunity_id"], stage_id, user_id=user_id)
    client.add_note(contact_id, f"Matched to {name} on {format_day_month_year(utc_now())}.", user_id=user_id)
    return user_id


@sync_flow("first_booking")
def sync_patient_first_booking(client: CrmClient, session: Session, patient_id: str) -> Optional[str]:
    patient, contact_id = _patient_contact(session, patient_id)
    if not patient:
        return None
    user_id = patient["user_id"]
    if contact_id:
        client.add_contact_tags(contact_id, ["first-booking"], user_id=user_id)
    if patient.get("crm_opportunity_id"):
        stage_id = _stage_id(client, get_settings().ghl_pipeline_id, "First Session Booked", user_id)
        if stage_id:
            client.move_opportunity_stage(patient["crm_opportunity_id"], stage_id, user_id=user_id)
    return user_id


@sync_flow("appointment_completed")
def sync_appointment_completed(client: CrmClient, session: Session, appointment_id: str) -> Optional[str]:
    appt = session.execute(select(appointments).where(appointments.c.id == appointment_id)).mappings().first()
    if not appt:
        return None
    patient, contact_id = _patient_contact(session, appt["patient_id"])
    if not patient:
        return None
    user_id = patient["user_id"]

    if patient.get("crm_opportunity_id"):
        stage_id = _stage_id(client, get_settings().ghl_pipeline_id, "Active Patient", user_id)
        if stage_id:
            client.move_opportunity_stage(patient["crm_opportunity_id"], stage_id, user_id=user_id)
        completed_total = session.execute(
            select(func.coalesce(func.sum(appointments.c.amount_pence), 0))
            .where(appointments.c.patient_id == appt["patient_id"])
            .where(appointments.c.status == "completed")
            .where(appointments.c.id != appointment_id)
        ).scalar_one()
        total_pence = int(completed_total or 0) + int(appt["amount_pence"] or 0)
        client.update_opportunity(
            patient["crm_opportunity_id"], {"monetaryValue": round(total_pence / 100)}, user_id=user_id
        )

    if contact_id:
        client.add_note(
            contact_id,
            f"Session completed on {format_day_month_year(appt['scheduled_at'])}. "
            f"Type: {appt['appointment_type']}.",
            user_id=user_id,
        )
    return user_id


@sync_flow("patient_at_risk")
def sync_patient_at_risk(client: CrmClient, session: Session, patient_id: str) -> Optional[str]:
    patient, contact_id = _patient_contact(session, patient_id)
    if not patient:
        return None
    user_id = patient["user_id"]
    if contact_id:
        client.add_contact_tags(contact_id, ["at-risk"], user_id=user_id)
        workflow_id = get_settings().ghl_reengagement_workflow_id
        if workflow_id:
            client.trigger_workflow(contact_id, workflow_id, user_id=user_id)
    if patient.get("crm_opportunity_id"):
        stage_id = _stage_id(client, get_settings().ghl_pipeline_id, "At Risk", user_id)
        if stage_id:
            client.move_opportunity_stage(patient["crm_opportunity_id"], stage_id, user_id=user_id)
    return user_id


@sync_flow("patient_churned")
def sync_patient_churned(client: CrmClient, session: Session, patient_id: str) -> Optional[str]:
    patient, contact_id = _patient_contact(session, patient_id)
    if not patient:
        return None
    user_id = patient["user_id"]
    if contact_id:
        client.remove_contact_tags(contact_id, ["active"], user_id=user_id)
        client.add_contact_tags(contact_id, ["churned"], user_id=user_id)
    if patient.get("crm_opportunity_id"):
        stage_id = _stage_id(client, get_settings().ghl_pipeline_id, "Churned", user_id)
        if stage_id:
            client.move_opportunity_stage(patient["crm_opportunity_id"], stage_id, user_id=user_id)
        client.update_opportunity(patient["crm_opportunity_id"], {"status": "lost"}, user_id=user_id)
    return user_id


# ----------------------------------------------------------------------
# SMS
# ----------------------------------------------------------------------


def _sms_safely(event: str, fn: Callable[[], None]) -> None:
    try:
        fn()
    except Exception:
        logger.exception("crm_sms_failed", sms=event)


def send_appointment_sms_reminder(session: Session, appointment_id: str) -> None:
    def _send() -> None:
        client = CrmClient(session)
        appt = session.execute(select(appointments).where(appointments.c.id == appointment_id)).mappings().first()
        if not appt:
            return
        patient = _patient(session, appt["patient_id"])
        prac = _practitioner(session, appt["practitioner_id"])
        patient_user = _user(session, patient["user_id"]) if patient else None
        prac_user = _user(session, prac["user_id"]) if prac else None

        time_text = format_time(appt["scheduled_at"])
        patient_first = (patient_user or {}).get("first_name") or "there"
        prac_name = practitioner_display_name(session, prac, "your practitioner")
        join_url = appt["daily_room_url"] or get_settings().app_url

        if patient_user and patient_user.get("crm_contact_id"):
            client.send_sms(
                patient_user["crm_contact_id"],
                f"Hi {patient_first}, reminder: your session with {prac_name} is tomorrow at {time_text}. "
                f"Join here: {join_url}",
                user_id=patient_user["id"],
            )
        if prac_user and prac_user.get("crm_contact_id"):
            client.send_sms(
                prac_user["crm_contact_id"],
                f"Reminder: session with {patient_first} tomorrow at {time_text}.",
                user_id=prac_user["id"],
            )

    _sms_safely("appointment_reminder", _send)


def send_matched_sms(session: Session, patient_id: str) -> None:
    def _send() -> None:
        patient = _patient(session, patient_id)
        user = _user(session, patient["user_id"]) if patient else None
        if not user or not user.get("crm_contact_id"):
            return
        name = "your new practitioner"
        if patient.get("practitioner_id"):
            name = practitioner_display_name(session, _practitioner(session, patient["practitioner_id"]), name)
        CrmClient(session).send_sms(
            user["crm_contact_id"],
            f"Hi {user.get('first_name') or 'there'}, great news! You've been matched with {name} on Nesema. "
            "Check your email to book your first session.",
            user_id=user["id"],
        )

    _sms_safely("matched", _send)


def send_low_checkin_sms(session: Session, patient_id: str) -> None:
    def _send() -> None:
        patient = _patient(session, patient_id)
        user = _user(session, patient["user_id"]) if patient else None
        if not user or not user.get("crm_contact_id"):
            return
        CrmClient(session).send_sms(
            user["crm_contact_id"],
            f"Hi {user.get('first_name') or 'there'}, we noticed you haven't logged a check-in recently. "
            "Your practitioner is here to help. Log in to Nesema to stay on track.",
            user_id=user["id"],
        )

    _sms_safely("low_checkin", _send)


# ----------------------------------------------------------------------
# Replay
# ----------------------------------------------------------------------


def _role_record_id(session: Session, table, user_id: Optional[str]) -> Optional[str]:
    if not user_id:
        return None
    return session.execute(select(table.c.id).where(table.c.user_id == user_id)).scalar()


def retry_sync(session: Session, log_row: Mapping[str, Any]) -> bool:
    """Replay the flow recorded in *log_row*.

    Raises ``ValueError("Unknown event type: ...")`` for rows that do not
    correspond to a replayable flow.
    """

    event_type = log_row["event_type"]
    payload = log_row.get("payload") or {}
    user_id = log_row.get("user_id")

    def practitioner_id() -> Optional[str]:
        return payload.get("practitionerId") or _role_record_id(session, practitioners, user_id)

    def patient_id() -> Optional[str]:
        return payload.get("patientId") or _role_record_id(session, patients, user_id)

    if event_type in ("practitioner_signup", "create_contact"):
        prac_id = practitioner_id()
        if prac_id:
            return sync_practitioner_signup(session, prac_id)
        pat_id = _role_record_id(session, patients, user_id)
        return bool(pat_id) and sync_patient_signup(session, pat_id)
    if event_type == "practitioner_verified":
        prac_id = practitioner_id()
        return bool(prac_id) and sync_practitioner_verified(session, prac_id)
    if event_type == "practitioner_rejected":
        prac_id = practitioner_id()
        reason = payload.get("reason") or "No reason provided"
        return bool(prac_id) and sync_practitioner_rejected(session, prac_id, reason)
    if event_type == "patient_signup":
        pat_id = patient_id()
        return bool(pat_id) and sync_patient_signup(session, pat_id)
    if event_type == "patient_matched":
        pat_id = patient_id()
        if not pat_id:
            return False
        prac_id = payload.get("practitionerId") or (_patient(session, pat_id) or {}).get("practitioner_id")
        return bool(prac_id) and sync_patient_matched(session, pat_id, prac_id)
    if event_type == "first_booking":
        pat_id = patient_id()
        return bool(pat_id) and sync_patient_first_booking(session, pat_id)
    if event_type == "appointment_completed":
        appointment_id = payload.get("appointmentId")
        return bool(appointment_id) and sync_appointment_completed(session, appointment_id)
    if event_type in ("at_risk_flagged", "patient_at_risk"):
        pat_id = patient_id()
        return bool(pat_id) and sync_patient_at_risk(session, pat_id)
    if event_type == "patient_churned":
        pat_id = patient_id()
        return bool(pat_id) and sync_patient_churned(session, pat_id)
    raise ValueError(f"Unknown event type: {event_type}")


__all__ = [
    "ensure_contact",
    "practitioner_display_name",
    "sync_practitioner_signup",
    "sync_practitioner_verified",
    "sync_practitioner_rejected",
    "sync_patient_signup",
    "sync_patient_matched",
    "sync_patient_first_booking",
    "sync_appointment_completed",
    "sync_patient_at_risk",
    "sync_patient_churned",
    "send_appointment_sms_reminder",
    "send_matched_sms",
    "send_low_checkin_sms",
    "retry_sync",
]
