"""Scheduled jobs: at-risk detection, appointment reminders and check-in alerts.

Each job takes ``(session, now)``, commits its own work and returns a small
result dict that the cron routes pass straight back to the caller.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Dict, Optional

import structlog
from sqlalchemy import func, insert, select, update
from sqlalchemy.orm import Session

from nesema import crm_sync, email_service
from nesema.db.models import appointments, check_ins, crm_sync_log, new_id, patients, practitioners, users
from nesema.notifications_service import NotificationService
from nesema.observability import CRON_RUNS
from nesema.time_utils import ensure_utc, format_long_date, format_time, utc_now

logger = structlog.get_logger(__name__)

AT_RISK_DAYS = 7
CHECKIN_ALERT_DAYS = 3
AT_RISK_EVENT = "at_risk_flagged"


def _name(first: Optional[str], last: Optional[str]) -> str:
    return f"{first or ''} {last or ''}".strip()


def _user(session: Session, user_id: Optional[str]) -> Optional[Dict[str, Any]]:
    if not user_id:
        return None
    row = session.execute(select(users).where(users.c.id == user_id)).mappings().first()
    return dict(row) if row else None


def _practitioner_user(session: Session, practitioner_id: str) -> Optional[Dict[str, Any]]:
    user_id = session.execute(
        select(practitioners.c.user_id).where(practitioners.c.id == practitioner_id)
    ).scalar()
    return _user(session, user_id)


def run_at_risk(session: Session, now: Optional[datetime] = None) -> Dict[str, int]:
    """Flag active patients without a check-in in the last week."""

    now = now or utc_now()
    cutoff = now - timedelta(days=AT_RISK_DAYS)

    active = session.execute(
        select(patients.c.id, patients.c.user_id, patients.c.practitioner_id).where(
            patients.c.practitioner_id.is_not(None)
        )
    ).all()
    if not active:
        CRON_RUNS.labels("at_risk", "success").inc()
        return {"processed": 0, "total": 0}

    recent = set(
        session.execute(
            select(check_ins.c.patient_id)
            .where(check_ins.c.patient_id.in_([p.id for p in active]))
            .where(check_ins.c.checked_in_at >= cutoff)
        ).scalars()
    )
    flagged = set(
        session.execute(
            select(crm_sync_log.c.user_id)
            .where(crm_sync_log.c.event_type == AT_RISK_EVENT)
            .where(crm_sync_log.c.created_at >= cutoff)
        ).scalars()
    )
    to_process = [p for p in active if p.id not in recent and p.user_id not in flagged]

    processed = 0
    for patient in to_process:
        try:
            # Marker first so a crash part-way cannot flag the patient twice.
            session.execute(
                insert(crm_sync_log).values(
                    id=new_id(), user_id=patient.user_id, event_type=AT_RISK_EVENT, success=True, created_at=now
                )
            )
            session.commit()

            crm_sync.sync_patient_at_risk(session, patient.id)
            crm_sync.send_low_checkin_sms(session, patient.id)

            prac_user = _practitioner_user(session, patient.practitioner_id)
            if prac_user:
                patient_user = _user(session, patient.user_id) or {}
                name = _name(patient_user.get("first_name"), patient_user.get("last_name")) or "A patient"
                NotificationService(session).create(
                    prac_user["id"],
                    "Patient needs attention",
                    body=f"⚠ {name} hasn't checked in for 7 days",
                    type="at_risk",
                    link="/practitioner/patients",
                )
            session.commit()
            processed += 1
        except Exception:
            session.rollback()
            logger.exception("cron_at_risk_patient_failed", patient_id=patient.id)

    logger.info("cron_at_risk_complete", processed=processed, total=len(to_process))
    CRON_RUNS.labels("at_risk", "success").inc()
    return {"processed": processed, "total": len(to_process)}


def run_reminders(session: Session, now: Optional[datetime] = None) -> Dict[str, int]:
    """E-mail and text both parties about sessions starting in 24 to 25 hours."""

    now = now or utc_now()
    window_start = now + timedelta(hours=24)
    window_end = now + timedelta(hours=25)

    due = (
        session.execute(
            select(appointments)
            .where(appointments.c.status == "scheduled")
            .where(appointments.c.reminder_sent.is_(False))
            .where(appointments.c.scheduled_at >= window_start)
            .where(appointments.c.scheduled_at <= window_end)
        )
        .mappings()
        .all()
    )

    sent = 0
    for appt in due:
        prac_user = _practitioner_user(session, appt["practitioner_id"])
        patient_user_id = session.execute(
            select(patients.c.user_id).where(patients.c.id == appt["patient_id"])
        ).scalar()
        patient_user = _user(session, patient_user_id)
        if not (prac_user and prac_user.get("email") and patient_user and patient_user.get("email")):
            continue

        prac_name = _name(prac_user.get("first_name"), prac_user.get("last_name"))
        patient_name = _name(patient_user.get("first_name"), patient_user.get("last_name"))
        date_text = format_long_date(appt["scheduled_at"])
        time_text = format_time(appt["scheduled_at"])
        try:
            email_service.send_appointment_reminder(
                patient_user["email"], patient_name, prac_name, date_text, time_text, appt["id"], "patient"
            )
            email_service.send_appointment_reminder(
                prac_user["email"], prac_name, patient_name, date_text, time_text, appt["id"], "practitioner"
            )
            crm_sync.send_appointment_sms_reminder(session, appt["id"])
            session.execute(
                update(appointments).where(appointments.c.id == appt["id"]).values(reminder_sent=True)
            )
            session.commit()
            sent += 1
        except Exception:
            session.rollback()
            logger.exception("cron_reminder_failed", appointment_id=appt["id"])

    logger.info("cron_reminders_complete", sent=sent, total=len(due))
    CRON_RUNS.labels("reminders", "success").inc()
    return {"sent": sent, "total": len(due)}


def run_checkin_alerts(session: Session, now: Optional[datetime] = None) -> Dict[str, int]:
    """Alert practitioners about engaged patients who stopped checking in."""

    now = now or utc_now()
    cutoff = now - timedelta(days=CHECKIN_ALERT_DAYS)

    last_checkin = (
        select(check_ins.c.patient_id, func.max(check_ins.c.checked_in_at).label("last_at"))
        .group_by(check_ins.c.patient_id)
        .subquery()
    )
    rows = session.execute(
        select(patients.c.id, patients.c.user_id, patients.c.practitioner_id, last_checkin.c.last_at)
        .join(last_checkin, last_checkin.c.patient_id == patients.c.id, isouter=True)
        .where(patients.c.practitioner_id.is_not(None))
    ).all()

    alerted = 0
    for row in rows:
        if row.last_at is None:
            continue
        last_at = ensure_utc(row.last_at)
        if last_at >= cutoff:
            continue

        prac_user = _practitioner_user(session, row.practitioner_id)
        if not prac_user or not prac_user.get("email"):
            continue
        patient_user = _user(session, row.user_id) or {}
        patient_name = _name(patient_user.get("first_name"), patient_user.get("last_name")) or "Your patient"
        prac_name = _name(prac_user.get("first_name"), prac_user.get("last_name"))
        days_missed = (now - last_at) // timedelta(days=1)

        try:
            NotificationService(session).create(
                prac_user["id"],
                f"{patient_name} hasn't checked in",
                body=f"{patient_name} has missed {days_missed} consecutive days of check-ins.",
                type="checkin_missed",
                link=f"/practitioner/patients/{row.id}",
            )
            session.commit()
            email_service.send_checkin_streak_alert(
                prac_user["email"], prac_name, patient_name, days_missed, row.id
            )
            alerted += 1
        except Exception:
            session.rollback()
            logger.exception("cron_checkin_alert_failed", patient_id=row.id)

    logger.info("cron_checkin_alerts_complete", alerted=alerted)
    CRON_RUNS.labels("checkin_alerts", "success").inc()
    return {"alerted": alerted}


JOBS = {
    "at-risk": run_at_risk,
    "reminders": run_reminders,
    "checkin-alerts": run_checkin_alerts,
}


__all__ = ["JOBS", "run_at_risk", "run_reminders", "run_checkin_alerts"]
