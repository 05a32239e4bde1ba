"""SQLAlchemy Core tables for the practice platform."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Optional

import sqlalchemy as sa
from sqlalchemy.types import TypeDecorator


metadata = sa.MetaData()


def new_id() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UTCDateTime(TypeDecorator):
    """Timezone-aware timestamp stored and returned in UTC.

    SQLite drops the offset on storage, so values are normalised to UTC on
    the way in and tagged as UTC on the way out.
    """

    impl = sa.DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: Optional[datetime], dialect: Any) -> Optional[datetime]:
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        value = value.astimezone(timezone.utc)
        if dialect.name == "sqlite":
            return value.replace(tzinfo=None)
        return value

    def process_result_value(self, value: Optional[datetime], dialect: Any) -> Optional[datetime]:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


def _id_column() -> sa.Column:
    return sa.Column("id", sa.String(36), primary_key=True, default=new_id)


def _created_at() -> sa.Column:
    return sa.Column("created_at", UTCDateTime(), nullable=False, default=_utcnow)


users = sa.Table(
    "users",
    metadata,
    _id_column(),
    sa.Column("email", sa.String(320), nullable=False, unique=True),
    sa.Column("password_hash", sa.Text, nullable=False),
    sa.Column("role", sa.String(20), nullable=False),
    sa.Column("first_name", sa.String(120)),
    sa.Column("last_name", sa.String(120)),
    sa.Column("phone", sa.String(40)),
    sa.Column("avatar_url", sa.Text),
    sa.Column("suspended", sa.Boolean, nullable=False, default=False),
    sa.Column("crm_contact_id", sa.String(64)),
    sa.Column("failed_login_attempts", sa.Integer, nullable=False, default=0),
    sa.Column("account_locked_until", UTCDateTime()),
    sa.Column("last_login", UTCDateTime()),
    _created_at(),
    sa.Column("updated_at", UTCDateTime(), nullable=False, default=_utcnow, onupdate=_utcnow),
)

auth_sessions = sa.Table(
    "auth_sessions",
    metadata,
    _id_column(),
    sa.Column("user_id", sa.String(36), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
    sa.Column("refresh_token_hash", sa.String(64), nullable=False, unique=True),
    sa.Column("expires_at", UTCDateTime(), nullable=False),
    sa.Column("revoked_at", UTCDateTime()),
    _created_at(),
)
sa.Index("idx_auth_sessions_user", auth_sessions.c.user_id)

practitioners = sa.Table(
    "practitioners",
    metadata,
    _id_column(),
    sa.Column("user_id", sa.String(36), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, unique=True),
    sa.Column("practice_name", sa.String(200)),
    sa.Column("discipline", sa.String(120)),
    sa.Column("registration_body", sa.String(200)),
    sa.Column("registration_number", sa.String(120)),
    sa.Column("years_of_practice", sa.Integer),
    sa.Column("bio", sa.Text),
    sa.Column("verification_status", sa.String(20), nullable=False, default="pending"),
    sa.Column("rejection_reason", sa.Text),
    sa.Column("is_live", sa.Boolean, nullable=False, default=False),
    sa.Column("booking_slug", sa.String(120), unique=True),
    sa.Column("session_length_mins", sa.Integer, nullable=False, default=60),
    sa.Column("buffer_mins", sa.Integer, nullable=False, default=15),
    sa.Column("allows_self_booking", sa.Boolean, nullable=False, default=True),
    sa.Column("initial_fee", sa.Integer),
    sa.Column("followup_fee", sa.Integer),
    sa.Column("cancellation_hours", sa.Integer, nullable=False, default=24),
    sa.Column("notification_preferences", sa.JSON),
    sa.Column("crm_opportunity_id", sa.String(64)),
    _created_at(),
)

availability = sa.Table(
    "availability",
    metadata,
    _id_column(),
    sa.Column(
        "practitioner_id",
        sa.String(36),
        sa.ForeignKey("practitioners.id", ondelete="CASCADE"),
        nullable=False,
    ),
    sa.Column("day_of_week", sa.Integer, nullable=False),
    sa.Column("start_time", sa.String(5), nullable=False),
    sa.Column("end_time", sa.String(5), nullable=False),
    sa.Column("is_active", sa.Boolean, nullable=False, default=True),
)
sa.Index("idx_availability_practitioner", availability.c.practitioner_id)

patients = sa.Table(
    "patients",
    metadata,
    _id_column(),
    sa.Column("user_id", sa.String(36), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, unique=True),
    sa.Column("practitioner_id", sa.String(36), sa.ForeignKey("practitioners.id", ondelete="SET NULL")),
    sa.Column("date_of_birth", sa.Date),
    sa.Column("health_conditions", sa.Text),
    sa.Column("medications", sa.Text),
    sa.Column("allergies", sa.Text),
    sa.Column("goals", sa.JSON),
    sa.Column("motivation_level", sa.String(20)),
    sa.Column("diet_type", sa.String(60)),
    sa.Column("programme_start", sa.Date),
    sa.Column("programme_end", sa.Date),
    sa.Column("programme_weeks", sa.Integer),
    sa.Column("crm_opportunity_id", sa.String(64)),
    _created_at(),
)
sa.Index("idx_patients_practitioner", patients.c.practitioner_id)

appointments = sa.Table(
    "appointments",
    metadata,
    _id_column(),
    sa.Column(
        "practitioner_id",
        sa.String(36),
        sa.ForeignKey("practitioners.id", ondelete="CASCADE"),
        nullable=False,
    ),
    sa.Column("patient_id", sa.String(36), sa.ForeignKey("patients.id", ondelete="CASCADE"), nullable=False),
    sa.Column("appointment_type", sa.String(20), nullable=False, default="initial"),
    sa.Column("status", sa.String(20), nullable=False, default="scheduled"),
    sa.Column("scheduled_at", UTCDateTime(), nullable=False),
    sa.Column("duration_mins", sa.Integer, nullable=False, default=60),
    sa.Column("location_type", sa.String(20), nullable=False, default="virtual"),
    sa.Column("daily_room_url", sa.Text),
    sa.Column("notes", sa.Text),
    sa.Column("patient_notes", sa.Text),
    sa.Column("amount_pence", sa.Integer),
    sa.Column("discount_code_id", sa.String(36)),
    sa.Column("stripe_payment_id", sa.String(120)),
    sa.Column("reminder_sent", sa.Boolean, nullable=False, default=False),
    _created_at(),
)
sa.Index("idx_appointments_schedule", appointments.c.status, appointments.c.scheduled_at)
sa.Index("idx_appointments_patient", appointments.c.patient_id)

check_ins = sa.Table(
    "check_ins",
    metadata,
    _id_column(),
    sa.Column("patient_id", sa.String(36), sa.ForeignKey("patients.id", ondelete="CASCADE"), nullable=False),
    sa.Column("checked_in_at", UTCDateTime(), nullable=False, default=_utcnow),
    sa.Column("mood_score", sa.Integer),
    sa.Column("energy_score", sa.Integer),
    sa.Column("sleep_hours", sa.Float),
    sa.Column("digestion_score", sa.Integer),
    sa.Column("symptoms", sa.JSON),
    sa.Column("supplements_taken", sa.JSON),
    sa.Column("notes", sa.Text),
)
sa.Index("idx_check_ins_patient_time", check_ins.c.patient_id, check_ins.c.checked_in_at)

care_plans = sa.Table(
    "care_plans",
    metadata,
    _id_column(),
    sa.Column("patient_id", sa.String(36), sa.ForeignKey("patients.id", ondelete="CASCADE"), nullable=False),
    sa.Column("practitioner_id", sa.String(36), sa.ForeignKey("practitioners.id", ondelete="CASCADE")),
    sa.Column("week_number", sa.Integer, nullable=False),
    sa.Column("goals", sa.JSON),
    sa.Column("supplements", sa.JSON),
    sa.Column("notes", sa.Text),
    _created_at(),
    sa.Column("updated_at", UTCDateTime(), nullable=False, default=_utcnow, onupdate=_utcnow),
    sa.UniqueConstraint("patient_id", "week_number", name="uq_care_plans_patient_week"),
)

meal_plans = sa.Table(
    "meal_plans",
    metadata,
    _id_column(),
    sa.Column("patient_id", sa.String(36), sa.ForeignKey("patients.id", ondelete="CASCADE"), nullable=False),
    sa.Column("practitioner_id", sa.String(36), sa.ForeignKey("practitioners.id", ondelete="CASCADE")),
    sa.Column("week_number", sa.Integer, nullable=False),
    sa.Column("meals", sa.JSON),
    sa.Column("notes", sa.Text),
    _created_at(),
    sa.UniqueConstraint("patient_id", "week_number", name="uq_meal_plans_patient_week"),
)

documents = sa.Table(
    "documents",
    metadata,
    _id_column(),
    sa.Column("patient_id", sa.String(36), sa.ForeignKey("patients.id", ondelete="CASCADE"), nullable=False),
    sa.Column("practitioner_id", sa.String(36), sa.ForeignKey("practitioners.id", ondelete="SET NULL")),
    sa.Column("uploaded_by", sa.String(36)),
    sa.Column("document_type", sa.String(20), nullable=False, default="other"),
    sa.Column("title", sa.String(300), nullable=False),
    sa.Column("storage_path", sa.Text),
    sa.Column("content_type", sa.String(120)),
    sa.Column("size_bytes", sa.Integer),
    sa.Column("is_lab_result", sa.Boolean, nullable=False, default=False),
    sa.Column("requires_pin", sa.Boolean, nullable=False, default=False),
    _created_at(),
)

messages = sa.Table(
    "messages",
    metadata,
    _id_column(),
    sa.Column("sender_id", sa.String(36), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
    sa.Column("recipient_id", sa.String(36), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
    sa.Column("body", sa.Text, nullable=False),
    sa.Column("read_at", UTCDateTime()),
    _created_at(),
)
sa.Index("idx_messages_pair", messages.c.sender_id, messages.c.recipient_id)

notifications = sa.Table(
    "notifications",
    metadata,
    _id_column(),
    sa.Column("user_id", sa.String(36), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
    sa.Column("type", sa.String(40), nullable=False, default="general"),
    sa.Column("title", sa.String(300), nullable=False),
    sa.Column("body", sa.Text),
    sa.Column("link", sa.Text),
    sa.Column("read", sa.Boolean, nullable=False, default=False),
    _created_at(),
)
sa.Index("idx_notifications_user", notifications.c.user_id, notifications.c.read)

education_content = sa.Table(
    "education_content",
    metadata,
    _id_column(),
    sa.Column("practitioner_id", sa.String(36), sa.ForeignKey("practitioners.id", ondelete="CASCADE")),
    sa.Column("title", sa.String(300), nullable=False),
    sa.Column("content_type", sa.String(20), nullable=False, default="article"),
    sa.Column("body", sa.Text),
    sa.Column("url", sa.Text),
    _created_at(),
)

education_assignments = sa.Table(
    "education_assignments",
    metadata,
    _id_column(),
    sa.Column(
        "content_id",
        sa.String(36),
        sa.ForeignKey("education_content.id", ondelete="CASCADE"),
        nullable=False,
    ),
    sa.Column("patient_id", sa.String(36), sa.ForeignKey("patients.id", ondelete="CASCADE"), nullable=False),
    sa.Column("assigned_by", sa.String(36)),
    sa.Column("completed_at", UTCDateTime()),
    _created_at(),
)

admin_audit_log = sa.Table(
    "admin_audit_log",
    metadata,
    _id_column(),
    sa.Column("admin_id", sa.String(36)),
    sa.Column("action", sa.String(80), nullable=False),
    sa.Column("target_type", sa.String(60), nullable=False),
    sa.Column("target_id", sa.String(120), nullable=False),
    sa.Column("metadata", sa.JSON),
    _created_at(),
)
sa.Index("idx_admin_audit_created", admin_audit_log.c.created_at)

platform_settings = sa.Table(
    "platform_settings",
    metadata,
    _id_column(),
    sa.Column("allow_practitioner_signup", sa.Boolean, nullable=False, default=True),
    sa.Column("allow_patient_signup", sa.Boolean, nullable=False, default=True),
    sa.Column("maintenance_mode", sa.Boolean, nullable=False, default=False),
    sa.Column("updated_at", UTCDateTime(), default=_utcnow),
    sa.Column("updated_by", sa.String(36)),
)

practitioner_types = sa.Table(
    "practitioner_types",
    metadata,
    _id_column(),
    sa.Column("name", sa.String(120), nullable=False, unique=True),
    sa.Column("is_active", sa.Boolean, nullable=False, default=True),
    sa.Column("sort_order", sa.Integer, nullable=False, default=0),
    sa.Column("created_by", sa.String(36)),
    _created_at(),
)

discount_codes = sa.Table(
    "discount_codes",
    metadata,
    _id_column(),
    sa.Column("code", sa.String(60), nullable=False, unique=True),
    sa.Column("description", sa.Text),
    sa.Column("discount_type", sa.String(20), nullable=False),
    sa.Column("discount_value", sa.Float, nullable=False),
    sa.Column("applies_to", sa.String(20), nullable=False, default="all"),
    sa.Column("max_uses", sa.Integer),
    sa.Column("uses_count", sa.Integer, nullable=False, default=0),
    sa.Column("valid_from", UTCDateTime(), default=_utcnow),
    sa.Column("valid_until", UTCDateTime()),
    sa.Column("is_active", sa.Boolean, nullable=False, default=True),
    sa.Column("created_by", sa.String(36)),
    _created_at(),
)

referral_codes = sa.Table(
    "referral_codes",
    metadata,
    _id_column(),
    sa.Column("code", sa.String(60), nullable=False, unique=True),
    sa.Column("description", sa.Text),
    sa.Column("referrer_reward_type", sa.String(20), nullable=False, default="none"),
    sa.Column("referrer_reward_value", sa.Float, nullable=False, default=0),
    sa.Column("referee_reward_type", sa.String(20), nullable=False, default="none"),
    sa.Column("referee_reward_value", sa.Float, nullable=False, default=0),
    sa.Column("max_uses", sa.Integer),
    sa.Column("uses_count", sa.Integer, nullable=False, default=0),
    sa.Column("valid_from", UTCDateTime(), default=_utcnow),
    sa.Column("valid_until", UTCDateTime()),
    sa.Column("is_active", sa.Boolean, nullable=False, default=True),
    sa.Column("created_by", sa.String(36)),
    _created_at(),
)

ai_usage_log = sa.Table(
    "ai_usage_log",
    metadata,
    _id_column(),
    sa.Column("user_id", sa.String(36), nullable=False),
    sa.Column("feature", sa.String(60), nullable=False),
    _created_at(),
)
sa.Index("idx_ai_usage_user_time", ai_usage_log.c.user_id, ai_usage_log.c.created_at)

crm_sync_log = sa.Table(
    "crm_sync_log",
    metadata,
    _id_column(),
    sa.Column("user_id", sa.String(36)),
    sa.Column("event_type", sa.String(60), nullable=False),
    sa.Column("crm_contact_id", sa.String(64)),
    sa.Column("payload", sa.JSON),
    sa.Column("response", sa.JSON),
    sa.Column("success", sa.Boolean, nullable=False, default=False),
    sa.Column("error", sa.Text),
    _created_at(),
)
sa.Index("idx_crm_sync_event_time", crm_sync_log.c.event_type, crm_sync_log.c.created_at)


def row_to_dict(row: Any) -> Optional[dict]:
    """Return a plain ``dict`` for a mapping row, serialising timestamps."""

    if row is None:
        return None
    result = {}
    for key, value in dict(row).items():
        if hasattr(value, "isoformat"):
            result[key] = value.isoformat()
        else:
            result[key] = value
    return result


__all__ = [
    "metadata",
    "new_id",
    "row_to_dict",
    "UTCDateTime",
    "users",
    "auth_sessions",
    "practitioners",
    "availability",
    "patients",
    "appointments",
    "check_ins",
    "care_plans",
    "meal_plans",
    "documents",
    "messages",
    "notifications",
    "education_content",
    "education_assignments",
    "admin_audit_log",
    "platform_settings",
    "practitioner_types",
    "discount_codes",
    "referral_codes",
    "ai_usage_log",
    "crm_sync_log",
]
