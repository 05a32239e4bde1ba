"""Transactional e-mail delivered through the Resend HTTP API.

Every ``send_*`` helper renders a branded HTML body, escapes all interpolated
values and hands the message to :func:`send_email`.  Delivery failures are
logged and reported as ``None``; callers never see an exception.
"""

from __future__ import annotations

import html
from typing import Optional
from urllib.parse import quote

import requests
import structlog

from nesema import egress
from nesema.config import get_settings
from nesema.observability import EMAILS_SENT


logger = structlog.get_logger(__name__)

RESEND_URL = "https://api.resend.com/emails"
SUPPORT_MAILTO = "mailto:support@nesema.com"

_H1 = 'style="margin:0 0 8px;font-family:Georgia,serif;font-size:24px;color:#1E1A16;"'
_LEAD = 'style="margin:0 0 20px;font-size:15px;color:#5C5248;line-height:1.6;"'
_BODY = 'style="margin:0 0 20px;font-size:14px;color:#5C5248;line-height:1.6;"'
_TABLE = (
    'width="100%" style="border-top:1px solid #E6E0D8;border-bottom:1px solid #E6E0D8;'
    'padding:16px 0;margin-bottom:24px;font-size:14px;color:#5C5248;"'
)


def _e(value: object) -> str:
    return html.escape(str(value if value is not None else ""), quote=True)


def _layout(content: str) -> str:
    app_url = get_settings().app_url
    return f"""<!DOCTYPE html>
<html lang="en">
<head>
  <meta charset="UTF-8" />
  <meta name="viewport" content="width=device-width, initial-scale=1.0" />
  <title>Nesema</title>
</head>
<body style="margin:0;padding:0;background-color:#F6F3EE;font-family:'Instrument Sans',Helvetica,Arial,sans-serif;">
  <table width="100%" cellpadding="0" cellspacing="0" style="background-color:#F6F3EE;padding:40px 16px;">
    <tr>
      <td align="center">
        <table width="100%" style="max-width:560px;">
          <tr>
            <td align="center" style="padding-bottom:32px;">
              <span style="font-family:Georgia,'Times New Roman',serif;font-size:28px;font-weight:600;color:#2E2620;letter-spacing:0.04em;">Nesema</span>
            </td>
          </tr>
          <tr>
            <td style="background:#ffffff;border-radius:16px;padding:40px 40px 32px;border:1px solid #E6E0D8;">
              {content}
            </td>
          </tr>
          <tr>
            <td align="center" style="padding-top:24px;">
              <p style="margin:0;font-size:12px;color:#9C9087;">Health, felt whole.</p>
              <p style="margin:4px 0 0;font-size:11px;color:#BFB8B0;">
                You're receiving this because you have an account on Nesema.
                <a href="{_e(app_url)}/settings" style="color:#4E7A5F;text-decoration:none;">Manage preferences</a>
              </p>
            </td>
          </tr>
        </table>
      </td>
    </tr>
  </table>
</body>
</html>"""


def _button(text: str, href: str) -> str:
    return (
        f'<a href="{_e(href)}" style="display:inline-block;background-color:#4E7A5F;color:#ffffff;'
        "text-decoration:none;padding:12px 28px;border-radius:100px;font-size:14px;"
        f'font-weight:600;margin-top:8px;">{_e(text)}</a>'
    )


def _rows(*pairs: tuple[str, object]) -> str:
    rendered = []
    for index, (label, value) in enumerate(pairs):
        width = "width:40%;" if index == 0 else ""
        rendered.append(
            f'<tr><td style="padding:6px 0;color:#9C9087;{width}">{_e(label)}</td>'
            f"<td>{_e(value)}</td></tr>"
        )
    return f"<table {_TABLE}>{''.join(rendered)}</table>"


def format_pence(amount_pence: int) -> str:
    return f"£{(amount_pence or 0) / 100:.2f}"


def google_calendar_url(practitioner_name: str, appointment_id: str) -> str:
    app_url = get_settings().app_url
    title = quote(f"Session with {practitioner_name} — Nesema", safe="")
    details = quote(
        f"Join your session: {app_url}/patient/session?appointmentId={appointment_id}", safe=""
    )
    return (
        "https://calendar.google.com/calendar/render?action=TEMPLATE"
        f"&text={title}&details={details}"
    )


def send_email(to: str, subject: str, html_body: str, *, template: str = "generic") -> Optional[str]:
    """Send a message through Resend and return the provider id."""

    settings = get_settings()
    if not settings.resend_api_key:
        logger.warning("email_not_configured", template=template)
        EMAILS_SENT.labels(template, "false").inc()
        return None
    if not to:
        logger.warning("email_missing_recipient", template=template)
        return None
    try:
        response = egress.secure_request(
            "POST",
            RESEND_URL,
            json={"from": settings.email_from, "to": [to], "subject": subject, "html": html_body},
            headers={"Authorization": f"Bearer {settings.resend_api_key}"},
        )
        payload = response.json() if response.content else {}
    except (requests.RequestException, egress.EgressError, ValueError) as exc:
        logger.warning("email_send_failed", template=template, error=str(exc))
        EMAILS_SENT.labels(template, "false").inc()
        return None
    EMAILS_SENT.labels(template, "true").inc()
    logger.info("email_sent", template=template)
    return payload.get("id") if isinstance(payload, dict) else None


def send_practitioner_welcome(to: str, first_name: str, booking_slug: str) -> Optional[str]:
    app_url = get_settings().app_url
    booking_url = f"{app_url}/book/{booking_slug}"
    cta = _button("Go to your dashboard", f"{app_url}/practitioner/dashboard")
    content = f"""
    <h1 {_H1}>Welcome to Nesema, {_e(first_name)}.</h1>
    <p {_LEAD}>We're delighted to have you here. Your profile is under review. We'll notify you once verification is complete, usually within 1–2 business days.</p>
    <p style="margin:0 0 8px;font-size:14px;color:#5C5248;">Your booking link:</p>
    <p style="margin:0 0 24px;font-size:14px;color:#4E7A5F;font-weight:600;">{_e(booking_url)}</p>
    <p {_BODY}>In the meantime, you can set up your availability, build out your profile, and explore the toolkit.</p>
    {cta}
    """
    return send_email(
        to, f"Welcome to Nesema, {first_name}", _layout(content), template="practitioner_welcome"
    )


def send_patient_welcome(
    to: str, first_name: str, practitioner_name: str, booking_slug: str
) -> Optional[str]:
    app_url = get_settings().app_url
    cta = _button("Book your first session", f"{app_url}/book/{booking_slug}")
    content = f"""
    <h1 {_H1}>You're all set, {_e(first_name)}.</h1>
    <p {_LEAD}>Your account is ready. {_e(practitioner_name)} is looking forward to working with you on your health journey.</p>
    {cta}
    """
    return send_email(to, f"You're all set, {first_name}", _layout(content), template="patient_welcome")


def send_booking_confirmation_patient(
    to: str,
    patient_name: str,
    practitioner_name: str,
    appointment_date: str,
    appointment_time: str,
    session_type: str,
    amount_pence: int,
    cancellation_hours: int,
    appointment_id: str,
) -> Optional[str]:
    details = _rows(
        ("Date", appointment_date),
        ("Time", appointment_time),
        ("Session type", session_type),
        ("Amount paid", format_pence(amount_pence)),
        ("Cancellation", f"{cancellation_hours}h notice required"),
    )
    cta = _button("Add to Google Calendar", google_calendar_url(practitioner_name, appointment_id))
    content = f"""
    <h1 {_H1}>Your session is confirmed.</h1>
    <p {_LEAD}>Hi {_e(patient_name)}, your booking with {_e(practitioner_name)} has been confirmed.</p>
    {details}
    {cta}
    <p style="margin:16px 0 0;font-size:13px;color:#9C9087;">Your session link will be available in the app.</p>
    """
    return send_email(
        to,
        f"Your session with {practitioner_name} is confirmed",
        _layout(content),
        template="booking_confirmation",
    )


def send_booking_notification_practitioner(
    to: str,
    practitioner_name: str,
    patient_name: str,
    appointment_date: str,
    appointment_time: str,
    session_type: str,
) -> Optional[str]:
    app_url = get_settings().app_url
    details = _rows(
        ("Patient", patient_name),
        ("Session type", session_type),
        ("Date", appointment_date),
        ("Time", appointment_time),
    )
    cta = _button("View calendar", f"{app_url}/practitioner/calendar")
    content = f"""
    <h1 {_H1}>New booking from {_e(patient_name)}.</h1>
    <p {_LEAD}>Hi {_e(practitioner_name)}, a new session has been booked.</p>
    {details}
    {cta}
    """
    return send_email(
        to, f"New booking from {patient_name}", _layout(content), template="booking_notification"
    )


def send_appointment_reminder(
    to: str,
    recipient_name: str,
    other_party_name: str,
    appointment_date: str,
    appointment_time: str,
    appointment_id: str,
    role: str,
) -> Optional[str]:
    app_url = get_settings().app_url
    join_role = "patient" if role == "patient" else "practitioner"
    details = _rows(("Date", appointment_date), ("Time", appointment_time))
    cta = _button("Join session", f"{app_url}/{join_role}/session?appointmentId={appointment_id}")
    content = f"""
    <h1 {_H1}>Your session is tomorrow.</h1>
    <p {_LEAD}>Hi {_e(recipient_name)}, a reminder that you have a session with {_e(other_party_name)} tomorrow.</p>
    {details}
    {cta}
    """
    return send_email(
        to, f"Your session tomorrow at {appointment_time}", _layout(content), template="appointment_reminder"
    )


def send_checkin_streak_alert(
    to: str, practitioner_name: str, patient_name: str, days_missed: int, patient_id: str
) -> Optional[str]:
    app_url = get_settings().app_url
    cta = _button("View patient profile", f"{app_url}/practitioner/patients/{patient_id}")
    content = f"""
    <h1 {_H1}>{_e(patient_name)} hasn't checked in recently.</h1>
    <p {_LEAD}>Hi {_e(practitioner_name)}, {_e(patient_name)} hasn't submitted a daily check-in in the last {_e(days_missed)} days. You may want to reach out.</p>
    {cta}
    """
    return send_email(
        to,
        f"{patient_name} hasn't checked in for {days_missed} days",
        _layout(content),
        template="checkin_streak_alert",
    )


def send_practitioner_verified(to: str, first_name: str) -> Optional[str]:
    app_url = get_settings().app_url
    cta = _button("Go to your dashboard", f"{app_url}/practitioner/dashboard")
    content = f"""
    <h1 {_H1}>You're verified, {_e(first_name)}.</h1>
    <p {_LEAD}>Great news: your Nesema profile has been reviewed and verified. You're now live on the platform and can start accepting bookings.</p>
    {cta}
    """
    return send_email(
        to, "Your Nesema profile is now verified", _layout(content), template="practitioner_verified"
    )


def send_practitioner_rejected(to: str, first_name: str, reason: str) -> Optional[str]:
    cta = _button("Contact support", SUPPORT_MAILTO)
    content = f"""
    <h1 {_H1}>Application update, {_e(first_name)}.</h1>
    <p style="margin:0 0 16px;font-size:15px;color:#5C5248;line-height:1.6;">Thank you for applying to join Nesema. After reviewing your profile, we're unable to verify your registration at this time.</p>
    <table width="100%" style="border-left:3px solid #E6E0D8;padding:12px 16px;margin-bottom:20px;background:#F9F6F2;border-radius:0 8px 8px 0;">
      <tr><td style="font-size:14px;color:#5C5248;line-height:1.6;">{_e(reason)}</td></tr>
    </table>
    <p {_BODY}>If you believe this is an error or would like to provide additional information, please reply to this email.</p>
    {cta}
    """
    return send_email(
        to, "An update on your Nesema application", _layout(content), template="practitioner_rejected"
    )


def send_account_suspended(to: str, first_name: str, role: str) -> Optional[str]:
    cta = _button("Contact support", SUPPORT_MAILTO)
    content = f"""
    <h1 {_H1}>Account suspended, {_e(first_name)}.</h1>
    <p {_LEAD}>Your Nesema {_e(role)} account has been suspended by our team. Access to the platform has been paused pending review.</p>
    <p {_BODY}>If you believe this is a mistake or wish to discuss this decision, please get in touch.</p>
    {cta}
    """
    return send_email(
        to, "Your Nesema account has been suspended", _layout(content), template="account_suspended"
    )


def send_account_reinstated(to: str, first_name: str, role: str) -> Optional[str]:
    app_url = get_settings().app_url
    if role == "practitioner":
        cta = _button("Go to your dashboard", f"{app_url}/practitioner/dashboard")
    else:
        cta = _button("Go to the app", f"{app_url}/patient/dashboard")
    content = f"""
    <h1 {_H1}>Welcome back, {_e(first_name)}.</h1>
    <p {_LEAD}>Your Nesema {_e(role)} account has been reinstated. You can now access all platform features as normal.</p>
    {cta}
    """
    return send_email(
        to, "Your Nesema account has been reinstated", _layout(content), template="account_reinstated"
    )


__all__ = [
    "send_email",
    "format_pence",
    "google_calendar_url",
    "send_practitioner_welcome",
    "send_patient_welcome",
    "send_booking_confirmation_patient",
    "send_booking_notification_practitioner",
    "send_appointment_reminder",
    "send_checkin_streak_alert",
    "send_practitioner_verified",
    "send_practitioner_rejected",
    "send_account_suspended",
    "send_account_reinstated",
]
