import pytest
import requests

from nesema import egress, email_service
from nesema.config import get_settings


class _Response:
    content = b"{}"

    def __init__(self, payload):
        self._payload = payload

    def json(self):
        return self._payload


@pytest.fixture
def outbox(monkeypatch):
    monkeypatch.setenv("RESEND_API_KEY", "re_test")
    get_settings.cache_clear()
    sent = []

    def fake_request(method, url, **kwargs):
        sent.append(kwargs["json"])
        return _Response({"id": f"msg-{len(sent)}"})

    monkeypatch.setattr(egress, "secure_request", fake_request)
    return sent


def test_unconfigured_send_is_a_noop(monkeypatch):
    def fail(*args, **kwargs):
        raise AssertionError("no request expected")

    monkeypatch.setattr(egress, "secure_request", fail)
    assert email_service.send_email("a@example.com", "Hi", "<p>hi</p>") is None


def test_send_returns_provider_id(outbox):
    assert email_service.send_email("a@example.com", "Hi", "<p>hi</p>") == "msg-1"
    assert outbox[0]["to"] == ["a@example.com"]
    assert outbox[0]["from"] == "Nesema <hello@nesema.com>"


def test_missing_recipient(outbox):
    assert email_service.send_email("", "Hi", "<p>hi</p>") is None
    assert outbox == []


def test_failures_are_swallowed(monkeypatch):
    monkeypatch.setenv("RESEND_API_KEY", "re_test")
    get_settings.cache_clear()

    def broken(method, url, **kwargs):
        raise requests.HTTPError("422")

    monkeypatch.setattr(egress, "secure_request", broken)
    assert email_service.send_practitioner_verified("a@example.com", "Priya") is None


def test_values_are_escaped(outbox):
    email_service.send_practitioner_rejected("a@example.com", "<b>Priya</b>", "Missing <script>proof</script>")
    body = outbox[0]["html"]
    assert "&lt;b&gt;Priya&lt;/b&gt;" in body
    assert "<script>" not in body
    assert outbox[0]["subject"] == "An update on your Nesema application"


def test_booking_confirmation_details(outbox):
    email_service.send_booking_confirmation_patient(
        "sam@example.com", "Sam", "Priya Shah", "Monday 19 October 2026", "09:00", "Initial consultation", 9500, 24, "appt-1"
    )
    message = outbox[0]
    assert message["subject"] == "Your session with Priya Shah is confirmed"
    assert "£95.00" in message["html"]
    assert "24h notice required" in message["html"]
    assert "calendar.google.com" in message["html"]


def test_reminder_links_by_role(outbox):
    email_service.send_appointment_reminder("p@example.com", "Priya", "Sam", "Tuesday", "10:00", "a1", "practitioner")
    assert "/practitioner/session?appointmentId=a1" in outbox[0]["html"]
    assert outbox[0]["subject"] == "Your session tomorrow at 10:00"


def test_format_pence_and_calendar_url():
    assert email_service.format_pence(9500) == "£95.00"
    assert email_service.format_pence(None) == "£0.00"
    url = email_service.google_calendar_url("Priya Shah", "a1")
    assert url.startswith("https://calendar.google.com/calendar/render?action=TEMPLATE&text=Session%20with%20Priya%20Shah")
