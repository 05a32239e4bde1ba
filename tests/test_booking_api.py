from sqlalchemy import insert, select, update

import pytest

from nesema.db.models import (
    appointments,
    availability,
    crm_sync_log,
    discount_codes,
    new_id,
    notifications,
    patients,
    practitioners,
)


@pytest.fixture
def live_practitioner(db_session, practitioner_user):
    """A verified practitioner who can be booked every day of the week."""

    prac_id = practitioner_user["practitioner_id"]
    db_session.execute(
        update(practitioners)
        .where(practitioners.c.id == prac_id)
        .values(
            is_live=True,
            verification_status="verified",
            initial_fee=9500,
            followup_fee=6000,
            practice_name="Shah Nutrition",
        )
    )
    db_session.execute(
        insert(availability),
        [
            {"id": new_id(), "practitioner_id": prac_id, "day_of_week": day, "start_time": "00:00", "end_time": "23:45"}
            for day in range(7)
        ],
    )
    db_session.commit()
    slug = db_session.execute(select(practitioners.c.booking_slug).where(practitioners.c.id == prac_id)).scalar()
    return dict(practitioner_user, slug=slug)


def _first_slot(client, slug):
    days = client.get(f"/api/book/{slug}").json()["days"]
    for day in days:
        for slot in day["slots"]:
            if slot["available"]:
                return slot["datetime"]
    raise AssertionError("no available slot")


def test_booking_page_lists_slots(api_client, live_practitioner):
    resp = api_client.get(f"/api/book/{live_practitioner['slug']}")
    assert resp.status_code == 200
    body = resp.json()
    assert body["practitioner"]["practice_name"] == "Shah Nutrition"
    assert body["practitioner"]["initial_fee"] == 9500
    assert body["days"]
    assert {"time", "datetime", "available"} <= set(body["days"][0]["slots"][0])


def test_unknown_or_hidden_practitioner(api_client, db_session, practitioner_user):
    assert api_client.get("/api/book/nobody").status_code == 404
    slug = db_session.execute(select(practitioners.c.booking_slug)).scalar()
    # Not live yet.
    assert api_client.get(f"/api/book/{slug}").status_code == 404


def test_patient_books_slot(api_client, db_session, headers, live_practitioner, patient_user):
    slot = _first_slot(api_client, live_practitioner["slug"])
    resp = api_client.post(
        f"/api/book/{live_practitioner['slug']}",
        json={"scheduled_at": slot, "appointment_type": "initial", "patient_notes": "Gut health"},
        headers=headers(patient_user),
    )
    assert resp.status_code == 201
    appt = resp.json()
    assert appt["status"] == "scheduled"
    assert appt["amount_pence"] == 9500
    assert appt["duration_mins"] == 60

    # Unmatched patients are assigned to the practitioner they booked.
    assigned = db_session.execute(
        select(patients.c.practitioner_id).where(patients.c.id == patient_user["patient_id"])
    ).scalar()
    assert assigned == live_practitioner["practitioner_id"]

    note = db_session.execute(
        select(notifications).where(notifications.c.user_id == live_practitioner["user_id"])
    ).mappings().first()
    assert note["type"] == "booking"
    assert note["title"] == "New booking"

    # First initial booking triggers the CRM flow, which records its marker row.
    events = set(db_session.execute(select(crm_sync_log.c.event_type)).scalars())
    assert "first_booking" in events

    again = api_client.post(
        f"/api/book/{live_practitioner['slug']}",
        json={"scheduled_at": slot},
        headers=headers(patient_user),
    )
    assert again.status_code == 409
    assert again.json()["error"]["message"] == "Slot no longer available"


def test_booking_requires_patient(api_client, headers, live_practitioner):
    slot = _first_slot(api_client, live_practitioner["slug"])
    resp = api_client.post(
        f"/api/book/{live_practitioner['slug']}", json={"scheduled_at": slot}, headers=headers(live_practitioner)
    )
    assert resp.status_code == 403


def test_booking_rejects_bad_time(api_client, headers, live_practitioner, patient_user):
    resp = api_client.post(
        f"/api/book/{live_practitioner['slug']}", json={"scheduled_at": "tomorrow"}, headers=headers(patient_user)
    )
    assert resp.status_code == 400


def test_discount_code_applied(api_client, db_session, headers, live_practitioner, patient_user):
    code_id = new_id()
    db_session.execute(
        insert(discount_codes).values(
            id=code_id, code="WELCOME10", discount_type="percentage", discount_value=10, applies_to="all"
        )
    )
    db_session.commit()
    slot = _first_slot(api_client, live_practitioner["slug"])
    resp = api_client.post(
        f"/api/book/{live_practitioner['slug']}",
        json={"scheduled_at": slot, "discount_code": "welcome10"},
        headers=headers(patient_user),
    )
    assert resp.status_code == 201
    assert resp.json()["amount_pence"] == 8550
    assert resp.json()["discount_code_id"] == code_id
    db_session.expire_all()
    uses = db_session.execute(select(discount_codes.c.uses_count).where(discount_codes.c.id == code_id)).scalar()
    assert uses == 1


def test_invalid_discount_code(api_client, headers, live_practitioner, patient_user):
    slot = _first_slot(api_client, live_practitioner["slug"])
    resp = api_client.post(
        f"/api/book/{live_practitioner['slug']}",
        json={"scheduled_at": slot, "discount_code": "NOPE"},
        headers=headers(patient_user),
    )
    assert resp.status_code == 400
    assert resp.json()["error"]["message"] == "Invalid discount code"


def _book(api_client, headers, live_practitioner, patient_user):
    slot = _first_slot(api_client, live_practitioner["slug"])
    return api_client.post(
        f"/api/book/{live_practitioner['slug']}", json={"scheduled_at": slot}, headers=headers(patient_user)
    ).json()


def test_cancel_complete_and_list(api_client, headers, live_practitioner, patient_user, make_user):
    appt = _book(api_client, headers, live_practitioner, patient_user)

    listed = api_client.get("/api/appointments", headers=headers(live_practitioner)).json()["appointments"]
    assert [row["id"] for row in listed] == [appt["id"]]
    assert api_client.get("/api/appointments?status=completed", headers=headers(patient_user)).json() == {
        "appointments": []
    }

    stranger = make_user("patient", "Other", "Person")
    assert api_client.post(f"/api/appointments/{appt['id']}/cancel", headers=headers(stranger)).status_code == 403

    resp = api_client.post(f"/api/appointments/{appt['id']}/complete", headers=headers(live_practitioner))
    assert resp.status_code == 200
    assert resp.json()["status"] == "completed"

    resp = api_client.post(f"/api/appointments/{appt['id']}/cancel", headers=headers(patient_user))
    assert resp.status_code == 400


def test_patient_cancels_own_appointment(api_client, db_session, headers, live_practitioner, patient_user):
    appt = _book(api_client, headers, live_practitioner, patient_user)
    resp = api_client.post(f"/api/appointments/{appt['id']}/cancel", headers=headers(patient_user))
    assert resp.status_code == 200
    assert resp.json()["status"] == "cancelled"

    resp = api_client.post(f"/api/appointments/{appt['id']}/complete", headers=headers(live_practitioner))
    assert resp.status_code == 400
    assert resp.json()["error"]["message"] == "Only scheduled appointments can be completed"
    status = db_session.execute(select(appointments.c.status).where(appointments.c.id == appt["id"])).scalar()
    assert status == "cancelled"


def test_ics_download(api_client, headers, live_practitioner, patient_user):
    appt = _book(api_client, headers, live_practitioner, patient_user)
    resp = api_client.get(f"/api/appointments/{appt['id']}/ics", headers=headers(patient_user))
    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("text/calendar")
    assert "SUMMARY:Session with Shah Nutrition" in resp.text
    assert api_client.get("/api/appointments/missing/ics", headers=headers(patient_user)).status_code == 404


def test_video_room_requires_key(api_client, headers, live_practitioner, patient_user):
    appt = _book(api_client, headers, live_practitioner, patient_user)
    resp = api_client.post("/api/daily/room", json={"appointmentId": appt["id"]}, headers=headers(patient_user))
    assert resp.status_code == 503


def test_video_room_created_once(api_client, headers, live_practitioner, patient_user, monkeypatch):
    from nesema import video
    from nesema.config import get_settings

    appt = _book(api_client, headers, live_practitioner, patient_user)
    monkeypatch.setenv("DAILY_API_KEY", "daily-key")
    get_settings.cache_clear()
    calls = []

    def fake_create(name):
        calls.append(name)
        return {"url": f"https://nesema.daily.co/{name}"}

    monkeypatch.setattr(video, "create_room", fake_create)
    first = api_client.post("/api/daily/room", json={"appointmentId": appt["id"]}, headers=headers(patient_user))
    second = api_client.post(
        "/api/daily/room", json={"appointmentId": appt["id"]}, headers=headers(live_practitioner)
    )
    assert first.status_code == 200
    assert first.json() == second.json()
    assert calls == [f"nesema-{appt['id']}"]


def test_practitioner_availability_round_trip(api_client, headers, practitioner_user):
    body = {"slots": [{"day_of_week": 1, "start_time": "09:00", "end_time": "17:00"}]}
    resp = api_client.put("/api/practitioner/availability", json=body, headers=headers(practitioner_user))
    assert resp.status_code == 200
    assert [row["start_time"] for row in resp.json()["slots"]] == ["09:00"]

    bad = {"slots": [{"day_of_week": 1, "start_time": "9am", "end_time": "17:00"}]}
    resp = api_client.put("/api/practitioner/availability", json=bad, headers=headers(practitioner_user))
    assert resp.status_code == 400
    backwards = {"slots": [{"day_of_week": 1, "start_time": "17:00", "end_time": "09:00"}]}
    resp = api_client.put("/api/practitioner/availability", json=backwards, headers=headers(practitioner_user))
    assert resp.json()["error"]["message"] == "end_time must be after start_time"


def test_practitioner_profile_update(api_client, headers, practitioner_user):
    resp = api_client.put(
        "/api/practitioner/profile",
        json={"bio": "Functional nutrition", "initial_fee": 12000},
        headers=headers(practitioner_user),
    )
    assert resp.status_code == 200
    assert resp.json()["bio"] == "Functional nutrition"
    assert resp.json()["initial_fee"] == 12000
