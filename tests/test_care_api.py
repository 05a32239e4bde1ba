from datetime import timedelta

import pytest
from sqlalchemy import insert, select, update

from nesema.db.models import check_ins, new_id, notifications, patients
from nesema.time_utils import utc_now


@pytest.fixture
def linked(db_session, practitioner_user, patient_user):
    """Assign the default patient to the default practitioner."""

    db_session.execute(
        update(patients)
        .where(patients.c.id == patient_user["patient_id"])
        .values(practitioner_id=practitioner_user["practitioner_id"])
    )
    db_session.commit()
    return practitioner_user, patient_user


def test_patient_check_in(api_client, headers, patient_user):
    resp = api_client.post(
        "/api/check-ins",
        json={"mood_score": 7, "energy_score": 6, "sleep_hours": 7.5, "symptoms": ["bloating"]},
        headers=headers(patient_user),
    )
    assert resp.status_code == 201
    assert resp.json()["symptoms"] == ["bloating"]

    listed = api_client.get("/api/check-ins", headers=headers(patient_user)).json()["check_ins"]
    assert len(listed) == 1
    assert listed[0]["mood_score"] == 7


def test_check_in_scores_are_bounded(api_client, headers, patient_user):
    resp = api_client.post("/api/check-ins", json={"mood_score": 11}, headers=headers(patient_user))
    assert resp.status_code == 422


def test_practitioner_reads_linked_check_ins(api_client, headers, linked, make_user):
    prac, patient = linked
    api_client.post("/api/check-ins", json={"mood_score": 5}, headers=headers(patient))

    assert api_client.get("/api/check-ins", headers=headers(prac)).status_code == 400
    resp = api_client.get(f"/api/check-ins?patient_id={patient['patient_id']}", headers=headers(prac))
    assert resp.status_code == 200
    assert len(resp.json()["check_ins"]) == 1

    other = make_user("practitioner", "Olu", "Ade")
    resp = api_client.get(f"/api/check-ins?patient_id={patient['patient_id']}", headers=headers(other))
    assert resp.status_code == 403


def test_care_plan_upsert(api_client, headers, linked):
    prac, patient = linked
    url = f"/api/patients/{patient['patient_id']}/care-plans/1"
    body = {"goals": ["Improve sleep"], "supplements": [{"name": "Magnesium", "dose": "300mg"}]}
    first = api_client.put(url, json=body, headers=headers(prac))
    assert first.status_code == 200
    second = api_client.put(url, json={"goals": ["Improve sleep", "Walk daily"]}, headers=headers(prac))
    assert second.json()["id"] == first.json()["id"]
    assert second.json()["supplements"] == []

    plans = api_client.get(f"/api/patients/{patient['patient_id']}/care-plans", headers=headers(patient)).json()
    assert [plan["goals"] for plan in plans["care_plans"]] == [["Improve sleep", "Walk daily"]]

    assert api_client.put(
        f"/api/patients/{patient['patient_id']}/care-plans/0", json=body, headers=headers(prac)
    ).status_code == 400


def test_unlinked_practitioner_cannot_write_plans(api_client, headers, practitioner_user, patient_user):
    resp = api_client.put(
        f"/api/patients/{patient_user['patient_id']}/meal-plans/1",
        json={"meals": {"monday": ["Porridge"]}},
        headers=headers(practitioner_user),
    )
    assert resp.status_code == 404


def test_meal_plans(api_client, headers, linked):
    prac, patient = linked
    resp = api_client.put(
        f"/api/patients/{patient['patient_id']}/meal-plans/2",
        json={"meals": {"monday": ["Porridge", "Salmon salad"]}, "notes": "Batch cook"},
        headers=headers(prac),
    )
    assert resp.status_code == 200
    plans = api_client.get(f"/api/patients/{patient['patient_id']}/meal-plans", headers=headers(prac)).json()
    assert plans["meal_plans"][0]["week_number"] == 2
    assert plans["meal_plans"][0]["meals"]["monday"][0] == "Porridge"


def test_roster_flags_at_risk(api_client, db_session, headers, linked, make_user):
    prac, patient = linked
    quiet = make_user("patient", "Alex", "Quiet")
    db_session.execute(
        update(patients).where(patients.c.id == quiet["patient_id"]).values(practitioner_id=prac["practitioner_id"])
    )
    db_session.execute(
        insert(check_ins).values(id=new_id(), patient_id=patient["patient_id"], checked_in_at=utc_now(), mood_score=8)
    )
    db_session.execute(
        insert(check_ins).values(
            id=new_id(), patient_id=quiet["patient_id"], checked_in_at=utc_now() - timedelta(days=10), mood_score=3
        )
    )
    db_session.commit()

    roster = api_client.get("/api/practitioner/patients", headers=headers(prac)).json()["patients"]
    flags = {row["id"]: row["at_risk"] for row in roster}
    assert flags == {patient["patient_id"]: False, quiet["patient_id"]: True}


def test_patient_detail(api_client, headers, linked):
    prac, patient = linked
    api_client.post("/api/check-ins", json={"energy_score": 4}, headers=headers(patient))
    resp = api_client.get(f"/api/practitioner/patients/{patient['patient_id']}", headers=headers(prac))
    assert resp.status_code == 200
    body = resp.json()
    assert body["user"]["email"] == patient["email"]
    assert "password_hash" not in body["user"]
    assert len(body["check_ins"]) == 1
    assert body["appointments"] == []


def test_messages_between_linked_users(api_client, db_session, headers, linked):
    prac, patient = linked
    sent = api_client.post(
        "/api/messages", json={"recipient_id": patient["user_id"], "body": "How are you feeling?"}, headers=headers(prac)
    )
    assert sent.status_code == 201
    api_client.post("/api/messages", json={"recipient_id": prac["user_id"], "body": "Much better"}, headers=headers(patient))

    thread = api_client.get(f"/api/messages?with_user={prac['user_id']}", headers=headers(patient)).json()["messages"]
    assert [msg["body"] for msg in thread] == ["How are you feeling?", "Much better"]

    note = db_session.execute(
        select(notifications).where(notifications.c.user_id == patient["user_id"])
    ).mappings().first()
    assert note["type"] == "message"

    message_id = sent.json()["id"]
    assert api_client.post(f"/api/messages/{message_id}/read", headers=headers(prac)).status_code == 403
    assert api_client.post(f"/api/messages/{message_id}/read", headers=headers(patient)).json() == {"ok": True}


def test_messages_need_a_relationship(api_client, headers, practitioner_user, patient_user, admin_user):
    resp = api_client.post(
        "/api/messages", json={"recipient_id": patient_user["user_id"], "body": "Hello"}, headers=headers(practitioner_user)
    )
    assert resp.status_code == 403
    assert resp.json()["error"]["message"] == "You cannot message this user"

    resp = api_client.post(
        "/api/messages", json={"recipient_id": patient_user["user_id"], "body": "Welcome"}, headers=headers(admin_user)
    )
    assert resp.status_code == 201
    resp = api_client.post("/api/messages", json={"recipient_id": "nobody", "body": "Hi"}, headers=headers(admin_user))
    assert resp.status_code == 404


def test_education_assign_and_complete(api_client, db_session, headers, linked, admin_user):
    prac, patient = linked
    own = api_client.post(
        "/api/education", json={"title": "Gut basics", "content_type": "guide"}, headers=headers(prac)
    ).json()
    platform = api_client.post("/api/education", json={"title": "Sleep hygiene"}, headers=headers(admin_user)).json()
    assert platform["practitioner_id"] is None

    titles = {item["title"] for item in api_client.get("/api/education", headers=headers(prac)).json()["content"]}
    assert titles == {"Gut basics", "Sleep hygiene"}

    resp = api_client.post(
        f"/api/education/{own['id']}/assign", json={"patient_id": patient["patient_id"]}, headers=headers(prac)
    )
    assert resp.status_code == 201
    assignment_id = resp.json()["id"]

    assigned = api_client.get("/api/education/assigned", headers=headers(patient)).json()["assignments"]
    assert [row["title"] for row in assigned] == ["Gut basics"]
    assert assigned[0]["completed_at"] is None

    done = api_client.post(f"/api/education/assignments/{assignment_id}/complete", headers=headers(patient))
    assert done.json() == {"ok": True}
    missing = api_client.post("/api/education/assignments/missing/complete", headers=headers(patient))
    assert missing.status_code == 404

    types = set(
        db_session.execute(select(notifications.c.type).where(notifications.c.user_id == patient["user_id"])).scalars()
    )
    assert "education" in types


def test_assign_unknown_content(api_client, headers, linked):
    prac, patient = linked
    resp = api_client.post(
        "/api/education/nope/assign", json={"patient_id": patient["patient_id"]}, headers=headers(prac)
    )
    assert resp.status_code == 404
    assert resp.json()["error"]["message"] == "Content not found"
