import json
from datetime import timedelta

from sqlalchemy import insert, select, update

from nesema.db.models import (
    admin_audit_log,
    appointments,
    crm_sync_log,
    new_id,
    notifications,
    patients,
    practitioners,
    users,
)
from nesema.time_utils import utc_now


def _audit_actions(db_session):
    return [row.action for row in db_session.execute(select(admin_audit_log.c.action))]


def test_verify_practitioner(api_client, db_session, headers, admin_user, practitioner_user):
    prac_id = practitioner_user["practitioner_id"]
    resp = api_client.post(f"/api/admin/practitioners/{prac_id}/verify", headers=headers(admin_user))
    assert resp.json() == {"ok": True}

    row = db_session.execute(select(practitioners).where(practitioners.c.id == prac_id)).mappings().first()
    assert row["verification_status"] == "verified"
    assert row["is_live"] is True
    assert "verify" in _audit_actions(db_session)
    events = set(db_session.execute(select(crm_sync_log.c.event_type)).scalars())
    assert "practitioner_verified" in events

    listed = api_client.get("/api/admin/practitioners?status=verified", headers=headers(admin_user)).json()
    assert [p["id"] for p in listed["practitioners"]] == [prac_id]


def test_reject_requires_reason(api_client, db_session, headers, admin_user, practitioner_user):
    prac_id = practitioner_user["practitioner_id"]
    resp = api_client.post(f"/api/admin/practitioners/{prac_id}/reject", json={"reason": "  "}, headers=headers(admin_user))
    assert resp.status_code == 400
    assert resp.json()["error"]["message"] == "Reason is required"

    resp = api_client.post(
        f"/api/admin/practitioners/{prac_id}/reject",
        json={"reason": "Registration number could not be confirmed"},
        headers=headers(admin_user),
    )
    assert resp.status_code == 200
    row = db_session.execute(select(practitioners).where(practitioners.c.id == prac_id)).mappings().first()
    assert row["verification_status"] == "rejected"
    assert row["rejection_reason"] == "Registration number could not be confirmed"


def test_unknown_practitioner(api_client, headers, admin_user):
    resp = api_client.post("/api/admin/practitioners/missing/verify", headers=headers(admin_user))
    assert resp.status_code == 404


def test_suspend_and_reinstate_practitioner(api_client, headers, admin_user, practitioner_user):
    prac_id = practitioner_user["practitioner_id"]
    api_client.post(f"/api/admin/practitioners/{prac_id}/suspend", headers=headers(admin_user))
    resp = api_client.get("/api/auth/me", headers=headers(practitioner_user))
    assert resp.status_code == 403
    assert resp.json()["error"]["message"] == "Account suspended"

    api_client.post(f"/api/admin/practitioners/{prac_id}/reinstate", headers=headers(admin_user))
    assert api_client.get("/api/auth/me", headers=headers(practitioner_user)).status_code == 200


def test_reassign_and_match_patient(api_client, db_session, headers, admin_user, practitioner_user, patient_user):
    patient_id = patient_user["patient_id"]
    resp = api_client.post(f"/api/admin/patients/{patient_id}/reassign", json={}, headers=headers(admin_user))
    assert resp.status_code == 400

    resp = api_client.post(
        "/api/admin/matching/assign",
        json={"patientId": patient_id, "practitionerId": practitioner_user["practitioner_id"]},
        headers=headers(admin_user),
    )
    assert resp.json() == {"ok": True}
    assigned = db_session.execute(select(patients.c.practitioner_id).where(patients.c.id == patient_id)).scalar()
    assert assigned == practitioner_user["practitioner_id"]
    note = db_session.execute(
        select(notifications).where(notifications.c.user_id == patient_user["user_id"])
    ).mappings().first()
    assert note["type"] == "match"
    assert note["body"] == "You've been matched with Priya Shah."

    resp = api_client.post("/api/admin/matching/assign", json={"patientId": patient_id}, headers=headers(admin_user))
    assert resp.status_code == 400


def test_delete_patient(api_client, db_session, headers, admin_user, patient_user):
    resp = api_client.post(f"/api/admin/patients/{patient_user['patient_id']}/delete", headers=headers(admin_user))
    assert resp.json() == {"ok": True}
    assert db_session.execute(select(users.c.id).where(users.c.id == patient_user["user_id"])).first() is None
    events = set(db_session.execute(select(crm_sync_log.c.event_type)).scalars())
    assert "patient_churned" in events
    assert "delete" in _audit_actions(db_session)


def test_discount_code_lifecycle(api_client, headers, admin_user):
    body = {"code": " spring20 ", "discount_type": "percentage", "discount_value": 20}
    resp = api_client.post("/api/admin/discount-codes", json=body, headers=headers(admin_user))
    assert resp.status_code == 201
    code = resp.json()["code"]
    assert code["code"] == "SPRING20"
    assert code["is_active"] is True

    assert api_client.post("/api/admin/discount-codes", json=body, headers=headers(admin_user)).status_code == 409

    resp = api_client.patch(f"/api/admin/discount-codes/{code['id']}", json={"is_active": False}, headers=headers(admin_user))
    assert resp.json() == {"ok": True}
    listed = api_client.get("/api/admin/discount-codes", headers=headers(admin_user)).json()["codes"]
    assert listed[0]["is_active"] is False

    assert api_client.delete(f"/api/admin/discount-codes/{code['id']}", headers=headers(admin_user)).json() == {"ok": True}
    assert api_client.delete(f"/api/admin/discount-codes/{code['id']}", headers=headers(admin_user)).status_code == 404


def test_discount_code_validation(api_client, headers, admin_user):
    cases = [
        ({"discount_type": "percentage", "discount_value": 10}, "Code is required"),
        ({"code": "X", "discount_type": "bogus", "discount_value": 10}, "discount_type must be percentage or fixed"),
        ({"code": "X", "discount_type": "fixed", "discount_value": 0}, "discount_value must be greater than 0"),
        ({"code": "X", "discount_type": "percentage", "discount_value": 150}, "Percentage discount cannot exceed 100"),
    ]
    for body, message in cases:
        resp = api_client.post("/api/admin/discount-codes", json=body, headers=headers(admin_user))
        assert resp.status_code == 400
        assert resp.json()["error"]["message"] == message


def test_referral_codes(api_client, headers, admin_user):
    resp = api_client.post(
        "/api/admin/referral-codes",
        json={"code": "friend", "referee_reward_type": "fixed", "referee_reward_value": 10},
        headers=headers(admin_user),
    )
    assert resp.status_code == 201
    assert resp.json()["code"]["code"] == "FRIEND"
    codes = api_client.get("/api/admin/referral-codes", headers=headers(admin_user)).json()["codes"]
    assert [c["code"] for c in codes] == ["FRIEND"]


def test_practitioner_types(api_client, db_session, headers, admin_user, practitioner_user):
    first = api_client.post("/api/admin/practitioner-types", json={"name": "Nutritionist"}, headers=headers(admin_user))
    second = api_client.post("/api/admin/practitioner-types", json={"name": "Naturopath"}, headers=headers(admin_user))
    assert first.status_code == 201
    assert second.json()["type"]["sort_order"] == first.json()["type"]["sort_order"] + 1
    dup = api_client.post("/api/admin/practitioner-types", json={"name": "Nutritionist"}, headers=headers(admin_user))
    assert dup.status_code == 409

    db_session.execute(
        update(practitioners)
        .where(practitioners.c.id == practitioner_user["practitioner_id"])
        .values(discipline="Nutritionist")
    )
    db_session.commit()

    resp = api_client.delete(
        f"/api/admin/practitioner-types/{first.json()['type']['id']}", headers=headers(admin_user)
    ).json()
    assert resp["deactivated"] is True
    assert resp["message"].startswith("Nutritionist is used by 1 practitioner(s).")

    resp = api_client.delete(f"/api/admin/practitioner-types/{second.json()['type']['id']}", headers=headers(admin_user))
    assert resp.json() == {"ok": True, "deleted": True}

    public = api_client.get("/api/practitioner-types").json()
    assert public == {"types": []}


def test_onboarding_checks_discipline(api_client, headers, admin_user, practitioner_user):
    api_client.post("/api/admin/practitioner-types", json={"name": "Herbalist"}, headers=headers(admin_user))
    resp = api_client.post(
        "/api/onboarding/practitioner/complete", json={"discipline": "Astrologer"}, headers=headers(practitioner_user)
    )
    assert resp.status_code == 400
    assert resp.json()["error"]["message"] == "Unknown discipline"
    resp = api_client.post(
        "/api/onboarding/practitioner/complete",
        json={"discipline": "Herbalist", "practice_name": "Green Leaf"},
        headers=headers(practitioner_user),
    )
    assert resp.json() == {"ok": True}


def test_settings_round_trip(api_client, headers, admin_user):
    current = api_client.get("/api/admin/settings", headers=headers(admin_user)).json()
    assert current["maintenance_mode"] is False
    assert current["allow_patient_signup"] is True

    updated = api_client.post(
        "/api/admin/settings", json={"allow_patient_signup": False}, headers=headers(admin_user)
    ).json()
    assert updated["allow_patient_signup"] is False
    assert updated["allow_practitioner_signup"] is True

    entries = api_client.get("/api/admin/audit-log", headers=headers(admin_user)).json()["entries"]
    assert entries[0]["action"] == "settings_update"
    assert entries[0]["target_id"] == "new"


def test_overview_and_payments(api_client, db_session, headers, admin_user, practitioner_user, patient_user):
    db_session.execute(
        update(patients)
        .where(patients.c.id == patient_user["patient_id"])
        .values(practitioner_id=practitioner_user["practitioner_id"])
    )
    db_session.execute(
        insert(appointments),
        [
            {
                "id": new_id(),
                "practitioner_id": practitioner_user["practitioner_id"],
                "patient_id": patient_user["patient_id"],
                "status": status,
                "scheduled_at": utc_now() + timedelta(days=offset),
                "amount_pence": 9500,
            }
            for status, offset in (("completed", -7), ("scheduled", 3))
        ],
    )
    db_session.commit()

    overview = api_client.get("/api/admin/overview", headers=headers(admin_user)).json()
    assert overview == {
        "practitioners": {"total": 1, "pending": 1, "verified": 0, "rejected": 0},
        "patients": {"total": 1, "active": 1},
        "appointments": {"scheduled": 1},
        "revenue_pence": 9500,
    }
    payments = api_client.get("/api/admin/payments", headers=headers(admin_user)).json()
    assert payments["total_revenue_pence"] == 9500
    assert len(payments["payments"]) == 1


def test_crm_log_and_retry(api_client, db_session, headers, admin_user):
    unknown_id = new_id()
    db_session.execute(
        insert(crm_sync_log).values(id=unknown_id, event_type="mystery_event", success=False, created_at=utc_now())
    )
    db_session.commit()

    rows = api_client.get("/api/admin/crm/log", headers=headers(admin_user)).json()["rows"]
    assert [row["id"] for row in rows] == [unknown_id]

    assert api_client.post("/api/admin/crm/retry", json={}, headers=headers(admin_user)).status_code == 400
    resp = api_client.post("/api/admin/crm/retry", json={"logId": "nope"}, headers=headers(admin_user))
    assert resp.status_code == 404
    resp = api_client.post("/api/admin/crm/retry", json={"logId": unknown_id}, headers=headers(admin_user))
    assert resp.status_code == 400
    assert resp.json()["error"]["message"] == "Unknown event type: mystery_event"


def test_crm_bulk_sync_streams_progress(api_client, headers, admin_user, make_user):
    make_user("practitioner", "Priya", "Shah")
    make_user("practitioner", "Olu", "Ade")
    resp = api_client.post("/api/admin/crm/sync-practitioners", headers=headers(admin_user))
    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("application/x-ndjson")
    lines = [json.loads(line) for line in resp.text.splitlines() if line]
    assert lines[0] == {"total": 2}
    assert lines[1:3] == [{"done": 1, "total": 2}, {"done": 2, "total": 2}]
    assert lines[-1]["complete"] is True


def test_crm_test_without_credentials(api_client, headers, admin_user):
    resp = api_client.post("/api/admin/crm/test", headers=headers(admin_user))
    assert resp.json() == {"ok": False, "error": "GHL_API_KEY or GHL_LOCATION_ID not set"}


def test_seed_admin_endpoint(api_client, monkeypatch):
    from nesema.config import get_settings

    assert api_client.post("/api/admin/seed").status_code == 403

    monkeypatch.setenv("SEED_SECRET", "seed-me")
    get_settings.cache_clear()
    auth = {"Authorization": "Bearer seed-me"}
    assert api_client.post("/api/admin/seed", headers={"Authorization": "Bearer wrong"}).status_code == 403
    assert api_client.post("/api/admin/seed", headers=auth).status_code == 400

    monkeypatch.setenv("ADMIN_EMAIL", "Root@Nesema.com")
    monkeypatch.setenv("ADMIN_PASSWORD", "AdminPassword1")
    get_settings.cache_clear()
    resp = api_client.post("/api/admin/seed", headers=auth)
    assert resp.status_code == 200
    assert resp.json()["message"] == "Admin account created for root@nesema.com"

    again = api_client.post("/api/admin/seed", headers=auth)
    assert again.status_code == 400
    assert again.json()["error"]["message"] == "Admin account already exists"

    login = api_client.post("/api/auth/login", json={"email": "root@nesema.com", "password": "AdminPassword1"})
    assert login.status_code == 200


def test_account_self_delete(api_client, db_session, headers, patient_user):
    resp = api_client.post("/api/account/delete", headers=headers(patient_user))
    assert resp.json() == {"success": True}
    assert db_session.execute(select(users.c.id).where(users.c.id == patient_user["user_id"])).first() is None
    assert api_client.get("/api/auth/me", headers=headers(patient_user)).status_code == 401
