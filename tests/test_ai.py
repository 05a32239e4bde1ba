"""Assistant endpoints in offline mode plus the per-user rate limit."""

from datetime import timedelta

import pytest
from sqlalchemy import func, select

from nesema import openai_client, prompts
from nesema.ai_rate_limit import RateLimitExceeded, check_and_log_ai_usage
from nesema.config import get_settings
from nesema.db.models import admin_audit_log, ai_usage_log
from nesema.time_utils import utc_now


def test_offline_stream_is_deterministic():
    first = list(openai_client.stream_completion("Be brief.", "Hello"))
    second = list(openai_client.stream_completion("Be brief.", "Hello"))
    assert first == second
    assert first[0].startswith("Offline response (")
    assert first != list(openai_client.stream_completion("Be brief.", "Goodbye"))


def test_missing_key_message(monkeypatch):
    monkeypatch.setenv("USE_OFFLINE_MODEL", "0")
    get_settings.cache_clear()
    assert not openai_client.is_configured()
    assert list(openai_client.stream_completion("x", "y")) == [openai_client.NOT_CONFIGURED_MESSAGE]


def test_build_messages_normalises_roles():
    messages = openai_client.build_messages("sys", [{"role": "tool", "content": "hi"}, {"role": "assistant", "content": 3}])
    assert messages == [
        {"role": "system", "content": "sys"},
        {"role": "user", "content": "hi"},
        {"role": "assistant", "content": "3"},
    ]


def test_checkin_analysis_streams(api_client, headers, practitioner_user):
    resp = api_client.post(
        "/api/ai/checkin-analysis", json={"userMessage": "Energy 4/10 all week"}, headers=headers(practitioner_user)
    )
    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("text/plain")
    assert resp.text.startswith("Offline response (")


def test_patient_cannot_use_practitioner_features(api_client, headers, patient_user):
    resp = api_client.post("/api/ai/session-notes", json={"userMessage": "notes"}, headers=headers(patient_user))
    assert resp.status_code == 403
    resp = api_client.post("/api/ai/weekly-summary", json={"userMessage": "week"}, headers=headers(patient_user))
    assert resp.status_code == 200


def test_missing_fields(api_client, headers, practitioner_user):
    assert api_client.post("/api/ai/lab-interpretation", json={}, headers=headers(practitioner_user)).status_code == 400
    resp = api_client.post("/api/ai/meal-alternatives", json={"userMessage": "x"}, headers=headers(practitioner_user))
    assert resp.json()["error"]["message"] == "Missing userMessage or foodName"
    resp = api_client.post("/api/ai/stream", json={"userMessage": "x"}, headers=headers(practitioner_user))
    assert resp.status_code == 400


def test_care_plan_draft_is_audited(api_client, db_session, headers, practitioner_user):
    resp = api_client.post(
        "/api/ai/care-plan-draft", json={"userMessage": "IBS, low energy"}, headers=headers(practitioner_user)
    )
    assert resp.status_code == 200
    action = db_session.execute(select(admin_audit_log.c.action)).scalar()
    assert action == "ai_care_plan_generated"


def test_plan_qa_keeps_recent_history(api_client, db_session, headers, patient_user):
    history = [{"role": "user", "content": f"question {i}"} for i in range(15)]
    resp = api_client.post(
        "/api/ai/plan-qa",
        json={"systemContext": "Week 1: magnesium at night", "messages": history},
        headers=headers(patient_user),
    )
    assert resp.status_code == 200
    expected = list(
        openai_client.stream_completion(prompts.plan_qa_prompt("Week 1: magnesium at night"), history[-10:])
    )
    assert resp.text == expected[0]
    feature = db_session.execute(select(ai_usage_log.c.feature)).scalar()
    assert feature == "plan-qa"


def test_rate_limit_returns_retry_after(api_client, headers, practitioner_user, monkeypatch):
    monkeypatch.setenv("AI_RATE_LIMIT_MAX", "1")
    get_settings.cache_clear()
    body = {"userMessage": "hello"}
    assert api_client.post("/api/ai/session-notes", json=body, headers=headers(practitioner_user)).status_code == 200
    resp = api_client.post("/api/ai/session-notes", json=body, headers=headers(practitioner_user))
    assert resp.status_code == 429
    assert resp.json()["error"]["code"] == "RATE_LIMIT"
    assert int(resp.headers["retry-after"]) > 0


def test_rate_limit_window_slides(db_session, practitioner_user, monkeypatch):
    monkeypatch.setenv("AI_RATE_LIMIT_MAX", "2")
    monkeypatch.setenv("AI_RATE_LIMIT_WINDOW_SECONDS", "60")
    get_settings.cache_clear()
    user_id = practitioner_user["user_id"]
    start = utc_now()

    check_and_log_ai_usage(db_session, user_id, "stream", now=start)
    check_and_log_ai_usage(db_session, user_id, "stream", now=start + timedelta(seconds=10))
    with pytest.raises(RateLimitExceeded) as exc:
        check_and_log_ai_usage(db_session, user_id, "stream", now=start + timedelta(seconds=20))
    assert exc.value.retry_after == 40

    check_and_log_ai_usage(db_session, user_id, "stream", now=start + timedelta(seconds=61))
    total = db_session.execute(select(func.count()).select_from(ai_usage_log)).scalar_one()
    assert total == 3
