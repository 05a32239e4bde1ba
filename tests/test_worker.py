import asyncio
from datetime import datetime, timezone

from sqlalchemy import insert, select

from nesema import worker
from nesema.db.models import new_id, notifications


def test_seconds_until_later_today():
    now = datetime(2026, 10, 19, 8, 30, tzinfo=timezone.utc)
    assert worker.seconds_until(9, now) == 30 * 60


def test_seconds_until_rolls_to_tomorrow():
    now = datetime(2026, 10, 19, 9, 0, tzinfo=timezone.utc)
    assert worker.seconds_until(9, now) == 24 * 60 * 60


def _add_notification(session, user_id):
    session.execute(insert(notifications).values(id=new_id(), user_id=user_id, title="queued"))
    return "done"


def test_run_in_session_commits(db_session, patient_user):
    assert worker.run_in_session(_add_notification, patient_user["user_id"]) == "done"
    titles = db_session.execute(select(notifications.c.title)).scalars().all()
    assert titles == ["queued"]


def test_scheduler_start_and_stop(monkeypatch):
    ran = []

    async def fake_job():
        ran.append("reminders")

    monkeypatch.setattr(worker, "send_reminders", fake_job)

    async def scenario():
        worker.start_scheduler()
        assert len(worker._background_tasks) == 3
        await asyncio.sleep(0)
        await worker.stop_scheduler()
        assert worker._background_tasks == []

    asyncio.run(scenario())
    assert ran == ["reminders"]
