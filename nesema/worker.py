import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, List, Optional

from nesema import cron_jobs
from nesema.db.session import session_scope

logger = logging.getLogger(__name__)

# Track running background tasks so they can be cancelled on shutdown
_background_tasks: List[asyncio.Task] = []

REMINDER_INTERVAL = 60 * 60  # hourly
CHECKIN_ALERT_HOUR_UTC = 9
AT_RISK_HOUR_UTC = 10


def run_in_session(fn: Callable[..., Any], *args: Any) -> Any:
    """Call ``fn(session, *args)`` inside its own committed session."""

    with session_scope() as session:
        return fn(session, *args)


def _run_job(job: Callable[..., Any]) -> Any:
    with session_scope() as session:
        return job(session, datetime.now(timezone.utc))


async def send_reminders() -> None:
    result = await asyncio.to_thread(_run_job, cron_jobs.run_reminders)
    logger.info("Appointment reminders sent (%s)", result)


async def send_checkin_alerts() -> None:
    result = await asyncio.to_thread(_run_job, cron_jobs.run_checkin_alerts)
    logger.info("Check-in alerts processed (%s)", result)


async def flag_at_risk_patients() -> None:
    result = await asyncio.to_thread(_run_job, cron_jobs.run_at_risk)
    logger.info("At-risk detection processed (%s)", result)


def seconds_until(hour: int, now: Optional[datetime] = None) -> float:
    """Seconds from *now* until the next ``hour:00`` UTC."""

    now = now or datetime.now(timezone.utc)
    target = now.replace(hour=hour, minute=0, second=0, microsecond=0)
    if target <= now:
        target += timedelta(days=1)
    return (target - now).total_seconds()


async def _run_periodic(interval: float, coro: Callable[[], Awaitable[None]]) -> None:
    """Run ``coro`` every ``interval`` seconds."""
    while True:
        try:
            await coro()
        except Exception:
            logger.exception("Scheduled task failed")
        await asyncio.sleep(interval)


async def _run_daily(hour: int, coro: Callable[[], Awaitable[None]]) -> None:
    """Run ``coro`` once a day at ``hour:00`` UTC."""
    while True:
        await asyncio.sleep(seconds_until(hour))
        try:
            await coro()
        except Exception:
            logger.exception("Scheduled task failed")


def start_scheduler() -> None:
    """Start the periodic and daily cron loops."""
    _background_tasks.extend(
        [
            asyncio.create_task(_run_periodic(REMINDER_INTERVAL, send_reminders)),
            asyncio.create_task(_run_daily(CHECKIN_ALERT_HOUR_UTC, send_checkin_alerts)),
            asyncio.create_task(_run_daily(AT_RISK_HOUR_UTC, flag_at_risk_patients)),
        ]
    )


async def stop_scheduler() -> None:
    """Cancel all running background tasks."""
    for task in _background_tasks:
        task.cancel()
    await asyncio.gather(*_background_tasks, return_exceptions=True)
    _background_tasks.clear()
