"""Utilities for working with timestamps in UTC and the practice timezone."""

from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Optional
from zoneinfo import ZoneInfo

from nesema.config import get_settings


def utc_now() -> datetime:
    """Return the current time as a timezone-aware ``datetime`` in UTC."""

    return datetime.now(timezone.utc)


def ensure_utc(dt: datetime) -> datetime:
    """Normalise ``dt`` to a timezone-aware UTC ``datetime``."""

    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def practice_zone() -> ZoneInfo:
    return ZoneInfo(get_settings().practice_timezone)


def to_practice_time(dt: datetime) -> datetime:
    return ensure_utc(dt).astimezone(practice_zone())


def format_long_date(dt: datetime) -> str:
    """Return e.g. ``Monday 19 October 2026`` in the practice timezone."""

    local = to_practice_time(dt)
    return f"{local:%A} {local.day} {local:%B %Y}"


def format_day_month_year(value: datetime | date) -> str:
    """Return e.g. ``19 October 2026``."""

    if isinstance(value, datetime):
        value = to_practice_time(value)
    return f"{value.day} {value:%B %Y}"


def format_time(dt: datetime) -> str:
    """Return a 24-hour ``HH:MM`` string in the practice timezone."""

    return f"{to_practice_time(dt):%H:%M}"


def parse_iso_datetime(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO-8601 string (``Z`` suffix allowed) into UTC."""

    if not value:
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        return ensure_utc(datetime.fromisoformat(text))
    except ValueError:
        return None


__all__ = [
    "utc_now",
    "ensure_utc",
    "practice_zone",
    "to_practice_time",
    "format_long_date",
    "format_day_month_year",
    "format_time",
    "parse_iso_datetime",
]
