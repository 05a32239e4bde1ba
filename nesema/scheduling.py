"""Booking helpers: slot generation, fees, discount codes and ICS export.

Slots are generated in the practice timezone from the practitioner's weekly
availability and exposed to clients as UTC ISO timestamps.
"""

from __future__ import annotations

from datetime import date, datetime, time, timedelta, tzinfo
from typing import Any, Dict, Iterable, List, Mapping, Optional

from nesema.time_utils import ensure_utc, parse_iso_datetime, practice_zone, utc_now

BOOKING_WINDOW_DAYS = 14
MIN_LEAD_MINUTES = 30
DEFAULT_EVENT_SUMMARY = "Nesema session"


class BookingError(Exception):
    """Raised when a slot cannot be booked."""


class DiscountError(Exception):
    """Raised when a discount code cannot be applied."""


def _parse_hhmm(value: str) -> time:
    hours, minutes = (int(part) for part in value.split(":")[:2])
    return time(hour=hours, minute=minutes)


def _as_utc(value: Any) -> Optional[datetime]:
    if isinstance(value, datetime):
        return ensure_utc(value)
    if isinstance(value, str):
        return parse_iso_datetime(value)
    return None


def _iso_z(dt: datetime) -> str:
    return ensure_utc(dt).strftime("%Y-%m-%dT%H:%M:%S.000Z")


def _weekday_sunday_first(day: date) -> int:
    # 0 = Sunday ... 6 = Saturday
    return (day.weekday() + 1) % 7


def generate_slots(
    availability: Iterable[Mapping[str, Any]],
    session_length: int,
    buffer: int,
    booked: Iterable[Mapping[str, Any]],
    now: Optional[datetime] = None,
    tz: Optional[tzinfo] = None,
    days: int = BOOKING_WINDOW_DAYS,
) -> List[Dict[str, Any]]:
    """Return bookable days for the next *days* calendar days.

    Each day is ``{"date", "day_label", "date_label", "slots"}`` and each slot
    is ``{"time", "datetime", "available"}``. Slots starting within
    ``MIN_LEAD_MINUTES`` of *now* are omitted; slots overlapping an existing
    appointment are kept but marked unavailable.
    """

    now = ensure_utc(now or utc_now())
    tz = tz or practice_zone()
    step = timedelta(minutes=session_length + buffer)
    length = timedelta(minutes=session_length)
    earliest = now + timedelta(minutes=MIN_LEAD_MINUTES)

    by_day: Dict[int, Mapping[str, Any]] = {}
    for row in availability:
        if row.get("is_active", True) and row["day_of_week"] not in by_day:
            by_day[row["day_of_week"]] = row

    busy = []
    for appt in booked:
        start = _as_utc(appt.get("scheduled_at"))
        if start is None:
            continue
        busy.append((start, start + timedelta(minutes=appt.get("duration_mins") or session_length)))

    today = now.astimezone(tz).date()
    result: List[Dict[str, Any]] = []
    for offset in range(days):
        day = today + timedelta(days=offset)
        avail = by_day.get(_weekday_sunday_first(day))
        if not avail:
            continue

        cursor = datetime.combine(day, _parse_hhmm(avail["start_time"]), tzinfo=tz)
        end = datetime.combine(day, _parse_hhmm(avail["end_time"]), tzinfo=tz)
        slots = []
        while cursor + length <= end:
            slot_start = ensure_utc(cursor)
            if slot_start >= earliest:
                slot_end = slot_start + length
                available = not any(slot_start < b_end and slot_end > b_start for b_start, b_end in busy)
                slots.append(
                    {"time": f"{cursor:%H:%M}", "datetime": _iso_z(slot_start), "available": available}
                )
            cursor += step

        if slots:
            result.append(
                {
                    "date": day.isoformat(),
                    "day_label": f"{day:%a}",
                    "date_label": f"{day.day} {day:%b}",
                    "slots": slots,
                }
            )
    return result


def is_slot_available(days: Iterable[Mapping[str, Any]], scheduled_at: datetime) -> bool:
    """Return ``True`` when *scheduled_at* matches an available generated slot."""

    wanted = ensure_utc(scheduled_at)
    for day in days:
        for slot in day["slots"]:
            if slot["available"] and parse_iso_datetime(slot["datetime"]) == wanted:
                return True
    return False


def fee_for(practitioner: Mapping[str, Any], appointment_type: str) -> int:
    if appointment_type == "initial":
        return practitioner.get("initial_fee") or 0
    return practitioner.get("followup_fee") or 0


def apply_discount(
    code_row: Mapping[str, Any],
    appointment_type: str,
    amount_pence: int,
    now: Optional[datetime] = None,
) -> int:
    """Return the discounted amount or raise :class:`DiscountError`."""

    now = ensure_utc(now or utc_now())
    if not code_row.get("is_active"):
        raise DiscountError("Discount code is not active")
    valid_from = _as_utc(code_row.get("valid_from"))
    if valid_from and now < valid_from:
        raise DiscountError("Discount code is not yet valid")
    valid_until = _as_utc(code_row.get("valid_until"))
    if valid_until and now > valid_until:
        raise DiscountError("Discount code has expired")
    max_uses = code_row.get("max_uses")
    if max_uses is not None and (code_row.get("uses_count") or 0) >= max_uses:
        raise DiscountError("Discount code has reached its usage limit")
    applies_to = code_row.get("applies_to") or "all"
    if applies_to not in ("all", appointment_type):
        raise DiscountError(f"Discount code does not apply to {appointment_type} sessions")

    value = float(code_row["discount_value"])
    if code_row["discount_type"] == "percentage":
        reduction = round(amount_pence * value / 100)
    else:
        reduction = round(value * 100)
    return max(0, amount_pence - reduction)


def export_appointment_ics(
    appointment: Mapping[str, Any],
    summary: str = DEFAULT_EVENT_SUMMARY,
    description: str = "",
) -> Optional[str]:
    """Produce a single-event ICS string for a stored appointment."""

    start = _as_utc(appointment.get("scheduled_at"))
    if start is None:
        return None
    end = start + timedelta(minutes=appointment.get("duration_mins") or 60)

    def _fmt(dt: datetime) -> str:
        return dt.strftime("%Y%m%dT%H%M%SZ")

    lines = [
        "BEGIN:VCALENDAR",
        "VERSION:2.0",
        "PRODID:-//Nesema//Booking//EN",
        "BEGIN:VEVENT",
        f"UID:{appointment['id']}@nesema.com",
        f"DTSTAMP:{_fmt(utc_now())}",
        f"SUMMARY:{summary}",
        f"DTSTART:{_fmt(start)}",
        f"DTEND:{_fmt(end)}",
    ]
    if description:
        lines.append(f"DESCRIPTION:{description}")
    lines += ["END:VEVENT", "END:VCALENDAR"]
    return "\r\n".join(lines)


__all__ = [
    "BookingError",
    "DiscountError",
    "generate_slots",
    "is_slot_available",
    "fee_for",
    "apply_discount",
    "export_appointment_ics",
]
