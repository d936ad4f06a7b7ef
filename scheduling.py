"""
Service-provider calendar rules.

Times are "HH:MM" strings and dates are datetime.date; bookings are
serviceproviderschedule documents. Nothing here touches the database, the
assignment module feeds it.
"""

from datetime import date, datetime, timedelta
from typing import Dict, Iterable, List, Optional, Tuple

TIME_SLOTS = ("09:00-11:00", "11:00-13:00", "13:00-15:00", "15:00-17:00", "17:00-19:00")
FLEXIBLE = "flexible"
ACTIVE_BOOKING_STATUSES = ("scheduled", "in_progress")

WEEKDAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")

DEFAULT_WORKING_HOURS: Dict[str, Dict] = {
    day: {"start": "09:00", "end": "19:00", "available": day != "sunday"} for day in WEEKDAYS
}


def to_minutes(hhmm: str) -> int:
    try:
        hours, minutes = hhmm.split(":")
        value = int(hours) * 60 + int(minutes)
    except (AttributeError, ValueError):
        raise ValueError(f"Invalid time '{hhmm}', expected HH:MM")
    if not 0 <= value <= 24 * 60:
        raise ValueError(f"Invalid time '{hhmm}', expected HH:MM")
    return value


def slot_bounds(slot: str) -> Tuple[str, str]:
    if slot not in TIME_SLOTS:
        raise ValueError(f"Unknown time slot '{slot}'")
    start, end = slot.split("-")
    return start, end


def overlaps(a_start: str, a_end: str, b_start: str, b_end: str) -> bool:
    """Half-open interval overlap: back-to-back bookings do not clash."""
    return to_minutes(a_start) < to_minutes(b_end) and to_minutes(a_end) > to_minutes(b_start)


def validate_working_hours(hours: Dict[str, Dict]) -> Dict[str, Dict]:
    """Normalise a weekly working-hours map, filling missing days as unavailable."""
    out = {}
    for day, window in hours.items():
        key = day.lower()
        if key not in WEEKDAYS:
            raise ValueError(f"Unknown weekday '{day}'")
        available = bool(window.get("available", True))
        start, end = window.get("start", "09:00"), window.get("end", "18:00")
        if available and to_minutes(start) >= to_minutes(end):
            raise ValueError(f"{key}: start must be before end")
        out[key] = {"start": start, "end": end, "available": available}
    for day in WEEKDAYS:
        out.setdefault(day, {"start": "09:00", "end": "18:00", "available": False})
    return out


def working_window(provider: dict, day: date) -> Optional[Tuple[str, str]]:
    hours = provider.get("working_hours") or DEFAULT_WORKING_HOURS
    window = hours.get(WEEKDAYS[day.weekday()])
    if not window or not window.get("available", True):
        return None
    return window["start"], window["end"]


def active_bookings(bookings: Iterable[dict], day: date) -> List[dict]:
    iso = day.isoformat()
    return [b for b in bookings if b.get("service_date") == iso and b.get("status") in ACTIVE_BOOKING_STATUSES]


def available_slots(provider: dict, day: date, bookings: Iterable[dict], now: datetime) -> List[dict]:
    window = working_window(provider, day)
    if window is None:
        return []

    booked = active_bookings(bookings, day)
    if len(booked) >= provider.get("max_daily_orders", 1):
        return []

    earliest = now + timedelta(hours=provider.get("min_advance_booking_hours", 0))
    open_start, open_end = window
    slots = []
    for slot in TIME_SLOTS:
        start, end = slot_bounds(slot)
        if to_minutes(start) < to_minutes(open_start) or to_minutes(end) > to_minutes(open_end):
            continue
        starts_at = datetime.combine(day, datetime.strptime(start, "%H:%M").time())
        if starts_at < earliest:
            continue
        if any(overlaps(start, end, b["start_time"], b["end_time"]) for b in booked):
            continue
        slots.append({"slot": slot, "start_time": start, "end_time": end})
    return slots


def is_slot_available(provider: dict, day: date, slot: str, bookings: Iterable[dict], now: datetime) -> bool:
    if slot == FLEXIBLE:
        return working_window(provider, day) is not None and bool(available_slots(provider, day, bookings, now))
    return any(s["slot"] == slot for s in available_slots(provider, day, bookings, now))
