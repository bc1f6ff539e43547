"""
Pickup scheduling: parsing, status resolution and slot validation.

This is the one place pickup dates and times are interpreted. The list
filters, the transition engine's fulfillment checks and the presentation
endpoints all call into it, and all of them compare calendar dates in the
configured server time zone (ORDERS_TIMEZONE), never the host's local zone.
"""
import re
from datetime import date, datetime, time, timedelta, tzinfo
from enum import Enum
from typing import Any, Optional

from shared.config.pickup import PICKUP_CONFIG, SLOT_MINUTES
from shared.config.settings import PICKUP_NOTES_MAX_LENGTH, server_timezone

from .schemas import FulfillmentMethod, PickupSchedule


class PickupStatus(str, Enum):
    INCOMPLETE = "incomplete"
    INVALID_DATE_TIME = "invalid_datetime"
    OVERDUE = "overdue"
    TODAY = "today"
    TOMORROW = "tomorrow"
    UPCOMING = "upcoming"


_DATE_FORMATS = ("%Y-%m-%d", "%d/%m/%Y", "%Y/%m/%d")

_TIME_PATTERN = re.compile(
    r"^(?P<hour>\d{1,2}):(?P<minute>\d{2})(?::(?P<second>\d{2}))?\s*(?P<meridiem>[ap]\.?m\.?)?$",
    re.IGNORECASE,
)

_WEEKDAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")


def _is_missing(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def parse_pickup_date(value: Any) -> Optional[date]:
    """Parses a pickup date; returns None for anything unrecognised.

    Accepts date/datetime objects, YYYY-MM-DD, DD/MM/YYYY, YYYY/MM/DD and ISO-8601
    dates or datetimes. A datetime contributes its calendar date as written: the
    offset is ignored because a pickup date names a day, not an instant.
    """
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if not isinstance(value, str):
        return None
    text = value.strip()
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            continue
    try:
        return date.fromisoformat(text)
    except ValueError:
        pass
    try:
        return datetime.fromisoformat(text).date()
    except ValueError:
        return None


def parse_pickup_time(value: Any) -> Optional[time]:
    """Parses 24-hour HH:MM[:SS] or 12-hour H:MM am/pm into a 24-hour time."""
    if isinstance(value, time):
        return value
    if not isinstance(value, str):
        return None
    match = _TIME_PATTERN.match(value.strip())
    if match is None:
        return None
    hour = int(match["hour"])
    minute = int(match["minute"])
    second = int(match["second"] or 0)
    meridiem = match["meridiem"]
    if minute > 59 or second > 59:
        return None
    if meridiem:
        if not 1 <= hour <= 12:
            return None
        is_pm = meridiem.lower().startswith("p")
        hour = hour % 12 + (12 if is_pm else 0)
    elif hour > 23:
        return None
    return time(hour, minute, second)


def format_time_12h(value: time) -> str:
    hour12 = value.hour % 12 or 12
    suffix = "PM" if value.hour >= 12 else "AM"
    return f"{hour12}:{value.minute:02d} {suffix}"


def format_schedule(schedule: Any) -> Optional[PickupSchedule]:
    """Normalises a schedule for display: ISO date and 12-hour time.

    Returns None when the schedule does not parse.
    """
    raw_date, raw_time, notes = _schedule_fields(schedule)
    pickup_date = parse_pickup_date(raw_date)
    pickup_time = parse_pickup_time(raw_time)
    if pickup_date is None or pickup_time is None:
        return None
    return PickupSchedule(date=pickup_date.isoformat(), time=format_time_12h(pickup_time), notes=notes)


def _schedule_fields(schedule: Any) -> tuple:
    if schedule is None:
        return None, None, None
    if isinstance(schedule, dict):
        return schedule.get("date"), schedule.get("time"), schedule.get("notes")
    return getattr(schedule, "date", None), getattr(schedule, "time", None), getattr(schedule, "notes", None)


def to_server_time(moment: datetime, tz: Optional[tzinfo] = None) -> datetime:
    """Expresses an instant in the server zone; naive values are taken as server-local."""
    tz = tz or server_timezone()
    if moment.tzinfo is None:
        return moment.replace(tzinfo=tz)
    return moment.astimezone(tz)


def pickup_instant(schedule: Any, tz: Optional[tzinfo] = None) -> Optional[datetime]:
    raw_date, raw_time, _ = _schedule_fields(schedule)
    pickup_date = parse_pickup_date(raw_date)
    pickup_time = parse_pickup_time(raw_time)
    if pickup_date is None or pickup_time is None:
        return None
    return datetime.combine(pickup_date, pickup_time, tzinfo=tz or server_timezone())


def resolve_pickup_status(schedule: Any, now: datetime, tz: Optional[tzinfo] = None) -> PickupStatus:
    """Derives the pickup urgency of a schedule at `now`. Never raises."""
    tz = tz or server_timezone()
    raw_date, raw_time, _ = _schedule_fields(schedule)
    if _is_missing(raw_date) or _is_missing(raw_time):
        return PickupStatus.INCOMPLETE

    instant = pickup_instant(schedule, tz)
    if instant is None:
        return PickupStatus.INVALID_DATE_TIME

    local_now = to_server_time(now, tz)
    if instant < local_now:
        return PickupStatus.OVERDUE

    today = local_now.date()
    if instant.date() == today:
        return PickupStatus.TODAY
    if instant.date() == today + timedelta(days=1):
        return PickupStatus.TOMORROW
    return PickupStatus.UPCOMING


def validate_schedule(
    schedule: Any,
    method: FulfillmentMethod,
    now: datetime,
    tz: Optional[tzinfo] = None,
) -> list[str]:
    """Returns the problems with a pickup schedule; an empty list means it is valid."""
    errors = []
    raw_date, raw_time, notes = _schedule_fields(schedule)

    if notes and len(notes) > PICKUP_NOTES_MAX_LENGTH:
        errors.append(f"Pickup notes cannot exceed {PICKUP_NOTES_MAX_LENGTH} characters")

    if method is not FulfillmentMethod.PICKUP:
        return errors

    if _is_missing(raw_date):
        errors.append("Pickup date is required")
    if _is_missing(raw_time):
        errors.append("Pickup time is required")
    if errors:
        return errors

    instant = pickup_instant(schedule, tz)
    if instant is None:
        errors.append("Pickup date or time could not be understood")
    elif instant < to_server_time(now, tz):
        errors.append("Pickup date and time cannot be in the past")
    return errors


# --- Business hours ---

def business_hours_for(day: date) -> Optional[dict]:
    """Opening hours for a calendar day, or None when the location is closed."""
    hours = PICKUP_CONFIG["business_hours"].get(_WEEKDAYS[day.weekday()])
    if not hours or hours.get("closed"):
        return None
    return hours


def time_slots(open_time: str, close_time: str, step_minutes: int = SLOT_MINUTES) -> list[dict]:
    opens = parse_pickup_time(open_time)
    closes = parse_pickup_time(close_time)
    slots = []
    current = datetime.combine(date.min, opens)
    end = datetime.combine(date.min, closes)
    while current < end:
        slot = current.time()
        slots.append({"value": slot.strftime("%H:%M"), "label": format_time_12h(slot)})
        current += timedelta(minutes=step_minutes)
    return slots


def availability(day: date) -> dict:
    weekday = _WEEKDAYS[day.weekday()]
    hours = business_hours_for(day)
    if hours is None:
        return {
            "available": False,
            "reason": f"We are closed on {weekday}s",
            "business_hours": None,
        }
    return {
        "available": True,
        "date": day.isoformat(),
        "day_of_week": weekday,
        "business_hours": hours,
        "available_time_slots": time_slots(hours["open"], hours["close"]),
    }


def check_slot(raw_date: Any, raw_time: Any, now: datetime, tz: Optional[tzinfo] = None) -> list[str]:
    """Validates a requested pickup slot against the clock and business hours."""
    if _is_missing(raw_date) or _is_missing(raw_time):
        return ["Date and time are required"]

    schedule = PickupSchedule(date=str(raw_date), time=str(raw_time))
    errors = validate_schedule(schedule, FulfillmentMethod.PICKUP, now, tz)
    if errors:
        return errors

    pickup_date = parse_pickup_date(raw_date)
    pickup_time = parse_pickup_time(raw_time)
    hours = business_hours_for(pickup_date)
    if hours is None:
        return [f"We are closed on {_WEEKDAYS[pickup_date.weekday()]}s"]

    opens = parse_pickup_time(hours["open"])
    closes = parse_pickup_time(hours["close"])
    if not opens <= pickup_time < closes:
        return [
            f"Pickup time must be between {format_time_12h(opens)} and {format_time_12h(closes)}"
        ]
    return []
