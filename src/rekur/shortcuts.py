"""
Command-line recurrence shortcuts compiled to canonical rule text.

    compile_recurrence("weekly", on="mon,wed", count=10)
    -> "FREQ=WEEKLY;BYDAY=MO,WE;COUNT=10"

The rule engine only ever sees the canonical form.
"""

from __future__ import annotations

import re
from datetime import date, datetime, time, timedelta, timezone

from dateutil.parser import parse as dateutil_parse
from dateutil.parser import ParserError

from .errors import InvalidInputError
from .rules import WEEKDAY_CODES, parse_rule
from .timezones import get_zone, resolve_local

SHORTCUTS = {
    "daily": "FREQ=DAILY",
    "weekly": "FREQ=WEEKLY",
    "monthly": "FREQ=MONTHLY",
    "yearly": "FREQ=YEARLY",
    "annually": "FREQ=YEARLY",
    "weekdays": "FREQ=WEEKLY;BYDAY=MO,TU,WE,TH,FR",
    "weekends": "FREQ=WEEKLY;BYDAY=SA,SU",
}

DAY_GROUPS = {
    "weekdays": ["MO", "TU", "WE", "TH", "FR"],
    "workdays": ["MO", "TU", "WE", "TH", "FR"],
    "weekends": ["SA", "SU"],
    "daily": ["MO", "TU", "WE", "TH", "FR", "SA", "SU"],
    "everyday": ["MO", "TU", "WE", "TH", "FR", "SA", "SU"],
}

DAY_NAMES = {
    "mon": "MO", "monday": "MO", "m": "MO", "mo": "MO",
    "tue": "TU", "tuesday": "TU", "tu": "TU", "tues": "TU",
    "wed": "WE", "wednesday": "WE", "w": "WE", "we": "WE",
    "thu": "TH", "thursday": "TH", "th": "TH", "thur": "TH", "thurs": "TH",
    "fri": "FR", "friday": "FR", "f": "FR", "fr": "FR",
    "sat": "SA", "saturday": "SA", "sa": "SA",
    "sun": "SU", "sunday": "SU", "su": "SU",
}  # fmt: skip

DEFAULT_TIME = time(9, 0)

RELATIVE_DAYS = {"today", "tomorrow", "yesterday"} | {k for k in DAY_NAMES if len(k) >= 3}

TIME_REGEX = re.compile(r"^(\d{1,2})(?::(\d{2}))?(?::(\d{2}))?\s*(am|pm|a|p)?$")


def parse_days(text: str) -> list[str]:
    """'mon,wed', 'monday, friday' or a group such as 'weekdays' → weekday codes."""
    cleaned = (text or "").strip().lower()
    if cleaned in DAY_GROUPS:
        return list(DAY_GROUPS[cleaned])
    codes: list[str] = []
    invalid = []
    for token in cleaned.split(","):
        token = token.strip()
        if not token:
            continue
        code = DAY_NAMES.get(token)
        if code is None:
            invalid.append(token)
        elif code not in codes:
            codes.append(code)
    if invalid:
        raise InvalidInputError(
            f"Invalid day(s): {', '.join(invalid)}. Use names like 'mon,wed,fri',"
            " 'monday,friday' or a group: weekdays, weekends, daily"
        )
    if not codes:
        raise InvalidInputError(f"No days given in {text!r}; e.g. 'mon,wed,fri' or 'weekdays'")
    return codes


def parse_time_of_day(text: str) -> time:
    """'14:30', '9:00 AM', '9pm', '9', 'noon', 'midnight' → time."""
    cleaned = (text or "").strip().lower().replace(".", "")
    if cleaned == "noon":
        return time(12, 0)
    if cleaned == "midnight":
        return time(0, 0)
    m = TIME_REGEX.match(cleaned)
    if m:
        hour = int(m.group(1))
        minute = int(m.group(2) or 0)
        second = int(m.group(3) or 0)
        meridian = m.group(4)
        if meridian:
            if not 1 <= hour <= 12:
                m = None
            else:
                hour = hour % 12 + (12 if meridian.startswith("p") else 0)
        if m and hour < 24 and minute < 60 and second < 60:
            return time(hour, minute, second)
    raise InvalidInputError(
        f"Invalid time {text!r}; use '14:30', '9:00 AM', '9pm', 'noon' or 'midnight'"
    )


def parse_date_input(
    text: str, today: date, dayfirst: bool = False, yearfirst: bool = True
) -> date:
    """
    'today', 'tomorrow', a weekday name (next one) or any date dateutil reads;
    dayfirst and yearfirst settle dates such as 03/04/05.
    """
    cleaned = (text or "").strip().lower()
    if cleaned == "today":
        return today
    if cleaned == "tomorrow":
        return today + timedelta(days=1)
    if cleaned == "yesterday":
        return today - timedelta(days=1)
    if cleaned in RELATIVE_DAYS:
        weekday = WEEKDAY_CODES.index(DAY_NAMES[cleaned])
        return today + timedelta(days=(weekday - today.weekday()) % 7 or 7)
    try:
        return dateutil_parse(
            text,
            default=datetime.combine(today, time()),
            dayfirst=dayfirst,
            yearfirst=yearfirst,
        ).date()
    except (ParserError, ValueError, OverflowError):
        raise InvalidInputError(f"Invalid date {text!r}; try YYYY-MM-DD or 'tomorrow'") from None


def parse_datetime_input(
    text: str, zone, now: datetime, dayfirst: bool = False, yearfirst: bool = True
) -> datetime:
    """
    A user date/time in zone → aware datetime. A date alone means 09:00
    local; 'now' is now.
    """
    zone = get_zone(zone)
    cleaned = (text or "").strip()
    if cleaned.lower() == "now":
        return now
    local_today = now.astimezone(zone).date()
    words = cleaned.split()
    # "tomorrow 14:00", "friday 9am"
    if len(words) >= 2 and words[0].lower() in RELATIVE_DAYS:
        day = parse_date_input(words[0], local_today)
        at = parse_time_of_day(" ".join(words[1:]))
        return resolve_local(datetime.combine(day, at), zone)
    if cleaned.lower() in RELATIVE_DAYS:
        day = parse_date_input(cleaned, local_today)
        return resolve_local(datetime.combine(day, DEFAULT_TIME), zone)
    try:
        parsed = dateutil_parse(
            cleaned,
            default=datetime.combine(local_today, DEFAULT_TIME),
            dayfirst=dayfirst,
            yearfirst=yearfirst,
        )
    except (ParserError, ValueError, OverflowError):
        raise InvalidInputError(
            f"Invalid date/time {text!r}; try 'YYYY-MM-DD HH:MM' or 'tomorrow 9am'"
        ) from None
    if parsed.tzinfo is not None:
        return parsed
    return resolve_local(parsed, zone)


def _until_text(until: date | datetime) -> str:
    if isinstance(until, datetime):
        if until.tzinfo is not None:
            return until.astimezone(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
        return until.strftime("%Y%m%dT%H%M%S")
    return until.strftime("%Y%m%d")


def compile_recurrence(
    shortcut: str | None,
    every: int | None = None,
    on: str | None = None,
    until: date | datetime | None = None,
    count: int | None = None,
) -> str:
    """
    Build canonical rule text from shortcut options.

    shortcut is one of daily, weekly, monthly, yearly, weekdays, weekends,
    or a canonical rule passed through unchanged. ``on`` without a shortcut
    means weekly.
    """
    name = (shortcut or "").strip()
    if "=" in name:
        text = name
    elif name:
        text = SHORTCUTS.get(name.lower())
        if text is None:
            raise InvalidInputError(
                f"Unknown recurrence {shortcut!r}; expected one of {', '.join(SHORTCUTS)}"
            )
    elif on:
        text = SHORTCUTS["weekly"]
    else:
        raise InvalidInputError("No recurrence given")

    if every is not None:
        if every < 1:
            raise InvalidInputError("--every must be at least 1")
        if "INTERVAL=" in text.upper():
            raise InvalidInputError("--every conflicts with the rule's INTERVAL")
        if every != 1:
            text += f";INTERVAL={every}"
    if on:
        if "BYDAY=" in text.upper():
            raise InvalidInputError(f"--on conflicts with {name!r}, which already names its days")
        text += ";BYDAY=" + ",".join(parse_days(on))
    if until is not None:
        text += f";UNTIL={_until_text(until)}"
    if count is not None:
        if count < 1:
            raise InvalidInputError("--count must be at least 1")
        text += f";COUNT={count}"
    return parse_rule(text).to_text()


def series_start(day: date, at: time | None) -> datetime:
    """
    First occurrence seed: day at the given (or default) wall-clock time,
    naive. The series resolves it in its zone and keeps the wall time, so a
    02:30 start on a spring-forward day stays 02:30 on later days.
    """
    return datetime.combine(day, at or DEFAULT_TIME)
