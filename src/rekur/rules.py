"""
Recurrence rules: parsing, validation and expansion.

A rule is written in the canonical grammar

    FREQ=WEEKLY;INTERVAL=2;BYDAY=MO,WE;COUNT=10

with the clauses FREQ, INTERVAL, BYMONTH, BYMONTHDAY, BYDAY, BYSETPOS, COUNT
and UNTIL. Candidate wall-clock times come from ``dateutil.rrule``; each one
is resolved to an absolute instant in the series zone (see
``rekur.timezones``) before COUNT, UNTIL and the caller's bounds apply.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from typing import Iterator

from dateutil.rrule import DAILY, WEEKLY, MONTHLY, YEARLY
from dateutil.rrule import MO, TU, WE, TH, FR, SA, SU
from dateutil.rrule import rrule

from .errors import RuleValidationError
from .timezones import get_zone, resolve_local, to_local

FREQUENCIES = {
    "DAILY": DAILY,
    "WEEKLY": WEEKLY,
    "MONTHLY": MONTHLY,
    "YEARLY": YEARLY,
}

WEEKDAY_CODES = ("MO", "TU", "WE", "TH", "FR", "SA", "SU")
WEEKDAYS = dict(zip(WEEKDAY_CODES, (MO, TU, WE, TH, FR, SA, SU)))
DAY_NAMES = dict(zip(WEEKDAY_CODES, ("Mon", "Tue", "Wed", "Thu", "Fri", "Sat", "Sun")))

CLAUSE_ORDER = (
    "FREQ",
    "INTERVAL",
    "BYMONTH",
    "BYMONTHDAY",
    "BYDAY",
    "BYSETPOS",
    "COUNT",
    "UNTIL",
)

# Longest each month can be, February in a leap year.
MONTH_LENGTHS = (31, 29, 31, 30, 31, 30, 31, 31, 30, 31, 30, 31)

BYDAY_REGEX = re.compile(r"^([+-]?\d{1,2})?(MO|TU|WE|TH|FR|SA|SU)$")
UNTIL_REGEX = re.compile(r"^(\d{8})(?:T(\d{4}|\d{6}))?(Z)?$")


@dataclass(frozen=True)
class RecurrenceRule:
    freq: str
    interval: int = 1
    by_day: tuple[tuple[int | None, str], ...] = ()
    by_month_day: tuple[int, ...] = ()
    by_month: tuple[int, ...] = ()
    by_set_pos: tuple[int, ...] = ()
    count: int | None = None
    until: str | None = None

    def to_text(self) -> str:
        parts = [f"FREQ={self.freq}"]
        if self.interval != 1:
            parts.append(f"INTERVAL={self.interval}")
        if self.by_month:
            parts.append("BYMONTH=" + ",".join(str(m) for m in self.by_month))
        if self.by_month_day:
            parts.append("BYMONTHDAY=" + ",".join(str(d) for d in self.by_month_day))
        if self.by_day:
            parts.append(
                "BYDAY="
                + ",".join(f"{n}{code}" if n else code for n, code in self.by_day)
            )
        if self.by_set_pos:
            parts.append("BYSETPOS=" + ",".join(str(p) for p in self.by_set_pos))
        if self.count is not None:
            parts.append(f"COUNT={self.count}")
        if self.until is not None:
            parts.append(f"UNTIL={self.until}")
        return ";".join(parts)

    def __str__(self) -> str:
        return self.to_text()

    @property
    def is_finite(self) -> bool:
        return self.count is not None or self.until is not None

    def truncated(self, until=..., count=...) -> "RecurrenceRule":
        """
        Copy with new limits. An aware datetime for until is stored as UTC
        text; pass None to drop a limit.
        """
        changes = {}
        if until is not ...:
            if isinstance(until, datetime):
                until = _format_until(until)
            elif until is not None:
                _parse_until(until)
            changes["until"] = until
        if count is not ...:
            if count is not None and count < 1:
                raise RuleValidationError("COUNT", "must be a positive integer")
            changes["count"] = count
        return replace(self, **changes)

    def until_instant(self, zone) -> datetime | None:
        """UNTIL as an aware UTC instant, resolved against the series zone."""
        if self.until is None:
            return None
        value, is_utc, date_only = _parse_until(self.until)
        if is_utc:
            return value.replace(tzinfo=timezone.utc)
        if date_only:
            value = value.replace(hour=23, minute=59, second=59)
        return resolve_local(value, zone).astimezone(timezone.utc)

    def candidates(self, dtstart: datetime) -> Iterator[datetime]:
        """Naive wall-clock candidates from dateutil, without COUNT or UNTIL."""
        kwargs = dict(dtstart=dtstart, interval=self.interval, cache=False)
        if self.by_day:
            kwargs["byweekday"] = [
                WEEKDAYS[code](n) if n else WEEKDAYS[code] for n, code in self.by_day
            ]
        if self.by_month_day:
            kwargs["bymonthday"] = list(self.by_month_day)
        if self.by_month:
            kwargs["bymonth"] = list(self.by_month)
        if self.by_set_pos:
            kwargs["bysetpos"] = list(self.by_set_pos)
        return iter(rrule(FREQUENCIES[self.freq], **kwargs))


def _format_until(dt: datetime) -> str:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).strftime("%Y%m%dT%H%M%SZ")


def _parse_until(text: str) -> tuple[datetime, bool, bool]:
    """Return (naive value, is_utc, date_only) or raise naming UNTIL."""
    m = UNTIL_REGEX.match(text.strip().upper())
    if not m:
        raise RuleValidationError(
            "UNTIL", f"{text!r} is not YYYYMMDD, YYYYMMDDTHHMMSS or YYYYMMDDTHHMMSSZ"
        )
    day, clock, z = m.groups()
    if z and not clock:
        raise RuleValidationError("UNTIL", f"{text!r}: a UTC value needs a time")
    try:
        if clock is None:
            value = datetime.strptime(day, "%Y%m%d")
        elif len(clock) == 4:
            value = datetime.strptime(day + clock, "%Y%m%d%H%M")
        else:
            value = datetime.strptime(day + clock, "%Y%m%d%H%M%S")
    except ValueError:
        raise RuleValidationError("UNTIL", f"{text!r} is not a real date") from None
    return value, bool(z), clock is None


def _positive_int(clause: str, value: str) -> int:
    try:
        number = int(value)
    except ValueError:
        raise RuleValidationError(clause, f"{value!r} is not an integer") from None
    if number < 1:
        raise RuleValidationError(clause, f"must be a positive integer, got {number}")
    return number


def _int_list(clause: str, value: str, low: int, high: int, signed: bool) -> tuple:
    numbers = []
    for token in value.split(","):
        token = token.strip()
        try:
            number = int(token)
        except ValueError:
            raise RuleValidationError(clause, f"{token!r} is not an integer") from None
        if number == 0 or abs(number) < low or abs(number) > high:
            raise RuleValidationError(clause, f"{number} is out of range")
        if number < 0 and not signed:
            raise RuleValidationError(clause, f"{number} cannot be negative")
        if number in numbers:
            raise RuleValidationError(clause, f"{number} is listed twice")
        numbers.append(number)
    return tuple(numbers)


def _parse_by_day(value: str, freq: str) -> tuple[tuple[int | None, str], ...]:
    entries = []
    for token in value.split(","):
        token = token.strip().upper()
        m = BYDAY_REGEX.match(token)
        if not m:
            raise RuleValidationError("BYDAY", f"{token!r} is not a weekday code")
        ordinal = int(m.group(1)) if m.group(1) else None
        code = m.group(2)
        if ordinal is not None:
            if freq in ("DAILY", "WEEKLY"):
                raise RuleValidationError(
                    "BYDAY",
                    f"{token!r}: ordinal weekdays need FREQ=MONTHLY or FREQ=YEARLY",
                )
            limit = 5 if freq == "MONTHLY" else 53
            if ordinal == 0 or abs(ordinal) > limit:
                raise RuleValidationError("BYDAY", f"{token!r}: ordinal out of range")
        entry = (ordinal, code)
        if entry in entries:
            raise RuleValidationError("BYDAY", f"{token!r} is listed twice")
        entries.append(entry)
    return tuple(entries)


def _month_day_fits(month: int, day: int) -> bool:
    return abs(day) <= MONTH_LENGTHS[month - 1]


def parse_rule(text: str) -> RecurrenceRule:
    """
    Parse canonical rule text into a RecurrenceRule.

    Raises RuleValidationError naming the offending clause. Nothing is
    silently corrected.
    """
    if text is None or not str(text).strip():
        raise RuleValidationError("RRULE", "rule text is empty")
    body = str(text).strip()
    if body.upper().startswith("RRULE:"):
        body = body[6:]

    clauses: dict[str, str] = {}
    for part in body.split(";"):
        part = part.strip()
        if not part:
            continue
        if "=" not in part:
            raise RuleValidationError(part.upper(), "expected NAME=VALUE")
        name, value = part.split("=", 1)
        name = name.strip().upper()
        value = value.strip()
        if name not in CLAUSE_ORDER:
            raise RuleValidationError(name, "unknown clause")
        if name in clauses:
            raise RuleValidationError(name, "clause given more than once")
        if not value:
            raise RuleValidationError(name, "value is empty")
        clauses[name] = value

    if "FREQ" not in clauses:
        raise RuleValidationError("FREQ", "missing frequency")
    freq = clauses["FREQ"].upper()
    if freq not in FREQUENCIES:
        raise RuleValidationError(
            "FREQ", f"unknown frequency {freq!r}; expected one of {', '.join(FREQUENCIES)}"
        )

    interval = _positive_int("INTERVAL", clauses.get("INTERVAL", "1"))
    count = _positive_int("COUNT", clauses["COUNT"]) if "COUNT" in clauses else None
    by_month = (
        _int_list("BYMONTH", clauses["BYMONTH"], 1, 12, signed=False)
        if "BYMONTH" in clauses
        else ()
    )
    by_month_day = (
        _int_list("BYMONTHDAY", clauses["BYMONTHDAY"], 1, 31, signed=True)
        if "BYMONTHDAY" in clauses
        else ()
    )
    by_day = _parse_by_day(clauses["BYDAY"], freq) if "BYDAY" in clauses else ()
    by_set_pos = (
        _int_list("BYSETPOS", clauses["BYSETPOS"], 1, 366, signed=True)
        if "BYSETPOS" in clauses
        else ()
    )
    until = None
    if "UNTIL" in clauses:
        until = clauses["UNTIL"].upper()
        _parse_until(until)

    if by_month_day and freq == "WEEKLY":
        raise RuleValidationError("BYMONTHDAY", "not valid with FREQ=WEEKLY")
    if by_month_day and any(n is not None for n, _ in by_day):
        raise RuleValidationError(
            "BYDAY", "ordinal weekdays cannot be combined with BYMONTHDAY"
        )
    if by_set_pos and not (by_day or by_month_day or by_month):
        raise RuleValidationError(
            "BYSETPOS", "requires BYDAY, BYMONTHDAY or BYMONTH to select from"
        )
    if by_month and by_month_day:
        if not any(_month_day_fits(m, d) for m in by_month for d in by_month_day):
            raise RuleValidationError(
                "BYMONTHDAY", "no listed day exists in any month of BYMONTH"
            )

    return RecurrenceRule(
        freq=freq,
        interval=interval,
        by_day=by_day,
        by_month_day=by_month_day,
        by_month=by_month,
        by_set_pos=by_set_pos,
        count=count,
        until=until,
    )


def validate_rule(text: str, timezone_name: str) -> RecurrenceRule:
    """Parse text and check the zone it will be expanded in."""
    rule = parse_rule(text)
    get_zone(timezone_name)
    return rule


def _coerce(rule: RecurrenceRule | str) -> RecurrenceRule:
    return rule if isinstance(rule, RecurrenceRule) else parse_rule(rule)


def _seed(start: datetime, zone) -> datetime:
    """Naive wall-clock seed for dateutil; a naive start already is one."""
    if start.tzinfo is None:
        return start.replace(fold=0)
    return to_local(start, zone).replace(tzinfo=None, fold=0)


def expand(
    rule: RecurrenceRule | str,
    start: datetime,
    timezone_name,
    end: datetime | None = None,
    after: datetime | None = None,
) -> Iterator[datetime]:
    """
    Yield the occurrences of rule as aware datetimes in the series zone.

    start is the series start; a naive value is wall-clock time in the zone.
    COUNT counts from start. UNTIL and end are inclusive upper bounds; after
    is an exclusive lower bound applied after counting. The output is strictly
    increasing. Without COUNT, UNTIL or end the sequence is infinite.
    """
    rule = _coerce(rule)
    zone = get_zone(timezone_name)
    seed = _seed(start, zone)

    limits = [x for x in (rule.until_instant(zone), end) if x is not None]
    limit = min(limits) if limits else None

    emitted = 0
    last = None
    for local in rule.candidates(seed):
        instant = resolve_local(local, zone)
        # A gap can shift two candidates onto the same instant.
        if last is not None and instant <= last:
            continue
        if limit is not None and instant > limit:
            return
        last = instant
        emitted += 1
        if after is None or instant > after:
            yield instant
        if rule.count is not None and emitted >= rule.count:
            return


def occurrences_between(
    rule: RecurrenceRule | str,
    start: datetime,
    timezone_name,
    window_start: datetime,
    window_end: datetime,
) -> list[datetime]:
    """Occurrences in the closed interval [window_start, window_end]."""
    after = window_start - timedelta(microseconds=1)
    return list(expand(rule, start, timezone_name, end=window_end, after=after))


def next_occurrence(
    rule: RecurrenceRule | str, start: datetime, timezone_name, after: datetime
) -> datetime | None:
    return next(expand(rule, start, timezone_name, after=after), None)


def nominal_time(
    rule: RecurrenceRule | str, start: datetime, timezone_name, instant: datetime
) -> datetime | None:
    """
    The naive wall-clock candidate that expands to instant, or None when
    instant is not an occurrence. It differs from the local reading of
    instant only when the candidate fell in a DST gap.
    """
    rule = _coerce(rule)
    zone = get_zone(timezone_name)
    target = instant.astimezone(timezone.utc)
    for occurrence in expand(rule, start, zone, end=target):
        if occurrence.astimezone(timezone.utc) == target:
            break
    else:
        return None
    seed = _seed(start, zone)
    for local in rule.candidates(seed):
        resolved = resolve_local(local, zone).astimezone(timezone.utc)
        if resolved == target:
            return local
        if resolved > target:
            break
    return None


def normalize_rule(text: str, dtstart: datetime, timezone_name: str) -> str:
    """
    Render a series as DTSTART/RRULE lines:

        DTSTART;TZID=Europe/Paris:20250106T090000
        RRULE:FREQ=WEEKLY;BYDAY=MO
    """
    rule = parse_rule(text)
    zone = get_zone(timezone_name)
    local = to_local(dtstart, zone)
    return f"DTSTART;TZID={zone.key}:{local.strftime('%Y%m%dT%H%M%S')}\nRRULE:{rule}"


def describe_rule(rule: RecurrenceRule | str) -> str:
    """A short English summary such as 'every 2 weeks on Mon, Wed'."""
    rule = _coerce(rule)
    unit = {"DAILY": "day", "WEEKLY": "week", "MONTHLY": "month", "YEARLY": "year"}[
        rule.freq
    ]
    text = f"every {unit}" if rule.interval == 1 else f"every {rule.interval} {unit}s"
    if rule.by_day:
        names = []
        for n, code in rule.by_day:
            day = DAY_NAMES[code]
            names.append(f"{_ordinal_words(n)} {day}" if n else day)
        text += " on " + ", ".join(names)
    if rule.by_month_day:
        text += " on day " + ", ".join(str(d) for d in rule.by_month_day)
    if rule.by_month:
        text += " in month " + ", ".join(str(m) for m in rule.by_month)
    if rule.by_set_pos:
        text += " (position " + ", ".join(str(p) for p in rule.by_set_pos) + ")"
    if rule.count is not None:
        text += f", {rule.count} times"
    if rule.until is not None:
        text += f", until {rule.until}"
    return text


def _ordinal_words(n: int) -> str:
    if n == -1:
        return "last"
    if n < 0:
        return f"{_ordinal_words(-n)} from last"
    suffix = {1: "st", 2: "nd", 3: "rd"}.get(n if n < 20 else n % 10, "th")
    return f"{n}{suffix}"
