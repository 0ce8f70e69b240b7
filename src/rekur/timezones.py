"""
Timezone resolution for recurring series.

Local wall-clock readings are turned into absolute instants with an explicit
DST policy:

- a nonexistent local time (spring-forward gap) moves forward to the first
  valid local time at or after it, e.g. 02:30 becomes 03:00 when clocks jump
  from 02:00 to 03:00;
- an ambiguous local time (fall-back overlap) resolves to the earlier of the
  two absolute instants.

An occurrence is never dropped.
"""

from __future__ import annotations

import os
from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError, available_timezones

from tzlocal import get_localzone_name

from .errors import TimezoneError

UTC = timezone.utc

COMMON_TIMEZONES = [
    "UTC",
    "America/New_York",
    "America/Chicago",
    "America/Denver",
    "America/Los_Angeles",
    "America/Toronto",
    "America/Vancouver",
    "Europe/London",
    "Europe/Paris",
    "Europe/Berlin",
    "Europe/Rome",
    "Europe/Madrid",
    "Europe/Amsterdam",
    "Europe/Stockholm",
    "Asia/Tokyo",
    "Asia/Seoul",
    "Asia/Shanghai",
    "Asia/Hong_Kong",
    "Asia/Singapore",
    "Asia/Bangkok",
    "Asia/Kolkata",
    "Asia/Dubai",
    "Australia/Sydney",
    "Australia/Melbourne",
    "Pacific/Auckland",
]

# Friendly names and abbreviations accepted on the command line.
TIMEZONE_ALIASES = {
    "est": "America/New_York",
    "edt": "America/New_York",
    "eastern": "America/New_York",
    "cst": "America/Chicago",
    "cdt": "America/Chicago",
    "central": "America/Chicago",
    "mst": "America/Denver",
    "mdt": "America/Denver",
    "mountain": "America/Denver",
    "pst": "America/Los_Angeles",
    "pdt": "America/Los_Angeles",
    "pacific": "America/Los_Angeles",
    "gmt": "UTC",
    "utc": "UTC",
    "z": "UTC",
    "bst": "Europe/London",
    "london": "Europe/London",
    "cet": "Europe/Paris",
    "paris": "Europe/Paris",
    "jst": "Asia/Tokyo",
    "tokyo": "Asia/Tokyo",
}

MAX_SUGGESTIONS = 5


def get_zone(name: str | ZoneInfo) -> ZoneInfo:
    """Return the ZoneInfo for an IANA name or raise TimezoneError."""
    if isinstance(name, ZoneInfo):
        return name
    if not isinstance(name, str) or not name.strip():
        raise TimezoneError(str(name), COMMON_TIMEZONES[:MAX_SUGGESTIONS])
    key = name.strip()
    try:
        return ZoneInfo(key)
    except (ZoneInfoNotFoundError, ValueError, OSError):
        raise TimezoneError(key, suggest_timezone(key)) from None


def validate_timezone(name: str) -> str:
    return get_zone(name).key


def _wall(instant: datetime, zone: ZoneInfo) -> datetime:
    return instant.astimezone(zone).replace(tzinfo=None, fold=0)


def _candidates(local: datetime, zone: ZoneInfo) -> tuple[datetime, datetime]:
    naive = local.replace(tzinfo=None)
    first = naive.replace(tzinfo=zone, fold=0).astimezone(UTC)
    second = naive.replace(tzinfo=zone, fold=1).astimezone(UTC)
    return first, second


def is_nonexistent(local: datetime, zone: str | ZoneInfo) -> bool:
    """True when the wall-clock reading falls in a spring-forward gap."""
    zone = get_zone(zone)
    naive = local.replace(tzinfo=None, fold=0)
    return all(_wall(c, zone) != naive for c in _candidates(naive, zone))


def is_ambiguous(local: datetime, zone: str | ZoneInfo) -> bool:
    """True when the wall-clock reading occurs twice (fall-back overlap)."""
    zone = get_zone(zone)
    naive = local.replace(tzinfo=None, fold=0)
    first, second = _candidates(naive, zone)
    return first != second and _wall(first, zone) == naive == _wall(second, zone)


def resolve_local(local: datetime, zone: str | ZoneInfo) -> datetime:
    """
    Resolve a naive wall-clock reading in zone to an aware datetime.

    The result carries the zone as tzinfo; ``to_utc`` gives the instant.
    """
    zone = get_zone(zone)
    naive = local.replace(tzinfo=None, fold=0)
    first, second = _candidates(naive, zone)
    valid = [c for c in (first, second) if _wall(c, zone) == naive]
    if valid:
        return min(valid).astimezone(zone)

    # In a gap: the wall clock is monotonic between the two candidates, so
    # bisect on whole seconds for the first instant reading >= nominal.
    lo, hi = sorted((first, second))
    lo_s, hi_s = int(lo.timestamp()), int(hi.timestamp())
    while lo_s < hi_s:
        mid = (lo_s + hi_s) // 2
        if _wall(datetime.fromtimestamp(mid, UTC), zone) >= naive:
            hi_s = mid
        else:
            lo_s = mid + 1
    return datetime.fromtimestamp(lo_s, UTC).astimezone(zone)


def to_utc(dt: datetime, zone: str | ZoneInfo | None = None) -> datetime:
    """
    Aware → UTC. A naive value is read as wall-clock time in zone (UTC when
    no zone is given).
    """
    if dt.tzinfo is None:
        if zone is None:
            return dt.replace(tzinfo=UTC)
        dt = resolve_local(dt, zone)
    return dt.astimezone(UTC)


def to_local(dt: datetime, zone: str | ZoneInfo) -> datetime:
    zone = get_zone(zone)
    if dt.tzinfo is None:
        return resolve_local(dt, zone)
    return dt.astimezone(zone)


def common_timezones() -> list[str]:
    return list(COMMON_TIMEZONES)


def normalize_timezone_input(text: str) -> str:
    """Map friendly names such as 'est' or 'pacific' to IANA names."""
    cleaned = (text or "").strip()
    return TIMEZONE_ALIASES.get(cleaned.lower(), cleaned)


def suggest_timezone(name: str) -> list[str]:
    """Return up to five valid zone names that resemble name."""
    needle = (name or "").strip().lower().replace(" ", "_")
    if not needle:
        return COMMON_TIMEZONES[:MAX_SUGGESTIONS]

    alias = TIMEZONE_ALIASES.get(needle)
    suggestions: list[str] = [alias] if alias else []

    def add(zone_name: str):
        if zone_name not in suggestions and len(suggestions) < MAX_SUGGESTIONS:
            suggestions.append(zone_name)

    for zone_name in COMMON_TIMEZONES:
        lowered = zone_name.lower()
        city = lowered.rsplit("/", 1)[-1]
        if needle in lowered or city in needle:
            add(zone_name)

    if len(suggestions) < MAX_SUGGESTIONS:
        for zone_name in sorted(available_timezones()):
            lowered = zone_name.lower()
            city = lowered.rsplit("/", 1)[-1]
            if needle in lowered or (len(city) > 3 and city in needle):
                add(zone_name)
    return suggestions


def detect_system_timezone() -> str:
    """$TZ when it names a valid zone, then tzlocal, then UTC."""
    for candidate in (os.environ.get("TZ", ""), _localzone_name()):
        candidate = (candidate or "").strip().lstrip(":")
        if not candidate:
            continue
        try:
            return validate_timezone(candidate)
        except TimezoneError:
            continue
    return "UTC"


def _localzone_name() -> str | None:
    try:
        return get_localzone_name()
    except (ZoneInfoNotFoundError, ValueError, OSError):
        return None


def timezone_offset(name: str, at: datetime | None = None) -> str:
    """UTC offset of zone at the given instant as '+HH:MM'."""
    zone = get_zone(name)
    at = at or datetime.now(UTC)
    offset = to_local(at, zone).utcoffset() or timedelta(0)
    minutes = int(offset.total_seconds() // 60)
    sign = "+" if minutes >= 0 else "-"
    hours, mins = divmod(abs(minutes), 60)
    return f"{sign}{hours:02d}:{mins:02d}"


def timezone_abbreviation(name: str, at: datetime | None = None) -> str:
    zone = get_zone(name)
    at = at or datetime.now(UTC)
    return to_local(at, zone).tzname() or zone.key


def observes_dst(name: str, year: int | None = None) -> bool:
    """True when the zone's offset differs between January and July."""
    zone = get_zone(name)
    year = year or datetime.now(UTC).year
    winter = datetime(year, 1, 1, 12, tzinfo=zone).utcoffset()
    summer = datetime(year, 7, 1, 12, tzinfo=zone).utcoffset()
    return winter != summer
