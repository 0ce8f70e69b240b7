from datetime import datetime, timezone

import pytest

from rekur.errors import TimezoneError
from rekur.timezones import (
    detect_system_timezone,
    get_zone,
    is_ambiguous,
    is_nonexistent,
    normalize_timezone_input,
    observes_dst,
    resolve_local,
    suggest_timezone,
    timezone_offset,
    to_local,
    to_utc,
    validate_timezone,
)

NY = "America/New_York"


def utc(*args):
    return datetime(*args, tzinfo=timezone.utc)


@pytest.mark.unit
def test_gap_resolves_forward():
    local = datetime(2025, 3, 9, 2, 30)
    assert is_nonexistent(local, NY)
    resolved = resolve_local(local, NY)
    assert (resolved.hour, resolved.minute) == (3, 0)
    assert resolved.utcoffset().total_seconds() == -4 * 3600
    assert to_utc(resolved) == utc(2025, 3, 9, 7, 0)


@pytest.mark.unit
def test_overlap_resolves_to_earlier_instant():
    local = datetime(2025, 11, 2, 1, 30)
    assert is_ambiguous(local, NY)
    assert to_utc(local, NY) == utc(2025, 11, 2, 5, 30)


@pytest.mark.unit
def test_ordinary_time_is_neither():
    local = datetime(2025, 6, 1, 12, 0)
    assert not is_nonexistent(local, NY)
    assert not is_ambiguous(local, NY)
    assert to_utc(local, NY) == utc(2025, 6, 1, 16, 0)


@pytest.mark.unit
def test_naive_without_zone_is_utc():
    assert to_utc(datetime(2025, 1, 1, 12)) == utc(2025, 1, 1, 12)
    assert to_local(utc(2025, 1, 1, 12), NY).hour == 7


@pytest.mark.unit
def test_unknown_zone_suggests_close_names():
    with pytest.raises(TimezoneError) as info:
        get_zone("New_York")
    assert "America/New_York" in info.value.suggestions
    assert len(info.value.suggestions) <= 5


@pytest.mark.unit
def test_suggestions_and_aliases():
    assert "America/New_York" in suggest_timezone("new york")
    assert suggest_timezone("eastern")[0] == "America/New_York"
    assert normalize_timezone_input("PST") == "America/Los_Angeles"
    assert validate_timezone(" Europe/Paris ") == "Europe/Paris"


@pytest.mark.unit
def test_offsets_and_dst():
    assert timezone_offset(NY, utc(2025, 1, 15)) == "-05:00"
    assert timezone_offset(NY, utc(2025, 7, 15)) == "-04:00"
    assert timezone_offset("Asia/Kolkata", utc(2025, 1, 15)) == "+05:30"
    assert observes_dst(NY, 2025)
    assert not observes_dst("UTC", 2025)


@pytest.mark.unit
def test_detect_system_timezone_prefers_tz(monkeypatch):
    monkeypatch.setenv("TZ", "Europe/Paris")
    assert detect_system_timezone() == "Europe/Paris"
