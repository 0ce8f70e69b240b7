from datetime import datetime, timezone

import pytest

from rekur.errors import ExceptionConflictError
from rekur.models import ExceptionKind, SeriesException
from rekur.overlay import (
    apply_exceptions,
    check_exception_target,
    find_orphaned_exceptions,
    is_occurrence,
    overlay_occurrences,
)
from rekur.rules import expand

NY = "America/New_York"
START = datetime(2025, 1, 6, 9, 0)


def utc(*args):
    return datetime(*args, tzinfo=timezone.utc)


def raw(count=5):
    return list(expand(f"FREQ=DAILY;COUNT={count}", START, NY))


@pytest.mark.unit
def test_skip_is_kept_in_overlay_and_hidden_in_view():
    skip = SeriesException("s1", utc(2025, 1, 7, 14), ExceptionKind.SKIP)
    overlaid = overlay_occurrences(raw(), [skip])
    assert len(overlaid) == 5
    assert overlaid[1].kind == ExceptionKind.SKIP
    assert not overlaid[1].needs_instance

    visible = apply_exceptions(raw(), [skip])
    assert [o.scheduled_at.day for o in visible] == [6, 8, 9, 10]


@pytest.mark.unit
def test_move_surfaces_at_target_and_resorts():
    move = SeriesException(
        "s1",
        utc(2025, 1, 7, 14),
        ExceptionKind.MOVE,
        task_id="t1",
        target_at=utc(2025, 1, 9, 20),
    )
    visible = apply_exceptions(raw(), [move])
    assert [(o.scheduled_at.day, o.effective_at.day) for o in visible] == [
        (6, 6),
        (8, 8),
        (9, 9),
        (7, 9),
        (10, 10),
    ]
    moved = visible[3]
    assert moved.is_moved and moved.task_id == "t1"
    assert not moved.needs_instance


@pytest.mark.unit
def test_override_keeps_its_slot():
    override = SeriesException("s1", utc(2025, 1, 8, 14), ExceptionKind.OVERRIDE, task_id="t2")
    visible = apply_exceptions(raw(), [override])
    assert visible[2].kind == ExceptionKind.OVERRIDE
    assert visible[2].effective_at == visible[2].scheduled_at


@pytest.mark.unit
def test_exception_invariants():
    with pytest.raises(ValueError):
        SeriesException("s1", utc(2025, 1, 6, 14), ExceptionKind.SKIP, task_id="t1")
    with pytest.raises(ValueError):
        SeriesException("s1", utc(2025, 1, 6, 14), ExceptionKind.MOVE)


@pytest.mark.unit
def test_exception_target_must_be_an_occurrence():
    assert is_occurrence("FREQ=DAILY", START, NY, utc(2025, 1, 9, 14))
    with pytest.raises(ExceptionConflictError):
        check_exception_target("FREQ=DAILY", START, NY, utc(2025, 1, 9, 15))


@pytest.mark.unit
def test_orphans_after_rule_change():
    exceptions = [
        SeriesException("s1", utc(2025, 1, 7, 14), ExceptionKind.SKIP),  # Tuesday
        SeriesException("s1", utc(2025, 1, 13, 14), ExceptionKind.SKIP),  # Monday
    ]
    orphaned = find_orphaned_exceptions("FREQ=WEEKLY;BYDAY=MO", START, NY, exceptions)
    assert [e.occurrence_dt.day for e in orphaned] == [7]
    assert find_orphaned_exceptions("FREQ=DAILY", START, NY, exceptions) == []
