from datetime import datetime, timezone

import pytest

from rekur.errors import ScopeError
from rekur.materialize import MaterializationManager
from rekur.models import ExceptionKind, SeriesException, TaskStatus
from rekur.rekur_env import MaterializationConfig
from rekur.rules import expand
from rekur.scope import (
    EntireSeries,
    TaskChanges,
    ThisAndFuture,
    ThisOccurrence,
    apply_edit,
    parse_scope,
)

NY = "America/New_York"
BEFORE = datetime(2025, 1, 5, 12, tzinfo=timezone.utc)


def utc(*args):
    return datetime(*args, tzinfo=timezone.utc)


def materialize(db, series_id, now=BEFORE):
    config = MaterializationConfig(default_timezone=NY, lookahead_days=30)
    return MaterializationManager(config).materialize_series(db, series_id, now)


@pytest.fixture
def ten_days(db, series_factory):
    """Daily at 09:00 New York, 2025-01-06 through 2025-01-15, all materialized."""
    series = series_factory(rrule="FREQ=DAILY;COUNT=10", name="standup", tags=["work"])
    assert materialize(db, series.id) == 10
    return series


@pytest.mark.unit
def test_parse_scope():
    at = utc(2025, 1, 8, 14)
    assert parse_scope("series") == EntireSeries()
    assert parse_scope("occurrence", at) == ThisOccurrence(at)
    assert parse_scope("this-and-future", at) == ThisAndFuture(at)
    with pytest.raises(ScopeError):
        parse_scope(None)
    with pytest.raises(ScopeError):
        parse_scope("future")
    with pytest.raises(ScopeError):
        parse_scope("sometimes", at)


@pytest.mark.unit
def test_missing_scope_is_an_error(db, ten_days):
    with pytest.raises(ScopeError):
        apply_edit(db, ten_days.id, None, TaskChanges(name="x"), BEFORE)


@pytest.mark.unit
def test_occurrence_edit_touches_one_instance(db, ten_days):
    at = utc(2025, 1, 8, 14)
    result = apply_edit(db, ten_days.id, ThisOccurrence(at), TaskChanges(name="standup (remote)"))

    assert result.task.name == "standup (remote)"
    names = [t.name for t in db.series_instances(ten_days.id)]
    assert names.count("standup (remote)") == 1
    exc = db.get_exception(ten_days.id, at)
    assert exc.kind == ExceptionKind.OVERRIDE and exc.task_id == result.task.id
    assert db.get_task(ten_days.template_task_id).name == "standup"


@pytest.mark.unit
def test_occurrence_edit_beyond_boundary_creates_the_instance(db, series_factory):
    series = series_factory()
    at = utc(2025, 3, 3, 14)
    result = apply_edit(db, series.id, ThisOccurrence(at), TaskChanges(add_tags=["moved"]))
    assert result.task.occurrence_dt == at
    assert result.task.tags == ["moved"]
    # A later pass does not create a second instance for it.
    materialize(db, series.id, utc(2025, 3, 1))
    assert len([t for t in db.series_instances(series.id) if t.occurrence_dt == at]) == 1


@pytest.mark.unit
def test_occurrence_scope_rejects_rule_changes(db, ten_days):
    with pytest.raises(ScopeError):
        apply_edit(
            db, ten_days.id, ThisOccurrence(utc(2025, 1, 8, 14)), TaskChanges(rrule="FREQ=WEEKLY")
        )


@pytest.mark.unit
def test_skipped_occurrence_cannot_be_edited(db, ten_days):
    at = utc(2025, 1, 9, 14)
    db.upsert_exception(SeriesException(ten_days.id, at, ExceptionKind.SKIP))
    with pytest.raises(ScopeError):
        apply_edit(db, ten_days.id, ThisOccurrence(at), TaskChanges(name="x"))


@pytest.mark.unit
def test_series_edit_updates_template_and_upcoming_pending(db, ten_days):
    first = db.series_instances(ten_days.id)[0]
    db.complete_task(first.id, BEFORE)

    result = apply_edit(
        db, ten_days.id, EntireSeries(), TaskChanges(name="daily standup"), now=BEFORE
    )
    assert result.task.name == "daily standup"
    assert result.updated_instances == 9
    instances = db.series_instances(ten_days.id)
    assert instances[0].name == "standup"
    assert {t.name for t in instances[1:]} == {"daily standup"}


@pytest.mark.unit
def test_series_rule_edit_reports_orphans(db, ten_days):
    db.upsert_exception(SeriesException(ten_days.id, utc(2025, 1, 7, 14), ExceptionKind.SKIP))
    result = apply_edit(
        db, ten_days.id, EntireSeries(), TaskChanges(rrule="FREQ=WEEKLY;BYDAY=MO"), now=BEFORE
    )
    assert result.series.rrule == "FREQ=WEEKLY;BYDAY=MO"
    assert [e.occurrence_dt for e in result.orphaned] == [utc(2025, 1, 7, 14)]
    assert db.get_exception(ten_days.id, utc(2025, 1, 7, 14)) is not None


@pytest.mark.unit
def test_split_partitions_the_occurrences(db, ten_days):
    at = utc(2025, 1, 10, 14)
    original_instants = list(expand(ten_days.rrule, ten_days.dtstart, NY))

    result = apply_edit(db, ten_days.id, ThisAndFuture(at), TaskChanges(name="standup v2"), BEFORE)

    old, new = result.series, result.new_series
    assert old.rrule == "FREQ=DAILY;COUNT=4;UNTIL=20250110T135959Z"
    assert new.rrule == "FREQ=DAILY;COUNT=6"
    assert new.dtstart == at
    assert new.split_from == old.id

    before = list(expand(old.rrule, old.dtstart, old.timezone))
    after = list(expand(new.rrule, new.dtstart, new.timezone))
    assert before + after == original_instants

    assert len(db.series_instances(old.id)) == 4
    moved = db.series_instances(new.id)
    assert len(moved) == 6
    assert {t.name for t in moved} == {"standup v2"}
    assert db.get_task(new.template_task_id).name == "standup v2"
    assert db.get_task(old.template_task_id).name == "standup"


@pytest.mark.unit
def test_split_carries_exceptions_forward(db, ten_days):
    skip_at = utc(2025, 1, 12, 14)
    db.upsert_exception(SeriesException(ten_days.id, skip_at, ExceptionKind.SKIP))
    result = apply_edit(
        db, ten_days.id, ThisAndFuture(utc(2025, 1, 10, 14)), TaskChanges(), BEFORE
    )
    assert db.get_exception(ten_days.id, skip_at) is None
    assert db.get_exception(result.new_series.id, skip_at).kind == ExceptionKind.SKIP


@pytest.mark.unit
def test_split_with_new_rule_supersedes_pending_instances(db, ten_days):
    at = utc(2025, 1, 10, 14)
    result = apply_edit(
        db, ten_days.id, ThisAndFuture(at), TaskChanges(rrule="FREQ=WEEKLY"), BEFORE
    )
    assert result.new_series.last_materialized_until is None
    superseded = [t for t in db.series_instances(ten_days.id) if t.occurrence_dt is None]
    assert len(superseded) == 6
    assert {t.status for t in superseded} == {TaskStatus.CANCELLED}

    materialize(db, result.new_series.id)
    new_due = [t.due_at for t in db.series_instances(result.new_series.id)]
    assert new_due[:2] == [at, utc(2025, 1, 17, 14)]


@pytest.mark.unit
def test_split_at_first_occurrence_needs_series_scope(db, ten_days):
    with pytest.raises(ScopeError):
        apply_edit(db, ten_days.id, ThisAndFuture(utc(2025, 1, 6, 14)), TaskChanges(), BEFORE)


@pytest.mark.unit
def test_split_at_non_occurrence_or_after_end(db, ten_days):
    with pytest.raises(ScopeError):
        apply_edit(db, ten_days.id, ThisAndFuture(utc(2025, 1, 8, 15)), TaskChanges(), BEFORE)
    with pytest.raises(ScopeError):
        apply_edit(db, ten_days.id, ThisAndFuture(utc(2025, 2, 1, 14)), TaskChanges(), BEFORE)


NOW = utc(2025, 1, 6, 12)


@pytest.fixture
def daily(db, series_factory):
    """Daily at 09:00 New York with no end; 2025-01-06 through 2025-02-04 materialized."""
    series = series_factory(name="standup")
    assert materialize(db, series.id, NOW) == 30
    return series


def pending(db, series_id):
    return [t for t in db.series_instances(series_id) if t.status == TaskStatus.PENDING]


@pytest.mark.unit
def test_series_rule_edit_resyncs_the_materialized_window(db, daily):
    result = apply_edit(
        db, daily.id, EntireSeries(), TaskChanges(rrule="FREQ=WEEKLY;BYDAY=MO"), NOW
    )
    assert result.superseded_instances == 25
    assert [t.due_at for t in pending(db, daily.id)] == [
        utc(2025, 1, 6, 14),
        utc(2025, 1, 13, 14),
        utc(2025, 1, 20, 14),
        utc(2025, 1, 27, 14),
        utc(2025, 2, 3, 14),
    ]
    superseded = [t for t in db.series_instances(daily.id) if t.occurrence_dt is None]
    assert len(superseded) == 25
    assert {t.status for t in superseded} == {TaskStatus.CANCELLED}
    # The boundary stays put and the next pass has nothing to add.
    assert db.get_series(daily.id).last_materialized_until == utc(2025, 2, 5, 12)
    assert materialize(db, daily.id, NOW) == 0


@pytest.mark.unit
def test_series_zone_edit_moves_upcoming_instances(db, daily):
    result = apply_edit(
        db, daily.id, EntireSeries(), TaskChanges(timezone="Europe/London"), NOW
    )
    assert result.superseded_instances == 30
    upcoming = pending(db, daily.id)
    assert len(upcoming) == 30
    # 09:00 London is 09:00Z in winter
    assert upcoming[0].due_at == utc(2025, 1, 7, 9)
    assert upcoming[-1].due_at == utc(2025, 2, 5, 9)
    assert {t.due_at.hour for t in upcoming} == {9}
    assert materialize(db, daily.id, NOW) == 0


@pytest.mark.unit
def test_series_rule_edit_keeps_hand_edited_instances(db, daily):
    at = utc(2025, 1, 8, 14)
    apply_edit(db, daily.id, ThisOccurrence(at), TaskChanges(name="standup (remote)"))
    apply_edit(db, daily.id, EntireSeries(), TaskChanges(rrule="FREQ=WEEKLY;BYDAY=MO"), NOW)
    edited = db.find_instance(daily.id, at)
    assert edited.status == TaskStatus.PENDING
    assert edited.name == "standup (remote)"


@pytest.mark.unit
def test_split_at_a_gap_shifted_occurrence_keeps_the_wall_clock(db, series_factory):
    series = series_factory(dtstart=datetime(2025, 3, 5, 2, 30))
    # 02:30 does not exist on 2025-03-09; that occurrence is 03:00 EDT.
    at = utc(2025, 3, 9, 7)
    horizon = utc(2025, 3, 20)
    original = list(expand(series.rrule, series.seed, NY, end=horizon))

    result = apply_edit(db, series.id, ThisAndFuture(at), TaskChanges(), utc(2025, 3, 1))

    old, new = result.series, result.new_series
    assert new.dtstart == at
    assert new.dtstart_wall == datetime(2025, 3, 9, 2, 30)
    before = list(expand(old.rrule, old.seed, NY))
    after = list(expand(new.rrule, new.seed, NY, end=horizon))
    assert before + after == original
    assert after[1] == utc(2025, 3, 10, 6, 30)  # 02:30 EDT


@pytest.mark.unit
def test_split_of_an_endless_biweekly_series_partitions_it(db, series_factory):
    series = series_factory(rrule="FREQ=WEEKLY;INTERVAL=2;BYDAY=MO,WE", name="review")
    assert materialize(db, series.id) == 5
    at = utc(2025, 2, 3, 14)
    horizon = utc(2025, 6, 30)
    original = list(expand(series.rrule, series.seed, NY, end=horizon))

    result = apply_edit(db, series.id, ThisAndFuture(at), TaskChanges(name="review v2"), BEFORE)

    old, new = result.series, result.new_series
    assert new.rrule == "FREQ=WEEKLY;INTERVAL=2;BYDAY=MO,WE"
    before = list(expand(old.rrule, old.seed, NY))
    after = list(expand(new.rrule, new.seed, NY, end=horizon))
    assert before == original[:4]
    assert before + after == original
    # Same fortnight as the split, then nothing in the week of 2025-02-10.
    assert after[:3] == [at, utc(2025, 2, 5, 14), utc(2025, 2, 17, 14)]

    assert len(db.series_instances(old.id)) == 4
    assert [t.due_at for t in db.series_instances(new.id)] == [at]
