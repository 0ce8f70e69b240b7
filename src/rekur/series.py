"""
Series lifecycle: create, pause/resume, boundary movement, rule edits,
duplication and deletion.

Functions take the DatabaseManager as their first argument; multi-step
changes run inside ``db.transaction()``.
"""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime

from .errors import BoundaryInvariantError, InvalidInputError
from .model import DatabaseManager
from .models import Series, SeriesException, Task, TaskStatus
from .overlay import find_orphaned_exceptions
from .rules import validate_rule
from .shared import log_msg, new_id, utc_now
from .timezones import to_local, to_utc, validate_timezone


def _start_instant(dtstart: datetime, timezone_name: str) -> datetime:
    """Aware → UTC; naive values are wall-clock time in the series zone."""
    return to_utc(dtstart, timezone_name)


def _wall_start(dtstart: datetime, timezone_name: str) -> datetime:
    """Naive wall-clock reading of a start; naive values are kept as given."""
    if dtstart.tzinfo is None:
        return dtstart.replace(fold=0)
    return to_local(dtstart, timezone_name).replace(tzinfo=None, fold=0)


def create_series(
    db: DatabaseManager,
    template_task_id: str,
    rrule: str,
    dtstart: datetime,
    timezone: str,
) -> Series:
    """
    Attach a recurrence rule to a template task.

    The rule text is stored in canonical form and the template loses its
    due date: scheduling belongs to the rule.
    """
    timezone = validate_timezone(timezone)
    rule = validate_rule(rrule, timezone)
    with db.transaction():
        template = db.get_task(template_task_id)
        if template.series_id is not None:
            raise InvalidInputError("A series instance cannot be used as a template")
        if db.get_series_by_template(template.id) is not None:
            raise InvalidInputError(f"Task {template.short_id} is already a series template")
        series = db.insert_series(
            Series(
                id=new_id(),
                template_task_id=template.id,
                rrule=rule.to_text(),
                dtstart=_start_instant(dtstart, timezone),
                timezone=timezone,
                dtstart_wall=_wall_start(dtstart, timezone),
            )
        )
        if template.due_at is not None:
            db.update_task(template.id, due_at=None)
    log_msg(f"created series {series.id}: {series.rrule} from {series.dtstart} in {timezone}")
    return series


def pause_series(db: DatabaseManager, series_id: str) -> Series:
    series = db.update_series(series_id, active=False)
    log_msg(f"paused series {series_id}")
    return series


def resume_series(db: DatabaseManager, series_id: str) -> Series:
    series = db.update_series(series_id, active=True)
    log_msg(f"resumed series {series_id}")
    return series


def boundary(series: Series) -> datetime | None:
    """The latest instant up to which instances are guaranteed to exist."""
    return series.last_materialized_until


def advance_boundary(db: DatabaseManager, series_id: str, new_boundary: datetime) -> Series:
    with db.transaction():
        series = db.get_series(series_id)
        current = series.last_materialized_until
        if current is not None and new_boundary < current:
            raise BoundaryInvariantError(
                f"Boundary for series {series_id} cannot move back from "
                f"{current.isoformat()} to {new_boundary.isoformat()}"
            )
        if current == new_boundary:
            return series
        series = db.update_series(series_id, last_materialized_until=new_boundary)
    log_msg(f"series {series_id} boundary {current} -> {new_boundary}")
    return series


def rollback_boundary(db: DatabaseManager, series_id: str, to: datetime | None = None) -> Series:
    """Administrative: move the boundary back (or clear it)."""
    with db.transaction():
        before = db.get_series(series_id).last_materialized_until
        series = db.update_series(series_id, last_materialized_until=to)
    log_msg(f"rolled back series {series_id} boundary {before} -> {to}")
    return series


def update_series_rule(
    db: DatabaseManager,
    series_id: str,
    rrule: str | None = None,
    timezone: str | None = None,
    dtstart: datetime | None = None,
) -> tuple[Series, list[SeriesException]]:
    """
    Change the rule, zone or start of a series.

    The boundary stays where it is, so occurrences the new rule produces at
    or before it are not materialized and existing instances keep their due
    instants. Returns the updated series and the exceptions the new rule no
    longer produces; those are left in place.
    """
    with db.transaction():
        series = db.get_series(series_id)
        zone = validate_timezone(timezone) if timezone else series.timezone
        rule = validate_rule(rrule if rrule else series.rrule, zone)
        fields = {}
        if rrule:
            fields["rrule"] = rule.to_text()
        if timezone:
            fields["timezone"] = zone
        if dtstart is not None:
            fields["dtstart"] = _start_instant(dtstart, zone)
            fields["dtstart_wall"] = _wall_start(dtstart, zone)
        elif zone != series.timezone:
            # Keep the wall-clock start, read in the new zone.
            wall = _wall_start(series.seed, series.timezone)
            fields["dtstart"] = _start_instant(wall, zone)
            fields["dtstart_wall"] = wall
        if fields:
            series = db.update_series(series_id, **fields)
        orphaned = find_orphaned_exceptions(
            rule, series.seed, series.timezone, db.list_exceptions(series_id)
        )
    log_msg(
        f"updated series {series_id}: {', '.join(fields) or 'no changes'};"
        f" {len(orphaned)} orphaned exception(s)"
    )
    return series, orphaned


def copy_template(template: Task, **overrides) -> Task:
    """A fresh, unscheduled task with the template's attributes."""
    now = utc_now()
    copy = replace(
        template,
        id=new_id(),
        status=TaskStatus.PENDING,
        due_at=None,
        completed_at=None,
        created_at=now,
        updated_at=now,
        series_id=None,
        occurrence_dt=None,
        tags=list(template.tags),
        depends_on=list(template.depends_on),
    )
    return replace(copy, **overrides) if overrides else copy


def duplicate_series(
    db: DatabaseManager,
    series_id: str,
    name: str | None = None,
    timezone: str | None = None,
    rrule: str | None = None,
    dtstart: datetime | None = None,
) -> Series:
    """
    New template and series with the same attributes and rule, an empty
    exception set and no boundary.
    """
    with db.transaction():
        source = db.get_series(series_id)
        template = db.get_task(source.template_task_id)
        overrides = {"name": name} if name else {}
        new_template = db.add_task(copy_template(template, **overrides))
        zone = validate_timezone(timezone) if timezone else source.timezone
        if dtstart is None:
            dtstart = _wall_start(source.seed, source.timezone)
        series = create_series(db, new_template.id, rrule or source.rrule, dtstart, zone)
    log_msg(f"duplicated series {series_id} as {series.id}")
    return series


def delete_series(db: DatabaseManager, series_id: str) -> int:
    """Delete the series with its exceptions, instances and template."""
    return db.delete_series(series_id)


def archive_series(db: DatabaseManager, series_id: str) -> Series:
    """Deactivate a series once none of its instances are pending."""
    with db.transaction():
        series = db.get_series(series_id)
        pending = [t for t in db.series_instances(series_id) if t.is_open]
        if pending:
            raise InvalidInputError(
                f"Series {series.short_id} still has {len(pending)} pending instance(s)"
            )
        series = db.update_series(series_id, active=False)
    log_msg(f"archived series {series_id}")
    return series
