"""
Scoped edits of recurring tasks.

The caller states the breadth of an edit explicitly:

- ``ThisOccurrence(at)``: only that occurrence's instance changes;
- ``ThisAndFuture(at)``: the series is split at ``at`` and the edit applies
  to the new series;
- ``EntireSeries()``: the template (and optionally the rule) changes.

Nothing here guesses a scope; a missing one is a ``ScopeError``.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta

from .errors import ScopeError
from .materialize import materialize_range
from .model import DatabaseManager
from .models import (
    ExceptionKind,
    Series,
    SeriesException,
    Task,
    TaskPriority,
    TaskStatus,
)
from .overlay import check_exception_target, find_orphaned_exceptions
from .rules import expand, nominal_time, parse_rule
from .series import copy_template, create_series, update_series_rule
from .shared import log_msg, utc_now
from .timezones import to_utc, validate_timezone


@dataclass(frozen=True)
class ThisOccurrence:
    occurrence_dt: datetime


@dataclass(frozen=True)
class ThisAndFuture:
    occurrence_dt: datetime


@dataclass(frozen=True)
class EntireSeries:
    pass


EditScope = ThisOccurrence | ThisAndFuture | EntireSeries

SCOPE_NAMES = {
    "occurrence": ThisOccurrence,
    "this": ThisOccurrence,
    "future": ThisAndFuture,
    "this_and_future": ThisAndFuture,
    "series": EntireSeries,
    "entire": EntireSeries,
    "all": EntireSeries,
}


def parse_scope(text: str | None, occurrence_dt: datetime | None = None) -> EditScope:
    if text is None or not str(text).strip():
        raise ScopeError("An edit scope is required: occurrence, future or series")
    name = str(text).strip().lower().replace("-", "_")
    kind = SCOPE_NAMES.get(name)
    if kind is None:
        raise ScopeError(f"Unknown scope {text!r}; expected occurrence, future or series")
    if kind is EntireSeries:
        return EntireSeries()
    if occurrence_dt is None:
        raise ScopeError(f"The {name!r} scope needs the occurrence it applies to")
    return kind(occurrence_dt)


@dataclass
class TaskChanges:
    name: str | None = None
    description: str | None = None
    priority: TaskPriority | None = None
    project_id: str | None = None
    add_tags: list[str] = field(default_factory=list)
    remove_tags: list[str] = field(default_factory=list)
    rrule: str | None = None
    timezone: str | None = None

    @property
    def touches_rule(self) -> bool:
        return self.rrule is not None or self.timezone is not None

    @property
    def touches_tags(self) -> bool:
        return bool(self.add_tags or self.remove_tags)

    def task_fields(self) -> dict:
        fields = {}
        for key in ("name", "description", "priority", "project_id"):
            value = getattr(self, key)
            if value is not None:
                fields[key] = value
        return fields

    def merged_tags(self, tags: list[str]) -> list[str]:
        removed = set(self.remove_tags)
        merged = [t for t in tags if t not in removed]
        merged += [t for t in self.add_tags if t not in merged]
        return merged

    def apply_to(self, task: Task) -> Task:
        return replace(task, **self.task_fields(), tags=self.merged_tags(task.tags))

    def update(self, db: DatabaseManager, task: Task) -> Task:
        fields = self.task_fields()
        if self.touches_tags:
            fields["tags"] = self.merged_tags(task.tags)
        if not fields:
            return task
        return db.update_task(task.id, **fields)


@dataclass
class EditResult:
    scope: EditScope
    series: Series
    task: Task | None = None
    new_series: Series | None = None
    orphaned: list[SeriesException] = field(default_factory=list)
    updated_instances: int = 0
    superseded_instances: int = 0


def apply_edit(
    db: DatabaseManager,
    series_id: str,
    scope: EditScope | None,
    changes: TaskChanges,
    now: datetime | None = None,
) -> EditResult:
    now = now or utc_now()
    if isinstance(scope, ThisOccurrence):
        return edit_occurrence(db, series_id, scope, changes)
    if isinstance(scope, ThisAndFuture):
        return split_series(db, series_id, scope, changes, now)
    if isinstance(scope, EntireSeries):
        return edit_series(db, series_id, scope, changes, now)
    if scope is None:
        raise ScopeError("An edit scope is required: occurrence, future or series")
    raise ScopeError(f"Unknown edit scope {scope!r}")


def edit_occurrence(
    db: DatabaseManager, series_id: str, scope: ThisOccurrence, changes: TaskChanges
) -> EditResult:
    """Edit one occurrence, materializing it under an override if needed."""
    if changes.touches_rule:
        raise ScopeError("Rule and timezone changes need the 'future' or 'series' scope")
    target = to_utc(scope.occurrence_dt)
    with db.transaction():
        series = db.get_series(series_id)
        exc = db.get_exception(series_id, target)
        if exc is not None and exc.kind == ExceptionKind.SKIP:
            raise ScopeError(f"The occurrence at {target.isoformat()} is skipped")
        task = db.find_instance(series_id, target)
        if task is None:
            check_exception_target(series.rrule, series.seed, series.timezone, target)
            template = db.get_task(series.template_task_id)
            instance = copy_template(
                template, due_at=target, series_id=series_id, occurrence_dt=target
            )
            task = db.add_task(changes.apply_to(instance))
        else:
            task = changes.update(db, task)
        # A move stays a move; the moved task now carries the edit as well.
        if exc is None or exc.kind == ExceptionKind.OVERRIDE:
            db.upsert_exception(
                SeriesException(
                    series_id=series_id,
                    occurrence_dt=target,
                    kind=ExceptionKind.OVERRIDE,
                    task_id=task.id,
                )
            )
    log_msg(f"edited occurrence {target} of series {series_id}")
    return EditResult(scope=scope, series=series, task=task)


def _propagate(db: DatabaseManager, series_id: str, changes: TaskChanges, since: datetime) -> int:
    """Apply attribute changes to pending, unedited instances due after since."""
    excepted = {e.task_id for e in db.list_exceptions(series_id) if e.task_id}
    count = 0
    for task in db.series_instances(series_id):
        if task.status != TaskStatus.PENDING or task.id in excepted:
            continue
        if task.due_at is None or task.due_at <= since:
            continue
        changes.update(db, task)
        count += 1
    return count


def _supersede_instances(db: DatabaseManager, series: Series, now: datetime) -> int:
    """
    Cancel upcoming pending instances the series' rule no longer produces
    and clear their occurrence_dt. Hand-edited and moved ones stay.
    """
    excepted = {e.task_id for e in db.list_exceptions(series.id) if e.task_id}
    stale = [
        task
        for task in db.series_instances(series.id)
        if task.status == TaskStatus.PENDING
        and task.id not in excepted
        and task.occurrence_dt is not None
        and task.due_at is not None
        and task.due_at > now
    ]
    if not stale:
        return 0
    latest = max(to_utc(task.occurrence_dt) for task in stale)
    produced = {
        to_utc(i) for i in expand(series.rrule, series.seed, series.timezone, end=latest, after=now)
    }
    count = 0
    for task in stale:
        if to_utc(task.occurrence_dt) not in produced:
            db.cancel_task(task.id)
            db.update_task(task.id, occurrence_dt=None)
            count += 1
    return count


def edit_series(
    db: DatabaseManager,
    series_id: str,
    scope: EntireSeries,
    changes: TaskChanges,
    now: datetime,
) -> EditResult:
    """
    Edit the template and optionally the rule. Upcoming instances pick up
    attribute changes; past and hand-edited instances are left alone.

    A rule or zone change supersedes the upcoming pending instances the new
    rule does not produce and fills in the ones it does, up to the boundary.
    The boundary itself does not move.
    """
    with db.transaction():
        series = db.get_series(series_id)
        template = changes.update(db, db.get_task(series.template_task_id))
        updated = 0
        if changes.task_fields() or changes.touches_tags:
            updated = _propagate(db, series_id, changes, now)
        orphaned: list[SeriesException] = []
        superseded = filled = 0
        if changes.touches_rule:
            series, orphaned = update_series_rule(
                db, series_id, rrule=changes.rrule, timezone=changes.timezone
            )
            superseded = _supersede_instances(db, series, now)
            boundary = series.last_materialized_until
            if boundary is not None and boundary > now:
                filled = materialize_range(db, series_id, now, boundary)
    if superseded or filled:
        log_msg(
            f"rule change on series {series_id}: {superseded} instance(s) superseded,"
            f" {filled} created"
        )
    return EditResult(
        scope=scope,
        series=series,
        task=template,
        orphaned=orphaned,
        updated_instances=updated,
        superseded_instances=superseded,
    )


def split_series(
    db: DatabaseManager,
    series_id: str,
    scope: ThisAndFuture,
    changes: TaskChanges,
    now: datetime,
) -> EditResult:
    """
    Split a series at an occurrence.

    The original keeps the occurrences before the target (UNTIL just before
    it, COUNT reduced to what is kept). A new template and series start at
    the target with the edited attributes and rule, take over the exceptions
    and instances at or after the target, and record ``split_from``.
    """
    target = to_utc(scope.occurrence_dt)
    with db.transaction():
        series = db.get_series(series_id)
        rule = parse_rule(series.rrule)
        kept = list(expand(rule, series.seed, series.timezone, end=target))
        if not kept or to_utc(kept[-1]) != target:
            later = next(expand(rule, series.seed, series.timezone, after=target), None)
            if later is None:
                raise ScopeError(
                    f"Series {series.short_id} has no occurrences after "
                    f"{target.isoformat()}; it has already ended"
                )
            raise ScopeError(
                f"{target.isoformat()} is not an occurrence of series {series.short_id}"
            )
        if len(kept) == 1:
            raise ScopeError(
                f"{target.isoformat()} is the first occurrence of series "
                f"{series.short_id}; use the 'series' scope"
            )

        kept_before = len(kept) - 1
        truncated = rule.truncated(
            until=target - timedelta(seconds=1),
            count=kept_before if rule.count is not None else None,
        )
        if changes.rrule:
            new_rule_text = changes.rrule
        elif rule.count is not None:
            new_rule_text = rule.truncated(count=rule.count - kept_before).to_text()
        else:
            new_rule_text = rule.to_text()

        zone = validate_timezone(changes.timezone) if changes.timezone else series.timezone
        # Nominal wall-clock time of the target (a gap-shifted 02:30 stays
        # 02:30), read in the new series' zone.
        start = nominal_time(rule, series.seed, series.timezone, target)

        template = db.get_task(series.template_task_id)
        new_template = db.add_task(changes.apply_to(copy_template(template)))
        original = db.update_series(series_id, rrule=truncated.to_text())
        new_series = create_series(db, new_template.id, new_rule_text, start, zone)

        rule_changed = changes.touches_rule
        boundary = series.last_materialized_until
        new_boundary = boundary if (boundary and boundary >= target and not rule_changed) else None
        new_series = db.update_series(
            new_series.id,
            split_from=series_id,
            active=series.active,
            last_materialized_until=new_boundary,
        )

        moved_exceptions = db.move_exceptions(series_id, new_series.id, target)
        excepted = {e.task_id for e in db.list_exceptions(new_series.id) if e.task_id}
        superseded = 0
        if rule_changed:
            # Pending instances built from the old rule give way to the new one.
            for task in db.series_instances(series_id):
                if (
                    task.occurrence_dt is not None
                    and task.occurrence_dt >= target
                    and task.status == TaskStatus.PENDING
                    and task.id not in excepted
                ):
                    db.cancel_task(task.id)
                    db.update_task(task.id, occurrence_dt=None)
                    superseded += 1
        relinked = db.relink_instances(series_id, new_series.id, target)
        for task_id in relinked:
            task = db.get_task(task_id)
            if task.status == TaskStatus.PENDING and task_id not in excepted:
                changes.update(db, task)

        orphaned = []
        if rule_changed:
            orphaned = find_orphaned_exceptions(
                new_series.rrule,
                new_series.seed,
                new_series.timezone,
                db.list_exceptions(new_series.id),
            )

    log_msg(
        f"split series {series_id} at {target}: new series {new_series.id},"
        f" {moved_exceptions} exception(s) and {len(relinked)} instance(s) moved,"
        f" {superseded} superseded"
    )
    return EditResult(
        scope=scope,
        series=original,
        task=new_template,
        new_series=new_series,
        orphaned=orphaned,
        updated_instances=len(relinked),
    )
