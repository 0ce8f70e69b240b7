from __future__ import annotations

import math
from datetime import datetime, timedelta

from .errors import (
    ExceptionConflictError,
    InvalidInputError,
    MaterializationError,
    NotFoundError,
    ScopeError,
    TaskBlockedError,
)
from .materialize import MaterializationManager, MaterializationSummary
from .model import DatabaseManager
from .models import (
    CompletionResult,
    ExceptionKind,
    Occurrence,
    Project,
    Series,
    SeriesException,
    SeriesStatistics,
    Task,
    TaskPriority,
    TaskQuery,
    TaskStatus,
)
from .overlay import check_exception_target
from .rekur_env import RekurConfig, RekurEnvironment
from .rules import describe_rule, validate_rule
from .scope import EditResult, EditScope, EntireSeries, TaskChanges, apply_edit, parse_scope
from .series import (
    archive_series,
    copy_template,
    create_series,
    delete_series,
    duplicate_series,
    pause_series,
    resume_series,
    rollback_boundary,
)
from .shared import format_local, log_msg, new_id, utc_now
from .shortcuts import parse_datetime_input
from .timezones import to_utc, validate_timezone


def _clean_tags(tags) -> list[str]:
    cleaned = []
    for tag in tags or []:
        tag = tag.strip().lstrip("#").lower()
        if tag and tag not in cleaned:
            cleaned.append(tag)
    return cleaned


class Controller:
    """
    Everything the command line does goes through here. The controller is
    the only place that reads the clock; the layers below take ``now``.
    """

    def __init__(
        self,
        database_path: str,
        env: RekurEnvironment | None = None,
        reset: bool = False,
        config: RekurConfig | None = None,
    ):
        self.env = env
        if config is None:
            config = env.config if env is not None else RekurConfig()
        self.config = config
        self.db_manager = DatabaseManager(database_path, env, reset=reset)
        self.materializer = MaterializationManager(config.recurrence)
        self.timezone = config.recurrence.default_timezone
        self.ampm = config.ui.ampm
        self.dayfirst = config.ui.dayfirst
        self.yearfirst = config.ui.yearfirst
        self.last_summary: MaterializationSummary | None = None

    def now(self) -> datetime:
        return utc_now()

    def close(self):
        self.db_manager.close()

    # --- Formatting and input ---------------------------------------------------
    def fmt_user(self, dt: datetime | None, zone: str | None = None) -> str:
        return format_local(dt, zone or self.timezone, self.ampm)

    def parse_when(self, text: str, zone: str | None = None) -> datetime:
        """A date/time typed by the user, read in zone (default: configured)."""
        return parse_datetime_input(
            text, zone or self.timezone, self.now(), self.dayfirst, self.yearfirst
        )

    # --- Materialization --------------------------------------------------------
    def materialize(self, query: TaskQuery | None = None) -> MaterializationSummary:
        """
        Run a pass for every active series. A due-before filter past the
        configured lookahead widens the window for this pass.
        """
        now = self.now()
        manager = self.materializer
        _, end = manager.window_for_filters(query, now)
        days = math.ceil((end - now) / timedelta(days=1))
        if days > manager.config.lookahead_days:
            manager = MaterializationManager(
                manager.config.model_copy(update={"lookahead_days": days})
            )
        summary = manager.materialize_all(self.db_manager, now)
        self.last_summary = summary
        if summary.instances_created or not summary.ok:
            log_msg(
                f"materialized {summary.instances_created} instance(s) across"
                f" {summary.series_processed} series in {summary.duration_ms}ms;"
                f" {summary.series_with_errors} with errors"
            )
        return summary

    def _materialize_series(self, series_id: str) -> int:
        """
        One pass after a write. A failure here leaves the write in place;
        it is logged and the next pass retries.
        """
        try:
            return self.materializer.materialize_series(self.db_manager, series_id, self.now())
        except MaterializationError as e:
            log_msg(f"deferred materialization of {series_id}: {e}")
            return 0

    # --- Tasks ------------------------------------------------------------------
    def project_id(self, name: str | None) -> str | None:
        if not name:
            return None
        return self.db_manager.find_or_create_project(name).id

    def add_task(
        self,
        name: str,
        description: str | None = None,
        due: datetime | None = None,
        priority: str | TaskPriority | None = None,
        project: str | None = None,
        tags=None,
        depends_on=None,
        parent: str | None = None,
    ) -> Task:
        db = self.db_manager
        with db.transaction():
            task = Task(
                id=new_id(),
                name=name,
                description=description,
                priority=TaskPriority(priority) if priority else TaskPriority.NONE,
                due_at=to_utc(due, self.timezone) if due is not None else None,
                project_id=self.project_id(project),
                parent_id=db.find_task(parent).id if parent else None,
                tags=_clean_tags(tags),
                depends_on=[db.find_task(ref).id for ref in depends_on or []],
            )
            task = db.add_task(task)
        log_msg(f"added task {task.id}: {task.name}")
        return task

    def add_recurring_task(
        self,
        name: str,
        rrule: str,
        dtstart: datetime,
        timezone: str | None = None,
        description: str | None = None,
        priority: str | TaskPriority | None = None,
        project: str | None = None,
        tags=None,
    ) -> tuple[Task, Series]:
        """Create a template and its series, then materialize the first window."""
        zone = validate_timezone(timezone or self.timezone)
        validate_rule(rrule, zone)
        db = self.db_manager
        with db.transaction():
            template = self.add_task(
                name,
                description=description,
                priority=priority,
                project=project,
                tags=tags,
            )
            series = create_series(db, template.id, rrule, dtstart, zone)
        self._materialize_series(series.id)
        return db.get_task(template.id), db.get_series(series.id)

    def make_recurring(
        self,
        task_ref: str,
        rrule: str,
        dtstart: datetime | None = None,
        timezone: str | None = None,
    ) -> Series:
        """Turn a plain task into a series template, starting at its due date by default."""
        db = self.db_manager
        task = db.find_task(task_ref)
        if task.is_instance:
            raise InvalidInputError(f"Task {task.short_id} already belongs to a series")
        start = dtstart or task.due_at
        if start is None:
            raise InvalidInputError(f"Task {task.short_id} has no due date; give a start")
        series = create_series(db, task.id, rrule, start, timezone or self.timezone)
        self._materialize_series(series.id)
        return db.get_series(series.id)

    def get_task(self, ref: str) -> Task:
        return self.db_manager.find_task(ref)

    def list_tasks(self, query: TaskQuery | None = None) -> list[Task]:
        """Materialize what the query needs, then list."""
        self.materialize(query)
        return self.db_manager.list_tasks(query, self.now())

    def complete_task(self, ref: str) -> CompletionResult:
        db = self.db_manager
        task = db.find_task(ref)
        if db.get_series_by_template(task.id) is not None:
            raise InvalidInputError(
                f"Task {task.short_id} is a series template; complete one of its instances"
            )
        if not task.is_open:
            raise InvalidInputError(f"Task {task.short_id} is already {task.status}")
        blocking = db.pending_dependencies(task.id)
        if blocking:
            raise TaskBlockedError([f"{b.short_id} {b.name}" for b in blocking])

        now = self.now()
        completed = db.complete_task(task.id, now)
        log_msg(f"completed task {task.id}: {task.name}")
        result = CompletionResult(completed=completed, series_id=task.series_id)
        if task.series_id is None:
            return result

        self._materialize_series(task.series_id)
        upcoming = db.list_tasks(TaskQuery(series_id=task.series_id, limit=1), now)
        result.next_task = upcoming[0] if upcoming else None
        series = db.get_series(task.series_id)
        after = (task.occurrence_dt or task.due_at or now) + timedelta(seconds=1)
        preview = self.materializer.preview(series, db.list_exceptions(series.id), after, limit=1)
        result.next_occurrence = preview[0].effective_at if preview else None
        return result

    def reopen_task(self, ref: str) -> Task:
        task = self.db_manager.find_task(ref)
        return self.db_manager.reopen_task(task.id)

    def cancel_task(self, ref: str) -> Task:
        task = self.db_manager.find_task(ref)
        if not task.is_open:
            raise InvalidInputError(f"Task {task.short_id} is already {task.status}")
        task = self.db_manager.cancel_task(task.id)
        log_msg(f"cancelled task {task.id}")
        return task

    def delete_task(self, ref: str) -> Task:
        """
        Delete a task. A deleted instance leaves a skip behind so the
        occurrence is not materialized again.
        """
        db = self.db_manager
        task = db.find_task(ref)
        with db.transaction():
            if task.is_instance and task.occurrence_dt is not None:
                db.upsert_exception(
                    SeriesException(
                        series_id=task.series_id,
                        occurrence_dt=task.occurrence_dt,
                        kind=ExceptionKind.SKIP,
                        notes="instance deleted",
                    )
                )
            db.delete_task(task.id)
        return task

    def edit_task(
        self,
        ref: str,
        changes: TaskChanges,
        scope: str | EditScope | None = None,
        due: datetime | None = None,
    ) -> EditResult | Task:
        """
        Edit a task. Series instances need a scope; editing a template is a
        series-wide edit. Plain tasks take no scope.
        """
        db = self.db_manager
        task = db.find_task(ref)
        series = db.get_series_by_template(task.id)
        if series is not None:
            if isinstance(scope, str):
                scope = parse_scope(scope, self.now())
            if scope is not None and not isinstance(scope, EntireSeries):
                raise ScopeError("A series template can only be edited with the 'series' scope")
            return self._apply(series.id, EntireSeries(), changes)
        if task.is_instance:
            if due is not None:
                raise InvalidInputError("Use 'move' to reschedule one occurrence")
            if scope is None or isinstance(scope, str):
                scope = parse_scope(scope, task.occurrence_dt)
            return self._apply(task.series_id, scope, changes)

        if scope is not None:
            raise ScopeError(f"Task {task.short_id} is not recurring; it takes no scope")
        if changes.touches_rule:
            raise InvalidInputError(
                f"Task {task.short_id} is not recurring; make it recurring first"
            )
        with db.transaction():
            task = changes.update(db, task)
            if due is not None:
                task = db.update_task(task.id, due_at=to_utc(due, self.timezone))
        log_msg(f"edited task {task.id}")
        return task

    def _apply(self, series_id: str, scope: EditScope, changes: TaskChanges) -> EditResult:
        result = apply_edit(self.db_manager, series_id, scope, changes, self.now())
        for affected in (result.series, result.new_series):
            if affected is not None:
                self._materialize_series(affected.id)
        return result

    # --- Dependencies, projects, tags ------------------------------------------
    def add_dependency(self, task_ref: str, depends_on_ref: str):
        db = self.db_manager
        task = db.find_task(task_ref)
        other = db.find_task(depends_on_ref)
        db.add_dependency(task.id, other.id)
        return task, other

    def remove_dependency(self, task_ref: str, depends_on_ref: str) -> bool:
        db = self.db_manager
        return db.remove_dependency(db.find_task(task_ref).id, db.find_task(depends_on_ref).id)

    def add_project(self, name: str, description: str | None = None) -> Project:
        return self.db_manager.add_project(name, description)

    def list_projects(self) -> list[Project]:
        return self.db_manager.list_projects()

    def list_tags(self) -> list[tuple[str, int]]:
        return self.db_manager.list_tags()

    # --- Series -----------------------------------------------------------------
    def get_series(self, ref: str) -> Series:
        return self.db_manager.find_series(ref)

    def series_for(self, ref: str) -> Series:
        """A series by its own id, its template's id or one of its instances' ids."""
        db = self.db_manager
        try:
            return db.find_series(ref)
        except NotFoundError:
            task = db.find_task(ref)
        if task.series_id is not None:
            return db.get_series(task.series_id)
        series = db.get_series_by_template(task.id)
        if series is None:
            raise NotFoundError(f"Task {task.short_id} is not part of a series")
        return series

    def list_series(self, active_only: bool = False) -> list[tuple[Series, Task]]:
        db = self.db_manager
        return [
            (series, db.get_task(series.template_task_id))
            for series in db.list_series(active_only=active_only)
        ]

    def series_details(self, ref: str) -> tuple[Series, Task, list[SeriesException], str]:
        series = self.series_for(ref)
        db = self.db_manager
        return (
            series,
            db.get_task(series.template_task_id),
            db.list_exceptions(series.id),
            describe_rule(series.rrule),
        )

    def edit_series(
        self,
        ref: str,
        changes: TaskChanges,
        scope: str | None = None,
        at: datetime | None = None,
    ) -> EditResult:
        series = self.series_for(ref)
        edit_scope = parse_scope(scope or "series", at)
        return self._apply(series.id, edit_scope, changes)

    def pause_series(self, ref: str) -> Series:
        return pause_series(self.db_manager, self.series_for(ref).id)

    def resume_series(self, ref: str) -> Series:
        series = resume_series(self.db_manager, self.series_for(ref).id)
        self._materialize_series(series.id)
        return self.db_manager.get_series(series.id)

    def duplicate_series(
        self,
        ref: str,
        name: str | None = None,
        timezone: str | None = None,
        rrule: str | None = None,
        dtstart: datetime | None = None,
    ) -> Series:
        source = self.series_for(ref)
        series = duplicate_series(
            self.db_manager, source.id, name=name, timezone=timezone, rrule=rrule, dtstart=dtstart
        )
        self._materialize_series(series.id)
        return self.db_manager.get_series(series.id)

    def delete_series(self, ref: str) -> int:
        return delete_series(self.db_manager, self.series_for(ref).id)

    def archive_series(self, ref: str) -> Series:
        return archive_series(self.db_manager, self.series_for(ref).id)

    def rollback_boundary(self, ref: str, to: datetime | None = None) -> Series:
        return rollback_boundary(self.db_manager, self.series_for(ref).id, to)

    def preview_series(
        self, ref: str, limit: int = 10, start: datetime | None = None
    ) -> list[Occurrence]:
        """Upcoming realized occurrences; the series is materialized first."""
        series = self.series_for(ref)
        self._materialize_series(series.id)
        exceptions = self.db_manager.list_exceptions(series.id)
        return self.materializer.preview(series, exceptions, start or self.now(), limit=limit)

    def series_statistics(self, ref: str) -> SeriesStatistics:
        series = self.series_for(ref)
        self._materialize_series(series.id)
        stats = self.db_manager.series_statistics(series.id)
        if series.active:
            exceptions = self.db_manager.list_exceptions(series.id)
            upcoming = self.materializer.preview(series, exceptions, self.now(), limit=1)
            stats.next_occurrence = upcoming[0].effective_at if upcoming else None
        return stats

    # --- Exceptions -------------------------------------------------------------
    def list_exceptions(self, ref: str) -> list[SeriesException]:
        return self.db_manager.list_exceptions(self.series_for(ref).id)

    def _occurrence_of(self, ref: str) -> tuple[Series, datetime]:
        task = self.db_manager.find_task(ref)
        if not task.is_instance or task.occurrence_dt is None:
            raise InvalidInputError(f"Task {task.short_id} is not an occurrence of a series")
        return self.db_manager.get_series(task.series_id), task.occurrence_dt

    def skip_occurrence(
        self, ref: str, at: datetime | None = None, notes: str | None = None
    ) -> SeriesException:
        """
        Skip one occurrence. ``ref`` names a series (with ``at``) or one of
        its instances. A pending instance for the occurrence is cancelled.
        """
        if at is None:
            series, target = self._occurrence_of(ref)
        else:
            series, target = self.series_for(ref), to_utc(at, self.timezone)
        db = self.db_manager
        with db.transaction():
            if db.get_exception(series.id, target) is None:
                check_exception_target(series.rrule, series.seed, series.timezone, target)
            instance = db.find_instance(series.id, target)
            if instance is not None:
                if instance.status == TaskStatus.COMPLETED:
                    raise ExceptionConflictError(
                        f"The occurrence at {self.fmt_user(target)} is already completed"
                    )
                if instance.is_open:
                    db.cancel_task(instance.id)
            exc = db.upsert_exception(
                SeriesException(
                    series_id=series.id,
                    occurrence_dt=target,
                    kind=ExceptionKind.SKIP,
                    notes=notes,
                )
            )
        log_msg(f"skipped {target} of series {series.id}")
        return exc

    def move_occurrence(
        self,
        ref: str,
        to: datetime,
        at: datetime | None = None,
        notes: str | None = None,
    ) -> SeriesException:
        """
        Reschedule one occurrence. The instance keeps its identity and its
        original occurrence instant; only its due instant changes.
        """
        if at is None:
            series, target = self._occurrence_of(ref)
        else:
            series, target = self.series_for(ref), to_utc(at, self.timezone)
        destination = to_utc(to, self.timezone)
        db = self.db_manager
        with db.transaction():
            existing = db.get_exception(series.id, target)
            if existing is not None and existing.kind == ExceptionKind.SKIP:
                raise ExceptionConflictError(
                    f"The occurrence at {self.fmt_user(target)} is skipped; unskip it first"
                )
            if existing is None:
                check_exception_target(series.rrule, series.seed, series.timezone, target)
            instance = db.find_instance(series.id, target)
            if instance is None:
                template = db.get_task(series.template_task_id)
                instance = db.add_task(
                    copy_template(
                        template, due_at=destination, series_id=series.id, occurrence_dt=target
                    )
                )
            elif instance.status == TaskStatus.COMPLETED:
                raise ExceptionConflictError(
                    f"The occurrence at {self.fmt_user(target)} is already completed"
                )
            else:
                instance = db.update_task(instance.id, due_at=destination)
            exc = db.upsert_exception(
                SeriesException(
                    series_id=series.id,
                    occurrence_dt=target,
                    kind=ExceptionKind.MOVE,
                    task_id=instance.id,
                    notes=notes,
                )
            )
        log_msg(f"moved {target} of series {series.id} to {destination}")
        return exc

    def remove_exceptions(self, ref: str, instants: list[datetime] | None = None) -> int:
        """
        Remove exceptions (all of them when no instants are given) and put
        the occurrences back on the rule: an unskipped occurrence at or
        before the boundary gets its instance back, a moved instance returns
        to its original instant.
        """
        series = self.series_for(ref)
        db = self.db_manager
        with db.transaction():
            exceptions = db.list_exceptions(series.id)
            if instants is not None:
                wanted = {to_utc(i, self.timezone) for i in instants}
                selected = [e for e in exceptions if e.occurrence_dt in wanted]
                missing = wanted - {e.occurrence_dt for e in selected}
                if missing:
                    raise NotFoundError(
                        "No exception at "
                        + ", ".join(self.fmt_user(m, series.timezone) for m in sorted(missing))
                    )
            else:
                selected = exceptions
            boundary = series.last_materialized_until
            for exc in selected:
                db.remove_exception(series.id, exc.occurrence_dt)
                if exc.kind == ExceptionKind.SKIP:
                    instance = db.find_instance(series.id, exc.occurrence_dt)
                    if instance is not None:
                        if instance.status == TaskStatus.CANCELLED:
                            db.reopen_task(instance.id)
                    elif boundary is not None and exc.occurrence_dt <= boundary:
                        template = db.get_task(series.template_task_id)
                        db.add_task(
                            copy_template(
                                template,
                                due_at=exc.occurrence_dt,
                                series_id=series.id,
                                occurrence_dt=exc.occurrence_dt,
                            )
                        )
                elif exc.kind == ExceptionKind.MOVE and exc.task_id is not None:
                    task = db.get_task(exc.task_id)
                    if task.is_open:
                        db.update_task(task.id, due_at=exc.occurrence_dt)
        log_msg(f"removed {len(selected)} exception(s) from series {series.id}")
        return len(selected)
