"""
Materialization: turning series occurrences into task rows.

A pass for one series runs in a single ``BEGIN IMMEDIATE`` transaction. It
creates an instance for every visible occurrence in the window that does
not have one yet, stops after ``max_batch_size`` creations and moves the
series boundary to the last occurrence it fully processed. A failure rolls
the whole pass back, so the boundary never skips an occurrence.
"""

from __future__ import annotations

import sqlite3
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from itertools import islice

from .errors import MaterializationError, RekurError
from .model import DatabaseManager
from .models import Occurrence, Series, SeriesException, Task, TaskQuery
from .overlay import apply_exceptions, overlay_occurrences
from .rekur_env import MaterializationConfig
from .rules import expand, parse_rule
from .series import advance_boundary, copy_template
from .shared import log_msg, new_id, utc_now
from .timezones import to_utc

# How far past the window the min_upcoming_instances floor may reach.
HORIZON_DAYS = 366 * 5
# Furthest a due-before filter may extend the lookahead.
FILTER_HORIZON_DAYS = 366


@dataclass
class MaterializationPlan:
    series_id: str
    window_start: datetime
    window_end: datetime
    occurrences: list[Occurrence] = field(default_factory=list)

    @property
    def last_scheduled(self) -> datetime | None:
        return self.occurrences[-1].scheduled_at if self.occurrences else None


@dataclass
class MaterializationSummary:
    series_processed: int = 0
    instances_created: int = 0
    series_with_errors: int = 0
    errors: list[str] = field(default_factory=list)
    duration_ms: int = 0

    @property
    def ok(self) -> bool:
        return self.series_with_errors == 0


def instance_from_template(template: Task, series: Series, occurrence: Occurrence) -> Task:
    return copy_template(
        template,
        id=new_id(),
        due_at=occurrence.effective_at,
        series_id=series.id,
        occurrence_dt=occurrence.scheduled_at,
    )


def materialize_range(db: DatabaseManager, series_id: str, after: datetime, end: datetime) -> int:
    """
    Create the missing instances for visible occurrences in (after, end]
    and leave the boundary alone. After a rule change this fills the
    stretch the old rule had already materialized.
    """
    created = 0
    with db.transaction():
        series = db.get_series(series_id)
        template = db.get_task(series.template_task_id)
        exceptions = db.list_exceptions(series_id)
        existing = db.series_occurrence_keys(series_id)
        raw = expand(series.rrule, series.seed, series.timezone, end=end, after=after)
        for occ in overlay_occurrences(raw, exceptions):
            key = to_utc(occ.scheduled_at)
            if occ.needs_instance and key not in existing:
                db.add_task(instance_from_template(template, series, occ))
                existing.add(key)
                created += 1
    if created:
        log_msg(f"filled {created} instance(s) for series {series_id} up to {end}")
    return created


class MaterializationManager:
    def __init__(self, config: MaterializationConfig | None = None):
        self.config = config or MaterializationConfig()

    def window_for(self, series: Series, now: datetime) -> tuple[datetime, datetime]:
        """[max(boundary, now or now - grace), now + lookahead]"""
        floor = now
        if self.config.enable_catchup:
            floor = now - timedelta(days=self.config.materialization_grace_days)
        start = floor
        if series.last_materialized_until is not None:
            start = max(series.last_materialized_until, floor)
        end = now + timedelta(days=self.config.lookahead_days)
        return start, end

    def window_for_filters(self, query: TaskQuery | None, now: datetime) -> tuple[datetime, datetime]:
        """
        Window a task listing needs instances for. Due-date filters move it
        (a due-before date past the lookahead extends it, up to a year);
        other filters (project, tag, status, priority) keep the default.
        """
        start = now - timedelta(days=1)
        end = now + timedelta(days=self.config.lookahead_days)
        if query is not None:
            if query.overdue:
                start = now - timedelta(days=max(self.config.materialization_grace_days, 1))
                end = now
            if query.due_after is not None:
                start = query.due_after
            if query.due_before is not None:
                end = min(query.due_before, now + timedelta(days=FILTER_HORIZON_DAYS))
        if start >= end:
            start = now - timedelta(days=1)
            end = now + timedelta(days=self.config.lookahead_days)
        return start, end

    def plan(
        self,
        series: Series,
        exceptions: list[SeriesException],
        now: datetime,
        upcoming: int = 0,
    ) -> MaterializationPlan:
        """
        Occurrences (skips included, in rule order) a pass should walk:
        those after the boundary, within the window, extended past the
        window end until ``min_upcoming_instances`` future visible
        occurrences exist. ``upcoming`` is how many future instances the
        series already has.
        """
        rule = parse_rule(series.rrule)
        start, end = self.window_for(series, now)
        boundary = series.last_materialized_until
        after = start - timedelta(microseconds=1)
        if boundary is not None and boundary >= start:
            after = boundary

        raw = list(expand(rule, series.seed, series.timezone, end=end, after=after))
        occurrences = overlay_occurrences(raw, exceptions)

        future = upcoming + sum(
            1 for o in occurrences if o.needs_instance and o.effective_at > now
        )
        missing = self.config.min_upcoming_instances - future
        if missing > 0:
            horizon = end + timedelta(days=HORIZON_DAYS)
            extra_after = raw[-1] if raw else after
            extra: list[Occurrence] = []
            tail = expand(rule, series.seed, series.timezone, end=horizon, after=extra_after)
            for instant in islice(tail, self.config.max_batch_size + missing + len(exceptions)):
                occ = overlay_occurrences([instant], exceptions)[0]
                extra.append(occ)
                if occ.needs_instance and occ.effective_at > now:
                    missing -= 1
                if missing <= 0:
                    break
            occurrences.extend(extra)

        return MaterializationPlan(
            series_id=series.id,
            window_start=start,
            window_end=end,
            occurrences=occurrences,
        )

    def materialize_series(self, db: DatabaseManager, series_id: str, now: datetime) -> int:
        """
        Run one pass for a series; returns the number of instances created.

        Raises MaterializationError after rolling the pass back.
        """
        created = 0
        current = None
        try:
            with db.transaction():
                series = db.get_series(series_id)
                if not series.active:
                    return 0
                template = db.get_task(series.template_task_id)
                exceptions = db.list_exceptions(series_id)
                existing = db.series_occurrence_keys(series_id)
                upcoming = db.count_upcoming_instances(series_id, now)
                plan = self.plan(series, exceptions, now, upcoming=upcoming)

                processed = None
                exhausted = True
                for occ in plan.occurrences:
                    current = occ.scheduled_at
                    key = to_utc(occ.scheduled_at)
                    if occ.needs_instance and key not in existing:
                        if created >= self.config.max_batch_size:
                            exhausted = False
                            break
                        db.add_task(instance_from_template(template, series, occ))
                        existing.add(key)
                        created += 1
                    processed = occ.scheduled_at

                new_boundary = processed
                if exhausted:
                    new_boundary = max(filter(None, [processed, plan.window_end]))
                if new_boundary is not None and (
                    series.last_materialized_until is None
                    or new_boundary > series.last_materialized_until
                ):
                    advance_boundary(db, series_id, new_boundary)
        except sqlite3.Error as e:
            log_msg(f"materialization of {series_id} rolled back at {current}: {e}")
            raise MaterializationError(series_id, current, e) from e

        if created:
            log_msg(f"materialized {created} instance(s) for series {series_id}")
        return created

    def materialize_all(self, db: DatabaseManager, now: datetime | None = None) -> MaterializationSummary:
        """
        Run a pass for every active series. A failing series is recorded in
        the summary and does not stop the others.
        """
        now = now or utc_now()
        started = time.perf_counter()
        summary = MaterializationSummary()
        for series in db.active_series():
            summary.series_processed += 1
            try:
                summary.instances_created += self.materialize_series(db, series.id, now)
            except RekurError as e:
                summary.series_with_errors += 1
                summary.errors.append(f"{series.short_id}: {e}")
                log_msg(f"series {series.id} failed: {e}")
        summary.duration_ms = int((time.perf_counter() - started) * 1000)
        return summary

    def preview(
        self,
        series: Series,
        exceptions: list[SeriesException],
        start: datetime,
        limit: int = 10,
    ) -> list[Occurrence]:
        """The next realized occurrences at or after start, without writing."""
        rule = parse_rule(series.rrule)
        after = start - timedelta(microseconds=1)
        # Moves can surface later than their slot; read a few extra.
        tail = expand(rule, series.seed, series.timezone, after=after)
        raw = list(islice(tail, limit + len(exceptions)))
        return apply_exceptions(raw, exceptions)[:limit]

