from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum

from .shared import short_id


class TaskStatus(StrEnum):
    PENDING = "pending"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class TaskPriority(StrEnum):
    NONE = "none"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class ExceptionKind(StrEnum):
    SKIP = "skip"  # occurrence suppressed, no instance
    OVERRIDE = "override"  # instance exists and was edited by hand
    MOVE = "move"  # instance rescheduled to another instant


@dataclass
class Task:
    id: str
    name: str
    description: str | None = None
    status: TaskStatus = TaskStatus.PENDING
    priority: TaskPriority = TaskPriority.NONE
    due_at: datetime | None = None
    completed_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    project_id: str | None = None
    parent_id: str | None = None
    series_id: str | None = None
    # Original rule instant for series instances; due_at differs after a move.
    occurrence_dt: datetime | None = None
    tags: list[str] = field(default_factory=list)
    depends_on: list[str] = field(default_factory=list)

    @property
    def short_id(self) -> str:
        return short_id(self.id)

    @property
    def is_instance(self) -> bool:
        return self.series_id is not None

    @property
    def is_open(self) -> bool:
        return self.status == TaskStatus.PENDING


@dataclass
class Series:
    id: str
    template_task_id: str
    rrule: str
    dtstart: datetime
    timezone: str
    active: bool = True
    last_materialized_until: datetime | None = None
    split_from: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    # Naive wall-clock start in the series zone; a start inside a DST gap
    # has no instant of its own, so dtstart alone cannot carry it.
    dtstart_wall: datetime | None = None

    @property
    def short_id(self) -> str:
        return short_id(self.id)

    @property
    def seed(self) -> datetime:
        """What the rule is expanded from: the wall-clock start when known."""
        return self.dtstart_wall if self.dtstart_wall is not None else self.dtstart


@dataclass
class SeriesException:
    series_id: str
    occurrence_dt: datetime
    kind: ExceptionKind
    task_id: str | None = None
    notes: str | None = None
    created_at: datetime | None = None
    # Due instant of the exception task, filled in when read from the database.
    target_at: datetime | None = None

    def __post_init__(self):
        self.kind = ExceptionKind(self.kind)
        if self.kind == ExceptionKind.SKIP and self.task_id is not None:
            raise ValueError("A skip exception cannot reference a task")
        if self.kind != ExceptionKind.SKIP and self.task_id is None:
            raise ValueError(f"A {self.kind} exception requires a task reference")


@dataclass(frozen=True)
class Occurrence:
    scheduled_at: datetime
    effective_at: datetime
    kind: ExceptionKind | None = None
    task_id: str | None = None

    @property
    def is_visible(self) -> bool:
        return self.kind != ExceptionKind.SKIP

    @property
    def is_moved(self) -> bool:
        return self.kind == ExceptionKind.MOVE

    @property
    def needs_instance(self) -> bool:
        """Visible and not already backed by an exception task."""
        return self.is_visible and self.task_id is None


@dataclass
class Project:
    id: str
    name: str
    description: str | None = None
    created_at: datetime | None = None


@dataclass
class TaskQuery:
    """Filters for listing tasks; every field narrows the result."""

    status: TaskStatus | None = TaskStatus.PENDING
    project: str | None = None
    tags: list[str] = field(default_factory=list)
    exclude_tags: list[str] = field(default_factory=list)
    priority: TaskPriority | None = None
    due_after: datetime | None = None
    due_before: datetime | None = None
    overdue: bool = False
    series_id: str | None = None
    include_templates: bool = False
    limit: int | None = None

    @property
    def has_due_filter(self) -> bool:
        return bool(self.due_after or self.due_before or self.overdue)


@dataclass
class CompletionResult:
    completed: Task
    series_id: str | None = None
    next_task: Task | None = None
    next_occurrence: datetime | None = None


@dataclass
class SeriesStatistics:
    series_id: str
    total_instances: int = 0
    completed_instances: int = 0
    pending_instances: int = 0
    cancelled_instances: int = 0
    skip_count: int = 0
    override_count: int = 0
    move_count: int = 0
    first_due: datetime | None = None
    last_due: datetime | None = None
    next_occurrence: datetime | None = None
    active: bool = True

    @property
    def exception_count(self) -> int:
        return self.skip_count + self.override_count + self.move_count

    @property
    def completion_rate(self) -> float:
        if not self.total_instances:
            return 0.0
        return self.completed_instances / self.total_instances

    @property
    def health_score(self) -> float:
        """Completion rate, discounted for paused series and heavy exception use."""
        score = self.completion_rate
        if not self.active:
            score *= 0.8
        if self.total_instances and self.exception_count / self.total_instances >= 0.2:
            score *= 0.9
        return score
