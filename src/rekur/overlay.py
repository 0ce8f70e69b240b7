"""
Exception overlay: skip, override and move applied to a raw occurrence stream.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Iterable, Mapping

from .errors import ExceptionConflictError
from .models import ExceptionKind, Occurrence, SeriesException
from .rules import RecurrenceRule, expand


def _key(instant: datetime) -> datetime:
    return instant.astimezone(timezone.utc)


def build_exception_index(
    exceptions: Iterable[SeriesException],
) -> dict[datetime, SeriesException]:
    """Map each exception's original instant (in UTC) to the exception."""
    index: dict[datetime, SeriesException] = {}
    for exc in exceptions:
        index[_key(exc.occurrence_dt)] = exc
    return index


def overlay_occurrences(
    raw: Iterable[datetime],
    exceptions: Iterable[SeriesException] | Mapping[datetime, SeriesException],
) -> list[Occurrence]:
    """
    Pair each raw instant with its exception, in raw order.

    Skipped instants are kept with kind SKIP so callers that walk the
    schedule (materialization) can account for them.
    """
    index = exceptions if isinstance(exceptions, Mapping) else build_exception_index(
        exceptions
    )
    result = []
    for instant in raw:
        exc = index.get(_key(instant))
        if exc is None:
            result.append(Occurrence(scheduled_at=instant, effective_at=instant))
        elif exc.kind == ExceptionKind.SKIP:
            result.append(
                Occurrence(
                    scheduled_at=instant, effective_at=instant, kind=ExceptionKind.SKIP
                )
            )
        elif exc.kind == ExceptionKind.OVERRIDE:
            result.append(
                Occurrence(
                    scheduled_at=instant,
                    effective_at=instant,
                    kind=ExceptionKind.OVERRIDE,
                    task_id=exc.task_id,
                )
            )
        else:
            target = exc.target_at or instant
            result.append(
                Occurrence(
                    scheduled_at=instant,
                    effective_at=target.astimezone(instant.tzinfo),
                    kind=ExceptionKind.MOVE,
                    task_id=exc.task_id,
                )
            )
    return result


def apply_exceptions(
    raw: Iterable[datetime],
    exceptions: Iterable[SeriesException] | Mapping[datetime, SeriesException],
) -> list[Occurrence]:
    """
    The realized view: skips omitted, overrides kept with their task, moves
    surfaced at their target instant. Sorted by effective instant.
    """
    visible = [o for o in overlay_occurrences(raw, exceptions) if o.is_visible]
    return sorted(visible, key=lambda o: (o.effective_at, o.scheduled_at))


def is_occurrence(
    rule: RecurrenceRule | str, dtstart: datetime, timezone_name, instant: datetime
) -> bool:
    target = _key(instant)
    for candidate in expand(rule, dtstart, timezone_name, end=target):
        if _key(candidate) == target:
            return True
    return False


def check_exception_target(
    rule: RecurrenceRule | str, dtstart: datetime, timezone_name, instant: datetime
):
    """Raise ExceptionConflictError unless instant is in the raw expansion."""
    if not is_occurrence(rule, dtstart, timezone_name, instant):
        raise ExceptionConflictError(
            f"{_key(instant).isoformat()} is not an occurrence of this series"
        )


def find_orphaned_exceptions(
    rule: RecurrenceRule | str,
    dtstart: datetime,
    timezone_name,
    exceptions: Iterable[SeriesException],
) -> list[SeriesException]:
    """Exceptions whose original instant is no longer produced by the rule."""
    exceptions = list(exceptions)
    if not exceptions:
        return []
    latest = max(_key(e.occurrence_dt) for e in exceptions)
    produced = {_key(i) for i in expand(rule, dtstart, timezone_name, end=latest)}
    return [e for e in exceptions if _key(e.occurrence_dt) not in produced]
