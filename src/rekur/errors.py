"""
Error types raised by rekur.

Every failure is scoped to the operation that raised it. The command line
prints the message and exits with status 1; nothing here is fatal to the
process.
"""

from __future__ import annotations

from datetime import datetime


class RekurError(Exception):
    """Base class for every error rekur raises on purpose."""


class RuleValidationError(RekurError):
    """A recurrence rule is malformed or contradictory."""

    def __init__(self, clause: str, message: str):
        self.clause = clause
        self.message = message
        super().__init__(f"Invalid {clause} clause: {message}")


class TimezoneError(RekurError):
    """An unrecognized IANA timezone name."""

    def __init__(self, name: str, suggestions: list[str] | None = None):
        self.name = name
        self.suggestions = list(suggestions or [])
        msg = f"Unknown timezone {name!r}"
        if self.suggestions:
            msg += f" (did you mean: {', '.join(self.suggestions)}?)"
        super().__init__(msg)


class ExceptionConflictError(RekurError):
    """An exception targets an instant that is not an occurrence of its series."""


class MaterializationError(RekurError):
    """Instance creation failed part way through a materialization pass."""

    def __init__(
        self,
        series_id: str,
        occurrence_dt: datetime | None = None,
        cause: BaseException | None = None,
    ):
        self.series_id = series_id
        self.occurrence_dt = occurrence_dt
        self.cause = cause
        where = f" at {occurrence_dt.isoformat()}" if occurrence_dt else ""
        why = f": {cause}" if cause else ""
        super().__init__(f"Materialization failed for series {series_id}{where}{why}")


class ScopeError(RekurError):
    """An edit scope is missing or cannot be applied to the target."""


class BoundaryInvariantError(RekurError):
    """The materialization boundary was asked to move backward."""


class NotFoundError(RekurError):
    pass


class AmbiguousIdError(RekurError):
    """A short id matched more than one record."""

    def __init__(self, prefix: str, candidates: list[str]):
        self.prefix = prefix
        self.candidates = list(candidates)
        super().__init__(
            f"Id prefix {prefix!r} is ambiguous; matches: {', '.join(self.candidates)}"
        )


class InvalidInputError(RekurError):
    pass


class TaskBlockedError(RekurError):
    """A task cannot be completed while its dependencies are pending."""

    def __init__(self, blocking: list[str]):
        self.blocking = list(blocking)
        super().__init__(f"Task is blocked by: {', '.join(self.blocking)}")


class CircularDependencyError(RekurError):
    pass
