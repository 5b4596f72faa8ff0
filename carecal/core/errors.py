"""
CareCalendar - Error taxonomy.

Every error the scheduling core raises is a SchedulingError. All of them
describe bad input or a business rule, so none is retried automatically;
only StorageUnavailable reports a transient fault, and only after the
bounded retries around a write transaction ran out.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from carecal.data.models import Schedule


class SchedulingError(Exception):
    """Base class for caller-visible scheduling failures."""


class InvalidInterval(SchedulingError):
    """End time is not strictly after start time."""


class MissingStartTime(SchedulingError):
    """A schedule that is not all-day has no start time."""


class TimeConflict(SchedulingError):
    """The interval overlaps another schedule of the same resident and day."""

    def __init__(
        self,
        message: str,
        conflicting_schedules: list[Schedule] | None = None,
        suggested_time: str | None = None,
    ) -> None:
        super().__init__(message)
        self.conflicting_schedules = conflicting_schedules or []
        self.suggested_time = suggested_time


class UnknownReference(SchedulingError):
    """Input points at a schedule type or resident that does not exist."""


class ReferentialConflict(SchedulingError):
    """A delete was blocked because schedules still reference the row."""

    def __init__(self, entity_kind: str, entity_id: int, reference_count: int) -> None:
        super().__init__(
            f"{entity_kind} {entity_id} is referenced by {reference_count} schedule(s)"
        )
        self.entity_kind = entity_kind
        self.entity_id = entity_id
        self.reference_count = reference_count


class InvalidDate(SchedulingError):
    """A calendar day could not be parsed, or no timezone is configured."""


class NotFound(SchedulingError):
    """No row with the given id."""

    def __init__(self, entity_kind: str, entity_id: int) -> None:
        super().__init__(f"{entity_kind} {entity_id} not found")
        self.entity_kind = entity_kind
        self.entity_id = entity_id


class InvalidField(SchedulingError):
    """A field failed format or catalog validation."""


class StorageUnavailable(SchedulingError):
    """The database stayed locked or busy through every retry."""
