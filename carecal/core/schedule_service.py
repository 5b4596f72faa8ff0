"""
CareCalendar - Schedule Service.

Stateless service that owns the validated write path for schedules:
shape validation -> reference check -> resolve calendar day -> conflict
check -> commit. Everything after shape validation runs in one write
transaction, so two writers can never both commit overlapping intervals
for the same resident and day. A rejected write leaves the store
untouched.
"""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Callable
from datetime import date, datetime, time
from typing import TYPE_CHECKING, TypeVar

from carecal.core.calendar_registry import CalendarRegistry
from carecal.core.calendar_view import monthly_schedules
from carecal.core.conflict_checker import check_conflict, has_conflict
from carecal.core.errors import (
    InvalidField,
    InvalidInterval,
    NotFound,
    TimeConflict,
    UnknownReference,
)
from carecal.core.validation import (
    ScheduleFields,
    parse_time_of_day,
    validate_fields,
    validate_interval,
)
from carecal.data.db import TIME_CONFLICT_MARKER

if TYPE_CHECKING:
    from carecal.data.db import CareCalendarDB
    from carecal.data.models import DaySchedules, Schedule

logger = logging.getLogger(__name__)

T = TypeVar("T")

_UPDATABLE_FIELDS = {
    "date", "title", "description", "start_time", "end_time",
    "all_day", "schedule_type_id", "resident_id",
}


def _fmt(value: time | None) -> str:
    return value.strftime("%H:%M") if value is not None else "--:--"


class ScheduleService:
    """Create, update, delete and read schedules.

    Returns domain objects and raises SchedulingError subclasses; never
    formats anything for a particular UI.
    """

    def __init__(
        self,
        db: CareCalendarDB,
        timezone: str | None = None,
        day_start: str | None = None,
        day_end: str | None = None,
        include_empty_days: bool | None = None,
    ) -> None:
        if day_start is None or day_end is None or include_empty_days is None:
            from carecal.config import settings
            day_start = day_start or settings.DAY_START
            day_end = day_end or settings.DAY_END
            if include_empty_days is None:
                include_empty_days = settings.INCLUDE_EMPTY_DAYS

        self._db = db
        self._registry = CalendarRegistry(db, timezone)
        self._day_start = day_start
        self._day_end = day_end
        self._include_empty_days = include_empty_days

    @property
    def registry(self) -> CalendarRegistry:
        return self._registry

    # ------------------------------------------------------------------
    # Public: writes
    # ------------------------------------------------------------------

    def create_schedule(
        self,
        date: date | datetime | str,
        schedule_type_id: int,
        title: str,
        resident_id: int | None = None,
        description: str | None = None,
        start_time: time | str | None = None,
        end_time: time | str | None = None,
        all_day: bool = False,
    ) -> Schedule:
        """Book a schedule on ``date``.

        Raises:
            InvalidDate: unparsable date or no timezone configured.
            InvalidField: a field failed format validation.
            MissingStartTime: not all-day and no start time.
            InvalidInterval: end time not after start time.
            UnknownReference: schedule type or resident does not exist.
            TimeConflict: interval overlaps the resident's other schedules.
        """
        day = self._registry.to_day(date)
        fields = validate_fields(ScheduleFields, {
            "title": title,
            "description": description,
            "start_time": start_time,
            "end_time": end_time,
            "all_day": all_day,
            "schedule_type_id": schedule_type_id,
            "resident_id": resident_id,
        })
        start, end = validate_interval(fields)

        def _create(conn: sqlite3.Connection) -> Schedule:
            self._require_references(conn, fields)
            calendar_date = self._registry.resolve_in(conn, day)
            self._reject_conflicts(conn, calendar_date.id, fields.resident_id, start, end)
            schedule_id = self._db.insert_schedule(
                conn, self._row_values(calendar_date.id, fields, start, end),
            )
            return self._db.get_schedule(conn, schedule_id)

        schedule = self._write(_create)
        logger.info(
            "Schedule created: #%d '%s' on %s %s-%s (resident %s)",
            schedule.id, schedule.title, day.isoformat(),
            _fmt(schedule.start_time), _fmt(schedule.end_time), schedule.resident_id,
        )
        return schedule

    def update_schedule(self, schedule_id: int, **changes: object) -> Schedule:
        """Apply a partial update; unchanged fields keep their stored values.

        Accepts the same fields as create_schedule. The conflict check
        ignores the schedule's own previous interval.

        Raises:
            NotFound: no schedule with ``schedule_id``.
            plus every error create_schedule can raise.
        """
        unknown = set(changes) - _UPDATABLE_FIELDS
        if unknown:
            raise InvalidField(f"Unknown schedule field(s): {', '.join(sorted(unknown))}")
        day = self._registry.to_day(changes["date"]) if "date" in changes else None

        def _update(conn: sqlite3.Connection) -> Schedule:
            current = self._db.get_schedule(conn, schedule_id)
            if current is None:
                raise NotFound("schedule", schedule_id)

            merged = {
                "title": current.title,
                "description": current.description,
                "start_time": current.start_time,
                "end_time": current.end_time,
                "all_day": current.all_day,
                "schedule_type_id": current.schedule_type_id,
                "resident_id": current.resident_id,
            }
            merged.update({k: v for k, v in changes.items() if k != "date"})
            fields = validate_fields(ScheduleFields, merged)
            start, end = validate_interval(fields)

            self._require_references(conn, fields)
            if day is not None:
                date_id = self._registry.resolve_in(conn, day).id
            else:
                date_id = current.date_id
            self._reject_conflicts(
                conn, date_id, fields.resident_id, start, end,
                exclude_schedule_id=schedule_id,
            )
            self._db.update_schedule(
                conn, schedule_id, self._row_values(date_id, fields, start, end),
            )
            return self._db.get_schedule(conn, schedule_id)

        schedule = self._write(_update)
        logger.info(
            "Schedule updated: #%d '%s' on %s %s-%s (resident %s)",
            schedule.id, schedule.title, schedule.calendar_date.calendar_date.isoformat(),
            _fmt(schedule.start_time), _fmt(schedule.end_time), schedule.resident_id,
        )
        return schedule

    def delete_schedule(self, schedule_id: int) -> None:
        """Delete unconditionally; removing an interval cannot create a conflict."""
        deleted = self._db.run_write(lambda conn: self._db.delete_schedule(conn, schedule_id))
        if not deleted:
            raise NotFound("schedule", schedule_id)
        logger.info("Schedule #%d deleted", schedule_id)

    # ------------------------------------------------------------------
    # Public: reads
    # ------------------------------------------------------------------

    def get_schedule(self, schedule_id: int) -> Schedule:
        with self._db.connection() as conn:
            schedule = self._db.get_schedule(conn, schedule_id)
        if schedule is None:
            raise NotFound("schedule", schedule_id)
        return schedule

    def list_schedules(
        self,
        date: date | datetime | str | None = None,
        start_date: date | datetime | str | None = None,
        end_date: date | datetime | str | None = None,
        resident_id: int | None = None,
    ) -> list[Schedule]:
        """Schedules on one day or in an inclusive day range.

        ``date`` takes precedence over ``start_date``/``end_date``. Results
        are ordered by day, then all-day entries, then start time.
        """
        if date is not None:
            first_day = last_day = self._registry.to_day(date)
        else:
            first_day = self._registry.to_day(start_date) if start_date is not None else None
            last_day = self._registry.to_day(end_date) if end_date is not None else None

        with self._db.connection() as conn:
            return self._db.list_schedules(
                conn, first_day=first_day, last_day=last_day, resident_id=resident_id,
            )

    def monthly_schedules(
        self,
        year: int | None = None,
        month: int | None = None,
        include_empty: bool | None = None,
    ) -> list[DaySchedules]:
        """Registered days of a month with their ordered schedules.

        Defaults to the current month in the configured timezone.
        """
        if year is None or month is None:
            today = self._registry.today()
            year = year if year is not None else today.year
            month = month if month is not None else today.month
        if include_empty is None:
            include_empty = self._include_empty_days
        return monthly_schedules(self._db, year, month, include_empty=include_empty)

    def has_conflict(
        self,
        calendar_date_id: int,
        resident_id: int | None,
        start: time | str,
        end: time | str,
        exclude_schedule_id: int | None = None,
    ) -> bool:
        """Read-only conflict probe, e.g. for live feedback in a form."""
        try:
            start_t = parse_time_of_day(start)
            end_t = parse_time_of_day(end)
        except ValueError as exc:
            raise InvalidField(str(exc)) from exc
        if start_t is None or end_t is None:
            raise InvalidField("start and end are both required")
        if end_t <= start_t:
            raise InvalidInterval(f"end {_fmt(end_t)} must be after start {_fmt(start_t)}")
        with self._db.connection() as conn:
            return has_conflict(
                self._db, conn, calendar_date_id, resident_id,
                start_t, end_t, exclude_schedule_id,
            )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _write(self, operation: Callable[[sqlite3.Connection], T]) -> T:
        """Run a schedule write, mapping storage constraint errors."""
        try:
            return self._db.run_write(operation)
        except sqlite3.IntegrityError as exc:
            message = str(exc)
            if TIME_CONFLICT_MARKER in message:
                logger.warning("Storage rejected an overlapping schedule: %s", message)
                raise TimeConflict("Schedule overlaps another schedule of the resident") from exc
            if "FOREIGN KEY" in message:
                raise UnknownReference("Schedule references a missing row") from exc
            raise

    def _require_references(self, conn: sqlite3.Connection, fields: ScheduleFields) -> None:
        if not self._db.row_exists(conn, "schedule_types", fields.schedule_type_id):
            raise UnknownReference(f"Unknown schedule type: {fields.schedule_type_id}")
        if fields.resident_id is not None and not self._db.row_exists(
            conn, "residents", fields.resident_id,
        ):
            raise UnknownReference(f"Unknown resident: {fields.resident_id}")

    def _reject_conflicts(
        self,
        conn: sqlite3.Connection,
        calendar_date_id: int,
        resident_id: int | None,
        start: time | None,
        end: time | None,
        exclude_schedule_id: int | None = None,
    ) -> None:
        # Only a concrete [start, end) interval can conflict.
        if start is None or end is None:
            return
        result = check_conflict(
            self._db, conn, calendar_date_id, resident_id, start, end,
            exclude_schedule_id=exclude_schedule_id,
            day_start=self._day_start, day_end=self._day_end,
        )
        if not result.has_conflict:
            return

        clashing = ", ".join(
            f"#{s.id} '{s.title}' {_fmt(s.start_time)}-{_fmt(s.end_time)}"
            for s in result.conflicting_schedules
        )
        logger.warning(
            "Rejected %s-%s for resident %d on date #%d: conflicts with %s",
            _fmt(start), _fmt(end), resident_id, calendar_date_id, clashing,
        )
        raise TimeConflict(
            f"{_fmt(start)}-{_fmt(end)} conflicts with: {clashing}",
            conflicting_schedules=result.conflicting_schedules,
            suggested_time=result.suggested_time,
        )

    @staticmethod
    def _row_values(
        date_id: int, fields: ScheduleFields, start: time | None, end: time | None,
    ) -> dict:
        return {
            "date_id": date_id,
            "title": fields.title,
            "description": fields.description,
            "start_time": start,
            "end_time": end,
            "all_day": fields.all_day,
            "schedule_type_id": fields.schedule_type_id,
            "resident_id": fields.resident_id,
        }
