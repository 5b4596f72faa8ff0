"""
CareCalendar - Calendar Date Registry.

Maps a calendar day to the stable id every schedule references. Days are
registered lazily the first time something is booked on them, through an
insert-or-fetch under the UNIQUE constraint on the day, so concurrent
resolvers for the same day always end up sharing one row.
"""

from __future__ import annotations

import logging
import sqlite3
from datetime import date, datetime
from typing import TYPE_CHECKING
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from carecal.core.errors import InvalidDate

if TYPE_CHECKING:
    from carecal.data.db import CareCalendarDB
    from carecal.data.models import CalendarDate

logger = logging.getLogger(__name__)


def load_timezone(name: str | None) -> ZoneInfo:
    """Return the zone for ``name``; refuse to guess when it is missing."""
    if not name:
        raise InvalidDate("No timezone is configured; refusing to resolve calendar days")
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise InvalidDate(f"Unknown timezone: {name!r}") from exc


def parse_day(value: date | datetime | str, tz: ZoneInfo) -> date:
    """Turn user input into a calendar day in ``tz``.

    Aware datetimes are converted into ``tz`` first; naive ones are taken
    as already local.
    """
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(tz)
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        try:
            return datetime.strptime(value.strip(), "%Y-%m-%d").date()
        except ValueError as exc:
            raise InvalidDate(f"Not a YYYY-MM-DD date: {value!r}") from exc
    raise InvalidDate(f"Not a calendar day: {value!r}")


def day_of_week(day: date) -> int:
    """0 = Sunday ... 6 = Saturday."""
    return day.isoweekday() % 7


class CalendarRegistry:
    """Find-or-create access to calendar_dates."""

    def __init__(self, db: CareCalendarDB, timezone: str | None = None) -> None:
        if timezone is None:
            from carecal.config import settings
            timezone = settings.TIMEZONE
        self._db = db
        self._timezone = timezone

    @property
    def tz(self) -> ZoneInfo:
        return load_timezone(self._timezone)

    def today(self) -> date:
        return datetime.now(self.tz).date()

    def to_day(self, value: date | datetime | str) -> date:
        return parse_day(value, self.tz)

    def resolve_in(self, conn: sqlite3.Connection, value: date | datetime | str) -> CalendarDate:
        """Resolve or create the day inside the caller's transaction."""
        day = self.to_day(value)
        return self._db.insert_calendar_date_if_missing(conn, day, day_of_week(day))

    def resolve_or_create(self, value: date | datetime | str) -> int:
        """Return the id for ``value``, registering the day if unseen."""
        day = self.to_day(value)
        calendar_date = self._db.run_write(lambda conn: self.resolve_in(conn, day))
        return calendar_date.id

    def get(self, value: date | datetime | str) -> CalendarDate | None:
        day = self.to_day(value)
        with self._db.connection() as conn:
            return self._db.find_calendar_date(conn, day)

    def mark_holiday(
        self,
        value: date | datetime | str,
        holiday_name: str | None = None,
        notes: str | None = None,
        is_holiday: bool = True,
    ) -> CalendarDate:
        """Flag a day as a holiday (or clear the flag), registering it if unseen."""
        day = self.to_day(value)

        def _mark(conn: sqlite3.Connection) -> CalendarDate:
            calendar_date = self.resolve_in(conn, day)
            self._db.update_calendar_date(
                conn, calendar_date.id, is_holiday,
                holiday_name if is_holiday else None, notes,
            )
            return self._db.find_calendar_date(conn, day)

        calendar_date = self._db.run_write(_mark)
        logger.info(
            "Calendar date %s holiday=%s (%s)",
            day.isoformat(), is_holiday, holiday_name or "-",
        )
        return calendar_date
