"""
CareCalendar - Monthly calendar view.

Groups committed schedules by calendar day for a month grid. Pure read
path: a month with no registered days yields an empty list.
"""

from __future__ import annotations

import calendar
import logging
from datetime import date, time
from typing import TYPE_CHECKING

from carecal.core.errors import InvalidDate
from carecal.data.models import CalendarDate, DaySchedules, Schedule

if TYPE_CHECKING:
    from carecal.data.db import CareCalendarDB

logger = logging.getLogger(__name__)


def month_bounds(year: int, month: int) -> tuple[date, date]:
    """First and last day of the month; InvalidDate when out of range."""
    if not 1 <= month <= 12:
        raise InvalidDate(f"Month must be 1-12, got {month}")
    if not 1 <= year <= 9999:
        raise InvalidDate(f"Year must be 1-9999, got {year}")
    last = calendar.monthrange(year, month)[1]
    return date(year, month, 1), date(year, month, last)


def schedule_sort_key(schedule: Schedule) -> tuple[bool, time, time, int]:
    """All-day / start-less entries first, then by start, end and id."""
    timed = schedule.start_time is not None
    return (
        timed,
        schedule.start_time or time.min,
        schedule.end_time or time.min,
        schedule.id,
    )


def group_by_day(
    calendar_dates: list[CalendarDate],
    schedules: list[Schedule],
    include_empty: bool = True,
) -> list[DaySchedules]:
    """Attach each schedule to its day, in ascending day order."""
    by_date_id: dict[int, list[Schedule]] = {cd.id: [] for cd in calendar_dates}
    for schedule in schedules:
        by_date_id.setdefault(schedule.date_id, []).append(schedule)

    days: list[DaySchedules] = []
    for cd in sorted(calendar_dates, key=lambda c: c.calendar_date):
        day_schedules = sorted(by_date_id[cd.id], key=schedule_sort_key)
        if not day_schedules and not include_empty:
            continue
        days.append(DaySchedules(calendar_date=cd, schedules=day_schedules))
    return days


def monthly_schedules(
    db: CareCalendarDB, year: int, month: int, include_empty: bool = True,
) -> list[DaySchedules]:
    """Registered days of the month, each with its ordered schedules.

    Args:
        db: Store to read from.
        year: Calendar year.
        month: Calendar month, 1-12.
        include_empty: Keep registered days that have no schedules.
    """
    first_day, last_day = month_bounds(year, month)
    with db.snapshot() as conn:
        calendar_dates = db.list_calendar_dates(conn, first_day, last_day)
        schedules = db.list_schedules(conn, first_day=first_day, last_day=last_day)

    days = group_by_day(calendar_dates, schedules, include_empty=include_empty)
    logger.debug(
        "Monthly view %04d-%02d: %d day(s), %d schedule(s)",
        year, month, len(days), len(schedules),
    )
    return days
