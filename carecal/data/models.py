"""
CareCalendar - Data Models.

Plain dataclasses returned by the store. Calendar days, residents and
schedule types are reference data; a Schedule is the only row that points
at the others.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, time


@dataclass
class CalendarDate:
    """A registered calendar day.

    Other rows reference days only through ``id``, never by the raw date.
    """

    id: int
    calendar_date: date
    day_of_week: int                  # 0 = Sunday ... 6 = Saturday
    is_holiday: bool = False
    holiday_name: str | None = None
    notes: str | None = None


@dataclass
class Resident:
    """A resident of the care facility."""

    id: int
    name: str
    gender: str | None = None          # "male" | "female" | "other"
    birth_date: date | None = None
    medical_notes: str | None = None
    schedule_count: int | None = None  # only filled in by list queries

    def age(self, today: date) -> int | None:
        """Whole years between birth_date and today, or None if unknown."""
        if self.birth_date is None:
            return None
        years = today.year - self.birth_date.year
        if (today.month, today.day) < (self.birth_date.month, self.birth_date.day):
            years -= 1
        return years


@dataclass
class ScheduleType:
    """A category of care activity, shown in its colour on the calendar."""

    id: int
    type_name: str
    color_code: str                   # "#RRGGBB"
    is_active: bool = True


@dataclass
class Schedule:
    """A care activity booked on a calendar day.

    ``start_time``/``end_time`` form the half-open interval [start, end)
    used for conflict checks. All-day entries carry neither.
    """

    id: int
    date_id: int
    title: str
    schedule_type_id: int
    description: str | None = None
    start_time: time | None = None
    end_time: time | None = None
    all_day: bool = False
    resident_id: int | None = None
    calendar_date: CalendarDate | None = None
    schedule_type: ScheduleType | None = None
    resident: Resident | None = None

    @property
    def has_interval(self) -> bool:
        return self.start_time is not None and self.end_time is not None


@dataclass
class DaySchedules:
    """One cell of the monthly calendar grid."""

    calendar_date: CalendarDate
    schedules: list[Schedule] = field(default_factory=list)
