"""
CareCalendar - Entry Point.

`python main.py [YYYY-MM]` initialises the database, seeds the default
schedule types and prints the month's calendar.
"""

import logging
import sys

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)

from carecal.core.catalog_service import CatalogService
from carecal.core.errors import SchedulingError
from carecal.core.schedule_service import ScheduleService
from carecal.data.db import CareCalendarDB
from carecal.data.models import DaySchedules

_WEEKDAYS = ["Sun", "Mon", "Tue", "Wed", "Thu", "Fri", "Sat"]


def format_month(days: list[DaySchedules]) -> str:
    """Render a monthly view as plain text, one block per day."""
    if not days:
        return "(no schedules this month)"
    lines: list[str] = []
    for day in days:
        cd = day.calendar_date
        header = f"{cd.calendar_date.isoformat()} ({_WEEKDAYS[cd.day_of_week]})"
        if cd.is_holiday:
            header += f" holiday: {cd.holiday_name or '-'}"
        lines.append(header)
        for s in day.schedules:
            if s.start_time is None:
                when = "all day    "
            else:
                end = s.end_time.strftime("%H:%M") if s.end_time else "     "
                when = f"{s.start_time:%H:%M}-{end}"
            who = f" ({s.resident.name})" if s.resident else ""
            lines.append(f"  {when}  {s.title} [{s.schedule_type.type_name}]{who}")
    return "\n".join(lines)


def main(argv: list[str]) -> int:
    db = CareCalendarDB()
    CatalogService(db).seed_default_schedule_types()
    service = ScheduleService(db)

    year = month = None
    if argv:
        try:
            year_s, month_s = argv[0].split("-")
            year, month = int(year_s), int(month_s)
        except ValueError:
            print(f"Usage: python main.py [YYYY-MM] (got {argv[0]!r})", file=sys.stderr)
            return 2

    try:
        days = service.monthly_schedules(year, month)
    except SchedulingError as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        return 1

    print(format_month(days))
    return 0


if __name__ == "__main__":
    sys.exit(main(sys.argv[1:]))
