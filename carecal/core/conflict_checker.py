"""
CareCalendar - Schedule Conflict Checker.

Decides whether a resident's proposed [start, end) interval on a calendar
day overlaps a committed schedule, and suggests the nearest free start
time when it does.

Intervals are half-open: [a, b) and [c, d) overlap iff a < d and c < b.
Back-to-back bookings (10:00-10:30 then 10:30-11:00) never conflict.
"""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime, time
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from carecal.data.db import CareCalendarDB
    from carecal.data.models import Schedule

logger = logging.getLogger(__name__)


@dataclass
class ConflictResult:
    """Result of a conflict check against a resident's day."""

    has_conflict: bool
    conflicting_schedules: list[Schedule] = field(default_factory=list)
    suggested_time: str | None = None


def intervals_overlap(a_start: time, a_end: time, b_start: time, b_end: time) -> bool:
    """Half-open overlap test; touching endpoints do not overlap."""
    return a_start < b_end and b_start < a_end


def time_to_minutes(value: time) -> int:
    return value.hour * 60 + value.minute


def hhmm_to_minutes(value: str) -> int:
    t = datetime.strptime(value, "%H:%M").time()
    return time_to_minutes(t)


def overlaps_any(start: int, end: int, busy: list[tuple[int, int]]) -> bool:
    """Check if [start, end) overlaps with any busy interval."""
    for bs, be in busy:
        if start < be and bs < end:
            return True
    return False


def find_nearest_free_slot(
    busy_intervals: list[tuple[int, int]],
    duration_minutes: int,
    requested_start: int,
    day_start: int = 420,
    day_end: int = 1320,
) -> str | None:
    """Find the nearest free slot of the given duration.

    Searches forward from requested_start in 15-min steps, then backward
    to day_start. Returns "HH:MM" or None if no slot fits.
    """
    sorted_busy = sorted(busy_intervals)

    def _fits(candidate: int) -> bool:
        candidate_end = candidate + duration_minutes
        if candidate < day_start or candidate_end > day_end:
            return False
        return not overlaps_any(candidate, candidate_end, sorted_busy)

    # Search forward, skipping the requested time itself
    t = requested_start + 15
    while t + duration_minutes <= day_end:
        if _fits(t):
            return f"{t // 60:02d}:{t % 60:02d}"
        t += 15

    # Search backward
    t = requested_start - 15
    while t >= day_start:
        if _fits(t):
            return f"{t // 60:02d}:{t % 60:02d}"
        t -= 15

    return None


def find_conflicts(
    existing: list[Schedule], start: time, end: time,
) -> list[Schedule]:
    """Return the schedules in ``existing`` whose interval overlaps [start, end)."""
    return [
        s for s in existing
        if s.has_interval and intervals_overlap(start, end, s.start_time, s.end_time)
    ]


def has_conflict(
    db: CareCalendarDB,
    conn: sqlite3.Connection,
    calendar_date_id: int,
    resident_id: int | None,
    start: time,
    end: time,
    exclude_schedule_id: int | None = None,
) -> bool:
    """True if [start, end) overlaps a committed schedule of the resident.

    Facility-wide schedules (no resident) are never checked.
    ``exclude_schedule_id`` lets an update ignore its own previous row.
    """
    if resident_id is None:
        return False
    existing = db.find_resident_day_schedules(
        conn, calendar_date_id, resident_id, exclude_schedule_id,
    )
    return bool(find_conflicts(existing, start, end))


def check_conflict(
    db: CareCalendarDB,
    conn: sqlite3.Connection,
    calendar_date_id: int,
    resident_id: int | None,
    start: time,
    end: time,
    exclude_schedule_id: int | None = None,
    day_start: str = "07:00",
    day_end: str = "22:00",
) -> ConflictResult:
    """Like has_conflict, but also report the clashes and a free alternative.

    Args:
        db: Store used to read the resident's schedules.
        conn: Connection of the surrounding write transaction.
        calendar_date_id: Day the candidate is booked on.
        resident_id: Resident, or None for a facility-wide schedule.
        start: Candidate start time.
        end: Candidate end time (strictly after start).
        exclude_schedule_id: Schedule to skip (self-exclusion on update).
        day_start: Earliest start considered for the suggestion ("HH:MM").
        day_end: Latest end considered for the suggestion ("HH:MM").

    Returns:
        ConflictResult with conflict info and optional suggested alternative.
    """
    if resident_id is None:
        return ConflictResult(has_conflict=False)

    existing = db.find_resident_day_schedules(
        conn, calendar_date_id, resident_id, exclude_schedule_id,
    )
    conflicting = find_conflicts(existing, start, end)
    if not conflicting:
        return ConflictResult(has_conflict=False)

    busy_intervals = [
        (time_to_minutes(s.start_time), time_to_minutes(s.end_time)) for s in existing
    ]
    req_start = time_to_minutes(start)
    suggested = find_nearest_free_slot(
        busy_intervals,
        time_to_minutes(end) - req_start,
        req_start,
        day_start=hhmm_to_minutes(day_start),
        day_end=hhmm_to_minutes(day_end),
    )

    logger.debug(
        "Resident %d conflicts on date #%d at %s-%s with %d schedule(s)",
        resident_id, calendar_date_id, f"{start:%H:%M}", f"{end:%H:%M}", len(conflicting),
    )
    return ConflictResult(
        has_conflict=True,
        conflicting_schedules=conflicting,
        suggested_time=suggested,
    )
