"""
CareCalendar - Schedule Database.

SQLite storage for calendar days, residents, schedule types and schedules.
Every operation opens a short-lived connection. Writes run inside
``BEGIN IMMEDIATE`` so that a check and the commit that depends on it are
never interleaved with another writer, even across processes.
"""

from __future__ import annotations

import logging
import sqlite3
import time as _time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import date, datetime, time
from pathlib import Path
from typing import TypeVar

from carecal.core.errors import StorageUnavailable
from carecal.data.models import CalendarDate, Resident, Schedule, ScheduleType

logger = logging.getLogger(__name__)

T = TypeVar("T")

TIME_FORMAT = "%H:%M"

# Raised by the overlap triggers; the service maps it to TimeConflict.
TIME_CONFLICT_MARKER = "time_conflict"

_SCHEMA = """
CREATE TABLE IF NOT EXISTS calendar_dates (
    id            INTEGER PRIMARY KEY AUTOINCREMENT,
    calendar_date TEXT    NOT NULL UNIQUE,
    day_of_week   INTEGER NOT NULL CHECK (day_of_week BETWEEN 0 AND 6),
    is_holiday    INTEGER NOT NULL DEFAULT 0,
    holiday_name  TEXT,
    notes         TEXT
);

CREATE TABLE IF NOT EXISTS residents (
    id            INTEGER PRIMARY KEY AUTOINCREMENT,
    name          TEXT NOT NULL,
    gender        TEXT CHECK (gender IN ('male', 'female', 'other')),
    birth_date    TEXT,
    medical_notes TEXT
);

CREATE TABLE IF NOT EXISTS schedule_types (
    id         INTEGER PRIMARY KEY AUTOINCREMENT,
    type_name  TEXT NOT NULL UNIQUE,
    color_code TEXT NOT NULL DEFAULT '#FF5733'
);

CREATE TABLE IF NOT EXISTS schedules (
    id               INTEGER PRIMARY KEY AUTOINCREMENT,
    date_id          INTEGER NOT NULL
                     REFERENCES calendar_dates(id) ON DELETE CASCADE,
    title            TEXT    NOT NULL,
    description      TEXT,
    start_time       TEXT,
    end_time         TEXT,
    all_day          INTEGER NOT NULL DEFAULT 0,
    schedule_type_id INTEGER NOT NULL
                     REFERENCES schedule_types(id) ON DELETE RESTRICT,
    resident_id      INTEGER
                     REFERENCES residents(id) ON DELETE RESTRICT,
    CHECK (end_time IS NULL OR (start_time IS NOT NULL AND end_time > start_time))
);

CREATE INDEX IF NOT EXISTS idx_schedules_date_resident
    ON schedules (date_id, resident_id);
CREATE INDEX IF NOT EXISTS idx_schedules_start_time
    ON schedules (start_time);
CREATE INDEX IF NOT EXISTS idx_schedules_schedule_type
    ON schedules (schedule_type_id);

CREATE TRIGGER IF NOT EXISTS schedules_no_overlap_insert
BEFORE INSERT ON schedules
WHEN NEW.resident_id IS NOT NULL
 AND NEW.start_time IS NOT NULL
 AND NEW.end_time IS NOT NULL
 AND EXISTS (
    SELECT 1 FROM schedules s
    WHERE s.date_id = NEW.date_id
      AND s.resident_id = NEW.resident_id
      AND s.start_time IS NOT NULL
      AND s.end_time IS NOT NULL
      AND s.start_time < NEW.end_time
      AND NEW.start_time < s.end_time
 )
BEGIN
    SELECT RAISE(ABORT, 'time_conflict');
END;

CREATE TRIGGER IF NOT EXISTS schedules_no_overlap_update
BEFORE UPDATE ON schedules
WHEN NEW.resident_id IS NOT NULL
 AND NEW.start_time IS NOT NULL
 AND NEW.end_time IS NOT NULL
 AND EXISTS (
    SELECT 1 FROM schedules s
    WHERE s.id != NEW.id
      AND s.date_id = NEW.date_id
      AND s.resident_id = NEW.resident_id
      AND s.start_time IS NOT NULL
      AND s.end_time IS NOT NULL
      AND s.start_time < NEW.end_time
      AND NEW.start_time < s.end_time
 )
BEGIN
    SELECT RAISE(ABORT, 'time_conflict');
END;
"""

_SCHEDULE_SELECT = """
    SELECT s.*,
           d.calendar_date AS d_calendar_date,
           d.day_of_week   AS d_day_of_week,
           d.is_holiday    AS d_is_holiday,
           d.holiday_name  AS d_holiday_name,
           d.notes         AS d_notes,
           t.type_name     AS t_type_name,
           t.color_code    AS t_color_code,
           t.is_active     AS t_is_active,
           r.name          AS r_name,
           r.gender        AS r_gender,
           r.birth_date    AS r_birth_date,
           r.medical_notes AS r_medical_notes
    FROM schedules s
    JOIN calendar_dates d ON d.id = s.date_id
    JOIN schedule_types t ON t.id = s.schedule_type_id
    LEFT JOIN residents r ON r.id = s.resident_id
"""

# All-day entries (no start time) first, then by start, end, id.
_SCHEDULE_ORDER = (
    " ORDER BY d.calendar_date, s.start_time IS NOT NULL,"
    " s.start_time, s.end_time, s.id"
)

_SCHEDULE_COLUMNS = {
    "date_id", "title", "description", "start_time", "end_time",
    "all_day", "schedule_type_id", "resident_id",
}
_RESIDENT_COLUMNS = {"name", "gender", "birth_date", "medical_notes"}
_SCHEDULE_TYPE_COLUMNS = {"type_name", "color_code", "is_active"}


def format_time(value: time | None) -> str | None:
    return value.strftime(TIME_FORMAT) if value is not None else None


def _parse_time(value: str | None) -> time | None:
    if value is None:
        return None
    return datetime.strptime(value, TIME_FORMAT).time()


def _parse_date(value: str | None) -> date | None:
    if value is None:
        return None
    return date.fromisoformat(value)


def _to_db(value: object) -> object:
    """Convert a model value to its column representation."""
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, time):
        return format_time(value)
    if isinstance(value, date):
        return value.isoformat()
    return value


def is_transient(exc: sqlite3.OperationalError) -> bool:
    """Lock contention is the only storage failure worth retrying."""
    message = str(exc).lower()
    return "locked" in message or "busy" in message


class CareCalendarDB:
    """SQLite-backed storage for the care calendar.

    Methods that take a ``conn`` run inside a caller-owned connection or
    transaction, so services can combine them atomically. Convenience
    readers without a ``conn`` open their own connection.
    """

    def __init__(
        self,
        db_path: str | None = None,
        busy_timeout: float | None = None,
        retry_attempts: int | None = None,
        retry_delay: float | None = None,
    ) -> None:
        if db_path is None or busy_timeout is None or retry_attempts is None or retry_delay is None:
            from carecal.config import settings
            db_path = db_path if db_path is not None else settings.DATABASE_PATH
            busy_timeout = busy_timeout if busy_timeout is not None else settings.BUSY_TIMEOUT
            if retry_attempts is None:
                retry_attempts = settings.WRITE_RETRY_ATTEMPTS
            if retry_delay is None:
                retry_delay = settings.WRITE_RETRY_DELAY

        self._db_path = db_path
        self._busy_timeout = busy_timeout
        self._retry_attempts = max(1, retry_attempts)
        self._retry_delay = retry_delay
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    @property
    def db_path(self) -> str:
        return self._db_path

    # ------------------------------------------------------------------
    # Connections and transactions
    # ------------------------------------------------------------------

    def _connect(self) -> sqlite3.Connection:
        # isolation_level=None: transactions are opened explicitly below.
        conn = sqlite3.connect(
            self._db_path, timeout=self._busy_timeout, isolation_level=None,
        )
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        """Yield a read connection and close it afterwards."""
        conn = self._connect()
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def snapshot(self) -> Iterator[sqlite3.Connection]:
        """Yield a connection whose reads all see one consistent state."""
        conn = self._connect()
        try:
            conn.execute("BEGIN DEFERRED")
            try:
                yield conn
            finally:
                if conn.in_transaction:
                    conn.execute("COMMIT")
        finally:
            conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Yield a connection holding the database write lock.

        Commits on success, rolls back on any exception.
        """
        conn = self._connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
        finally:
            conn.close()

    def run_write(self, operation: Callable[[sqlite3.Connection], T]) -> T:
        """Run ``operation`` in a write transaction, retrying lock errors.

        Only transient lock contention is retried, with exponential backoff,
        up to the configured number of attempts. Business errors raised by
        ``operation`` propagate immediately with the transaction rolled back.
        """
        for attempt in range(self._retry_attempts):
            try:
                with self.transaction() as conn:
                    return operation(conn)
            except sqlite3.OperationalError as exc:
                if not is_transient(exc):
                    raise
                if attempt == self._retry_attempts - 1:
                    raise StorageUnavailable(
                        f"Database still busy after {self._retry_attempts} attempts"
                    ) from exc
                delay = self._retry_delay * (2 ** attempt)
                logger.warning(
                    "Write attempt %d/%d hit a locked database, retrying in %.2fs",
                    attempt + 1, self._retry_attempts, delay,
                )
                _time.sleep(delay)
        raise StorageUnavailable("No write attempt was made")

    def _init_db(self) -> None:
        """Create all tables if they don't exist, and migrate schema."""
        conn = self._connect()
        try:
            conn.executescript(_SCHEMA)
            # Migrate existing DBs: add new columns if missing
            existing_cols = {
                row[1] for row in conn.execute("PRAGMA table_info(schedule_types)").fetchall()
            }
            if "is_active" not in existing_cols:
                conn.execute(
                    "ALTER TABLE schedule_types ADD COLUMN is_active INTEGER NOT NULL DEFAULT 1"
                )
        finally:
            conn.close()
        logger.debug("Care calendar schema initialized at %s", self._db_path)

    # ------------------------------------------------------------------
    # Row mappers
    # ------------------------------------------------------------------

    @staticmethod
    def _row_to_calendar_date(row: sqlite3.Row) -> CalendarDate:
        return CalendarDate(
            id=row["id"],
            calendar_date=_parse_date(row["calendar_date"]),
            day_of_week=row["day_of_week"],
            is_holiday=bool(row["is_holiday"]),
            holiday_name=row["holiday_name"],
            notes=row["notes"],
        )

    @staticmethod
    def _row_to_resident(row: sqlite3.Row) -> Resident:
        return Resident(
            id=row["id"],
            name=row["name"],
            gender=row["gender"],
            birth_date=_parse_date(row["birth_date"]),
            medical_notes=row["medical_notes"],
            schedule_count=row["schedule_count"] if "schedule_count" in row.keys() else None,
        )

    @staticmethod
    def _row_to_schedule_type(row: sqlite3.Row) -> ScheduleType:
        return ScheduleType(
            id=row["id"],
            type_name=row["type_name"],
            color_code=row["color_code"],
            is_active=bool(row["is_active"]),
        )

    @staticmethod
    def _row_to_schedule(row: sqlite3.Row) -> Schedule:
        resident = None
        if row["resident_id"] is not None and row["r_name"] is not None:
            resident = Resident(
                id=row["resident_id"],
                name=row["r_name"],
                gender=row["r_gender"],
                birth_date=_parse_date(row["r_birth_date"]),
                medical_notes=row["r_medical_notes"],
            )
        return Schedule(
            id=row["id"],
            date_id=row["date_id"],
            title=row["title"],
            schedule_type_id=row["schedule_type_id"],
            description=row["description"],
            start_time=_parse_time(row["start_time"]),
            end_time=_parse_time(row["end_time"]),
            all_day=bool(row["all_day"]),
            resident_id=row["resident_id"],
            calendar_date=CalendarDate(
                id=row["date_id"],
                calendar_date=_parse_date(row["d_calendar_date"]),
                day_of_week=row["d_day_of_week"],
                is_holiday=bool(row["d_is_holiday"]),
                holiday_name=row["d_holiday_name"],
                notes=row["d_notes"],
            ),
            schedule_type=ScheduleType(
                id=row["schedule_type_id"],
                type_name=row["t_type_name"],
                color_code=row["t_color_code"],
                is_active=bool(row["t_is_active"]),
            ),
            resident=resident,
        )

    # ------------------------------------------------------------------
    # calendar_dates
    # ------------------------------------------------------------------

    def insert_calendar_date_if_missing(
        self, conn: sqlite3.Connection, day: date, day_of_week: int,
    ) -> CalendarDate:
        """Insert-or-fetch under the UNIQUE constraint on calendar_date."""
        cursor = conn.execute(
            """
            INSERT OR IGNORE INTO calendar_dates (calendar_date, day_of_week, is_holiday)
            VALUES (?, ?, 0)
            """,
            (day.isoformat(), day_of_week),
        )
        if cursor.rowcount > 0:
            logger.info("Calendar date registered: %s (#%d)", day.isoformat(), cursor.lastrowid)
        return self.find_calendar_date(conn, day)

    def find_calendar_date(self, conn: sqlite3.Connection, day: date) -> CalendarDate | None:
        row = conn.execute(
            "SELECT * FROM calendar_dates WHERE calendar_date = ?", (day.isoformat(),),
        ).fetchone()
        if row is None:
            return None
        return self._row_to_calendar_date(row)

    def update_calendar_date(
        self,
        conn: sqlite3.Connection,
        calendar_date_id: int,
        is_holiday: bool,
        holiday_name: str | None,
        notes: str | None,
    ) -> None:
        conn.execute(
            """
            UPDATE calendar_dates SET is_holiday = ?, holiday_name = ?, notes = ?
            WHERE id = ?
            """,
            (int(is_holiday), holiday_name, notes, calendar_date_id),
        )

    def list_calendar_dates(
        self, conn: sqlite3.Connection, first_day: date, last_day: date,
    ) -> list[CalendarDate]:
        """Return registered days in [first_day, last_day], ascending."""
        rows = conn.execute(
            """
            SELECT * FROM calendar_dates
            WHERE calendar_date BETWEEN ? AND ?
            ORDER BY calendar_date
            """,
            (first_day.isoformat(), last_day.isoformat()),
        ).fetchall()
        return [self._row_to_calendar_date(r) for r in rows]

    def count_calendar_dates(self, day: date | None = None) -> int:
        query = "SELECT COUNT(*) FROM calendar_dates"
        params: list = []
        if day is not None:
            query += " WHERE calendar_date = ?"
            params.append(day.isoformat())
        with self.connection() as conn:
            return conn.execute(query, params).fetchone()[0]

    # ------------------------------------------------------------------
    # residents
    # ------------------------------------------------------------------

    def insert_resident(self, conn: sqlite3.Connection, values: dict) -> int:
        columns = [c for c in values if c in _RESIDENT_COLUMNS]
        cursor = conn.execute(
            f"INSERT INTO residents ({', '.join(columns)}) "
            f"VALUES ({', '.join('?' for _ in columns)})",
            [_to_db(values[c]) for c in columns],
        )
        return cursor.lastrowid

    def update_resident(self, conn: sqlite3.Connection, resident_id: int, values: dict) -> None:
        self._update_row(conn, "residents", _RESIDENT_COLUMNS, resident_id, values)

    def get_resident(self, conn: sqlite3.Connection, resident_id: int) -> Resident | None:
        row = conn.execute(
            """
            SELECT r.*, (SELECT COUNT(*) FROM schedules s WHERE s.resident_id = r.id)
                        AS schedule_count
            FROM residents r WHERE r.id = ?
            """,
            (resident_id,),
        ).fetchone()
        if row is None:
            return None
        return self._row_to_resident(row)

    def list_residents(self, conn: sqlite3.Connection, search: str | None = None) -> list[Resident]:
        """List residents by name, with how many schedules reference each."""
        query = """
            SELECT r.*, COUNT(s.id) AS schedule_count
            FROM residents r
            LEFT JOIN schedules s ON s.resident_id = r.id
        """
        params: list = []
        if search:
            query += " WHERE instr(lower(r.name), lower(?)) > 0"
            params.append(search.strip())
        query += " GROUP BY r.id ORDER BY r.name, r.id"
        rows = conn.execute(query, params).fetchall()
        return [self._row_to_resident(r) for r in rows]

    # ------------------------------------------------------------------
    # schedule_types
    # ------------------------------------------------------------------

    def insert_schedule_type(self, conn: sqlite3.Connection, values: dict) -> int:
        columns = [c for c in values if c in _SCHEDULE_TYPE_COLUMNS]
        cursor = conn.execute(
            f"INSERT INTO schedule_types ({', '.join(columns)}) "
            f"VALUES ({', '.join('?' for _ in columns)})",
            [_to_db(values[c]) for c in columns],
        )
        return cursor.lastrowid

    def insert_schedule_type_if_missing(
        self, conn: sqlite3.Connection, type_name: str, color_code: str,
    ) -> bool:
        cursor = conn.execute(
            "INSERT OR IGNORE INTO schedule_types (type_name, color_code) VALUES (?, ?)",
            (type_name, color_code),
        )
        return cursor.rowcount > 0

    def update_schedule_type(
        self, conn: sqlite3.Connection, schedule_type_id: int, values: dict,
    ) -> None:
        self._update_row(conn, "schedule_types", _SCHEDULE_TYPE_COLUMNS, schedule_type_id, values)

    def get_schedule_type(
        self, conn: sqlite3.Connection, schedule_type_id: int,
    ) -> ScheduleType | None:
        row = conn.execute(
            "SELECT * FROM schedule_types WHERE id = ?", (schedule_type_id,),
        ).fetchone()
        if row is None:
            return None
        return self._row_to_schedule_type(row)

    def list_schedule_types(
        self, conn: sqlite3.Connection, active_only: bool = False,
    ) -> list[ScheduleType]:
        query = "SELECT * FROM schedule_types"
        if active_only:
            query += " WHERE is_active = 1"
        query += " ORDER BY id"
        rows = conn.execute(query).fetchall()
        return [self._row_to_schedule_type(r) for r in rows]

    # ------------------------------------------------------------------
    # Guarded deletes of catalog rows
    # ------------------------------------------------------------------

    def count_references(
        self, conn: sqlite3.Connection, column: str, entity_id: int,
    ) -> int:
        if column not in ("resident_id", "schedule_type_id"):
            raise ValueError(f"Not a schedule reference column: {column!r}")
        return conn.execute(
            f"SELECT COUNT(*) FROM schedules WHERE {column} = ?", (entity_id,),
        ).fetchone()[0]

    def delete_unreferenced(
        self, conn: sqlite3.Connection, table: str, column: str, entity_id: int,
    ) -> bool:
        """Delete a catalog row only if no schedule references it."""
        if (table, column) not in (("residents", "resident_id"), ("schedule_types", "schedule_type_id")):
            raise ValueError(f"No guarded delete for {table}.{column}")
        cursor = conn.execute(
            f"""
            DELETE FROM {table}
            WHERE id = ?
              AND NOT EXISTS (SELECT 1 FROM schedules WHERE {column} = ?)
            """,
            (entity_id, entity_id),
        )
        return cursor.rowcount > 0

    def row_exists(self, conn: sqlite3.Connection, table: str, entity_id: int) -> bool:
        if table not in ("residents", "schedule_types", "schedules", "calendar_dates"):
            raise ValueError(f"Unknown table: {table!r}")
        row = conn.execute(f"SELECT 1 FROM {table} WHERE id = ?", (entity_id,)).fetchone()
        return row is not None

    # ------------------------------------------------------------------
    # schedules
    # ------------------------------------------------------------------

    def insert_schedule(self, conn: sqlite3.Connection, values: dict) -> int:
        columns = [c for c in values if c in _SCHEDULE_COLUMNS]
        cursor = conn.execute(
            f"INSERT INTO schedules ({', '.join(columns)}) "
            f"VALUES ({', '.join('?' for _ in columns)})",
            [_to_db(values[c]) for c in columns],
        )
        return cursor.lastrowid

    def update_schedule(self, conn: sqlite3.Connection, schedule_id: int, values: dict) -> None:
        self._update_row(conn, "schedules", _SCHEDULE_COLUMNS, schedule_id, values)

    def delete_schedule(self, conn: sqlite3.Connection, schedule_id: int) -> bool:
        cursor = conn.execute("DELETE FROM schedules WHERE id = ?", (schedule_id,))
        return cursor.rowcount > 0

    def get_schedule(self, conn: sqlite3.Connection, schedule_id: int) -> Schedule | None:
        row = conn.execute(_SCHEDULE_SELECT + " WHERE s.id = ?", (schedule_id,)).fetchone()
        if row is None:
            return None
        return self._row_to_schedule(row)

    def list_schedules(
        self,
        conn: sqlite3.Connection,
        first_day: date | None = None,
        last_day: date | None = None,
        resident_id: int | None = None,
    ) -> list[Schedule]:
        """Schedules with relations joined, ordered by day and start time."""
        conditions: list[str] = []
        params: list = []
        if first_day is not None:
            conditions.append("d.calendar_date >= ?")
            params.append(first_day.isoformat())
        if last_day is not None:
            conditions.append("d.calendar_date <= ?")
            params.append(last_day.isoformat())
        if resident_id is not None:
            conditions.append("s.resident_id = ?")
            params.append(resident_id)

        query = _SCHEDULE_SELECT
        if conditions:
            query += " WHERE " + " AND ".join(conditions)
        query += _SCHEDULE_ORDER
        rows = conn.execute(query, params).fetchall()
        return [self._row_to_schedule(r) for r in rows]

    def find_resident_day_schedules(
        self,
        conn: sqlite3.Connection,
        calendar_date_id: int,
        resident_id: int,
        exclude_schedule_id: int | None = None,
    ) -> list[Schedule]:
        """Timed schedules of one resident on one day, for conflict checks."""
        query = (
            _SCHEDULE_SELECT
            + " WHERE s.date_id = ? AND s.resident_id = ?"
            + " AND s.start_time IS NOT NULL AND s.end_time IS NOT NULL"
        )
        params: list = [calendar_date_id, resident_id]
        if exclude_schedule_id is not None:
            query += " AND s.id != ?"
            params.append(exclude_schedule_id)
        query += _SCHEDULE_ORDER
        rows = conn.execute(query, params).fetchall()
        return [self._row_to_schedule(r) for r in rows]

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _update_row(
        conn: sqlite3.Connection,
        table: str,
        allowed: set[str],
        row_id: int,
        values: dict,
    ) -> None:
        columns = [c for c in values if c in allowed]
        if not columns:
            return
        assignments = ", ".join(f"{c} = ?" for c in columns)
        conn.execute(
            f"UPDATE {table} SET {assignments} WHERE id = ?",
            [_to_db(values[c]) for c in columns] + [row_id],
        )
