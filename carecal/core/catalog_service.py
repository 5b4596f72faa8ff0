"""
CareCalendar - Catalog Service.

Residents and schedule types: the reference data schedules point at.
Deletes go through the deletion guard inside a single write transaction.
"""

from __future__ import annotations

import logging
import sqlite3
from typing import TYPE_CHECKING

from carecal.core.calendar_registry import CalendarRegistry
from carecal.core.deletion_guard import EntityKind, can_delete, guarded_delete
from carecal.core.errors import InvalidField, NotFound, ReferentialConflict
from carecal.core.validation import ResidentFields, ScheduleTypeFields, validate_fields

if TYPE_CHECKING:
    from carecal.data.db import CareCalendarDB
    from carecal.data.models import Resident, ScheduleType

logger = logging.getLogger(__name__)

DEFAULT_SCHEDULE_TYPES: list[tuple[str, str]] = [
    ("Bathing", "#FF5733"),
    ("Meeting", "#3498DB"),
    ("Event", "#9B59B6"),
    ("Recreation", "#E74C3C"),
    ("Individual care", "#F39C12"),
    ("Transport", "#27AE60"),
    ("Meal", "#E67E22"),
    ("Other", "#95A5A6"),
]


def _is_duplicate_name(exc: sqlite3.IntegrityError) -> bool:
    return "UNIQUE" in str(exc) and "type_name" in str(exc)


class CatalogService:
    """CRUD for residents and schedule types."""

    def __init__(self, db: CareCalendarDB, timezone: str | None = None) -> None:
        self._db = db
        self._registry = CalendarRegistry(db, timezone)

    # ------------------------------------------------------------------
    # Residents
    # ------------------------------------------------------------------

    def add_resident(
        self,
        name: str,
        gender: str | None = None,
        birth_date: object = None,
        medical_notes: str | None = None,
    ) -> Resident:
        """Register a resident. A birth date must lie before today."""
        values = {
            "name": name,
            "gender": gender,
            "birth_date": birth_date,
            "medical_notes": medical_notes,
        }
        fields = validate_fields(ResidentFields, values, context=self._today_context(birth_date))

        def _add(conn: sqlite3.Connection) -> Resident:
            resident_id = self._db.insert_resident(conn, fields.model_dump())
            return self._db.get_resident(conn, resident_id)

        resident = self._db.run_write(_add)
        logger.info("Resident added: #%d '%s'", resident.id, resident.name)
        return resident

    def update_resident(self, resident_id: int, **changes: object) -> Resident:
        unknown = set(changes) - set(ResidentFields.model_fields)
        if unknown:
            raise InvalidField(f"Unknown resident field(s): {', '.join(sorted(unknown))}")
        context = self._today_context(changes.get("birth_date"))

        def _update(conn: sqlite3.Connection) -> Resident:
            current = self._db.get_resident(conn, resident_id)
            if current is None:
                raise NotFound("resident", resident_id)
            merged = {
                "name": current.name,
                "gender": current.gender,
                "birth_date": current.birth_date,
                "medical_notes": current.medical_notes,
            }
            merged.update(changes)
            fields = validate_fields(ResidentFields, merged, context=context)
            self._db.update_resident(conn, resident_id, fields.model_dump())
            return self._db.get_resident(conn, resident_id)

        resident = self._db.run_write(_update)
        logger.info("Resident #%d updated", resident_id)
        return resident

    def get_resident(self, resident_id: int) -> Resident:
        with self._db.connection() as conn:
            resident = self._db.get_resident(conn, resident_id)
        if resident is None:
            raise NotFound("resident", resident_id)
        return resident

    def list_residents(self, search: str | None = None) -> list[Resident]:
        """Residents ordered by name, optionally filtered by a name fragment."""
        with self._db.connection() as conn:
            return self._db.list_residents(conn, search=search)

    def delete_resident(self, resident_id: int) -> None:
        """Delete a resident no schedule references.

        Raises:
            NotFound: no such resident.
            ReferentialConflict: schedules still reference the resident.
        """
        self._guarded_delete(EntityKind.RESIDENT, resident_id)

    # ------------------------------------------------------------------
    # Schedule types
    # ------------------------------------------------------------------

    def add_schedule_type(
        self, type_name: str, color_code: str, is_active: bool = True,
    ) -> ScheduleType:
        fields = validate_fields(ScheduleTypeFields, {
            "type_name": type_name,
            "color_code": color_code,
            "is_active": is_active,
        })

        def _add(conn: sqlite3.Connection) -> ScheduleType:
            schedule_type_id = self._db.insert_schedule_type(conn, fields.model_dump())
            return self._db.get_schedule_type(conn, schedule_type_id)

        schedule_type = self._write_type(_add, fields.type_name)
        logger.info(
            "Schedule type added: #%d '%s' %s",
            schedule_type.id, schedule_type.type_name, schedule_type.color_code,
        )
        return schedule_type

    def update_schedule_type(self, schedule_type_id: int, **changes: object) -> ScheduleType:
        unknown = set(changes) - set(ScheduleTypeFields.model_fields)
        if unknown:
            raise InvalidField(f"Unknown schedule type field(s): {', '.join(sorted(unknown))}")

        def _update(conn: sqlite3.Connection) -> ScheduleType:
            current = self._db.get_schedule_type(conn, schedule_type_id)
            if current is None:
                raise NotFound("schedule_type", schedule_type_id)
            merged = {
                "type_name": current.type_name,
                "color_code": current.color_code,
                "is_active": current.is_active,
            }
            merged.update(changes)
            fields = validate_fields(ScheduleTypeFields, merged)
            self._db.update_schedule_type(conn, schedule_type_id, fields.model_dump())
            return self._db.get_schedule_type(conn, schedule_type_id)

        schedule_type = self._write_type(_update, str(changes.get("type_name", "")))
        logger.info("Schedule type #%d updated", schedule_type_id)
        return schedule_type

    def get_schedule_type(self, schedule_type_id: int) -> ScheduleType:
        with self._db.connection() as conn:
            schedule_type = self._db.get_schedule_type(conn, schedule_type_id)
        if schedule_type is None:
            raise NotFound("schedule_type", schedule_type_id)
        return schedule_type

    def list_schedule_types(self, active_only: bool = False) -> list[ScheduleType]:
        with self._db.connection() as conn:
            return self._db.list_schedule_types(conn, active_only=active_only)

    def delete_schedule_type(self, schedule_type_id: int) -> None:
        """Delete a schedule type no schedule uses.

        Raises:
            NotFound: no such schedule type.
            ReferentialConflict: schedules still use the type.
        """
        self._guarded_delete(EntityKind.SCHEDULE_TYPE, schedule_type_id)

    def seed_default_schedule_types(self) -> int:
        """Insert the default catalogue; existing names are left alone.

        Returns the number of types actually inserted.
        """
        def _seed(conn: sqlite3.Connection) -> int:
            return sum(
                1 for name, color in DEFAULT_SCHEDULE_TYPES
                if self._db.insert_schedule_type_if_missing(conn, name, color)
            )

        inserted = self._db.run_write(_seed)
        logger.info("Seeded %d default schedule type(s)", inserted)
        return inserted

    # ------------------------------------------------------------------
    # Deletion guard
    # ------------------------------------------------------------------

    def can_delete(self, kind: EntityKind, entity_id: int) -> bool:
        """Advisory check; the delete itself re-checks inside its transaction."""
        with self._db.connection() as conn:
            return can_delete(self._db, conn, kind, entity_id)

    def _guarded_delete(self, kind: EntityKind, entity_id: int) -> None:
        try:
            self._db.run_write(lambda conn: guarded_delete(self._db, conn, kind, entity_id))
        except sqlite3.IntegrityError as exc:
            # ON DELETE RESTRICT backstop
            raise ReferentialConflict(kind.value, entity_id, 1) from exc
        logger.info("%s #%d deleted", kind.value, entity_id)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _today_context(self, birth_date: object) -> dict | None:
        if birth_date in (None, ""):
            return None
        return {"today": self._registry.today()}

    def _write_type(self, operation, type_name: str) -> ScheduleType:
        try:
            return self._db.run_write(operation)
        except sqlite3.IntegrityError as exc:
            if _is_duplicate_name(exc):
                logger.warning("Schedule type name already in use: %r", type_name)
                raise InvalidField(f"type_name already exists: {type_name!r}") from exc
            raise
