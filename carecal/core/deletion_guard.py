"""
CareCalendar - Deletion Guard.

Residents and schedule types cannot be deleted while a schedule still
references them. The guard is evaluated inside the delete's own write
transaction, and the delete itself is conditional on it, so a schedule
inserted concurrently can never be orphaned.
"""

from __future__ import annotations

import logging
import sqlite3
from enum import Enum
from typing import TYPE_CHECKING

from carecal.core.errors import NotFound, ReferentialConflict

if TYPE_CHECKING:
    from carecal.data.db import CareCalendarDB

logger = logging.getLogger(__name__)


class EntityKind(Enum):
    RESIDENT = "resident"
    SCHEDULE_TYPE = "schedule_type"


# kind -> (table, referencing column on schedules)
_REFERENCES = {
    EntityKind.RESIDENT: ("residents", "resident_id"),
    EntityKind.SCHEDULE_TYPE: ("schedule_types", "schedule_type_id"),
}


def can_delete(
    db: CareCalendarDB, conn: sqlite3.Connection, kind: EntityKind, entity_id: int,
) -> bool:
    """True when no schedule references the entity."""
    _, column = _REFERENCES[kind]
    return db.count_references(conn, column, entity_id) == 0


def guarded_delete(
    db: CareCalendarDB, conn: sqlite3.Connection, kind: EntityKind, entity_id: int,
) -> None:
    """Delete the entity or raise; must run inside a write transaction.

    Raises:
        NotFound: no such row.
        ReferentialConflict: schedules still reference it.
    """
    table, column = _REFERENCES[kind]
    if db.delete_unreferenced(conn, table, column, entity_id):
        return

    if not db.row_exists(conn, table, entity_id):
        raise NotFound(kind.value, entity_id)

    count = db.count_references(conn, column, entity_id)
    logger.warning(
        "Delete of %s #%d blocked: %d schedule(s) reference it",
        kind.value, entity_id, count,
    )
    raise ReferentialConflict(kind.value, entity_id, count)
