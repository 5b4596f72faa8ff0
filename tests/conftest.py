"""Shared test fixtures and configuration.

Sets fake environment variables before any carecal import so the settings
singleton never reads a developer's .env, and provides a temp-file DB.
"""

import os

# Patch env vars BEFORE any carecal imports
os.environ.setdefault("TIMEZONE", "Asia/Tokyo")
os.environ.setdefault("DATABASE_PATH", "data/test_carecal.db")
os.environ.setdefault("WRITE_RETRY_DELAY", "0.01")

import pytest

TZ = "Asia/Tokyo"


@pytest.fixture
def tmp_db_path(tmp_path):
    """Return a temporary SQLite DB path."""
    return str(tmp_path / "test_carecal.db")


@pytest.fixture
def db(tmp_db_path):
    """Return a CareCalendarDB backed by a temp file."""
    from carecal.data.db import CareCalendarDB
    return CareCalendarDB(db_path=tmp_db_path, busy_timeout=10.0, retry_attempts=3, retry_delay=0.01)


@pytest.fixture
def service(db):
    """Return a ScheduleService with an explicit timezone."""
    from carecal.core.schedule_service import ScheduleService
    return ScheduleService(db, timezone=TZ, day_start="07:00", day_end="22:00",
                           include_empty_days=True)


@pytest.fixture
def catalog(db):
    """Return a CatalogService with an explicit timezone."""
    from carecal.core.catalog_service import CatalogService
    return CatalogService(db, timezone=TZ)


@pytest.fixture
def resident(catalog):
    return catalog.add_resident("Hanako Sato", gender="female", birth_date="1940-05-01")


@pytest.fixture
def other_resident(catalog):
    return catalog.add_resident("Taro Suzuki", gender="male")


@pytest.fixture
def schedule_type(catalog):
    return catalog.add_schedule_type("Bathing", "#FF5733")
