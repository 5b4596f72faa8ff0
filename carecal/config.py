"""
CareCalendar - Centralized configuration.

Loads all settings from .env and validates them once at import time.
Services accept explicit overrides, so nothing below is required for tests.
"""

from __future__ import annotations

import os
import sys
from pathlib import Path
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from dotenv import load_dotenv
from pydantic import BaseModel, field_validator

# Load .env from project root (one level up from carecal/config.py)
_ENV_PATH = Path(__file__).resolve().parent.parent / ".env"
load_dotenv(_ENV_PATH)


class Settings(BaseModel):
    """Application settings loaded from environment variables."""

    # SQLite
    DATABASE_PATH: str = "data/carecal.db"
    BUSY_TIMEOUT: float = 5.0

    # IANA zone name. No default: calendar days are never resolved
    # against a guessed zone.
    TIMEZONE: str | None = None

    # Transient lock errors around write transactions
    WRITE_RETRY_ATTEMPTS: int = 3
    WRITE_RETRY_DELAY: float = 0.05

    # Window searched for an alternative start time after a conflict
    DAY_START: str = "07:00"
    DAY_END: str = "22:00"

    # Monthly view keeps registered days that have no schedules
    INCLUDE_EMPTY_DAYS: bool = True

    @field_validator("TIMEZONE", mode="before")
    @classmethod
    def blank_timezone_is_unset(cls, v: str | None) -> str | None:
        if isinstance(v, str) and not v.strip():
            return None
        return v.strip() if isinstance(v, str) else v

    @field_validator("INCLUDE_EMPTY_DAYS", mode="before")
    @classmethod
    def parse_flag(cls, v: str | bool) -> bool:
        if isinstance(v, bool):
            return v
        return str(v).strip().lower() in ("1", "true", "yes", "on")

    @field_validator("WRITE_RETRY_ATTEMPTS", mode="before")
    @classmethod
    def at_least_one_attempt(cls, v: str | int) -> int:
        return max(1, int(v))


def _load_settings() -> Settings:
    """Load settings from environment, validating the timezone if given."""
    timezone = os.getenv("TIMEZONE", "").strip()

    if timezone:
        try:
            ZoneInfo(timezone)
        except (ZoneInfoNotFoundError, ValueError):
            print(f"ERROR: TIMEZONE {timezone!r} is not a known IANA zone", file=sys.stderr)
            sys.exit(1)

    return Settings(
        DATABASE_PATH=os.getenv("DATABASE_PATH", "data/carecal.db"),
        BUSY_TIMEOUT=os.getenv("BUSY_TIMEOUT", "5.0"),
        TIMEZONE=timezone,
        WRITE_RETRY_ATTEMPTS=os.getenv("WRITE_RETRY_ATTEMPTS", "3"),
        WRITE_RETRY_DELAY=os.getenv("WRITE_RETRY_DELAY", "0.05"),
        DAY_START=os.getenv("DAY_START", "07:00"),
        DAY_END=os.getenv("DAY_END", "22:00"),
        INCLUDE_EMPTY_DAYS=os.getenv("INCLUDE_EMPTY_DAYS", "true"),
    )


# Singleton, imported by other modules as:
#   from carecal.config import settings
settings = _load_settings()
