"""
CareCalendar - Input validation.

Field-level rules live on pydantic models; the interval rules that decide
whether a schedule has a bookable [start, end) shape are plain functions so
they can raise the dedicated InvalidInterval / MissingStartTime errors.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, time
from typing import Literal, TypeVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError, ValidationInfo, field_validator

from carecal.core.errors import InvalidField, InvalidInterval, MissingStartTime

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)

HEX_COLOR_PATTERN = r"^#[0-9A-Fa-f]{6}$"


def parse_time_of_day(value: object) -> time | None:
    """Accept "HH:MM" strings or time objects; drop seconds."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        value = value.time()
    if isinstance(value, time):
        return value.replace(second=0, microsecond=0, tzinfo=None)
    if isinstance(value, str):
        try:
            return datetime.strptime(value.strip(), "%H:%M").time()
        except ValueError:
            raise ValueError(f"time must be HH:MM, got {value!r}") from None
    raise ValueError(f"time must be HH:MM, got {value!r}")


class ScheduleFields(BaseModel):
    """Everything a schedule row stores except its calendar day."""

    model_config = ConfigDict(str_strip_whitespace=True, extra="forbid")

    title: str = Field(min_length=1, max_length=255)
    description: str | None = Field(default=None, max_length=1000)
    start_time: time | None = None
    end_time: time | None = None
    all_day: bool = False
    schedule_type_id: int
    resident_id: int | None = None

    @field_validator("start_time", "end_time", mode="before")
    @classmethod
    def parse_hhmm(cls, v: object) -> time | None:
        return parse_time_of_day(v)

    @field_validator("description", mode="before")
    @classmethod
    def blank_description_is_none(cls, v: str | None) -> str | None:
        if isinstance(v, str) and not v.strip():
            return None
        return v


class ResidentFields(BaseModel):
    """Resident catalog entry. Birth date must precede ``today`` (context)."""

    model_config = ConfigDict(str_strip_whitespace=True, extra="forbid")

    name: str = Field(min_length=1, max_length=255)
    gender: Literal["male", "female", "other"] | None = None
    birth_date: date | None = None
    medical_notes: str | None = Field(default=None, max_length=1000)

    @field_validator("gender", "medical_notes", "birth_date", mode="before")
    @classmethod
    def blank_is_none(cls, v: object) -> object:
        if isinstance(v, str) and not v.strip():
            return None
        return v

    @field_validator("birth_date")
    @classmethod
    def birth_date_before_today(cls, v: date | None, info: ValidationInfo) -> date | None:
        today = (info.context or {}).get("today")
        if v is not None and today is not None and v >= today:
            raise ValueError("birth_date must be before today")
        return v


class ScheduleTypeFields(BaseModel):
    """Schedule type catalog entry."""

    model_config = ConfigDict(str_strip_whitespace=True, extra="forbid")

    type_name: str = Field(min_length=1, max_length=255)
    color_code: str = Field(pattern=HEX_COLOR_PATTERN)
    is_active: bool = True


def validate_fields(model: type[M], values: dict, context: dict | None = None) -> M:
    """Build ``model`` from ``values``, translating pydantic errors to InvalidField."""
    try:
        return model.model_validate(values, context=context)
    except ValidationError as exc:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or 'input'}: {err['msg']}"
            for err in exc.errors()
        )
        logger.warning("Rejected %s: %s", model.__name__, problems)
        raise InvalidField(problems) from exc


def validate_interval(fields: ScheduleFields) -> tuple[time | None, time | None]:
    """Return the (start, end) to store for a validated schedule.

    All-day schedules store neither time. Otherwise a start time is
    required, and an end time, when given, must be strictly after it.
    """
    if fields.all_day:
        return None, None
    if fields.start_time is None:
        raise MissingStartTime("start_time is required unless the schedule is all-day")
    if fields.end_time is not None and fields.end_time <= fields.start_time:
        raise InvalidInterval(
            f"end_time {fields.end_time:%H:%M} must be after start_time {fields.start_time:%H:%M}"
        )
    return fields.start_time, fields.end_time
