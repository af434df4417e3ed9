"""
Timezone utilities for the booking core.

All persisted instants are UTC. Kitchen slots are expressed in the location's
wall-clock time and converted here.
"""

from datetime import date, datetime, time, timezone
import math
from typing import Optional

import pytz

from app.core.constants import SECONDS_PER_DAY

DEFAULT_TIMEZONE = "America/Toronto"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """
    Normalize a datetime to aware UTC.

    SQLite hands back naive datetimes for timezone-aware columns; those are
    stored as UTC, so naive values are tagged rather than converted.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def get_location_timezone(tz_name: Optional[str]) -> pytz.BaseTzInfo:
    try:
        return pytz.timezone(tz_name or DEFAULT_TIMEZONE)
    except pytz.UnknownTimeZoneError:
        return pytz.timezone(DEFAULT_TIMEZONE)


def local_to_utc(local_date: date, local_time: time, tz_name: Optional[str]) -> datetime:
    """Convert a location wall-clock date/time into an aware UTC instant."""
    tz = get_location_timezone(tz_name)
    localized = tz.localize(datetime.combine(local_date, local_time))
    return localized.astimezone(pytz.UTC)


def hours_between(start: datetime, end: datetime) -> float:
    return (ensure_utc(end) - ensure_utc(start)).total_seconds() / 3600.0


def ceil_days_between(start: datetime, end: datetime) -> int:
    """Whole days from start to end, rounding any partial day up."""
    seconds = (ensure_utc(end) - ensure_utc(start)).total_seconds()
    return math.ceil(seconds / SECONDS_PER_DAY)
