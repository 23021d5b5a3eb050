"""
Date and Time utilities

This module handles date/time conversions and the EPG timezone correction.
Centralizes all date parsing logic to maintain consistency across the application.
"""
from datetime import datetime, timezone
import logging
import math
import re

logger = logging.getLogger(__name__)

MAX_OFFSET_HOURS = 48.0

_CLOCK_OFFSET_RE = re.compile(r"^([+-]?)(\d{1,2}):(\d{2})$")


class DateFormatError(ValueError):
    """Raised when date format is invalid"""
    pass


def _normalize_iso8601_string(date_str: str) -> str:
    """Normalize ISO8601 string by replacing 'Z' with '+00:00'

    Args:
        date_str: ISO8601 datetime string

    Returns:
        Normalized string with explicit timezone offset
    """
    return date_str.replace('Z', '+00:00') if date_str.endswith('Z') else date_str


def parse_iso8601_to_utc(date_str: str) -> datetime:
    """
    Parse ISO8601 date string and convert to UTC datetime

    This is the single source of truth for date parsing across the application.

    Args:
        date_str: ISO8601 datetime string (e.g., '2025-10-09T00:00:00Z', '2025-10-09 12:00:00' or '2025-10-09')

    Returns:
        Timezone-aware datetime in UTC

    Raises:
        DateFormatError: If the date string format is invalid
    """
    try:
        normalized = _normalize_iso8601_string(date_str.strip())
        dt = datetime.fromisoformat(normalized)
        if dt.tzinfo is None:
            return dt.replace(tzinfo=timezone.utc)
        return dt.astimezone(timezone.utc)
    except (ValueError, AttributeError) as e:
        raise DateFormatError(f"Invalid ISO8601 datetime format: '{date_str}'") from e


def ensure_utc(value: datetime) -> datetime:
    """Return an aware UTC datetime, treating naive values as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def normalize_offset_hours(value: float | int | str | None) -> float:
    """
    Normalize an EPG hour offset.

    Accepts numbers, numeric strings and clock-style strings like '+5:30'.
    Anything unparseable, non-finite or outside [-48, 48] hours becomes 0.

    Args:
        value: Raw offset value from configuration

    Returns:
        Offset in (possibly fractional) hours
    """
    if value is None or isinstance(value, bool):
        return 0.0

    hours: float
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return 0.0
        clock = _CLOCK_OFFSET_RE.match(text)
        try:
            if clock:
                sign = -1.0 if clock.group(1) == "-" else 1.0
                hours = sign * (int(clock.group(2)) + int(clock.group(3)) / 60)
            else:
                hours = float(text)
        except ValueError:
            logger.debug("Ignoring unparseable EPG offset %r", value)
            return 0.0
    else:
        try:
            hours = float(value)
        except (TypeError, ValueError):
            logger.debug("Ignoring unparseable EPG offset %r", value)
            return 0.0

    if not math.isfinite(hours) or abs(hours) > MAX_OFFSET_HOURS:
        logger.warning("EPG offset %r outside +/-%s hours, using 0", value, MAX_OFFSET_HOURS)
        return 0.0

    return hours


def year_from_date(date_str: str | None) -> int | None:
    """Extract the year from a provider release date, None when absent or invalid."""
    if not date_str:
        return None
    try:
        return parse_iso8601_to_utc(date_str).year
    except DateFormatError:
        match = re.match(r"^\s*(\d{4})", date_str)
        return int(match.group(1)) if match else None
