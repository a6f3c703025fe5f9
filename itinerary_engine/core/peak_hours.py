"""
Utilities for parsing activity peak hours and checking whether a place is crowded now.
"""

import re
from datetime import datetime
from zoneinfo import ZoneInfo

from itinerary_engine.core.settings import get_settings

_RANGE_PATTERN = re.compile(
    r"(\d{1,2})(?::(\d{2}))?\s*(am|pm)\s*(?:-|–|to)\s*(\d{1,2})(?::(\d{2}))?\s*(am|pm)",
    re.IGNORECASE,
)
_DAY_SPECIFIC_MARKERS = ("saturday", "sunday", "weekday", "weekend")


def convert_to_minutes(hour: int, minute: int, meridiem: str) -> int:
    """
    Convert a 12-hour clock time to minutes since midnight.

    Args:
        hour: Hour (1-12)
        minute: Minute (0-59)
        meridiem: "AM" or "PM"

    Returns:
        Minutes since midnight (0-1439)
    """
    meridiem = meridiem.upper()

    if meridiem == "AM":
        if hour == 12:
            hour = 0
    else:  # PM
        if hour != 12:
            hour += 12

    return hour * 60 + minute


def parse_peak_hours(peak_hours: str | None) -> list[tuple[int, int]]:
    """
    Parse a peak hours descriptor into (start, end) minute ranges.

    Args:
        peak_hours: String like "10 am - 11 am / 4 pm - 6 pm"

    Returns:
        List of (start_minutes, end_minutes) tuples. Day-specific ranges
        such as "Saturday & Sunday 6 am - 5 pm" are skipped.
    """
    if not peak_hours or not isinstance(peak_hours, str):
        return []

    ranges = []
    for part in peak_hours.split("/"):
        part = part.strip()
        if any(marker in part.lower() for marker in _DAY_SPECIFIC_MARKERS):
            continue

        match = _RANGE_PATTERN.search(part)
        if not match:
            continue

        start = convert_to_minutes(int(match.group(1)), int(match.group(2) or 0), match.group(3))
        end = convert_to_minutes(int(match.group(4)), int(match.group(5) or 0), match.group(6))
        ranges.append((start, end))

    return ranges


def local_now(timezone: str | None = None) -> datetime:
    """Current time in the destination's timezone."""
    return datetime.now(ZoneInfo(timezone or get_settings().local_timezone))


def is_currently_peak(peak_hours: str | None, now: datetime | None = None) -> bool:
    """
    Check whether the given time falls inside any peak hours range.

    Args:
        peak_hours: Peak hours descriptor
        now: Local time to check (defaults to the configured timezone's current time)

    Returns:
        True if the place is considered crowded at that time
    """
    ranges = parse_peak_hours(peak_hours)
    if not ranges:
        return False

    now = now or local_now()
    current = now.hour * 60 + now.minute

    for start, end in ranges:
        if start <= end:
            if start <= current <= end:
                return True
        else:
            # Range crosses midnight
            if current >= start or current <= end:
                return True

    return False
