"""Arrival-time extraction from free-text event descriptions.

Team-management feeds embed the expected arrival in the description, e.g.
``"(Arrival Time: 1:30 PM (Eastern Time (US & Canada)))"``. The parsed time
is read on the event's local date in the named zone. The owner's comfort
buffer is always applied on top, so the effective arrival is earlier still.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import UTC, datetime, time, timedelta
from typing import Literal
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

logger = logging.getLogger(__name__)

DEFAULT_ARRIVAL_TIMEZONE = "America/New_York"
DEFAULT_MAX_LEAD_MINUTES = 120

_ARRIVAL_PATTERN = re.compile(
    r"\(Arrival Time:\s*(\d{1,2}):(\d{2})\s*(AM|PM)\s*\(([^)]+)\)\)",
    re.IGNORECASE,
)
_LOCATION_PATTERN = re.compile(r"Location:\s*([^(]+?)(?:\s*\(|$)", re.IGNORECASE | re.MULTILINE)

_TIMEZONE_NAMES: dict[str, str] = {
    "Eastern Time (US & Canada)": "America/New_York",
    "Eastern Time": "America/New_York",
    "EST": "America/New_York",
    "EDT": "America/New_York",
    "Central Time (US & Canada)": "America/Chicago",
    "Central Time": "America/Chicago",
    "CST": "America/Chicago",
    "CDT": "America/Chicago",
    "Mountain Time (US & Canada)": "America/Denver",
    "Mountain Time": "America/Denver",
    "MST": "America/Denver",
    "MDT": "America/Denver",
    "Pacific Time (US & Canada)": "America/Los_Angeles",
    "Pacific Time": "America/Los_Angeles",
    "PST": "America/Los_Angeles",
    "PDT": "America/Los_Angeles",
    "Alaska Time": "America/Anchorage",
    "Hawaii Time": "Pacific/Honolulu",
    "Arizona Time": "America/Phoenix",
}


@dataclass(frozen=True)
class ArrivalTimeInfo:
    """When the owner should be at the venue.

    ``buffer_minutes`` is the total lead before the event start: the parsed
    lead plus the comfort buffer, or just the comfort buffer on fallback.
    """

    arrival_time: datetime
    buffer_minutes: int
    comfort_buffer_minutes: int
    source: Literal["parsed", "default"]


def resolve_timezone_name(name: str) -> str:
    """Map a human timezone label to an IANA name.

    Tries an exact label, then a case-insensitive one, then a literal IANA
    name, then a substring match either way. Unknown labels fall back to
    America/New_York.
    """
    label = name.strip()
    if label in _TIMEZONE_NAMES:
        return _TIMEZONE_NAMES[label]

    lowered = label.lower()
    for key, value in _TIMEZONE_NAMES.items():
        if key.lower() == lowered:
            return value
    if _is_iana_zone(label):
        return label
    for key, value in _TIMEZONE_NAMES.items():
        key_lower = key.lower()
        if key_lower in lowered or lowered in key_lower:
            return value

    logger.warning("Unknown arrival timezone %r, defaulting to %s", name, DEFAULT_ARRIVAL_TIMEZONE)
    return DEFAULT_ARRIVAL_TIMEZONE


def _is_iana_zone(label: str) -> bool:
    if not label:
        return False
    try:
        ZoneInfo(label)
    except (ZoneInfoNotFoundError, ValueError, OSError):
        return False
    return True


def _default(start: datetime, comfort_buffer_minutes: int) -> ArrivalTimeInfo:
    return ArrivalTimeInfo(
        arrival_time=start - timedelta(minutes=comfort_buffer_minutes),
        buffer_minutes=comfort_buffer_minutes,
        comfort_buffer_minutes=comfort_buffer_minutes,
        source="default",
    )


def parse_arrival_time(
    description: str | None,
    start: datetime,
    comfort_buffer_minutes: int,
    *,
    max_lead_minutes: int = DEFAULT_MAX_LEAD_MINUTES,
) -> ArrivalTimeInfo:
    """Return the effective arrival time for an event.

    Falls back to ``start - comfort_buffer_minutes`` when the description has
    no arrival marker, the marker is malformed, or the parsed lead time is
    outside ``0..max_lead_minutes``.
    """
    if start.tzinfo is None:
        start = start.replace(tzinfo=UTC)
    if not description:
        return _default(start, comfort_buffer_minutes)

    match = _ARRIVAL_PATTERN.search(description)
    if match is None:
        return _default(start, comfort_buffer_minutes)

    hour_12 = int(match.group(1))
    minute = int(match.group(2))
    if not 1 <= hour_12 <= 12 or minute > 59:
        logger.warning("Ignoring malformed arrival time %r", match.group(0))
        return _default(start, comfort_buffer_minutes)
    hour = hour_12 % 12 + (12 if match.group(3).upper() == "PM" else 0)

    zone = ZoneInfo(resolve_timezone_name(match.group(4)))
    local_date = start.astimezone(zone).date()
    parsed = datetime.combine(local_date, time(hour, minute), tzinfo=zone)

    lead_minutes = int((start - parsed).total_seconds() // 60)
    if lead_minutes < 0 or lead_minutes > max_lead_minutes:
        logger.warning(
            "Parsed arrival lead of %d minutes is out of range, using default", lead_minutes
        )
        return _default(start, comfort_buffer_minutes)

    effective = parsed - timedelta(minutes=comfort_buffer_minutes)
    logger.debug(
        "Parsed arrival time %s, effective arrival %s (comfort buffer %d min)",
        parsed.isoformat(),
        effective.isoformat(),
        comfort_buffer_minutes,
    )
    return ArrivalTimeInfo(
        arrival_time=effective.astimezone(UTC),
        buffer_minutes=lead_minutes + comfort_buffer_minutes,
        comfort_buffer_minutes=comfort_buffer_minutes,
        source="parsed",
    )


def extract_location_from_description(description: str | None) -> str | None:
    """Read ``Location: <name>`` up to the next ``(`` or end of line."""
    if not description:
        return None
    match = _LOCATION_PATTERN.search(description)
    if match is None:
        return None
    location = match.group(1).strip()
    return location or None
