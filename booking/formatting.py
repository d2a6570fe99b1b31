"""
Date/time normalization and display helpers.

Stored records mix ISO dates, full timestamps and datetime objects, and
times with or without zero padding. Canonical appointments always carry
``YYYY-MM-DD`` dates and zero-padded ``HH:mm`` times so that string order
equals chronological order.
"""

import logging
from datetime import UTC, date, datetime, timedelta
from typing import Any

logger = logging.getLogger(__name__)

STATUS_TEXT = {
    "pending": "Pending",
    "scheduled": "Scheduled",
    "confirmed": "Confirmed",
    "in_progress": "In Progress",
    "completed": "Completed",
    "cancelled": "Cancelled",
    "no_show": "No Show",
}


def normalize_date(value: Any) -> str:
    """Return ``YYYY-MM-DD`` for dates, datetimes and ISO strings; '' if unknown."""
    if value is None:
        return ""
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()

    text = str(value).strip()
    if len(text) >= 10 and text[4] == "-" and text[7] == "-":
        return text[:10]
    return text


def normalize_time(value: Any) -> str:
    """Return zero-padded ``HH:mm``; unparseable values are returned unchanged."""
    if value is None:
        return ""

    text = str(value).strip()
    parts = text.split(":")
    if len(parts) < 2:
        return text
    try:
        hours, minutes = int(parts[0]), int(parts[1][:2])
    except ValueError:
        return text
    return f"{hours:02d}:{minutes:02d}"


def add_minutes(time_value: str, minutes: int) -> str:
    """Add minutes to an ``HH:mm`` time, wrapping past midnight. '' if unparseable."""
    normalized = normalize_time(time_value)
    try:
        start = datetime.strptime(normalized, "%H:%M")
    except ValueError:
        return ""
    return (start + timedelta(minutes=minutes)).strftime("%H:%M")


def format_time_12h(time_value: str | None) -> str:
    """Format ``HH:mm`` as ``h:mm AM/PM``."""
    if not time_value:
        return "N/A"

    parts = time_value.split(":")
    try:
        hours = int(parts[0] or "0")
        minutes = int(parts[1] if len(parts) > 1 and parts[1] else "0")
    except ValueError:
        logger.debug(f"Invalid time for display: {time_value!r}")
        return "Invalid Time"

    period = "PM" if hours >= 12 else "AM"
    display_hours = hours % 12 or 12
    return f"{display_hours}:{minutes:02d} {period}"


def format_date_long(date_value: str | None) -> str:
    """Format an ISO date as e.g. ``Monday, January 15, 2024``."""
    if not date_value:
        return "N/A"

    try:
        parsed = date.fromisoformat(normalize_date(date_value))
    except ValueError:
        logger.debug(f"Invalid date for display: {date_value!r}")
        return "Invalid Date"
    return f"{parsed.strftime('%A, %B')} {parsed.day}, {parsed.year}"


def status_text(status: Any) -> str:
    return STATUS_TEXT.get(str(status), "Unknown")


def now_iso() -> str:
    """Current UTC time as an ISO 8601 string (the stored timestamp format)."""
    return datetime.now(UTC).isoformat()
