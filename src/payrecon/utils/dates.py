"""Timestamp helpers for DynamoDB storage.

Datetimes are stored as ISO-8601 strings; scheduling fields that must sort
numerically are stored as epoch seconds.
"""

from datetime import UTC, datetime
from typing import Any


def utc_now() -> datetime:
    """Get the current timezone-aware UTC time."""
    return datetime.now(UTC)


def parse_timestamp(value: Any) -> datetime | None:
    """Parse a stored ISO-8601 timestamp.

    Args:
        value: Stored value, an ISO string (``Z`` suffix accepted) or None

    Returns:
        Timezone-aware datetime, or None if the value is empty
    """
    if not value:
        return None
    if isinstance(value, datetime):
        return value
    text = str(value)
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def format_timestamp(value: datetime | None) -> str | None:
    """Format a datetime for storage, or None."""
    return value.isoformat() if value else None


def to_epoch(value: datetime) -> int:
    """Convert a datetime to integer epoch seconds."""
    return int(value.timestamp())
