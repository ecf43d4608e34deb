"""Timestamp helpers for CLI arguments and database rows."""

import time
from datetime import UTC, datetime


def now_ts() -> int:
    """Return the current time as Unix epoch seconds."""
    return int(time.time())


def parse_timestamp(value: str) -> int:
    """Parse a date string or raw integer into a Unix timestamp.

    Accept ISO 8601 date strings (``2024-01-01``, ``2024-01-01T12:00:00``)
    or raw integer Unix timestamps.

    Args:
        value: Date string or integer timestamp.

    Returns:
        Unix timestamp in seconds.

    Raises:
        ValueError: If the value cannot be parsed.

    """
    try:
        return int(value)
    except ValueError:
        pass

    for fmt in ("%Y-%m-%d", "%Y-%m-%dT%H:%M:%S"):
        try:
            dt = datetime.strptime(value, fmt).replace(tzinfo=UTC)
            return int(dt.timestamp())
        except ValueError:
            continue

    msg = f"Cannot parse timestamp: {value!r}. Use ISO 8601 (YYYY-MM-DD) or a Unix timestamp."
    raise ValueError(msg)


def parse_iso_datetime(value: str) -> int:
    """Parse an RFC 3339 / ISO 8601 datetime from an API payload.

    Naive values are treated as UTC. A trailing ``Z`` is accepted.

    Args:
        value: Datetime string, e.g. ``2026-03-31T23:59:59Z``.

    Returns:
        Unix timestamp in seconds.

    Raises:
        ValueError: If the value cannot be parsed.

    """
    dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return int(dt.timestamp())
