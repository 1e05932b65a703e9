"""
Timestamp utilities for consistent time handling across the pipeline.
"""

import time
from datetime import datetime, timezone
from typing import Optional, Union


def utc_now() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def to_seconds_str(timestamp: Optional[float] = None) -> str:
    """Convert timestamp to seconds string format.

    Args:
        timestamp: Unix timestamp in seconds (optional, uses current time if None)

    Returns:
        Seconds timestamp as string
    """
    if timestamp is None:
        timestamp = time.time()
    return str(int(timestamp))


def parse_timestamp(value: Union[str, int, float, datetime, None]) -> datetime:
    """Parse an ISO-8601 string or epoch seconds into a UTC datetime.

    Graph properties come back as seconds strings, index documents as ISO
    strings; anything unparseable maps to the epoch.
    """
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if value is None or value == '':
        return datetime.fromtimestamp(0, tz=timezone.utc)
    if isinstance(value, str) and 'T' in value:
        try:
            parsed = datetime.fromisoformat(value.replace('Z', '+00:00'))
        except ValueError:
            return datetime.fromtimestamp(0, tz=timezone.utc)
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    try:
        return datetime.fromtimestamp(int(float(value)), tz=timezone.utc)
    except (TypeError, ValueError):
        return datetime.fromtimestamp(0, tz=timezone.utc)
