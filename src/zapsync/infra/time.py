"""Time utilities for consistent timestamp handling.

Gateway timestamps arrive as epoch seconds in several encodings (plain
ints, numeric strings, protobuf Long objects) and occasionally as epoch
milliseconds. Everything is converted to timezone-aware UTC datetimes.
Values that cannot be decoded or fall outside the platform's datetime
range come back as None.
"""

from datetime import datetime, timezone
from typing import Any

# Anything above this is epoch milliseconds (year 5138 in seconds)
_MILLIS_THRESHOLD = 10**11


def utc_now() -> datetime:
    """Return current UTC timestamp (timezone-aware)."""
    return datetime.now(timezone.utc)


def coerce_long(value: Any) -> int | None:
    """Decode int, numeric string or protobuf Long {low, high} objects."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    try:
        if isinstance(value, float):
            return int(value)
        if isinstance(value, str):
            # isdigit() accepts superscripts and other non-decimal digits
            return int(value) if value.strip().isdecimal() else None
        if isinstance(value, dict) and "low" in value:
            low = int(value.get("low") or 0) & 0xFFFFFFFF
            high = int(value.get("high") or 0)
            return (high << 32) | low
    except (OverflowError, TypeError, ValueError):
        return None
    return None


def from_epoch(value: Any) -> datetime | None:
    """Convert a gateway epoch value to UTC, or None when absent/unparseable."""
    seconds = coerce_long(value)
    if seconds is None:
        return None
    if seconds > _MILLIS_THRESHOLD:
        seconds //= 1000
    try:
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        return None
