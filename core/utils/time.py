"""
Time Utilities

Exchanges report time in different shapes:
- Binance / Bybit / Bitget: milliseconds since epoch, as int or numeric string
- OKX: milliseconds as string, ISO-8601 in some private payloads
- A few fields: seconds since epoch

Every normalized value object carries integer milliseconds, so all of these
are funnelled through `to_milliseconds`. Scheduler snapshots use timezone-aware
UTC datetimes.
"""

from datetime import datetime, timezone
from typing import Union


# Anything below this is treated as seconds (10 billion seconds ~ year 2286)
SECONDS_THRESHOLD = 10_000_000_000


def to_milliseconds(timestamp: Union[int, float, str, datetime, None]) -> int:
    """
    Normalize a timestamp to integer milliseconds since epoch.

    Detection Logic:
        - datetime: converted directly (naive values are assumed UTC)
        - numeric string: parsed as a number first
        - other string: parsed as ISO-8601 ("Z" suffix accepted)
        - number < 1e10: seconds, multiplied by 1000
        - otherwise: already milliseconds

    Args:
        timestamp: Raw timestamp from an exchange payload

    Returns:
        int: Milliseconds since epoch (current time if timestamp is None or empty)

    Raises:
        ValueError: If timestamp is negative or unparseable

    Examples:
        >>> to_milliseconds(1704110400)
        1704110400000
        >>> to_milliseconds("1704110400000")
        1704110400000
        >>> to_milliseconds("2024-01-01T12:00:00Z")
        1704110400000
    """
    if timestamp is None or timestamp == "":
        return current_utc_timestamp(milliseconds=True)

    if isinstance(timestamp, datetime):
        return datetime_to_timestamp(timestamp, milliseconds=True)

    if isinstance(timestamp, str):
        try:
            timestamp = float(timestamp)
        except ValueError:
            try:
                parsed = datetime.fromisoformat(timestamp.replace("Z", "+00:00"))
            except ValueError as e:
                raise ValueError(f"Invalid timestamp: {timestamp}. Error: {e}")
            return datetime_to_timestamp(parsed, milliseconds=True)

    if timestamp < 0:
        raise ValueError(f"Timestamp cannot be negative: {timestamp}")

    if timestamp < SECONDS_THRESHOLD:
        return int(round(timestamp * 1000))
    return int(timestamp)


def ms_to_iso(ms: int) -> str:
    """
    Render milliseconds as an ISO-8601 UTC string with millisecond precision.

    Example:
        >>> ms_to_iso(1704110400123)
        '2024-01-01T12:00:00.123Z'
    """
    dt = datetime.fromtimestamp(ms / 1000.0, tz=timezone.utc)
    return dt.strftime("%Y-%m-%dT%H:%M:%S.") + f"{ms % 1000:03d}Z"


def datetime_to_timestamp(dt: datetime, milliseconds: bool = False) -> int:
    """
    Convert a datetime object to Unix timestamp.

    Args:
        dt: Datetime object (naive values are treated as UTC)
        milliseconds: If True, return milliseconds; if False, return seconds
    """
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)

    if milliseconds:
        return int(round(dt.timestamp() * 1000))
    return int(dt.timestamp())


def current_utc_timestamp(milliseconds: bool = False) -> int:
    """Get current UTC timestamp in seconds or milliseconds."""
    return datetime_to_timestamp(datetime.now(timezone.utc), milliseconds)


def current_utc_datetime() -> datetime:
    """Get current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)
