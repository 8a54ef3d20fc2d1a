"""
Timestamp Alignment Utilities

Every reading of one poll shares a single nominal timestamp: the poll
start time rounded down to the gateway's poll interval. Two pollers that
race for the same cycle therefore produce the same (point, read_at) key
and collide on the readings uniqueness constraint.

Example:
    Polls starting at 10:00:10.050 and 10:00:10.900 on a 10-second
    gateway both get read_at 10:00:10.000.
"""

from datetime import datetime, timezone


def utc_now() -> datetime:
    """Current time as an aware UTC datetime"""
    return datetime.now(timezone.utc)


def align_timestamp(ts: datetime, interval_seconds: float) -> datetime:
    """
    Align timestamp to the previous interval boundary.

    Args:
        ts: The timestamp to align (timezone-aware recommended)
        interval_seconds: The interval in seconds

    Returns:
        Aligned datetime, preserving the original timezone

    Examples:
        14:30:17 with 10s   → 14:30:10
        14:30:17 with 60s   → 14:30:00
        14:30:17 with 3600s → 14:00:00
    """
    if interval_seconds <= 0:
        return ts

    epoch = ts.timestamp()
    aligned_epoch = (epoch // interval_seconds) * interval_seconds

    tz = ts.tzinfo or timezone.utc
    return datetime.fromtimestamp(aligned_epoch, tz)


def to_iso(ts: datetime | None) -> str | None:
    """Serialize an aware datetime as ISO-8601 (UTC)"""
    if ts is None:
        return None
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc).isoformat()


def parse_iso(value: str | None) -> datetime | None:
    """Parse an ISO-8601 string into an aware UTC datetime"""
    if not value:
        return None

    try:
        dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except (ValueError, TypeError):
        return None

    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt
