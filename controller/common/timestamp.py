"""
Timestamp Utilities

Alignment and normalization helpers for the control loop, the baseline
estimator and the verification engine.

All instants handled by the controller are timezone-aware UTC datetimes.
Local (facility) time is only used for rate-window and weekday matching.

Example:
    Two readings taken at 14:07:12 and 14:13:40 both fall into the
    14:00 bucket when aligned to a 15-minute interval, so they are
    averaged together when building interval energy.
"""

from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo


def utc_now() -> datetime:
    """Current instant as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def ensure_utc(ts: datetime) -> datetime:
    """
    Normalize a datetime to aware UTC.

    Naive datetimes are treated as UTC (readings are stored as UTC).
    """
    if ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc)


def parse_timestamp(value: str | datetime | None) -> datetime | None:
    """Parse an ISO-8601 string (or pass through a datetime) into aware UTC."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    return ensure_utc(datetime.fromisoformat(text))


def to_iso(ts: datetime | None) -> str | None:
    """Serialize an instant as ISO-8601 UTC, or None."""
    if ts is None:
        return None
    return ensure_utc(ts).isoformat()


def to_local(ts: datetime, tz_name: str) -> datetime:
    """Convert an instant to the facility's local wall-clock time."""
    return ensure_utc(ts).astimezone(ZoneInfo(tz_name))


def align_timestamp(ts: datetime, interval_seconds: float) -> datetime:
    """
    Align timestamp to the previous interval boundary.

    Rounds DOWN so all readings within the same interval share the same
    bucket start. Same input always gives the same output.

    Args:
        ts: The timestamp to align
        interval_seconds: The interval in seconds

    Returns:
        Aligned aware UTC datetime
    """
    ts = ensure_utc(ts)
    if interval_seconds <= 0:
        return ts

    epoch = ts.timestamp()
    aligned_epoch = (epoch // interval_seconds) * interval_seconds
    return datetime.fromtimestamp(aligned_epoch, timezone.utc)


def iter_intervals(
    start: datetime,
    end: datetime,
    interval_seconds: float,
) -> list[tuple[datetime, datetime]]:
    """
    Split [start, end) into consecutive intervals on aligned boundaries.

    The first and last interval are clipped to start/end, so partial
    intervals at the edges are kept with their true length.
    """
    start = ensure_utc(start)
    end = ensure_utc(end)
    if end <= start:
        return []

    step = timedelta(seconds=interval_seconds)
    intervals = []
    cursor = start
    boundary = align_timestamp(start, interval_seconds) + step
    while cursor < end:
        next_edge = min(boundary, end)
        intervals.append((cursor, next_edge))
        cursor = next_edge
        boundary += step
    return intervals


def hours_between(start: datetime, end: datetime) -> float:
    """Length of [start, end) in hours."""
    return (ensure_utc(end) - ensure_utc(start)).total_seconds() / 3600.0
