"""Minute alignment for calendar events.

Google Calendar models events at minute granularity, so a finished session
is widened to whole minutes before it is mirrored: the start is floored to
its minute, the end is ceiled to the next minute boundary, and the span is
at least one minute.
"""

from datetime import datetime, timedelta

MINUTE = timedelta(minutes=1)


def floor_minute(value: datetime) -> datetime:
    """Truncate seconds and microseconds."""
    return value.replace(second=0, microsecond=0)


def ceil_minute(value: datetime) -> datetime:
    """Round up to the next minute boundary unless already on one."""
    floored = floor_minute(value)
    if floored == value:
        return value
    return floored + MINUTE


def align_interval(start: datetime, end: datetime) -> tuple[datetime, datetime]:
    """Align a raw interval to minute boundaries.

    Args:
        start: Raw start instant.
        end: Raw end instant.

    Returns:
        (aligned_start, aligned_end) with ``aligned_end - aligned_start``
        of at least one minute.

    Example:
        12:00:00 -> 12:00:10 becomes 12:00 -> 12:01
        12:00:00 -> 12:02:05.3 becomes 12:00 -> 12:03
    """
    aligned_start = floor_minute(start)
    aligned_end = ceil_minute(end)
    if aligned_end - aligned_start < MINUTE:
        aligned_end = aligned_start + MINUTE
    return aligned_start, aligned_end


def duration_minutes(start: datetime, end: datetime) -> int:
    """Whole minutes between two instants, rounded to nearest, at least 1.

    Halves round up, matching how elapsed time is usually read off a clock.
    """
    seconds = (end - start).total_seconds()
    minutes = int(seconds / 60 + 0.5) if seconds > 0 else 0
    return max(1, minutes)


def format_duration(minutes: int) -> str:
    """Render whole minutes as "1h 05m", "45m" or "0m"."""
    if minutes <= 0:
        return "0m"
    hours, minutes = divmod(minutes, 60)
    if hours == 0:
        return f"{minutes}m"
    return f"{hours}h {minutes:02d}m"
