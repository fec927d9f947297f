"""Time helpers shared by the timer engine."""

from datetime import datetime, timezone
from typing import Callable

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def whole_seconds(start: datetime, end: datetime) -> int:
    """Whole seconds elapsed between two instants, rounded down.

    Sub-second remainders are discarded so a segment never reports more
    time than it was open. Negative spans (clock skew) count as zero.
    """
    seconds = int((end - start).total_seconds())
    return max(seconds, 0)


def format_duration(seconds: int) -> str:
    """Format seconds into a human-readable duration string.

    Args:
        seconds: Duration in seconds

    Returns:
        Formatted string like "1h 23m" or "45m 12s"
    """
    if seconds < 0:
        return "0s"

    hours = seconds // 3600
    minutes = (seconds % 3600) // 60
    secs = seconds % 60

    parts = []
    if hours > 0:
        parts.append(f"{hours}h")
    if minutes > 0:
        parts.append(f"{minutes}m")
    if secs > 0 and hours == 0:  # Only show seconds if under an hour
        parts.append(f"{secs}s")

    return " ".join(parts) if parts else "0s"
