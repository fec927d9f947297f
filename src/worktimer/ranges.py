"""Date range resolution.

Range shortcuts such as "today" or "week" depend on the wall clock, so they
are resolved to concrete half-open ``[start, end)`` bounds here, before any
aggregation runs.
"""

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone, tzinfo
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from worktimer.errors import InvalidRangeError

RANGE_NAMES = ("today", "yesterday", "week", "month", "custom")


@dataclass(frozen=True)
class DateRange:
    """Half-open interval ``[start, end)`` of aware datetimes."""

    start: datetime
    end: datetime

    def __post_init__(self) -> None:
        if self.start.tzinfo is None or self.end.tzinfo is None:
            raise InvalidRangeError("Range bounds must be timezone-aware")
        if self.start >= self.end:
            raise InvalidRangeError(
                f"Range start {self.start.isoformat()} must be before end {self.end.isoformat()}"
            )

    def contains(self, moment: datetime) -> bool:
        """Check if ``moment`` falls within the range."""
        return self.start <= moment < self.end

    def days(self, tz: tzinfo = timezone.utc) -> list[date]:
        """Calendar days (in ``tz``) touched by the range."""
        first = self.start.astimezone(tz).date()
        last = (self.end - timedelta(microseconds=1)).astimezone(tz).date()
        return [first + timedelta(days=i) for i in range((last - first).days + 1)]


def get_timezone(name: str) -> tzinfo:
    """Resolve an IANA timezone name.

    Raises:
        InvalidRangeError: If the name is unknown.
    """
    if name.upper() == "UTC":
        return timezone.utc
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise InvalidRangeError(f"Unknown timezone: {name}") from e


def _midnight(day: date, tz: tzinfo) -> datetime:
    return datetime.combine(day, time.min, tzinfo=tz)


def _coerce_bound(value: datetime | date | str, tz: tzinfo, is_end: bool) -> datetime:
    """Turn a custom bound into an aware datetime.

    Date-only ends are inclusive: ``end=2026-03-31`` covers that whole day.
    """
    if isinstance(value, str):
        try:
            value = datetime.fromisoformat(value) if "T" in value or " " in value else date.fromisoformat(value)
        except ValueError as e:
            raise InvalidRangeError(f"Invalid date: {value}") from e

    if isinstance(value, datetime):
        return value if value.tzinfo is not None else value.replace(tzinfo=tz)

    day = value + timedelta(days=1) if is_end else value
    return _midnight(day, tz)


def resolve_range(
    name: str,
    now: datetime,
    tz: tzinfo = timezone.utc,
    start: datetime | date | str | None = None,
    end: datetime | date | str | None = None,
) -> DateRange:
    """Resolve a range shortcut to concrete bounds.

    Args:
        name: One of today, yesterday, week, month, custom.
        now: Current time; the only wall-clock input.
        tz: Timezone defining calendar days.
        start: Custom range start (custom only).
        end: Custom range end (custom only).

    Returns:
        The resolved range.

    Raises:
        InvalidRangeError: For unknown names, missing custom bounds or
            inverted ranges.
    """
    key = name.lower().strip()
    today = now.astimezone(tz).date()
    tomorrow = _midnight(today + timedelta(days=1), tz)

    if key == "today":
        return DateRange(_midnight(today, tz), tomorrow)
    if key == "yesterday":
        return DateRange(_midnight(today - timedelta(days=1), tz), _midnight(today, tz))
    if key == "week":
        return DateRange(_midnight(today - timedelta(days=6), tz), tomorrow)
    if key == "month":
        return DateRange(_midnight(today - timedelta(days=29), tz), tomorrow)
    if key == "custom":
        if start is None or end is None:
            raise InvalidRangeError("Custom range requires both start and end")
        return DateRange(
            _coerce_bound(start, tz, is_end=False),
            _coerce_bound(end, tz, is_end=True),
        )

    raise InvalidRangeError(f"Unknown range '{name}', expected one of: {', '.join(RANGE_NAMES)}")
