"""
Leaderboard Windows

Aggregation periods for leaderboard totals:
- global:  all time, unbounded
- weekly:  calendar week, Monday 00:00 UTC (inclusive) to next Monday (exclusive)
- monthly: calendar month, 1st 00:00 UTC (inclusive) to 1st of next month (exclusive)

All datetimes are naive UTC.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum as PyEnum
from typing import Optional

from contest_engine.exceptions import UnknownWindowError


class WindowKind(str, PyEnum):
    GLOBAL = "global"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


@dataclass(frozen=True)
class WindowBounds:
    """Half-open interval [start, end). None means unbounded on that side."""
    start: Optional[datetime]
    end: Optional[datetime]

    def contains(self, moment: datetime) -> bool:
        if self.start is not None and moment < self.start:
            return False
        if self.end is not None and moment >= self.end:
            return False
        return True


UNBOUNDED = WindowBounds(start=None, end=None)


def parse_window(value) -> WindowKind:
    if isinstance(value, WindowKind):
        return value
    try:
        return WindowKind(str(value).lower())
    except ValueError:
        raise UnknownWindowError(value)


def window_bounds(kind: WindowKind, now: datetime) -> WindowBounds:
    """Bounds of the window of the given kind that contains `now`."""
    if kind == WindowKind.GLOBAL:
        return UNBOUNDED

    midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)

    if kind == WindowKind.WEEKLY:
        start = midnight - timedelta(days=midnight.weekday())
        return WindowBounds(start=start, end=start + timedelta(days=7))

    if kind == WindowKind.MONTHLY:
        start = midnight.replace(day=1)
        if start.month == 12:
            end = start.replace(year=start.year + 1, month=1)
        else:
            end = start.replace(month=start.month + 1)
        return WindowBounds(start=start, end=end)

    raise UnknownWindowError(kind)
