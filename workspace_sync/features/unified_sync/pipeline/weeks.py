"""
Calendar-week windows used by the progressive backfill.

A window runs Sunday 00:00:00 through Saturday 23:59:59.999999 in the
configured timezone; offset 0 is the week containing "now".
"""

import math
from dataclasses import dataclass
from datetime import UTC, date, datetime, timedelta
from zoneinfo import ZoneInfo


@dataclass(frozen=True, slots=True)
class WeekWindow:
    offset: int
    start: datetime
    end: datetime
    label: str

    @property
    def start_utc(self) -> datetime:
        return self.start.astimezone(UTC)

    @property
    def end_utc(self) -> datetime:
        return self.end.astimezone(UTC)


def week_number(day: date) -> int:
    """Sunday-based week of the year; the week holding January 1st is week 1."""
    jan1 = date(day.year, 1, 1)
    days_since_jan1 = (day - jan1).days
    jan1_weekday = (jan1.weekday() + 1) % 7  # Sunday = 0
    return math.ceil((days_since_jan1 + jan1_weekday + 1) / 7)


def week_label(week_start: datetime | date) -> str:
    """Progress label such as ``2024-W07`` for the week starting at ``week_start``."""
    day = week_start.date() if isinstance(week_start, datetime) else week_start
    return f"{day.year}-W{week_number(day):02d}"


def week_window(offset: int, now: datetime | None = None, tz: str = "UTC") -> WeekWindow:
    """Return the Sunday-to-Saturday window ``offset`` weeks before ``now``."""
    if offset < 0:
        raise ValueError("week offset must be >= 0")

    zone = ZoneInfo(tz)
    current = (now or datetime.now(UTC)).astimezone(zone)
    target = current - timedelta(days=7 * offset)

    days_since_sunday = (target.weekday() + 1) % 7
    start = (target - timedelta(days=days_since_sunday)).replace(
        hour=0, minute=0, second=0, microsecond=0
    )
    end = (start + timedelta(days=6)).replace(hour=23, minute=59, second=59, microsecond=999999)

    return WeekWindow(offset=offset, start=start, end=end, label=week_label(start))
