from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Optional

WEEK_LENGTH_DAYS = 7


@dataclass(frozen=True)
class Period:
    slug: str
    start: date
    end: date

    @property
    def days(self) -> int:
        return (self.end - self.start).days + 1

    def contains(self, value: date) -> bool:
        return self.start <= value <= self.end


def start_of_day(value: date) -> datetime:
    return datetime.combine(value, time.min)


def end_of_day(value: date) -> datetime:
    return datetime.combine(value, time.max)


def month_period(year: int, month: int) -> Period:
    """Calendar month containing ``month``/``year``; not a rolling window."""
    if not 1 <= month <= 12:
        raise ValueError("Month must be between 1 and 12")
    first = date(year, month, 1)
    if month == 12:
        next_month = date(year + 1, 1, 1)
    else:
        next_month = date(year, month + 1, 1)
    return Period("month", first, next_month - date.resolution)


def month_bounds(year: int, month: int) -> tuple[datetime, datetime]:
    period = month_period(year, month)
    return start_of_day(period.start), end_of_day(period.end)


def resolve_range(
    start: Optional[date], end: Optional[date]
) -> tuple[Optional[datetime], Optional[datetime]]:
    if start and end and start > end:
        raise ValueError("Start date must be before end date")
    return (
        start_of_day(start) if start else None,
        end_of_day(end) if end else None,
    )


def weekly_windows(start: date, end: date) -> list[Period]:
    """Split ``[start, end]`` into consecutive 7-day windows anchored at ``start``.

    Windows are labelled "Week 1", "Week 2", ... and the last one is cut
    short at ``end``. Weeks are counted from ``start``, not ISO weeks.
    """
    if start > end:
        raise ValueError("Start date must be before end date")
    windows: list[Period] = []
    cursor = start
    week_num = 1
    while cursor <= end:
        window_end = min(cursor + timedelta(days=WEEK_LENGTH_DAYS - 1), end)
        windows.append(Period(f"Week {week_num}", cursor, window_end))
        cursor += timedelta(days=WEEK_LENGTH_DAYS)
        week_num += 1
    return windows
