"""Date ranges, billing views and period splitting.

Weeks start on Monday. A timesheet belongs to the period containing its
``week_start_date``; splitting a range into periods therefore partitions
the set of timesheets the range selects.
"""

from __future__ import annotations

import calendar
from dataclasses import dataclass
from datetime import date, timedelta
from enum import Enum
from typing import Iterable

from billing_engine.errors import ValidationError


class ViewMode(str, Enum):
    """Enclosing view the caller is looking at."""

    WEEKLY = "weekly"
    MONTHLY = "monthly"
    TIMELINE = "timeline"


class Granularity(str, Enum):
    """Size of one breakdown period."""

    WEEKLY = "weekly"
    MONTHLY = "monthly"


@dataclass(frozen=True)
class DateRange:
    """Inclusive date range."""

    start: date
    end: date

    def __post_init__(self) -> None:
        if self.end < self.start:
            raise ValidationError(
                f"Range end {self.end} is before start {self.start}",
                {"start_date": str(self.start), "end_date": str(self.end)},
            )

    def contains(self, day: date) -> bool:
        return self.start <= day <= self.end

    def overlaps(self, start: date, end: date) -> bool:
        return start <= self.end and end >= self.start

    @property
    def label(self) -> str:
        return f"{self.start.isoformat()}..{self.end.isoformat()}"


def week_start(day: date) -> date:
    """Monday of the week containing ``day``."""
    return day - timedelta(days=day.weekday())


def week_end(day: date) -> date:
    """Sunday of the week containing ``day``."""
    return week_start(day) + timedelta(days=6)


def week_range(day: date) -> DateRange:
    return DateRange(week_start(day), week_end(day))


def month_range(day: date) -> DateRange:
    last = calendar.monthrange(day.year, day.month)[1]
    return DateRange(day.replace(day=1), day.replace(day=last))


def split_weeks(date_range: DateRange) -> list[DateRange]:
    """Split a range into Monday-aligned weeks, clipped to the range."""
    periods: list[DateRange] = []
    cursor = date_range.start
    while cursor <= date_range.end:
        end = min(week_end(cursor), date_range.end)
        periods.append(DateRange(cursor, end))
        cursor = end + timedelta(days=1)
    return periods


def split_months(date_range: DateRange) -> list[DateRange]:
    """Split a range into calendar months, clipped to the range."""
    periods: list[DateRange] = []
    cursor = date_range.start
    while cursor <= date_range.end:
        end = min(month_range(cursor).end, date_range.end)
        periods.append(DateRange(cursor, end))
        cursor = end + timedelta(days=1)
    return periods


def split_range(date_range: DateRange, granularity: Granularity) -> list[DateRange]:
    if granularity == Granularity.WEEKLY:
        return split_weeks(date_range)
    return split_months(date_range)


def breakdown_granularity(view: ViewMode | str) -> Granularity:
    """One level finer than the enclosing view.

    Raises:
        ValidationError: When the view is already weekly.
    """
    view = ViewMode(view)
    if view == ViewMode.MONTHLY:
        return Granularity.WEEKLY
    if view == ViewMode.TIMELINE:
        return Granularity.MONTHLY
    raise ValidationError(
        "Breakdown is not available in weekly view",
        {"view": view.value},
    )


def timeline_range(
    project_dates: Iterable[tuple[date | None, date | None]],
    today: date,
) -> DateRange:
    """Union span of project dates; the current month when none are dated.

    A project without an end date is treated as running until ``today``.
    """
    starts: list[date] = []
    ends: list[date] = []
    for start, end in project_dates:
        if start is None:
            continue
        starts.append(start)
        ends.append(end if end is not None else today)

    if not starts:
        return month_range(today)

    start, end = min(starts), max(ends)
    if end < start:
        end = start
    return DateRange(start, end)


def resolve_range(
    view: ViewMode | str,
    today: date,
    start: date | None = None,
    end: date | None = None,
    project_dates: Iterable[tuple[date | None, date | None]] = (),
) -> DateRange:
    """Resolve the effective range for a view.

    Timeline ignores explicit dates and spans the selected projects.
    Weekly and monthly use the explicit range when both ends are given,
    otherwise the week or month containing ``today``.
    """
    view = ViewMode(view)
    if view == ViewMode.TIMELINE:
        return timeline_range(project_dates, today)
    if start is not None and end is not None:
        return DateRange(start, end)
    if view == ViewMode.WEEKLY:
        return week_range(start or today)
    return month_range(start or today)
