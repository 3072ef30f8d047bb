"""Clock and calendar helpers shared by the tracker and the stats store."""

import time
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from enum import Enum
from typing import Union


class Period(str, Enum):
    """Named reporting periods."""

    TODAY = "today"
    YESTERDAY = "yesterday"
    WEEK = "week"
    MONTH = "month"
    YEAR = "year"
    ALL = "all"


class Clock:
    """Wall clock plus monotonic clock.

    The tracker measures tick deltas on the monotonic clock and buckets
    seconds by the local wall clock. Tests substitute a fake.
    """

    def now(self) -> datetime:
        return datetime.now()

    def monotonic(self) -> float:
        return time.monotonic()

    def timestamp(self) -> float:
        return self.now().timestamp()


def date_key(moment: Union[datetime, date]) -> str:
    """Return the ``YYYY-MM-DD`` bucket key for a local date."""
    if isinstance(moment, datetime):
        moment = moment.date()
    return moment.isoformat()


def parse_date_key(key: str) -> date:
    return date.fromisoformat(key)


@dataclass(frozen=True)
class DateRange:
    """Inclusive local-time range."""

    start: datetime
    end: datetime

    @classmethod
    def for_year(cls, year: int) -> 'DateRange':
        return cls(
            start=datetime(year, 1, 1),
            end=datetime(year, 12, 31, 23, 59, 59, 999999),
        )

    def contains(self, moment: datetime) -> bool:
        return self.start <= moment <= self.end

    def contains_timestamp(self, ts: float) -> bool:
        return self.start.timestamp() <= ts <= self.end.timestamp()

    def contains_date(self, day: Union[str, date]) -> bool:
        if isinstance(day, str):
            day = parse_date_key(day)
        return self.start.date() <= day <= self.end.date()


def _months_back(moment: datetime, months: int) -> datetime:
    month_index = moment.month - 1 - months
    year = moment.year + month_index // 12
    month = month_index % 12 + 1
    # Clamp the day for shorter months (e.g. March 31 -> February 28)
    day = moment.day
    while True:
        try:
            return moment.replace(year=year, month=month, day=day)
        except ValueError:
            day -= 1


def resolve_date_range(period: Union[Period, str, DateRange], now: datetime) -> DateRange:
    """Turn a period name into a concrete range ending at ``now``.

    Args:
        period: Period name, Period member or an explicit DateRange
        now: Current local time

    Returns:
        DateRange covering the period

    Raises:
        ValueError: If the period name is unknown
    """
    if isinstance(period, DateRange):
        return period

    period = Period(period)
    midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)

    if period == Period.TODAY:
        return DateRange(midnight, now)
    if period == Period.YESTERDAY:
        return DateRange(midnight - timedelta(days=1), midnight - timedelta(microseconds=1))
    if period == Period.WEEK:
        return DateRange(midnight - timedelta(days=7), now)
    if period == Period.MONTH:
        return DateRange(_months_back(midnight, 1), now)
    if period == Period.YEAR:
        return DateRange(midnight.replace(month=1, day=1), now)
    return DateRange(datetime.fromtimestamp(0), now)
