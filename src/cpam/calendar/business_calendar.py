"""Business day calendar: membership tests, date rolling and day arithmetic.

All functions are pure. Calendars are immutable and safe to share between
threads. Membership is by calendar day; a ``datetime`` argument is reduced
to its date before any check.

Weekday numbers follow ``date.weekday()``: Monday=0 ... Sunday=6.
"""

from __future__ import annotations

import calendar as _stdlib_calendar
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from enum import StrEnum

from cpam.calendar.holidays import CalendarRegion, holidays_for

SATURDAY = 5
SUNDAY = 6
DEFAULT_WEEKEND_DAYS: frozenset[int] = frozenset({SATURDAY, SUNDAY})

_ONE_DAY = timedelta(days=1)


class RollConvention(StrEnum):
    """Rule for mapping a non-business date to an adjacent business date."""

    FOLLOWING = "following"
    PRECEDING = "preceding"
    MODIFIED_FOLLOWING = "modified_following"
    MODIFIED_PRECEDING = "modified_preceding"


class CalendarConfigError(ValueError):
    """Raised when a calendar cannot contain any business day."""

    def __init__(self, weekend_days: Iterable[int]) -> None:
        self.weekend_days = sorted(weekend_days)
        super().__init__(
            f"Calendar has no business days: weekend covers weekdays {self.weekend_days}"
        )


@dataclass(frozen=True)
class BusinessCalendar:
    """Holiday and weekend definition for one region or a compound calendar.

    Attributes:
        region: Region tag (CUSTOM for merged or hand-built calendars).
        holidays: ISO day keys (YYYY-MM-DD) that are not business days.
        weekend_days: Weekday numbers that are never business days.
    """

    region: CalendarRegion
    holidays: frozenset[str] = field(default_factory=frozenset)
    weekend_days: frozenset[int] = DEFAULT_WEEKEND_DAYS

    def __post_init__(self) -> None:
        invalid = [d for d in self.weekend_days if d not in range(7)]
        if invalid:
            raise ValueError(f"Weekend days must be in 0..6, got {sorted(invalid)}")
        if len(self.weekend_days) >= 7:
            raise CalendarConfigError(self.weekend_days)


def _as_date(value: date | datetime) -> date:
    if isinstance(value, datetime):
        return value.date()
    return value


def to_date_key(value: date | datetime) -> str:
    """Convert a date to its YYYY-MM-DD key, discarding time of day."""
    return _as_date(value).isoformat()


def parse_date_key(key: str) -> date:
    """Parse a YYYY-MM-DD key."""
    return date.fromisoformat(key)


def is_same_day(first: date | datetime, second: date | datetime) -> bool:
    """Check whether two values fall on the same calendar day."""
    return _as_date(first) == _as_date(second)


def create_calendar(
    region: CalendarRegion | str,
    custom_holidays: Iterable[date | datetime] | None = None,
    weekend_days: Iterable[int] | None = None,
) -> BusinessCalendar:
    """Build a calendar from a regional holiday table plus custom holidays.

    Args:
        region: Region whose holiday table seeds the calendar.
        custom_holidays: Additional non-business days.
        weekend_days: Weekday numbers treated as weekend. Defaults to Sat+Sun.

    Returns:
        Immutable BusinessCalendar.
    """
    region = CalendarRegion(region)
    keys = {h.day.isoformat() for h in holidays_for(region)}
    if custom_holidays:
        keys.update(to_date_key(d) for d in custom_holidays)

    weekend = frozenset(weekend_days) if weekend_days is not None else DEFAULT_WEEKEND_DAYS
    return BusinessCalendar(region=region, holidays=frozenset(keys), weekend_days=weekend)


def merge_calendars(*calendars: BusinessCalendar) -> BusinessCalendar:
    """Union several calendars into a compound CUSTOM calendar."""
    holidays: set[str] = set()
    weekend: set[int] = set()
    for cal in calendars:
        holidays.update(cal.holidays)
        weekend.update(cal.weekend_days)
    return BusinessCalendar(
        region=CalendarRegion.CUSTOM,
        holidays=frozenset(holidays),
        weekend_days=frozenset(weekend),
    )


def is_weekend(value: date | datetime, weekend_days: Iterable[int] = DEFAULT_WEEKEND_DAYS) -> bool:
    """Check whether a date falls on a weekend day."""
    return _as_date(value).weekday() in set(weekend_days)


def is_holiday(value: date | datetime, cal: BusinessCalendar) -> bool:
    """Check whether a date is a holiday in the calendar."""
    return to_date_key(value) in cal.holidays


def is_business_day(value: date | datetime, cal: BusinessCalendar) -> bool:
    """A business day is neither a weekend day nor a holiday."""
    return not is_weekend(value, cal.weekend_days) and not is_holiday(value, cal)


def roll_forward(value: date | datetime, cal: BusinessCalendar) -> date:
    """Return the first business day on or after the date."""
    current = _as_date(value)
    while not is_business_day(current, cal):
        current += _ONE_DAY
    return current


def roll_backward(value: date | datetime, cal: BusinessCalendar) -> date:
    """Return the last business day on or before the date."""
    current = _as_date(value)
    while not is_business_day(current, cal):
        current -= _ONE_DAY
    return current


def apply_roll_convention(
    value: date | datetime,
    cal: BusinessCalendar,
    convention: RollConvention | str = RollConvention.FOLLOWING,
) -> date:
    """Map a date to a business day under a roll convention.

    The modified conventions roll in their primary direction and, when that
    crosses into another calendar month, roll the opposite way instead.

    Args:
        value: Date to adjust.
        cal: Calendar defining business days.
        convention: Roll convention to apply.

    Returns:
        The adjusted business day (the input itself if already a business day).
    """
    start = _as_date(value)
    convention = RollConvention(convention)

    if is_business_day(start, cal):
        return start

    if convention is RollConvention.FOLLOWING:
        return roll_forward(start, cal)

    if convention is RollConvention.PRECEDING:
        return roll_backward(start, cal)

    if convention is RollConvention.MODIFIED_FOLLOWING:
        forward = roll_forward(start, cal)
        if forward.month != start.month:
            return roll_backward(start, cal)
        return forward

    backward = roll_backward(start, cal)
    if backward.month != start.month:
        return roll_forward(start, cal)
    return backward


def add_business_days(value: date | datetime, days: int, cal: BusinessCalendar) -> date:
    """Move by ``days`` business days; negative values move backwards.

    Steps one calendar day at a time and counts only business days, so the
    starting day itself is never counted.
    """
    current = _as_date(value)
    step = _ONE_DAY if days >= 0 else -_ONE_DAY
    remaining = abs(days)

    while remaining > 0:
        current += step
        if is_business_day(current, cal):
            remaining -= 1

    return current


def count_business_days(
    start: date | datetime,
    end: date | datetime,
    cal: BusinessCalendar,
) -> int:
    """Count business days in [start, end], inclusive of both endpoints.

    Returns the negated count when start is after end.
    """
    first = _as_date(start)
    last = _as_date(end)

    if first > last:
        return -count_business_days(last, first, cal)

    count = 0
    current = first
    while current <= last:
        if is_business_day(current, cal):
            count += 1
        current += _ONE_DAY
    return count


def first_business_day_of_month(year: int, month: int, cal: BusinessCalendar) -> date:
    """First business day of a month (month is 1..12)."""
    return roll_forward(date(year, month, 1), cal)


def last_business_day_of_month(year: int, month: int, cal: BusinessCalendar) -> date:
    """Last business day of a month (month is 1..12)."""
    last_day = _stdlib_calendar.monthrange(year, month)[1]
    return roll_backward(date(year, month, last_day), cal)
