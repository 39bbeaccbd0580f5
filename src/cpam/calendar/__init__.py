"""Business calendars for settlement and reference date rolling."""

from cpam.calendar.business_calendar import (
    DEFAULT_WEEKEND_DAYS,
    BusinessCalendar,
    CalendarConfigError,
    RollConvention,
    add_business_days,
    apply_roll_convention,
    count_business_days,
    create_calendar,
    first_business_day_of_month,
    is_business_day,
    is_holiday,
    is_same_day,
    is_weekend,
    last_business_day_of_month,
    merge_calendars,
    parse_date_key,
    roll_backward,
    roll_forward,
    to_date_key,
)
from cpam.calendar.holidays import CalendarRegion, Holiday, holidays_for

__all__ = [
    "DEFAULT_WEEKEND_DAYS",
    "BusinessCalendar",
    "CalendarConfigError",
    "CalendarRegion",
    "Holiday",
    "RollConvention",
    "add_business_days",
    "apply_roll_convention",
    "count_business_days",
    "create_calendar",
    "first_business_day_of_month",
    "holidays_for",
    "is_business_day",
    "is_holiday",
    "is_same_day",
    "is_weekend",
    "last_business_day_of_month",
    "merge_calendars",
    "parse_date_key",
    "roll_backward",
    "roll_forward",
    "to_date_key",
]
