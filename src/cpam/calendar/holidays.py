"""Regional holiday tables for business calendars.

Fixed-date holidays only. Tables cover the years the pricing desk currently
settles against; extend a table when a new year is published.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from enum import StrEnum


class CalendarRegion(StrEnum):
    """Supported calendar regions."""

    US = "US"
    EU = "EU"
    UK = "UK"
    AU = "AU"
    CUSTOM = "CUSTOM"


@dataclass(frozen=True)
class Holiday:
    """A named holiday on a calendar day."""

    day: date
    name: str
    region: CalendarRegion


def _table(region: CalendarRegion, entries: list[tuple[str, str]]) -> tuple[Holiday, ...]:
    return tuple(Holiday(day=date.fromisoformat(d), name=n, region=region) for d, n in entries)


US_HOLIDAYS = _table(
    CalendarRegion.US,
    [
        ("2024-01-01", "New Year's Day"),
        ("2024-07-04", "Independence Day"),
        ("2024-11-28", "Thanksgiving"),
        ("2024-12-25", "Christmas"),
        ("2025-01-01", "New Year's Day"),
        ("2025-07-04", "Independence Day"),
        ("2025-11-27", "Thanksgiving"),
        ("2025-12-25", "Christmas"),
    ],
)

EU_HOLIDAYS = _table(
    CalendarRegion.EU,
    [
        ("2024-01-01", "New Year's Day"),
        ("2024-05-01", "Labour Day"),
        ("2024-12-25", "Christmas"),
        ("2024-12-26", "Boxing Day"),
        ("2025-01-01", "New Year's Day"),
        ("2025-05-01", "Labour Day"),
        ("2025-12-25", "Christmas"),
        ("2025-12-26", "Boxing Day"),
    ],
)

UK_HOLIDAYS = _table(
    CalendarRegion.UK,
    [
        ("2024-01-01", "New Year's Day"),
        ("2024-05-06", "Early May Bank Holiday"),
        ("2024-08-26", "Summer Bank Holiday"),
        ("2024-12-25", "Christmas"),
        ("2024-12-26", "Boxing Day"),
        ("2025-01-01", "New Year's Day"),
        ("2025-05-05", "Early May Bank Holiday"),
        ("2025-08-25", "Summer Bank Holiday"),
        ("2025-12-25", "Christmas"),
        ("2025-12-26", "Boxing Day"),
    ],
)

AU_HOLIDAYS = _table(
    CalendarRegion.AU,
    [
        ("2024-01-01", "New Year's Day"),
        ("2024-01-26", "Australia Day"),
        ("2024-04-25", "ANZAC Day"),
        ("2024-12-25", "Christmas"),
        ("2024-12-26", "Boxing Day"),
        ("2025-01-01", "New Year's Day"),
        ("2025-01-26", "Australia Day"),
        ("2025-04-25", "ANZAC Day"),
        ("2025-12-25", "Christmas"),
        ("2025-12-26", "Boxing Day"),
    ],
)

REGIONAL_HOLIDAYS: dict[CalendarRegion, tuple[Holiday, ...]] = {
    CalendarRegion.US: US_HOLIDAYS,
    CalendarRegion.EU: EU_HOLIDAYS,
    CalendarRegion.UK: UK_HOLIDAYS,
    CalendarRegion.AU: AU_HOLIDAYS,
    CalendarRegion.CUSTOM: (),
}


def holidays_for(region: CalendarRegion) -> tuple[Holiday, ...]:
    """Return the holiday table for a region (empty for CUSTOM)."""
    return REGIONAL_HOLIDAYS[region]
