"""Revision description helpers for proposals."""

from __future__ import annotations

from collections.abc import Iterable
from datetime import date

MAX_LISTED_SERIES = 5


def describe_revision(series_codes: Iterable[str], as_of_date: date) -> str:
    """Default human-readable description of a data revision.

    Args:
        series_codes: Series the formula references.
        as_of_date: As-of date of the recalculated batch.

    Returns:
        e.g. ``"Recalculation as of 2024-01-15 after revisions to BRENT, WTI"``.
    """
    codes = sorted(set(series_codes))
    when = as_of_date.isoformat()
    if not codes:
        return f"Recalculation as of {when}"
    listed = ", ".join(codes[:MAX_LISTED_SERIES])
    remaining = len(codes) - MAX_LISTED_SERIES
    if remaining > 0:
        listed = f"{listed} and {remaining} more"
    return f"Recalculation as of {when} after revisions to {listed}"
