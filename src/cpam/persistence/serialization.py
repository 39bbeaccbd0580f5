"""Text encodings used by the SQL repositories.

Timestamps are ISO-8601 with offset, dates are ISO day keys and Decimals
use their exact string form, so rows compare and sort the same way on
every backend.
"""

from __future__ import annotations

import json
from datetime import date, datetime
from decimal import Decimal
from typing import Any


def dump_datetime(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def load_datetime(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def dump_date(value: date) -> str:
    return value.isoformat()


def load_date(value: str) -> date:
    return date.fromisoformat(value)


def dump_decimal(value: Decimal) -> str:
    return str(value)


def load_decimal(value: str) -> Decimal:
    return Decimal(value)


def dump_json(payload: Any) -> str:
    """Compact, key-sorted JSON."""
    return json.dumps(payload, sort_keys=True, separators=(",", ":"))


def load_json(value: str) -> Any:
    return json.loads(value)
