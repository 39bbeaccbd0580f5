"""Series and Observation models for versioned index data.

An Observation is one value-point of a series on an as-of date under a
revision tag. At most one Observation exists per (series, as_of_date,
version_tag); see the observation repositories for the upsert rules.
"""

from __future__ import annotations

from datetime import UTC, date, datetime
from decimal import Decimal
from enum import StrEnum

from pydantic import BaseModel, Field, field_validator


class VersionTag(StrEnum):
    """Revision status of an observation."""

    PRELIMINARY = "PRELIMINARY"
    FINAL = "FINAL"
    REVISED = "REVISED"


class UpsertOutcome(StrEnum):
    """Result of writing an observation under the uniqueness invariant."""

    INSERTED = "INSERTED"
    UPDATED = "UPDATED"
    UNCHANGED = "UNCHANGED"


class IndexSeries(BaseModel):
    """A market index series owned by a tenant."""

    series_code: str = Field(..., min_length=1, description="Tenant-unique series code")
    tenant_id: str = Field(..., description="Owning tenant")
    name: str | None = Field(None, description="Display name")
    provider: str | None = Field(None, description="Data provider tag")
    unit: str | None = Field(None, description="Unit of measure")
    currency: str | None = Field(None, description="Quote currency, if any")

    model_config = {"frozen": True, "extra": "forbid"}


class Observation(BaseModel):
    """A single versioned value of a series.

    Values are Decimal; float inputs are rejected to keep arithmetic exact.
    """

    series_code: str = Field(..., min_length=1)
    as_of_date: date
    value: Decimal
    version_tag: VersionTag
    ingested_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    provider_timestamp: datetime | None = None

    model_config = {"frozen": True, "extra": "forbid"}

    @field_validator("value", mode="before")
    @classmethod
    def reject_float(cls, v: object) -> object:
        """Floats carry binary rounding error; require str/int/Decimal."""
        if isinstance(v, float):
            raise ValueError("observation value must not be a float; pass a string or Decimal")
        return v

    @property
    def key(self) -> tuple[str, date, VersionTag]:
        """Uniqueness key (series_code, as_of_date, version_tag)."""
        return (self.series_code, self.as_of_date, self.version_tag)
