"""Ingestion boundary: writes normalized feed records into the observation store.

Provider adapters produce ``ObservationRecord`` objects; the ingestor
upserts them one at a time under the uniqueness invariant, pausing
``rate_limit_delay`` seconds between writes and retrying transient store
failures on the injected RetryPolicy before giving up with IngestionError.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Protocol

from pydantic import BaseModel, Field, field_validator

from cpam.models.observation import Observation, UpsertOutcome, VersionTag
from cpam.timeseries.retry import RetryPolicy
from cpam.timeseries.versioning import parse_extended_version_tag

logger = logging.getLogger(__name__)

DEFAULT_RATE_LIMIT_DELAY = 0.1


class TransientIngestionError(Exception):
    """A store write failed in a way that may succeed on retry."""

    pass


class IngestionError(Exception):
    """A record could not be written after exhausting retries.

    Attributes:
        series_code: Series of the failing record.
        as_of_date: Date of the failing record.
        attempts: Number of tries made.
    """

    def __init__(self, series_code: str, as_of_date: date, attempts: int, cause: Exception) -> None:
        self.series_code = series_code
        self.as_of_date = as_of_date
        self.attempts = attempts
        super().__init__(
            f"Failed to ingest {series_code} {as_of_date.isoformat()} "
            f"after {attempts} attempt(s): {cause}"
        )


class ObservationRecord(BaseModel):
    """Normalized observation feed record.

    ``version_tag`` accepts provider spellings such as ``final`` or ``rev2``.
    """

    series_code: str = Field(..., min_length=1)
    as_of_date: date
    value: Decimal
    version_tag: VersionTag
    provider_timestamp: datetime | None = None

    model_config = {"frozen": True, "extra": "forbid"}

    @field_validator("value", mode="before")
    @classmethod
    def reject_float(cls, v: object) -> object:
        if isinstance(v, float):
            raise ValueError("feed value must not be a float; pass a string")
        return v

    @field_validator("version_tag", mode="before")
    @classmethod
    def parse_tag(cls, v: object) -> object:
        if isinstance(v, str):
            parsed = parse_extended_version_tag(v)
            if parsed is None:
                raise ValueError(f"unknown version tag: {v!r}")
            return parsed.base
        return v

    def to_observation(self, ingested_at: datetime | None = None) -> Observation:
        data = {
            "series_code": self.series_code,
            "as_of_date": self.as_of_date,
            "value": self.value,
            "version_tag": self.version_tag,
            "provider_timestamp": self.provider_timestamp,
        }
        if ingested_at is not None:
            data["ingested_at"] = ingested_at
        return Observation(**data)


class ObservationWriter(Protocol):
    def upsert(self, observation: Observation) -> UpsertOutcome: ...


@dataclass
class IngestionReport:
    """Counts per upsert outcome for one ingestion run."""

    inserted: int = 0
    updated: int = 0
    unchanged: int = 0
    retries: int = 0
    outcomes: list[UpsertOutcome] = field(default_factory=list)

    @property
    def written(self) -> int:
        return self.inserted + self.updated

    def record(self, outcome: UpsertOutcome) -> None:
        self.outcomes.append(outcome)
        if outcome is UpsertOutcome.INSERTED:
            self.inserted += 1
        elif outcome is UpsertOutcome.UPDATED:
            self.updated += 1
        else:
            self.unchanged += 1


class ObservationIngestor:
    """Rate-limited, retrying writer in front of the observation store.

    Args:
        store: Store exposing ``upsert``.
        retry_policy: Retry schedule for TransientIngestionError.
        rate_limit_delay: Seconds to pause between consecutive writes.
        sleep: Sleep function; injectable so tests do not wait.
    """

    def __init__(
        self,
        store: ObservationWriter,
        retry_policy: RetryPolicy | None = None,
        rate_limit_delay: float = DEFAULT_RATE_LIMIT_DELAY,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._store = store
        self._retry_policy = retry_policy or RetryPolicy()
        self._rate_limit_delay = rate_limit_delay
        self._sleep = sleep

    def ingest(self, records: Iterable[ObservationRecord]) -> IngestionReport:
        """Upsert every record in order.

        Raises:
            IngestionError: If a record still fails after the last retry.
                Records before it stay written.
        """
        report = IngestionReport()
        for index, record in enumerate(records):
            if index > 0 and self._rate_limit_delay > 0:
                self._sleep(self._rate_limit_delay)
            report.record(self._write_with_retry(record, report))

        logger.info(
            "Ingested %d record(s): %d inserted, %d updated, %d unchanged",
            len(report.outcomes),
            report.inserted,
            report.updated,
            report.unchanged,
        )
        return report

    def _write_with_retry(
        self, record: ObservationRecord, report: IngestionReport
    ) -> UpsertOutcome:
        observation = record.to_observation()
        attempts = 0
        while True:
            attempts += 1
            try:
                return self._store.upsert(observation)
            except TransientIngestionError as e:
                if self._retry_policy.is_exhausted(attempts):
                    raise IngestionError(
                        record.series_code, record.as_of_date, attempts, e
                    ) from e
                delay = self._retry_policy.delay_for(attempts - 1)
                logger.warning(
                    "Transient failure writing %s %s (attempt %d/%d), retrying in %.1fs: %s",
                    record.series_code,
                    record.as_of_date,
                    attempts,
                    self._retry_policy.max_attempts,
                    delay,
                    e,
                )
                report.retries += 1
                self._sleep(delay)
