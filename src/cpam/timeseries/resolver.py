"""Version Resolver: picks the observation to use for a series and date.

Lookups are exact-date. If no acceptable tag exists on the requested date
the resolver reports "not found" and never searches neighbouring dates on
its own; callers that want as-of-or-before semantics (baselines, FX month
ends) ask for ``latest_at_or_before`` explicitly.
"""

from __future__ import annotations

import calendar
import logging
from collections.abc import Iterable, Sequence
from datetime import date, timedelta
from decimal import Decimal
from typing import Protocol

from cpam.models.formula_graph import WindowOperation
from cpam.models.observation import Observation, VersionTag
from cpam.timeseries.versioning import VersionPolicy, select_best_version

logger = logging.getLogger(__name__)

WINDOW_MONTHS: dict[WindowOperation, int] = {
    WindowOperation.AVG_3M: 3,
    WindowOperation.AVG_6M: 6,
    WindowOperation.AVG_12M: 12,
    WindowOperation.MIN: 12,
    WindowOperation.MAX: 12,
}


class ObservationStore(Protocol):
    """Read side of the observation store used by the resolver."""

    def list_tags_for_date(self, series_code: str, as_of_date: date) -> list[Observation]: ...

    def list_range(self, series_code: str, start: date, end: date) -> list[Observation]: ...

    def latest_at_or_before(
        self, series_code: str, target: date, tags: Sequence[VersionTag]
    ) -> Observation | None: ...

    def data_watermark(self, series_codes: Iterable[str] | None = None) -> str: ...

class DataUnavailableError(Exception):
    """Raised when no acceptable observation exists for a series and date.

    Attributes:
        series_code: Series that could not be resolved.
        as_of_date: Date that was looked up.
        version_preference: Requested tag.
        tried: Tags that were acceptable under the active policy.
    """

    def __init__(
        self,
        series_code: str,
        as_of_date: date,
        version_preference: VersionTag,
        tried: Sequence[VersionTag] = (),
        detail: str | None = None,
    ) -> None:
        self.series_code = series_code
        self.as_of_date = as_of_date
        self.version_preference = version_preference
        self.tried = list(tried)
        message = (
            f"No observation for series {series_code} on {as_of_date.isoformat()} "
            f"(preference {version_preference}, tried {[str(t) for t in self.tried]})"
        )
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


def subtract_months(day: date, months: int) -> date:
    """Same day ``months`` earlier, clamped to the end of a shorter month."""
    total = day.year * 12 + (day.month - 1) - months
    year, month = divmod(total, 12)
    month += 1
    last = calendar.monthrange(year, month)[1]
    return date(year, month, min(day.day, last))


def apply_lag(day: date, lag_days: int) -> date:
    """Shift a lookup date back by ``lag_days`` calendar days."""
    if lag_days < 0:
        raise ValueError(f"lag_days must be >= 0, got {lag_days}")
    return day - timedelta(days=lag_days)


class VersionResolver:
    """Resolves observations under an explicit version policy.

    Args:
        store: Observation store to read from.
        policy: Tag precedence policy. Defaults to ``VersionPolicy.from_env()``.
    """

    def __init__(self, store: ObservationStore, policy: VersionPolicy | None = None) -> None:
        self._store = store
        self._policy = policy if policy is not None else VersionPolicy.from_env()

    @property
    def policy(self) -> VersionPolicy:
        return self._policy

    def data_watermark(self, series_codes: Iterable[str]) -> str:
        """Store token that changes whenever any of ``series_codes`` is written."""
        return self._store.data_watermark(series_codes)

    def _best(
        self, candidates: Iterable[Observation], order: Sequence[VersionTag]
    ) -> Observation | None:
        by_tag = {obs.version_tag: obs for obs in candidates}
        tag = select_best_version(by_tag.keys(), order)
        return by_tag[tag] if tag is not None else None

    def resolve(
        self, series_code: str, as_of_date: date, preference: VersionTag
    ) -> Observation | None:
        """Observation for the exact date under the policy, or None."""
        order = self._policy.preference_order(preference)
        return self._best(self._store.list_tags_for_date(series_code, as_of_date), order)

    def resolve_or_raise(
        self, series_code: str, as_of_date: date, preference: VersionTag
    ) -> Observation:
        """Like ``resolve`` but raises DataUnavailableError when nothing matches."""
        observation = self.resolve(series_code, as_of_date, preference)
        if observation is None:
            raise DataUnavailableError(
                series_code,
                as_of_date,
                VersionTag(preference),
                self._policy.preference_order(preference),
            )
        return observation

    def latest_at_or_before(
        self, series_code: str, target: date, preference: VersionTag
    ) -> Observation | None:
        """Most recent observation dated on or before ``target``.

        The newest date with any acceptable tag wins; on that date the tag is
        chosen by the same precedence as ``resolve``.
        """
        order = self._policy.preference_order(preference)
        return self._store.latest_at_or_before(series_code, target, order)

    def resolve_range(
        self, series_code: str, start: date, end: date, preference: VersionTag
    ) -> list[Observation]:
        """Best observation per date in [start, end], ordered by date."""
        order = self._policy.preference_order(preference)
        by_date: dict[date, list[Observation]] = {}
        for obs in self._store.list_range(series_code, start, end):
            by_date.setdefault(obs.as_of_date, []).append(obs)

        resolved = []
        for day in sorted(by_date):
            best = self._best(by_date[day], order)
            if best is not None:
                resolved.append(best)
        return resolved

    def resolve_window(
        self,
        series_code: str,
        as_of_date: date,
        preference: VersionTag,
        operation: WindowOperation = WindowOperation.VALUE,
        lag_days: int = 0,
    ) -> tuple[Decimal, list[Observation]]:
        """Value of a series for a Factor lookup.

        Args:
            series_code: Series to read.
            as_of_date: Evaluation date before lag.
            preference: Requested version tag.
            operation: ``value`` for the exact date, otherwise an aggregate
                over the trailing window ending on the lagged date.
            lag_days: Calendar days subtracted before lookup.

        Returns:
            (value, observations used).

        Raises:
            DataUnavailableError: If no observation is available.
        """
        target = apply_lag(as_of_date, lag_days)
        operation = WindowOperation(operation)

        if operation is WindowOperation.VALUE:
            obs = self.resolve_or_raise(series_code, target, preference)
            return obs.value, [obs]

        start = subtract_months(target, WINDOW_MONTHS[operation])
        observations = self.resolve_range(series_code, start, target, preference)
        if not observations:
            raise DataUnavailableError(
                series_code,
                target,
                VersionTag(preference),
                self._policy.preference_order(preference),
                detail=f"empty {operation} window from {start.isoformat()}",
            )

        values = [o.value for o in observations]
        if operation is WindowOperation.MIN:
            return min(values), observations
        if operation is WindowOperation.MAX:
            return max(values), observations
        return sum(values, Decimal(0)) / Decimal(len(values)), observations
