"""FX rate service over FX series in the observation store.

An FX series holds the price of one unit of the source currency in the
target currency (e.g. ``EURUSD`` = USD per EUR). Rates are looked up under
one of three policies:

- EFFECTIVE_DATE: the rate on the date, rolled back to a business day.
- EOP: the rate on the last business day of the date's month.
- PERIOD_AVG: the mean of every resolved rate from the first day of the
  month (or an explicit period start) through the date.

Cached rates are keyed by the FX series watermark as well as the lookup
parameters, so a revised or newly ingested rate is never served stale.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date
from decimal import Decimal

from cpam.calendar import (
    BusinessCalendar,
    create_calendar,
    last_business_day_of_month,
    roll_backward,
)
from cpam.fx.cache import TTLCache
from cpam.models.formula_graph import FxPolicy
from cpam.models.observation import VersionTag
from cpam.timeseries.resolver import DataUnavailableError, VersionResolver

logger = logging.getLogger(__name__)


class FxRateUnavailableError(DataUnavailableError):
    """No FX observation satisfies the requested policy.

    A DataUnavailableError, so callers handling missing series data also
    handle missing rates.

    Attributes:
        fx_series: FX series code (also ``series_code``).
        policy: Lookup policy.
    """

    def __init__(
        self,
        fx_series: str,
        policy: FxPolicy,
        as_of_date: date,
        detail: str,
        preference: VersionTag = VersionTag.FINAL,
    ) -> None:
        self.fx_series = fx_series
        self.policy = policy
        super().__init__(
            fx_series,
            as_of_date,
            VersionTag(preference),
            detail=f"FX rate unavailable under {policy}: {detail}",
        )


@dataclass(frozen=True)
class FxRate:
    """A resolved rate and the date of the observation it came from.

    For PERIOD_AVG, ``rate_date`` is the last date in the period.
    """

    rate: Decimal
    rate_date: date
    policy: FxPolicy
    fx_series: str | None
    observations: int = 1


class FxRateService:
    """Policy-driven FX rate lookups with an injected TTL cache.

    Args:
        resolver: Version resolver over the observation store.
        calendar: Business calendar for rolling. Defaults to US.
        cache: Cache owned by the caller; no caching when None.
    """

    def __init__(
        self,
        resolver: VersionResolver,
        calendar: BusinessCalendar | None = None,
        cache: TTLCache[FxRate] | None = None,
    ) -> None:
        self._resolver = resolver
        self._calendar = calendar if calendar is not None else create_calendar("US")
        self._cache = cache

    def get_rate(
        self,
        fx_series: str,
        as_of_date: date,
        policy: FxPolicy = FxPolicy.EFFECTIVE_DATE,
        preference: VersionTag = VersionTag.FINAL,
        period_start: date | None = None,
    ) -> FxRate:
        """Look up an FX rate.

        Args:
            fx_series: FX series code.
            as_of_date: Evaluation date (period end for PERIOD_AVG).
            policy: Lookup policy.
            preference: Version tag preference.
            period_start: First day of a PERIOD_AVG window; defaults to the
                first calendar day of ``as_of_date``'s month.

        Raises:
            FxRateUnavailableError: If no observation matches.
        """
        policy = FxPolicy(policy)
        if self._cache is None:
            return self._load(fx_series, as_of_date, policy, preference, period_start)
        key = (
            fx_series,
            as_of_date,
            policy,
            VersionTag(preference),
            period_start,
            self._resolver.data_watermark([fx_series]),
        )
        return self._cache.get_or_load(
            key, lambda: self._load(fx_series, as_of_date, policy, preference, period_start)
        )

    def _load(
        self,
        fx_series: str,
        as_of_date: date,
        policy: FxPolicy,
        preference: VersionTag,
        period_start: date | None,
    ) -> FxRate:
        if policy is FxPolicy.PERIOD_AVG:
            start = period_start or as_of_date.replace(day=1)
            if start > as_of_date:
                raise FxRateUnavailableError(
                    fx_series,
                    policy,
                    as_of_date,
                    f"period start {start} is after period end",
                    preference,
                )
            observations = self._resolver.resolve_range(fx_series, start, as_of_date, preference)
            if not observations:
                raise FxRateUnavailableError(
                    fx_series,
                    policy,
                    as_of_date,
                    f"no rates between {start} and {as_of_date}",
                    preference,
                )
            total = sum((o.value for o in observations), Decimal(0))
            return FxRate(
                rate=total / Decimal(len(observations)),
                rate_date=observations[-1].as_of_date,
                policy=policy,
                fx_series=fx_series,
                observations=len(observations),
            )

        if policy is FxPolicy.EOP:
            lookup = last_business_day_of_month(as_of_date.year, as_of_date.month, self._calendar)
        else:
            lookup = roll_backward(as_of_date, self._calendar)

        observation = self._resolver.resolve(fx_series, lookup, preference)
        if observation is None:
            raise FxRateUnavailableError(
                fx_series, policy, as_of_date, f"no rate on {lookup}", preference
            )
        logger.debug("Resolved %s %s on %s: %s", fx_series, policy, lookup, observation.value)
        return FxRate(rate=observation.value, rate_date=lookup, policy=policy, fx_series=fx_series)

    def convert(
        self,
        amount: Decimal,
        source: str,
        target: str,
        fx_series: str,
        as_of_date: date,
        policy: FxPolicy = FxPolicy.EFFECTIVE_DATE,
        preference: VersionTag = VersionTag.FINAL,
    ) -> Decimal:
        """Convert ``amount`` from ``source`` to ``target`` currency.

        Same-currency conversions return ``amount`` without a lookup.
        """
        if source.upper() == target.upper():
            return amount
        rate = self.get_rate(fx_series, as_of_date, policy, preference)
        return amount * rate.rate


def identity_rate(as_of_date: date, policy: FxPolicy = FxPolicy.EFFECTIVE_DATE) -> FxRate:
    """Rate of 1 for same-currency conversions."""
    return FxRate(rate=Decimal(1), rate_date=as_of_date, policy=policy, fx_series=None)
