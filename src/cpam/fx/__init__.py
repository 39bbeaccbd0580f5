"""FX rates with an explicit, caller-owned TTL cache."""

from cpam.fx.cache import CPAM_FX_CACHE_TTL_ENV, TTLCache
from cpam.fx.rates import FxRate, FxRateService, FxRateUnavailableError, identity_rate

__all__ = [
    "CPAM_FX_CACHE_TTL_ENV",
    "FxRate",
    "FxRateService",
    "FxRateUnavailableError",
    "TTLCache",
    "identity_rate",
]
