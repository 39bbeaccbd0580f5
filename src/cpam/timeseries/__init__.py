"""CPAM time series - version policy, resolver and ingestion boundary."""

from cpam.timeseries.ingestion import (
    IngestionError,
    IngestionReport,
    ObservationIngestor,
    ObservationRecord,
    TransientIngestionError,
)
from cpam.timeseries.resolver import (
    DataUnavailableError,
    ObservationStore,
    VersionResolver,
    apply_lag,
    subtract_months,
)
from cpam.timeseries.retry import RetryPolicy, compute_backoff_seconds
from cpam.timeseries.versioning import (
    DEFAULT_PRECEDENCE,
    ResolutionMode,
    VersionPolicy,
    compare_versions,
    is_valid_version_transition,
    parse_extended_version_tag,
    select_best_version,
    versions_available_as_of,
)

__all__ = [
    "DEFAULT_PRECEDENCE",
    "DataUnavailableError",
    "IngestionError",
    "IngestionReport",
    "ObservationIngestor",
    "ObservationRecord",
    "ObservationStore",
    "ResolutionMode",
    "RetryPolicy",
    "TransientIngestionError",
    "VersionPolicy",
    "VersionResolver",
    "apply_lag",
    "compare_versions",
    "compute_backoff_seconds",
    "is_valid_version_transition",
    "parse_extended_version_tag",
    "select_best_version",
    "subtract_months",
    "versions_available_as_of",
]
