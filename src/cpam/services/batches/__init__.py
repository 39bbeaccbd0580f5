"""Batch orchestration service for CPAM.

Provides BatchOrchestrator for the QUEUED -> RUNNING -> COMPLETED | FAILED
lifecycle and BatchWorker for background execution.
"""

from cpam.services.batches.orchestrator import (
    BatchNotFoundError,
    BatchOrchestrator,
    BatchServiceError,
    FormulaNotFoundError,
    InvalidBatchStateError,
    NoItemsError,
    TenantMismatchError,
)
from cpam.services.batches.worker import (
    CPAM_WORKER_POLL_INTERVAL_ENV,
    BatchWorker,
    get_poll_interval,
)

__all__ = [
    "CPAM_WORKER_POLL_INTERVAL_ENV",
    "BatchNotFoundError",
    "BatchOrchestrator",
    "BatchServiceError",
    "BatchWorker",
    "FormulaNotFoundError",
    "InvalidBatchStateError",
    "NoItemsError",
    "TenantMismatchError",
    "get_poll_interval",
]
