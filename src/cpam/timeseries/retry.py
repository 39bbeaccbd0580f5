"""Retry/backoff policy for the observation ingestion boundary.

Default schedule: 1 initial try + 3 retries, sleeping 1s, 2s and 4s
between them. The policy is a value object handed to the ingestor; the
evaluator never retries.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Final

DEFAULT_MAX_ATTEMPTS: Final[int] = 4
DEFAULT_BACKOFF_SCHEDULE: Final[tuple[float, ...]] = (1.0, 2.0, 4.0)


def compute_backoff_seconds(
    attempt_index: int,
    base_seconds: float = 1.0,
    cap_seconds: float | None = None,
) -> float:
    """Exponential backoff: base * 2^attempt_index, optionally capped.

    Example:
        >>> compute_backoff_seconds(0)
        1.0
        >>> compute_backoff_seconds(2)
        4.0
    """
    if attempt_index < 0:
        return 0.0
    delay = float(base_seconds * (2**attempt_index))
    if cap_seconds is not None:
        delay = min(delay, float(cap_seconds))
    return delay


@dataclass(frozen=True)
class RetryPolicy:
    """How often and how long to wait when a write fails transiently.

    Attributes:
        max_attempts: Total tries including the first one.
        backoff_schedule: Seconds to sleep before retry 1, 2, ...; the last
            entry repeats if there are more retries than entries.
    """

    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    backoff_schedule: tuple[float, ...] = DEFAULT_BACKOFF_SCHEDULE

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {self.max_attempts}")
        if self.max_attempts > 1 and not self.backoff_schedule:
            raise ValueError("backoff_schedule must not be empty when retries are allowed")
        if any(d < 0 for d in self.backoff_schedule):
            raise ValueError("backoff delays must be >= 0")

    @classmethod
    def exponential(
        cls,
        base_seconds: float = 1.0,
        attempts: int = DEFAULT_MAX_ATTEMPTS,
        cap_seconds: float | None = None,
    ) -> RetryPolicy:
        """Policy with ``attempts`` tries and doubling delays."""
        schedule = tuple(
            compute_backoff_seconds(i, base_seconds, cap_seconds) for i in range(attempts - 1)
        )
        return cls(max_attempts=attempts, backoff_schedule=schedule)

    @classmethod
    def no_retry(cls) -> RetryPolicy:
        return cls(max_attempts=1, backoff_schedule=())

    def delay_for(self, retry_index: int) -> float:
        """Seconds to wait before the retry with zero-based ``retry_index``."""
        if retry_index < 0 or not self.backoff_schedule:
            return 0.0
        return self.backoff_schedule[min(retry_index, len(self.backoff_schedule) - 1)]

    def is_exhausted(self, attempts_made: int) -> bool:
        return attempts_made >= self.max_attempts
