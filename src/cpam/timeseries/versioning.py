"""Version tag precedence for index observations.

Which tag an evaluation falls back to when its preferred tag is missing is
an explicit policy, never an implicit default:

- STRICT: only the requested tag is acceptable.
- FALLBACK: the requested tag first, then the remaining tags in the
  configured precedence order (REVISED > FINAL > PRELIMINARY by default).

Environment:
    CPAM_VERSION_POLICY: "fallback" or "strict" (default: "fallback").
"""

from __future__ import annotations

import os
import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum

from cpam.models.observation import VersionTag

CPAM_VERSION_POLICY_ENV = "CPAM_VERSION_POLICY"

DEFAULT_PRECEDENCE: tuple[VersionTag, ...] = (
    VersionTag.REVISED,
    VersionTag.FINAL,
    VersionTag.PRELIMINARY,
)

_REVISION_TAG_RE = re.compile(r"^rev(\d+)$")


class ResolutionMode(StrEnum):
    STRICT = "strict"
    FALLBACK = "fallback"


@dataclass(frozen=True)
class VersionPolicy:
    """Tenant-level tag precedence configuration.

    Attributes:
        mode: STRICT (requested tag only) or FALLBACK.
        precedence: Full fallback order; must list every tag exactly once.
        exclude: Tags that are never acceptable.
    """

    mode: ResolutionMode = ResolutionMode.FALLBACK
    precedence: tuple[VersionTag, ...] = DEFAULT_PRECEDENCE
    exclude: frozenset[VersionTag] = field(default_factory=frozenset)

    def __post_init__(self) -> None:
        if sorted(self.precedence) != sorted(VersionTag):
            raise ValueError(
                f"precedence must list each version tag exactly once, got {list(self.precedence)}"
            )

    @classmethod
    def strict(cls) -> VersionPolicy:
        return cls(mode=ResolutionMode.STRICT)

    @classmethod
    def fallback(
        cls,
        precedence: Iterable[VersionTag] = DEFAULT_PRECEDENCE,
        exclude: Iterable[VersionTag] = (),
    ) -> VersionPolicy:
        return cls(
            mode=ResolutionMode.FALLBACK,
            precedence=tuple(precedence),
            exclude=frozenset(exclude),
        )

    @classmethod
    def from_env(cls) -> VersionPolicy:
        """Build the default policy from CPAM_VERSION_POLICY."""
        raw = os.environ.get(CPAM_VERSION_POLICY_ENV, ResolutionMode.FALLBACK.value)
        mode = ResolutionMode(raw.strip().lower())
        return cls(mode=mode)

    def preference_order(self, preferred: VersionTag) -> list[VersionTag]:
        """Ordered tags to try for a requested preference.

        Args:
            preferred: Tag requested by the caller.

        Returns:
            Tags in lookup order, with excluded tags removed.
        """
        preferred = VersionTag(preferred)
        if self.mode is ResolutionMode.STRICT:
            order = [preferred]
        else:
            order = [preferred] + [t for t in self.precedence if t != preferred]
        return [t for t in order if t not in self.exclude]


def compare_versions(
    first: VersionTag,
    second: VersionTag,
    preference_order: list[VersionTag] | tuple[VersionTag, ...] = DEFAULT_PRECEDENCE,
) -> int:
    """Return -1 if ``first`` is preferred, 1 if ``second`` is, 0 if equal.

    Tags missing from the order rank below every listed tag.
    """
    order = list(preference_order)
    i1 = order.index(first) if first in order else len(order)
    i2 = order.index(second) if second in order else len(order)
    if i1 < i2:
        return -1
    if i1 > i2:
        return 1
    return 0


def select_best_version(
    versions: Iterable[VersionTag],
    preference_order: list[VersionTag] | tuple[VersionTag, ...] = DEFAULT_PRECEDENCE,
) -> VersionTag | None:
    """Pick the most preferred tag present, or None if none is acceptable."""
    order = list(preference_order)
    candidates = [v for v in versions if v in order]
    if not candidates:
        return None
    return min(candidates, key=order.index)


_VALID_TRANSITIONS: frozenset[tuple[VersionTag, VersionTag]] = frozenset(
    {
        (VersionTag.PRELIMINARY, VersionTag.FINAL),
        (VersionTag.PRELIMINARY, VersionTag.REVISED),
        (VersionTag.FINAL, VersionTag.REVISED),
    }
)


def is_valid_version_transition(current: VersionTag, new: VersionTag) -> bool:
    """Whether a provider may publish ``new`` after ``current``."""
    return (current, new) in _VALID_TRANSITIONS


@dataclass(frozen=True)
class ExtendedVersionTag:
    base: VersionTag
    revision: int | None = None


def parse_extended_version_tag(tag: str) -> ExtendedVersionTag | None:
    """Parse a provider tag, mapping ``revN`` to REVISED with revision N."""
    upper = tag.strip().upper()
    if upper in VersionTag.__members__:
        return ExtendedVersionTag(base=VersionTag(upper))

    match = _REVISION_TAG_RE.match(tag.strip().lower())
    if match:
        return ExtendedVersionTag(base=VersionTag.REVISED, revision=int(match.group(1)))
    return None


def versions_available_as_of(
    publish_dates: Mapping[VersionTag, datetime],
    as_of: datetime,
) -> list[VersionTag]:
    """Tags that had been published on or before ``as_of``."""
    return [tag for tag, published in publish_dates.items() if published <= as_of]
