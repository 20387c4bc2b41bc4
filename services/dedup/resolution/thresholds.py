"""
Distance-tiered similarity thresholds.

Co-location is stronger evidence of identity than the name: two venues a
few meters apart are flagged even when the names share nothing (translation,
rebrand, typo), while venues a couple of blocks apart need near-identical
names.

Default bands:
  tight     < 50m    any name    (0.0)
  close     < 100m   >= 0.3
  nearby    < 200m   >= 0.6
  distant   >= 200m  >= 0.8      (also used when the distance is unknown)
"""

from __future__ import annotations

from bisect import bisect_right
from dataclasses import dataclass
from enum import Enum
from typing import Optional

DEFAULT_BREAKPOINTS_M: tuple[float, ...] = (50.0, 100.0, 200.0)
DEFAULT_LEVELS: tuple[float, ...] = (0.0, 0.3, 0.6, 0.8)


class ProximityTier(str, Enum):
    TIGHT = "tight"
    CLOSE = "close"
    NEARBY = "nearby"
    DISTANT = "distant"


_TIER_ORDER = (ProximityTier.TIGHT, ProximityTier.CLOSE, ProximityTier.NEARBY, ProximityTier.DISTANT)


@dataclass(frozen=True)
class ThresholdPolicy:
    """Step function from distance (meters) to required name similarity."""

    breakpoints_m: tuple[float, ...] = DEFAULT_BREAKPOINTS_M
    levels: tuple[float, ...] = DEFAULT_LEVELS

    def __post_init__(self):
        breakpoints = tuple(float(b) for b in self.breakpoints_m)
        levels = tuple(float(level) for level in self.levels)
        object.__setattr__(self, "breakpoints_m", breakpoints)
        object.__setattr__(self, "levels", levels)

        if len(levels) != len(breakpoints) + 1:
            raise ValueError(
                f"Need exactly one level per band: {len(breakpoints)} breakpoints "
                f"define {len(breakpoints) + 1} bands, got {len(levels)} levels"
            )
        if any(b <= 0 for b in breakpoints):
            raise ValueError("Distance breakpoints must be positive")
        if any(later <= earlier for earlier, later in zip(breakpoints, breakpoints[1:])):
            raise ValueError(f"Distance breakpoints must be strictly increasing: {breakpoints}")
        if any(not 0.0 <= level <= 1.0 for level in levels):
            raise ValueError(f"Similarity levels must lie in [0, 1]: {levels}")
        if any(later < earlier for earlier, later in zip(levels, levels[1:])):
            raise ValueError(f"Similarity levels must be non-decreasing with distance: {levels}")

    @classmethod
    def from_settings(cls, settings) -> "ThresholdPolicy":
        return cls(
            breakpoints_m=tuple(settings.threshold_breakpoints_m),
            levels=tuple(settings.threshold_levels),
        )

    def band(self, distance_meters: Optional[float]) -> int:
        """Index of the band a distance falls in; unknown distance is the farthest band."""
        if distance_meters is None:
            return len(self.levels) - 1
        return bisect_right(self.breakpoints_m, max(distance_meters, 0.0))

    def required_similarity(self, distance_meters: Optional[float]) -> float:
        return self.levels[self.band(distance_meters)]

    def passes(self, score: float, distance_meters: Optional[float]) -> bool:
        return score >= self.required_similarity(distance_meters)

    def tier(self, distance_meters: Optional[float]) -> Optional[ProximityTier]:
        """Named tier for the default four-band layout; None for custom band counts."""
        if len(self.levels) != len(_TIER_ORDER):
            return None
        return _TIER_ORDER[self.band(distance_meters)]


def pair_confidence(similarity: float, distance_meters: Optional[float]) -> float:
    """
    Display confidence for a candidate pair: 70% name, 30% proximity.

    Never used for filtering; the policy above decides what is a candidate.
    """
    if distance_meters is None:
        weight = 0.30
    elif distance_meters < 20:
        weight = 1.0    # same building
    elif distance_meters < 50:
        weight = 0.95
    elif distance_meters < 100:
        weight = 0.85
    elif distance_meters < 200:
        weight = 0.70
    elif distance_meters < 500:
        weight = 0.50
    else:
        weight = 0.30
    return min(1.0, max(0.0, similarity * 0.7 + weight * 0.3))
