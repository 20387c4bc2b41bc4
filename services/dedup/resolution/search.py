"""
Duplicate search: finder + exclusions + scorer + threshold policy.

find_duplicates    curation, ranked by similarity (then distance)
find_best_duplicate insert-time, the single closest passing candidate
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Any, Optional, Union

from services.dedup.config import settings
from services.dedup.resolution.candidates import Candidate, CandidateFinder, SearchMode
from services.dedup.resolution.errors import VenueNotFoundError
from services.dedup.resolution.exclusions import ExclusionRegistry
from services.dedup.resolution.similarity import DEFAULT_SCORER, SimilarityScorer
from services.dedup.resolution.thresholds import ThresholdPolicy, pair_confidence
from services.dedup.resolution.venues import (
    DEFAULT_DEPENDENTS,
    DependentType,
    VenueRecord,
    count_dependents,
    fetch_venue,
)

logger = logging.getLogger(__name__)


@dataclass
class SearchOptions:
    radius_meters: float = settings.curation_radius_m
    limit: int = settings.curation_limit
    # Score candidates against this name instead of the target's current one
    name: Optional[str] = None
    # Score every venue within the radius instead of the nearest limit * pool_factor
    exhaustive: bool = False


def _distance_key(distance: Optional[float]) -> float:
    return distance if distance is not None else math.inf


class DuplicateSearch:
    def __init__(
        self,
        finder: Optional[CandidateFinder] = None,
        exclusions: Optional[ExclusionRegistry] = None,
        scorer: SimilarityScorer = DEFAULT_SCORER,
        policy: Optional[ThresholdPolicy] = None,
        dependents: tuple[DependentType, ...] = DEFAULT_DEPENDENTS,
        pool_factor: int = settings.candidate_pool_factor,
        insert_radius_meters: float = settings.insert_check_radius_m,
        insert_limit: int = settings.curation_limit,
    ):
        self.finder = finder or CandidateFinder()
        self.exclusions = exclusions or ExclusionRegistry()
        self.scorer = scorer
        self.policy = policy or ThresholdPolicy.from_settings(settings)
        self.dependents = dependents
        self.pool_factor = max(1, pool_factor)
        self.insert_radius_meters = insert_radius_meters
        self.insert_limit = insert_limit

    async def find_duplicates(
        self,
        conn: Any,
        target: Union[VenueRecord, int],
        options: Optional[SearchOptions] = None,
    ) -> list[Candidate]:
        """
        Ranked duplicate candidates for an existing venue.

        Sorted by similarity descending, ties by ascending distance (unknown
        distance last), then by id. At most options.limit results.
        """
        options = options or SearchOptions()
        venue = await self._resolve_target(conn, target)

        passing = await self._scored_candidates(
            conn,
            venue,
            name=options.name if options.name is not None else venue.name,
            radius_meters=options.radius_meters,
            fetch_limit=None if options.exhaustive else options.limit * self.pool_factor,
            mode=SearchMode.CURATION,
        )
        passing.sort(
            key=lambda c: (-c.similarity_score, _distance_key(c.distance_meters), c.venue.id)
        )
        ranked = passing[: options.limit]

        await self._attach_dependent_counts(conn, ranked)
        for candidate in ranked:
            candidate.confidence = pair_confidence(candidate.similarity_score, candidate.distance_meters)

        logger.debug("Venue %s: %d duplicate candidates", venue.id, len(ranked))
        return ranked

    async def find_best_duplicate(
        self,
        conn: Any,
        target: Union[VenueRecord, int],
        radius_meters: Optional[float] = None,
    ) -> Optional[Candidate]:
        """
        Insert-time check: the closest candidate that clears its tier.

        `target` may be a proposed venue with no id yet. Returns None when
        nothing passes.
        """
        venue = await self._resolve_target(conn, target)
        radius = radius_meters if radius_meters is not None else self.insert_radius_meters

        passing = await self._scored_candidates(
            conn,
            venue,
            name=venue.name,
            radius_meters=radius,
            fetch_limit=self.insert_limit * self.pool_factor,
            mode=SearchMode.INSERT_CHECK,
        )
        if not passing:
            return None

        best = min(
            passing,
            key=lambda c: (_distance_key(c.distance_meters), -c.similarity_score, c.venue.id),
        )
        await self._attach_dependent_counts(conn, [best])
        best.confidence = pair_confidence(best.similarity_score, best.distance_meters)
        return best

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _resolve_target(self, conn: Any, target: Union[VenueRecord, int]) -> VenueRecord:
        if isinstance(target, VenueRecord):
            return target
        venue = await fetch_venue(conn, target)
        if venue is None:
            raise VenueNotFoundError(target)
        return venue

    async def _scored_candidates(
        self,
        conn: Any,
        venue: VenueRecord,
        name: str,
        radius_meters: float,
        fetch_limit: Optional[int],
        mode: SearchMode,
    ) -> list[Candidate]:
        raw = await self.finder.find(conn, venue, radius_meters, fetch_limit, mode)

        excluded: set[int] = set()
        if venue.id is not None and raw:
            excluded = await self.exclusions.excluded_companions(conn, venue.id)

        passing = []
        for candidate in raw:
            if candidate.venue.id in excluded:
                continue
            score = self.scorer.score(name, candidate.venue.name)
            if not self.policy.passes(score, candidate.distance_meters):
                continue
            candidate.similarity_score = score
            candidate.tier = self.policy.tier(candidate.distance_meters)
            passing.append(candidate)
        return passing

    async def _attach_dependent_counts(self, conn: Any, candidates: list[Candidate]) -> None:
        if not candidates:
            return
        counts = await count_dependents(conn, [c.venue.id for c in candidates], self.dependents)
        for candidate in candidates:
            candidate.dependent_count = counts.get(candidate.venue.id, 0)
