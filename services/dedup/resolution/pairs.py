"""
City-wide duplicate review: every venue pair of one city that clears its tier.

Pairs come from a PostGIS self-join (a.id < b.id, same city, within the
radius). Pairs a reviewer excluded are dropped in SQL; every remaining pair
is scored with the engine's single scorer and judged by the same
ThresholdPolicy as the per-venue search.

Venues sharing identical coordinates (geocoding centroid fallbacks) are not
paired.

find_duplicate_pairs      ranked pairs (confidence, then similarity, then distance)
find_duplicate_clusters   pairs grouped into connected components
summarize_pairs           counts and a severity for a city health view
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Optional

from services.dedup.config import settings
from services.dedup.resolution.similarity import DEFAULT_SCORER, SimilarityScorer
from services.dedup.resolution.thresholds import ProximityTier, ThresholdPolicy, pair_confidence
from services.dedup.resolution.venues import (
    DEFAULT_DEPENDENTS,
    DependentType,
    VenueRecord,
    count_dependents,
)

logger = logging.getLogger(__name__)


def _geography(alias: str) -> str:
    return f"ST_SetSRID(ST_MakePoint({alias}.longitude, {alias}.latitude), 4326)::geography"


def _pair_columns(alias: str) -> str:
    return ", ".join(
        f"{alias}.{column} AS {alias}_{column}"
        for column in ("id", "name", "slug", "address", "latitude", "longitude", "city_id")
    )


_SCOPE_PAIRS_SQL = f"""
SELECT {_pair_columns("a")},
       {_pair_columns("b")},
       ST_Distance({_geography("a")}, {_geography("b")}) AS distance_meters
FROM venues a
JOIN venues b ON a.id < b.id AND b.city_id = a.city_id
WHERE a.city_id = $1
  AND a.latitude IS NOT NULL
  AND a.longitude IS NOT NULL
  AND b.latitude IS NOT NULL
  AND b.longitude IS NOT NULL
  AND NOT (a.latitude = b.latitude AND a.longitude = b.longitude)
  AND ST_DWithin({_geography("a")}, {_geography("b")}, $2)
  AND NOT EXISTS (
      SELECT 1 FROM venue_duplicate_exclusions e
      WHERE e.venue_id_1 = a.id AND e.venue_id_2 = b.id
  )
ORDER BY distance_meters ASC, a.id ASC, b.id ASC
"""

HIGH_CONFIDENCE = 0.8
MEDIUM_CONFIDENCE = 0.5


@dataclass
class DuplicatePair:
    venue_a: VenueRecord
    venue_b: VenueRecord
    similarity_score: float
    distance_meters: float
    confidence: float
    tier: Optional[ProximityTier] = None
    dependent_count_a: int = 0
    dependent_count_b: int = 0

    @property
    def venue_ids(self) -> tuple[int, int]:
        return self.venue_a.id, self.venue_b.id

    def to_dict(self) -> dict[str, Any]:
        return {
            "venue_a": _venue_summary(self.venue_a, self.dependent_count_a),
            "venue_b": _venue_summary(self.venue_b, self.dependent_count_b),
            "similarity_score": self.similarity_score,
            "distance_meters": self.distance_meters,
            "confidence": self.confidence,
            "tier": self.tier.value if self.tier is not None else None,
        }


@dataclass
class DuplicateCluster:
    """Venues connected through at least one passing pair."""

    venue_ids: list[int]
    pairs: list[DuplicatePair] = field(default_factory=list)

    @property
    def confidence(self) -> float:
        return sum(p.confidence for p in self.pairs) / len(self.pairs) if self.pairs else 0.0

    @property
    def total_dependents(self) -> int:
        counts: dict[int, int] = {}
        for pair in self.pairs:
            counts[pair.venue_a.id] = pair.dependent_count_a
            counts[pair.venue_b.id] = pair.dependent_count_b
        return sum(counts.values())

    def to_dict(self) -> dict[str, Any]:
        distances = [p.distance_meters for p in self.pairs]
        return {
            "venue_ids": self.venue_ids,
            "confidence": self.confidence,
            "total_dependents": self.total_dependents,
            "avg_distance_meters": sum(distances) / len(distances) if distances else None,
            "pairs": [p.to_dict() for p in self.pairs],
        }


@dataclass
class PairSummary:
    pair_count: int = 0
    unique_venue_count: int = 0
    affected_dependents: int = 0
    high_confidence_count: int = 0
    medium_confidence_count: int = 0
    low_confidence_count: int = 0
    severity: str = "healthy"

    def to_dict(self) -> dict[str, Any]:
        return {
            "pair_count": self.pair_count,
            "unique_venue_count": self.unique_venue_count,
            "affected_dependents": self.affected_dependents,
            "high_confidence_count": self.high_confidence_count,
            "medium_confidence_count": self.medium_confidence_count,
            "low_confidence_count": self.low_confidence_count,
            "severity": self.severity,
        }


def _venue_summary(venue: VenueRecord, dependent_count: int) -> dict[str, Any]:
    return {
        "id": venue.id,
        "name": venue.name,
        "slug": venue.slug,
        "address": venue.address,
        "latitude": venue.latitude,
        "longitude": venue.longitude,
        "city_id": venue.city_id,
        "dependent_count": dependent_count,
    }


def _side(row: Any, alias: str) -> VenueRecord:
    def col(name: str) -> Any:
        return row[f"{alias}_{name}"]

    return VenueRecord(
        id=col("id"),
        name=col("name") or "",
        slug=col("slug"),
        address=col("address"),
        latitude=float(col("latitude")),
        longitude=float(col("longitude")),
        city_id=col("city_id"),
    )


def _pair_rank(pair: DuplicatePair) -> tuple:
    return (-pair.confidence, -pair.similarity_score, pair.distance_meters, pair.venue_ids)


def group_into_clusters(pairs: list[DuplicatePair]) -> list[DuplicateCluster]:
    """Connected components over the pair graph (union-find)."""
    parent: dict[int, int] = {}

    def find(venue_id: int) -> int:
        parent.setdefault(venue_id, venue_id)
        while parent[venue_id] != venue_id:
            parent[venue_id] = parent[parent[venue_id]]
            venue_id = parent[venue_id]
        return venue_id

    for pair in pairs:
        root_a, root_b = find(pair.venue_a.id), find(pair.venue_b.id)
        if root_a != root_b:
            parent[max(root_a, root_b)] = min(root_a, root_b)

    clusters: dict[int, DuplicateCluster] = {}
    for pair in pairs:
        cluster = clusters.setdefault(find(pair.venue_a.id), DuplicateCluster(venue_ids=[]))
        cluster.pairs.append(pair)
    for root, cluster in clusters.items():
        cluster.venue_ids = sorted(v for v in parent if find(v) == root)
    return list(clusters.values())


def summarize_pairs(pairs: list[DuplicatePair]) -> PairSummary:
    if not pairs:
        return PairSummary()

    dependents: dict[int, int] = {}
    summary = PairSummary(pair_count=len(pairs))
    for pair in pairs:
        dependents[pair.venue_a.id] = pair.dependent_count_a
        dependents[pair.venue_b.id] = pair.dependent_count_b
        if pair.confidence >= HIGH_CONFIDENCE:
            summary.high_confidence_count += 1
        elif pair.confidence >= MEDIUM_CONFIDENCE:
            summary.medium_confidence_count += 1
        else:
            summary.low_confidence_count += 1

    summary.unique_venue_count = len(dependents)
    summary.affected_dependents = sum(dependents.values())
    if summary.high_confidence_count >= 5 or summary.affected_dependents >= 100:
        summary.severity = "critical"
    elif summary.high_confidence_count >= 2 or summary.unique_venue_count >= 10:
        summary.severity = "warning"
    return summary


class DuplicatePairFinder:
    def __init__(
        self,
        scorer: SimilarityScorer = DEFAULT_SCORER,
        policy: Optional[ThresholdPolicy] = None,
        dependents: tuple[DependentType, ...] = DEFAULT_DEPENDENTS,
        radius_meters: float = settings.pair_radius_m,
        limit: int = settings.pair_limit,
    ):
        self.scorer = scorer
        self.policy = policy or ThresholdPolicy.from_settings(settings)
        self.dependents = dependents
        self.radius_meters = radius_meters
        self.limit = limit

    async def find_duplicate_pairs(
        self,
        conn: Any,
        scope_id: int,
        radius_meters: Optional[float] = None,
        limit: Optional[int] = None,
    ) -> list[DuplicatePair]:
        """
        Ranked passing pairs of one city.

        Every pair within the radius is scored before the limit is applied.
        """
        limit = self.limit if limit is None else limit
        ranked = sorted(await self._passing_pairs(conn, scope_id, radius_meters), key=_pair_rank)[:limit]
        await self._attach_dependent_counts(conn, ranked)
        logger.debug("City %s: %d duplicate pairs", scope_id, len(ranked))
        return ranked

    async def find_duplicate_clusters(
        self,
        conn: Any,
        scope_id: int,
        radius_meters: Optional[float] = None,
        limit: Optional[int] = None,
    ) -> list[DuplicateCluster]:
        """Clusters of one city, highest average pair confidence first."""
        limit = self.limit if limit is None else limit
        pairs = sorted(await self._passing_pairs(conn, scope_id, radius_meters), key=_pair_rank)
        await self._attach_dependent_counts(conn, pairs)
        clusters = group_into_clusters(pairs)
        clusters.sort(key=lambda c: (-c.confidence, c.venue_ids[0]))
        return clusters[:limit]

    async def _passing_pairs(
        self, conn: Any, scope_id: int, radius_meters: Optional[float]
    ) -> list[DuplicatePair]:
        radius = radius_meters if radius_meters is not None else self.radius_meters
        rows = await conn.fetch(_SCOPE_PAIRS_SQL, scope_id, float(radius))

        passing = []
        for row in rows:
            venue_a, venue_b = _side(row, "a"), _side(row, "b")
            distance = float(row["distance_meters"])
            score = self.scorer.score(venue_a.name, venue_b.name)
            if not self.policy.passes(score, distance):
                continue
            passing.append(DuplicatePair(
                venue_a=venue_a,
                venue_b=venue_b,
                similarity_score=score,
                distance_meters=distance,
                confidence=pair_confidence(score, distance),
                tier=self.policy.tier(distance),
            ))
        return passing

    async def _attach_dependent_counts(self, conn: Any, pairs: list[DuplicatePair]) -> None:
        if not pairs:
            return
        venue_ids = sorted({venue_id for pair in pairs for venue_id in pair.venue_ids})
        counts = await count_dependents(conn, venue_ids, self.dependents)
        for pair in pairs:
            pair.dependent_count_a = counts.get(pair.venue_a.id, 0)
            pair.dependent_count_b = counts.get(pair.venue_b.id, 0)
