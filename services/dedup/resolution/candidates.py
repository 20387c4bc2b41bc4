"""
Raw candidate discovery: which other venues are near enough to compare.

Two calling conventions:
  - INSERT_CHECK: a new venue is about to be created. Venues sitting on the
    exact same coordinates are skipped; identical coordinates almost always
    mean both records fell back to the city centroid during geocoding.
  - CURATION: an operator investigates an existing venue. Identical
    coordinates are exactly what curation wants to see, so nothing is skipped.

Venues without coordinates fall back to a same-city query with unknown
distance. That query returns the whole city, so no namesake is dropped before
it is scored. A failing spatial query (PostGIS missing, bad geometry) degrades
to the same fallback instead of failing the search.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

import asyncpg

from services.dedup.resolution.thresholds import ProximityTier
from services.dedup.resolution.venues import VENUE_COLUMNS, VenueRecord

logger = logging.getLogger(__name__)


_VENUE_GEOGRAPHY = "ST_SetSRID(ST_MakePoint(v.longitude, v.latitude), 4326)::geography"
_TARGET_GEOGRAPHY = "ST_SetSRID(ST_MakePoint($3::float8, $4::float8), 4326)::geography"

_NEARBY_SQL = f"""
SELECT {VENUE_COLUMNS},
       ST_Distance({_VENUE_GEOGRAPHY}, {_TARGET_GEOGRAPHY}) AS distance_meters
FROM venues v
WHERE ($1::bigint IS NULL OR v.id != $1)
  AND v.city_id IS NOT DISTINCT FROM $2
  AND v.latitude IS NOT NULL
  AND v.longitude IS NOT NULL
  AND ST_DWithin({_VENUE_GEOGRAPHY}, {_TARGET_GEOGRAPHY}, $5)
  AND (NOT $6::boolean OR v.latitude::float8 != $4::float8 OR v.longitude::float8 != $3::float8)
ORDER BY distance_meters ASC, v.id ASC
LIMIT $7
"""

_SAME_SCOPE_SQL = f"""
SELECT {VENUE_COLUMNS},
       NULL::float8 AS distance_meters
FROM venues v
WHERE ($1::bigint IS NULL OR v.id != $1)
  AND v.city_id IS NOT DISTINCT FROM $2
ORDER BY v.id ASC
"""


class SearchMode(str, Enum):
    INSERT_CHECK = "insert_check"
    CURATION = "curation"


@dataclass
class Candidate:
    """Another venue considered as a possible duplicate of the target."""

    venue: VenueRecord
    distance_meters: Optional[float] = None
    similarity_score: Optional[float] = None
    dependent_count: int = 0
    confidence: Optional[float] = None
    tier: Optional[ProximityTier] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "venue": {
                "id": self.venue.id,
                "name": self.venue.name,
                "slug": self.venue.slug,
                "address": self.venue.address,
                "latitude": self.venue.latitude,
                "longitude": self.venue.longitude,
                "city_id": self.venue.city_id,
            },
            "similarity_score": self.similarity_score,
            "distance_meters": self.distance_meters,
            "dependent_count": self.dependent_count,
            "confidence": self.confidence,
            "tier": self.tier.value if self.tier is not None else None,
        }


class CandidateFinder:
    """Read-only spatial/scope query over the venues table."""

    async def find(
        self,
        conn: Any,
        target: VenueRecord,
        radius_meters: float,
        limit: Optional[int],
        mode: SearchMode = SearchMode.CURATION,
    ) -> list[Candidate]:
        """
        Other venues of the target's city, nearest first.

        The target itself is never returned. `limit` caps the spatial query
        only (None for no cap); the same-city fallback always returns every
        other venue of the city, with distance None.
        """
        if limit is not None and limit <= 0:
            return []

        if target.has_coordinates:
            try:
                # Savepoint, so a failed spatial query leaves an outer transaction usable
                async with conn.transaction():
                    rows = await conn.fetch(
                        _NEARBY_SQL,
                        target.id,
                        target.city_id,
                        target.longitude,
                        target.latitude,
                        float(radius_meters),
                        mode is SearchMode.INSERT_CHECK,
                        limit,
                    )
                return [self._to_candidate(row) for row in rows]
            except asyncpg.PostgresError:
                logger.exception(
                    "Spatial candidate query failed for venue %s, falling back to city-only search",
                    target.id,
                )

        rows = await conn.fetch(_SAME_SCOPE_SQL, target.id, target.city_id)
        return [self._to_candidate(row) for row in rows]

    @staticmethod
    def _to_candidate(row: Any) -> Candidate:
        distance = row["distance_meters"]
        return Candidate(
            venue=VenueRecord.from_row(row),
            distance_meters=float(distance) if distance is not None else None,
        )


# ---------------------------------------------------------------------------
# SQL setup helpers
# ---------------------------------------------------------------------------

REQUIRED_EXTENSIONS_SQL = """
CREATE EXTENSION IF NOT EXISTS postgis;
CREATE EXTENSION IF NOT EXISTS pg_trgm;
"""

RECOMMENDED_INDEXES_SQL = """
-- Spatial index for proximity candidate queries
CREATE INDEX IF NOT EXISTS idx_venues_geography
ON venues USING gist (
    (ST_SetSRID(ST_MakePoint(longitude, latitude), 4326)::geography)
);

-- Same-city filter and the coordinate-less fallback
CREATE INDEX IF NOT EXISTS idx_venues_city_id
ON venues (city_id);

-- Admin name lookup
CREATE INDEX IF NOT EXISTS idx_venues_name_trgm
ON venues USING gin (name gin_trgm_ops);
"""


async def ensure_extensions(pool: asyncpg.Pool) -> None:
    """Ensure required Postgres extensions are installed."""
    async with pool.acquire() as conn:
        await conn.execute(REQUIRED_EXTENSIONS_SQL)


async def create_indexes(pool: asyncpg.Pool) -> None:
    """Create recommended indexes for candidate search performance."""
    async with pool.acquire() as conn:
        await conn.execute(RECOMMENDED_INDEXES_SQL)
