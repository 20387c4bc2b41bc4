"""
Venue records and the store access shared by every engine component.

The venues table belongs to the host application; the engine only reads
venues, re-points rows that reference them, renames them, and deletes the
losing side of a merge.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

logger = logging.getLogger(__name__)


VENUE_COLUMNS = """
    v.id, v.name, v.normalized_name, v.slug, v.address,
    v.latitude, v.longitude, v.city_id, v.metadata, v.provider_ids,
    v.inserted_at, v.updated_at
"""

_SELECT_VENUE_SQL = f"""
SELECT {VENUE_COLUMNS}
FROM venues v
WHERE v.id = $1
"""

_LOCK_VENUES_SQL = f"""
SELECT {VENUE_COLUMNS}
FROM venues v
WHERE v.id = ANY($1::bigint[])
ORDER BY v.id
FOR UPDATE
"""

_SCOPE_VENUE_IDS_SQL = """
SELECT v.id
FROM venues v
WHERE v.city_id = $1
ORDER BY v.id
"""


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------

def _json_field(value: Any) -> dict:
    """asyncpg hands jsonb back as text unless a codec is registered."""
    if value is None:
        return {}
    if isinstance(value, (bytes, str)):
        try:
            decoded = json.loads(value)
        except ValueError:
            logger.warning("Discarding undecodable jsonb value: %.80r", value)
            return {}
        return decoded if isinstance(decoded, dict) else {}
    if isinstance(value, dict):
        return dict(value)
    return {}


@dataclass
class VenueRecord:
    """One row of the venues table as the engine sees it."""

    id: Optional[int]
    name: str
    city_id: Optional[int] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    normalized_name: Optional[str] = None
    slug: Optional[str] = None
    address: Optional[str] = None
    metadata: dict = field(default_factory=dict)
    provider_ids: dict = field(default_factory=dict)
    inserted_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def has_coordinates(self) -> bool:
        return self.latitude is not None and self.longitude is not None

    @classmethod
    def from_row(cls, row: Any) -> "VenueRecord":
        return cls(
            id=row["id"],
            name=row["name"] or "",
            normalized_name=row["normalized_name"],
            slug=row["slug"],
            address=row["address"],
            latitude=float(row["latitude"]) if row["latitude"] is not None else None,
            longitude=float(row["longitude"]) if row["longitude"] is not None else None,
            city_id=row["city_id"],
            metadata=_json_field(row["metadata"]),
            provider_ids=_json_field(row["provider_ids"]),
            inserted_at=row["inserted_at"],
            updated_at=row["updated_at"],
        )

    def snapshot(self) -> dict[str, Any]:
        """JSON-safe copy of every field, taken just before a merge deletes the row."""
        return {
            "id": self.id,
            "name": self.name,
            "normalized_name": self.normalized_name,
            "slug": self.slug,
            "address": self.address,
            "latitude": self.latitude,
            "longitude": self.longitude,
            "city_id": self.city_id,
            "metadata": json.loads(json.dumps(self.metadata, default=str)),
            "provider_ids": json.loads(json.dumps(self.provider_ids, default=str)),
            "inserted_at": self.inserted_at.isoformat() if self.inserted_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


# ---------------------------------------------------------------------------
# Dependent record types
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class DependentType:
    """A table whose rows point at a venue and follow it through a merge."""

    name: str
    table: str
    column: str
    # Extra predicate for polymorphic tables (e.g. cached images of many entity kinds)
    condition: Optional[str] = None
    # Whether the rows count towards a candidate's dependent_count
    counted: bool = False

    @property
    def reassign_sql(self) -> str:
        extra = f" AND {self.condition}" if self.condition else ""
        return f"UPDATE {self.table} SET {self.column} = $1 WHERE {self.column} = $2{extra}"

    @property
    def count_sql(self) -> str:
        extra = f" AND {self.condition}" if self.condition else ""
        return (
            f"SELECT {self.column} AS venue_id, COUNT(*) AS n FROM {self.table} "
            f"WHERE {self.column} = ANY($1::bigint[]){extra} GROUP BY {self.column}"
        )


DEFAULT_DEPENDENTS: tuple[DependentType, ...] = (
    DependentType("events", "events", "venue_id", counted=True),
    DependentType("public_events", "public_events", "venue_id", counted=True),
    DependentType("groups", "groups", "venue_id"),
    DependentType("cached_images", "cached_images", "entity_id", condition="entity_type = 'venue'"),
)


# ---------------------------------------------------------------------------
# Store access
# ---------------------------------------------------------------------------

async def fetch_venue(conn: Any, venue_id: int) -> Optional[VenueRecord]:
    row = await conn.fetchrow(_SELECT_VENUE_SQL, venue_id)
    return VenueRecord.from_row(row) if row else None


async def lock_venues(conn: Any, venue_ids: list[int]) -> dict[int, VenueRecord]:
    """
    SELECT ... FOR UPDATE on the given venues, in id order.

    Locking in a fixed order keeps two merges over the same pair from
    deadlocking each other. Must run inside a transaction.
    """
    rows = await conn.fetch(_LOCK_VENUES_SQL, sorted(set(venue_ids)))
    return {row["id"]: VenueRecord.from_row(row) for row in rows}


async def scope_venue_ids(conn: Any, scope_id: int) -> list[int]:
    rows = await conn.fetch(_SCOPE_VENUE_IDS_SQL, scope_id)
    return [row["id"] for row in rows]


async def count_dependents(
    conn: Any,
    venue_ids: list[int],
    dependents: tuple[DependentType, ...] = DEFAULT_DEPENDENTS,
) -> dict[int, int]:
    """Batch count of counted dependents per venue, one query per dependent type."""
    totals = {venue_id: 0 for venue_id in venue_ids}
    if not venue_ids:
        return totals
    for dep in dependents:
        if not dep.counted:
            continue
        rows = await conn.fetch(dep.count_sql, list(venue_ids))
        for row in rows:
            totals[row["venue_id"]] = totals.get(row["venue_id"], 0) + int(row["n"])
    return totals


def parse_command_tag_count(command_tag: Optional[str]) -> int:
    """Extract row count from asyncpg command tag like 'UPDATE 5'."""
    try:
        return int(command_tag.split()[-1])
    except (ValueError, IndexError, AttributeError):
        return 0
