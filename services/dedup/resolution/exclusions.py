"""
Registry of venue pairs a reviewer has declared "not duplicates".

Pairs are unordered, so every entry point canonicalizes to
(smaller id, larger id) before touching the table. The unique index on
(venue_id_1, venue_id_2) only deduplicates pairs stored in that order.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional

from services.dedup.resolution.errors import InvalidPairError
from services.dedup.resolution.venues import parse_command_tag_count

logger = logging.getLogger(__name__)


_EXCLUSION_COLUMNS = "id, venue_id_1, venue_id_2, excluded_by, reason, inserted_at, updated_at"

_INSERT_EXCLUSION_SQL = f"""
INSERT INTO venue_duplicate_exclusions
    (venue_id_1, venue_id_2, excluded_by, reason, inserted_at, updated_at)
VALUES ($1, $2, $3, $4, NOW(), NOW())
ON CONFLICT (venue_id_1, venue_id_2) DO NOTHING
RETURNING {_EXCLUSION_COLUMNS}
"""

_SELECT_EXCLUSION_SQL = f"""
SELECT {_EXCLUSION_COLUMNS}
FROM venue_duplicate_exclusions
WHERE venue_id_1 = $1 AND venue_id_2 = $2
"""

_EXCLUSION_EXISTS_SQL = """
SELECT EXISTS (
    SELECT 1 FROM venue_duplicate_exclusions
    WHERE venue_id_1 = $1 AND venue_id_2 = $2
)
"""

_COMPANIONS_SQL = """
SELECT CASE WHEN venue_id_1 = $1 THEN venue_id_2 ELSE venue_id_1 END AS companion_id
FROM venue_duplicate_exclusions
WHERE venue_id_1 = $1 OR venue_id_2 = $1
"""

_DELETE_EXCLUSION_SQL = """
DELETE FROM venue_duplicate_exclusions
WHERE venue_id_1 = $1 AND venue_id_2 = $2
"""


def canonical_pair(venue_id_a: int, venue_id_b: int, operation: str = "exclude") -> tuple[int, int]:
    """Order a pair smaller-first. Raises InvalidPairError for a venue paired with itself."""
    if venue_id_a == venue_id_b:
        raise InvalidPairError(venue_id_a, operation)
    return (venue_id_a, venue_id_b) if venue_id_a < venue_id_b else (venue_id_b, venue_id_a)


@dataclass
class ExclusionPair:
    venue_id_1: int
    venue_id_2: int
    excluded_by: Optional[str] = None
    reason: Optional[str] = None
    id: Optional[int] = None
    inserted_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    # False when exclude() found the pair already recorded
    created: bool = True

    @classmethod
    def from_row(cls, row: Any, created: bool = True) -> "ExclusionPair":
        return cls(
            id=row["id"],
            venue_id_1=row["venue_id_1"],
            venue_id_2=row["venue_id_2"],
            excluded_by=row["excluded_by"],
            reason=row["reason"],
            inserted_at=row["inserted_at"],
            updated_at=row["updated_at"],
            created=created,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "venue_id_1": self.venue_id_1,
            "venue_id_2": self.venue_id_2,
            "excluded_by": self.excluded_by,
            "reason": self.reason,
            "inserted_at": self.inserted_at.isoformat() if self.inserted_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
            "created": self.created,
        }


class ExclusionRegistry:
    """Stateless access to venue_duplicate_exclusions; every call takes a connection."""

    async def exclude(
        self,
        conn: Any,
        venue_id_a: int,
        venue_id_b: int,
        reviewer: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> ExclusionPair:
        """
        Record that two venues are not duplicates.

        Idempotent: excluding an already-excluded pair (in either order)
        returns the stored row untouched, with created=False.
        """
        first, second = canonical_pair(venue_id_a, venue_id_b)

        row = await conn.fetchrow(_INSERT_EXCLUSION_SQL, first, second, reviewer, reason)
        if row is not None:
            logger.info(
                "Excluded venue pair (%d, %d) by=%s reason=%r",
                first, second, reviewer, reason,
            )
            return ExclusionPair.from_row(row, created=True)

        existing = await conn.fetchrow(_SELECT_EXCLUSION_SQL, first, second)
        if existing is None:
            # Lost a race with a concurrent remove(); nothing to return but the request
            return ExclusionPair(first, second, excluded_by=reviewer, reason=reason, created=False)
        return ExclusionPair.from_row(existing, created=False)

    async def is_excluded(self, conn: Any, venue_id_a: int, venue_id_b: int) -> bool:
        if venue_id_a == venue_id_b:
            return False
        first, second = canonical_pair(venue_id_a, venue_id_b)
        return bool(await conn.fetchval(_EXCLUSION_EXISTS_SQL, first, second))

    async def excluded_companions(self, conn: Any, venue_id: int) -> set[int]:
        """Every venue ever excluded against venue_id, from either column."""
        rows = await conn.fetch(_COMPANIONS_SQL, venue_id)
        return {row["companion_id"] for row in rows}

    async def remove(self, conn: Any, venue_id_a: int, venue_id_b: int) -> bool:
        """Forget an exclusion. Returns False when no such pair was stored."""
        first, second = canonical_pair(venue_id_a, venue_id_b, operation="un-exclude")
        status = await conn.execute(_DELETE_EXCLUSION_SQL, first, second)
        removed = parse_command_tag_count(status) > 0
        if removed:
            logger.info("Removed exclusion for venue pair (%d, %d)", first, second)
        return removed
