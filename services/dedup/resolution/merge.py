"""
Transactional venue merge.

Merging source into target, in ONE transaction:
  1. Lock both rows (id order, FOR UPDATE)
  2. Re-point every dependent row from source to target, counting per type
  3. Fill gaps in target.provider_ids from source (target keys win)
  4. Snapshot every source field
  5. Insert one venue_merge_audits row (snapshot + counts + score/distance)
  6. Delete source

Any failure rolls back everything: source, target and dependents stay as they
were and no audit row exists. There is no automatic un-merge; the audit row
carries what an operator needs to rebuild the source by hand.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

import asyncpg

from services.dedup.resolution.errors import (
    InvalidPairError,
    MergeConflictError,
    SourceNotFoundError,
    VenueNotFoundError,
)
from services.dedup.resolution.venues import (
    DEFAULT_DEPENDENTS,
    VENUE_COLUMNS,
    DependentType,
    VenueRecord,
    lock_venues,
    parse_command_tag_count,
)

logger = logging.getLogger(__name__)


_AUDIT_COLUMNS = """
    id, source_venue_id, target_venue_id, merged_by, merge_reason,
    similarity_score, distance_meters, reassignment_counts, source_snapshot,
    inserted_at
"""

_PRIOR_MERGE_SQL = """
SELECT target_venue_id
FROM venue_merge_audits
WHERE source_venue_id = $1
ORDER BY inserted_at DESC, id DESC
LIMIT 1
"""

_UPDATE_PROVIDER_IDS_SQL = f"""
UPDATE venues AS v
SET provider_ids = $2::jsonb, updated_at = NOW()
WHERE v.id = $1
RETURNING {VENUE_COLUMNS}
"""

_INSERT_AUDIT_SQL = f"""
INSERT INTO venue_merge_audits
    (source_venue_id, target_venue_id, merged_by, merge_reason,
     similarity_score, distance_meters, reassignment_counts, source_snapshot,
     inserted_at)
VALUES ($1, $2, $3, $4, $5, $6, $7::jsonb, $8::jsonb, NOW())
RETURNING {_AUDIT_COLUMNS}
"""

_DELETE_VENUE_SQL = """
DELETE FROM venues WHERE id = $1
"""

DEFAULT_MERGE_REASON = "manual"


def _json_value(value: Any) -> Any:
    if isinstance(value, (bytes, str)):
        return json.loads(value)
    return value


@dataclass
class MergeAudit:
    source_venue_id: int
    target_venue_id: Optional[int]
    merged_by: Optional[str] = None
    merge_reason: str = DEFAULT_MERGE_REASON
    similarity_score: Optional[float] = None
    distance_meters: Optional[float] = None
    reassignment_counts: dict[str, int] = field(default_factory=dict)
    source_snapshot: dict[str, Any] = field(default_factory=dict)
    id: Optional[int] = None
    inserted_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Any) -> "MergeAudit":
        return cls(
            id=row["id"],
            source_venue_id=row["source_venue_id"],
            target_venue_id=row["target_venue_id"],
            merged_by=row["merged_by"],
            merge_reason=row["merge_reason"],
            similarity_score=row["similarity_score"],
            distance_meters=row["distance_meters"],
            reassignment_counts=_json_value(row["reassignment_counts"]) or {},
            source_snapshot=_json_value(row["source_snapshot"]) or {},
            inserted_at=row["inserted_at"],
        )

    @property
    def total_reassigned(self) -> int:
        return sum(self.reassignment_counts.values())

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "source_venue_id": self.source_venue_id,
            "target_venue_id": self.target_venue_id,
            "merged_by": self.merged_by,
            "merge_reason": self.merge_reason,
            "similarity_score": self.similarity_score,
            "distance_meters": self.distance_meters,
            "reassignment_counts": self.reassignment_counts,
            "source_snapshot": self.source_snapshot,
            "inserted_at": self.inserted_at.isoformat() if self.inserted_at else None,
        }


@dataclass
class MergeResult:
    target: VenueRecord
    audit: MergeAudit


def merge_provider_ids(source_ids: dict, target_ids: dict) -> dict:
    """Source fills keys the target lacks; existing target values are never overwritten."""
    merged = dict(source_ids or {})
    merged.update(target_ids or {})
    return merged


class MergeOrchestrator:
    """Merges one venue into another; owns its connection and transaction."""

    def __init__(
        self,
        pool: asyncpg.Pool,
        dependents: tuple[DependentType, ...] = DEFAULT_DEPENDENTS,
    ):
        self.pool = pool
        self.dependents = dependents

    async def merge(
        self,
        source_id: int,
        target_id: int,
        *,
        reviewer: Optional[str] = None,
        reason: Optional[str] = None,
        similarity_score: Optional[float] = None,
        distance_meters: Optional[float] = None,
    ) -> MergeResult:
        """
        Merge source_id into target_id. The target survives, the source is deleted.

        Raises:
            InvalidPairError: source_id == target_id
            VenueNotFoundError: the target does not exist
            MergeConflictError: the source was already consumed by an earlier merge
            SourceNotFoundError: the source never existed
        """
        if source_id == target_id:
            raise InvalidPairError(source_id, "merge")

        async with self.pool.acquire() as conn:
            async with conn.transaction():
                locked = await lock_venues(conn, [source_id, target_id])

                target = locked.get(target_id)
                if target is None:
                    raise VenueNotFoundError(target_id, role="target")

                source = locked.get(source_id)
                if source is None:
                    prior = await conn.fetchrow(_PRIOR_MERGE_SQL, source_id)
                    if prior is not None:
                        raise MergeConflictError(source_id, merged_into=prior["target_venue_id"])
                    raise SourceNotFoundError(source_id)

                counts = await self._reassign_dependents(conn, source_id, target_id)

                provider_ids = merge_provider_ids(source.provider_ids, target.provider_ids)
                updated = await conn.fetchrow(
                    _UPDATE_PROVIDER_IDS_SQL, target_id, json.dumps(provider_ids)
                )
                target = VenueRecord.from_row(updated)

                snapshot = source.snapshot()
                audit_row = await conn.fetchrow(
                    _INSERT_AUDIT_SQL,
                    source_id,
                    target_id,
                    reviewer,
                    reason or DEFAULT_MERGE_REASON,
                    similarity_score,
                    distance_meters,
                    json.dumps(counts),
                    json.dumps(snapshot),
                )
                audit = MergeAudit.from_row(audit_row)

                deleted = parse_command_tag_count(await conn.execute(_DELETE_VENUE_SQL, source_id))
                if deleted != 1:
                    # Row vanished under our lock; abort so the audit row rolls back too
                    raise MergeConflictError(source_id)

        logger.info(
            "Merged venue %d → %d | by=%s reason=%s reassigned=%s",
            source_id,
            target_id,
            reviewer,
            audit.merge_reason,
            counts,
        )
        return MergeResult(target=target, audit=audit)

    async def _reassign_dependents(
        self, conn: asyncpg.Connection, source_id: int, target_id: int
    ) -> dict[str, int]:
        counts: dict[str, int] = {}
        for dep in self.dependents:
            status = await conn.execute(dep.reassign_sql, target_id, source_id)
            counts[dep.name] = parse_command_tag_count(status)
        return counts
