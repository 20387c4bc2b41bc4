"""
Batch venue name fix for one city.

Walks every venue of the city in id order and hands each one to
NameQualityAssessor.apply_fix:
- Chunks of `chunk_size` venues, one transaction per chunk. A committed
  chunk stays committed whatever happens to later chunks.
- One savepoint per venue, so a failing venue rolls back alone and is
  counted as failed while the rest of its chunk goes through.
- If a chunk's commit itself fails, every venue in it is reported failed.
- dry_run runs the same assessment and collision checks without renaming.

Entry point:
    async def run_name_fix(pool, scope_id, severity_filter, dry_run)

The job never retries; re-running it is safe because already-fixed venues
assess as acceptable and are skipped.
"""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

from services.dedup.config import settings
from services.dedup.resolution.errors import VenueNotFoundError
from services.dedup.resolution.name_quality import (
    FixOutcome,
    FixStatus,
    NameQualityAssessor,
    SeverityFilter,
)
from services.dedup.resolution.venues import fetch_venue, scope_venue_ids

logger = logging.getLogger(__name__)


@dataclass
class ChunkSummary:
    index: int
    venue_ids: list[int]
    fixed: int = 0
    skipped: int = 0
    failed: int = 0
    duplicates: int = 0
    error: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "index": self.index,
            "first_venue_id": self.venue_ids[0] if self.venue_ids else None,
            "last_venue_id": self.venue_ids[-1] if self.venue_ids else None,
            "size": len(self.venue_ids),
            "fixed": self.fixed,
            "skipped": self.skipped,
            "failed": self.failed,
            "duplicates": self.duplicates,
            "error": self.error,
        }


@dataclass
class NameFixSummary:
    scope_id: int
    severity_filter: SeverityFilter
    dry_run: bool
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    finished_at: Optional[datetime] = None
    examined: int = 0
    fixed: int = 0
    skipped: int = 0
    failed: int = 0
    duplicates: int = 0
    skip_reasons: Counter = field(default_factory=Counter)
    errors: list[dict[str, Any]] = field(default_factory=list)
    duplicate_details: list[dict[str, Any]] = field(default_factory=list)
    renamed: list[dict[str, Any]] = field(default_factory=list)
    chunks: list[ChunkSummary] = field(default_factory=list)

    def record(self, outcome: FixOutcome, chunk: ChunkSummary) -> None:
        self.examined += 1
        if outcome.status is FixStatus.RENAMED:
            self.fixed += 1
            chunk.fixed += 1
            self.renamed.append(
                {"venue_id": outcome.venue_id, "old_name": outcome.old_name, "new_name": outcome.new_name}
            )
        elif outcome.status is FixStatus.SKIPPED:
            self.skipped += 1
            chunk.skipped += 1
            self.skip_reasons[outcome.skip_reason.value] += 1
        elif outcome.status is FixStatus.DUPLICATE_DETECTED:
            self.duplicates += 1
            chunk.duplicates += 1
            conflict = outcome.conflict
            self.duplicate_details.append({
                "venue_id": outcome.venue_id,
                "proposed_name": outcome.new_name,
                "conflicting_venue_id": conflict.venue.id,
                "similarity": conflict.similarity_score,
                "distance_meters": conflict.distance_meters,
                "dependent_count": conflict.dependent_count,
            })
        else:
            self.failed += 1
            chunk.failed += 1
            self.errors.append({"venue_id": outcome.venue_id, "error": outcome.error})

    def to_dict(self) -> dict[str, Any]:
        return {
            "scope_id": self.scope_id,
            "severity_filter": self.severity_filter.value,
            "dry_run": self.dry_run,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "examined": self.examined,
            "fixed": self.fixed,
            "skipped": self.skipped,
            "skip_reasons": dict(self.skip_reasons),
            "failed": self.failed,
            "errors": self.errors,
            "duplicates": self.duplicates,
            "duplicate_details": self.duplicate_details,
            "renamed": self.renamed,
            "chunks": [chunk.to_dict() for chunk in self.chunks],
        }


# ---------------------------------------------------------------------------
# Public entry point
# ---------------------------------------------------------------------------

async def run_name_fix(
    pool: Any,
    scope_id: int,
    severity_filter: SeverityFilter = SeverityFilter.SEVERE,
    dry_run: bool = False,
    *,
    assessor: Optional[NameQualityAssessor] = None,
    chunk_size: int = settings.name_fix_chunk_size,
) -> NameFixSummary:
    """
    Fix drifted venue names across one city.

    Args:
        pool:            asyncpg connection pool.
        scope_id:        city whose venues are examined.
        severity_filter: which severities may be renamed.
        dry_run:         report what would change without writing.

    Returns:
        NameFixSummary; call to_dict() for a JSON-ready report.
    """
    if chunk_size < 1:
        raise ValueError(f"chunk_size must be positive, got {chunk_size}")

    severity_filter = SeverityFilter(severity_filter)
    assessor = assessor or NameQualityAssessor()
    summary = NameFixSummary(scope_id=scope_id, severity_filter=severity_filter, dry_run=dry_run)

    async with pool.acquire() as conn:
        venue_ids = await scope_venue_ids(conn, scope_id)

    logger.info(
        "name_fix: starting scope=%s venues=%d filter=%s dry_run=%s chunk_size=%d",
        scope_id,
        len(venue_ids),
        severity_filter.value,
        dry_run,
        chunk_size,
    )

    for index, start in enumerate(range(0, len(venue_ids), chunk_size)):
        chunk = ChunkSummary(index=index, venue_ids=venue_ids[start:start + chunk_size])
        summary.chunks.append(chunk)
        await _run_chunk(pool, assessor, chunk, summary, severity_filter, dry_run)

    summary.finished_at = datetime.now(timezone.utc)
    logger.info(
        "name_fix: complete scope=%s examined=%d fixed=%d skipped=%d duplicates=%d failed=%d",
        scope_id,
        summary.examined,
        summary.fixed,
        summary.skipped,
        summary.duplicates,
        summary.failed,
    )
    return summary


async def _run_chunk(
    pool: Any,
    assessor: NameQualityAssessor,
    chunk: ChunkSummary,
    summary: NameFixSummary,
    severity_filter: SeverityFilter,
    dry_run: bool,
) -> None:
    outcomes: list[FixOutcome] = []
    try:
        async with pool.acquire() as conn:
            async with conn.transaction():
                for venue_id in chunk.venue_ids:
                    outcomes.append(
                        await _fix_venue(conn, assessor, venue_id, severity_filter, dry_run)
                    )
    except Exception as exc:
        chunk.error = str(exc)
        logger.exception(
            "name_fix: chunk %d (%d venues) rolled back", chunk.index, len(chunk.venue_ids)
        )
        outcomes = [
            FixOutcome(
                venue_id=venue_id,
                status=FixStatus.FAILED,
                old_name="",
                error=f"chunk rolled back: {exc}",
                dry_run=dry_run,
            )
            for venue_id in chunk.venue_ids
        ]

    # Counted only after the chunk's fate is known
    for outcome in outcomes:
        summary.record(outcome, chunk)

    logger.info(
        "name_fix: chunk %d done fixed=%d skipped=%d duplicates=%d failed=%d",
        chunk.index,
        chunk.fixed,
        chunk.skipped,
        chunk.duplicates,
        chunk.failed,
    )


async def _fix_venue(
    conn: Any,
    assessor: NameQualityAssessor,
    venue_id: int,
    severity_filter: SeverityFilter,
    dry_run: bool,
) -> FixOutcome:
    old_name = ""
    try:
        async with conn.transaction():
            venue = await fetch_venue(conn, venue_id)
            if venue is None:
                raise VenueNotFoundError(venue_id)
            old_name = venue.name
            assessment = assessor.assess(venue)
            return await assessor.apply_fix(conn, assessment, severity_filter, dry_run)
    except Exception as exc:
        logger.exception("name_fix: venue %d failed", venue_id)
        return FixOutcome(
            venue_id=venue_id,
            status=FixStatus.FAILED,
            old_name=old_name,
            error=str(exc),
            dry_run=dry_run,
        )
