"""
Venue name quality: compare a venue's display name with the authoritative
name recorded by geocoding, and fix drifted names without minting duplicates.

Severity (similarity of current vs authoritative name):
  < 0.3        severe
  [0.3, 0.7)   moderate
  >= 0.7       acceptable
  no reference no_reference (never fixed)

Before a rename is applied, a tight-radius curation search runs with the
proposed name. Any nearby venue that already scores >= 0.8 against it aborts
the rename with DUPLICATE_DETECTED; that pair needs a reviewer, not a rename.
"""

from __future__ import annotations

import logging
import re
import unicodedata
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

from services.dedup.config import settings
from services.dedup.resolution.candidates import Candidate
from services.dedup.resolution.errors import VenueNotFoundError
from services.dedup.resolution.search import DuplicateSearch, SearchOptions
from services.dedup.resolution.similarity import DEFAULT_SCORER, SimilarityScorer, normalize_name
from services.dedup.resolution.venues import VENUE_COLUMNS, VenueRecord

logger = logging.getLogger(__name__)


_RENAME_SQL = f"""
UPDATE venues AS v
SET name = $2, normalized_name = $3, slug = $4, updated_at = NOW()
WHERE v.id = $1
RETURNING {VENUE_COLUMNS}
"""

# Ranked results kept by the rename collision search; every venue in range is scored
_COLLISION_SEARCH_LIMIT = 10


class Severity(str, Enum):
    SEVERE = "severe"
    MODERATE = "moderate"
    ACCEPTABLE = "acceptable"
    NO_REFERENCE = "no_reference"


class SeverityFilter(str, Enum):
    SEVERE = "severe"        # severe only
    MODERATE = "moderate"    # moderate and severe
    ALL = "all"

    def admits(self, severity: Severity) -> bool:
        if self is SeverityFilter.SEVERE:
            return severity is Severity.SEVERE
        if self is SeverityFilter.MODERATE:
            return severity in (Severity.SEVERE, Severity.MODERATE)
        return True


class FixStatus(str, Enum):
    RENAMED = "renamed"
    SKIPPED = "skipped"
    DUPLICATE_DETECTED = "duplicate_detected"
    FAILED = "failed"


class SkipReason(str, Enum):
    NOT_FLAGGED = "not_flagged"
    FILTERED_OUT = "filtered_out"
    NO_REFERENCE_NAME = "no_reference_name"
    IDENTICAL_NAME = "identical_name"


def extract_authoritative_name(metadata: Any) -> Optional[str]:
    """
    Geocoder's name for the place, or None.

    Looks at metadata["geocoding_metadata"]["raw_response"]["title"], then
    ["name"] of the same response. Blank values count as missing.
    """
    if not isinstance(metadata, dict):
        return None
    geocoding = metadata.get("geocoding_metadata")
    if not isinstance(geocoding, dict):
        return None
    raw = geocoding.get("raw_response")
    if not isinstance(raw, dict):
        return None

    for key in ("title", "name"):
        value = raw.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def slugify(name: str) -> str:
    """'Café Nero' -> 'cafe-nero'"""
    normalised = unicodedata.normalize("NFKD", name)
    ascii_str = normalised.encode("ascii", "ignore").decode("ascii")
    slug = re.sub(r"[^a-z0-9]+", "-", ascii_str.lower()).strip("-")
    return slug or "venue"


def venue_slug(name: str, venue_id: int) -> str:
    """Slug with the venue id appended, unique as long as ids are."""
    return f"{slugify(name)}-{venue_id}"


@dataclass
class NameQualityAssessment:
    venue: VenueRecord
    current_name: str
    authoritative_name: Optional[str]
    similarity: Optional[float]
    severity: Severity
    should_fix: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "venue_id": self.venue.id,
            "current_name": self.current_name,
            "authoritative_name": self.authoritative_name,
            "similarity": self.similarity,
            "severity": self.severity.value,
            "should_fix": self.should_fix,
        }


@dataclass
class FixOutcome:
    venue_id: int
    status: FixStatus
    old_name: str
    new_name: Optional[str] = None
    skip_reason: Optional[SkipReason] = None
    conflict: Optional[Candidate] = None
    error: Optional[str] = None
    dry_run: bool = False

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "venue_id": self.venue_id,
            "status": self.status.value,
            "old_name": self.old_name,
            "new_name": self.new_name,
            "dry_run": self.dry_run,
        }
        if self.skip_reason is not None:
            data["skip_reason"] = self.skip_reason.value
        if self.conflict is not None:
            data["conflict"] = self.conflict.to_dict()
        if self.error is not None:
            data["error"] = self.error
        return data


class NameQualityAssessor:
    def __init__(
        self,
        search: Optional[DuplicateSearch] = None,
        scorer: SimilarityScorer = DEFAULT_SCORER,
        severe_below: float = settings.name_severe_below,
        acceptable_from: float = settings.name_acceptable_from,
        collision_radius_m: float = settings.rename_collision_radius_m,
        collision_similarity: float = settings.rename_collision_similarity,
    ):
        if not 0.0 <= severe_below <= acceptable_from <= 1.0:
            raise ValueError(
                f"Severity cut points must satisfy 0 <= severe_below <= acceptable_from <= 1, "
                f"got {severe_below} / {acceptable_from}"
            )
        self.search = search or DuplicateSearch(scorer=scorer)
        self.scorer = scorer
        self.severe_below = severe_below
        self.acceptable_from = acceptable_from
        self.collision_radius_m = collision_radius_m
        self.collision_similarity = collision_similarity

    def classify(self, similarity: float) -> Severity:
        if similarity < self.severe_below:
            return Severity.SEVERE
        if similarity < self.acceptable_from:
            return Severity.MODERATE
        return Severity.ACCEPTABLE

    def assess(self, venue: VenueRecord) -> NameQualityAssessment:
        authoritative = extract_authoritative_name(venue.metadata)
        if authoritative is None:
            return NameQualityAssessment(
                venue=venue,
                current_name=venue.name,
                authoritative_name=None,
                similarity=None,
                severity=Severity.NO_REFERENCE,
                should_fix=False,
            )

        similarity = self.scorer.score(venue.name, authoritative)
        return NameQualityAssessment(
            venue=venue,
            current_name=venue.name,
            authoritative_name=authoritative,
            similarity=similarity,
            severity=self.classify(similarity),
            should_fix=similarity < self.acceptable_from,
        )

    async def apply_fix(
        self,
        conn: Any,
        assessment: NameQualityAssessment,
        severity_filter: SeverityFilter = SeverityFilter.SEVERE,
        dry_run: bool = False,
    ) -> FixOutcome:
        """
        Rename a venue to its authoritative name unless that would collide.

        Skips and collisions are returned as outcomes. Store errors propagate;
        the caller decides whether one failure aborts its batch.
        """
        venue = assessment.venue
        proposed = assessment.authoritative_name
        outcome = FixOutcome(
            venue_id=venue.id,
            status=FixStatus.SKIPPED,
            old_name=venue.name,
            new_name=proposed,
            dry_run=dry_run,
        )

        if assessment.severity is Severity.NO_REFERENCE or not proposed:
            outcome.skip_reason = SkipReason.NO_REFERENCE_NAME
            return outcome
        if proposed.strip() == (venue.name or "").strip():
            outcome.skip_reason = SkipReason.IDENTICAL_NAME
            return outcome
        if not assessment.should_fix:
            outcome.skip_reason = SkipReason.NOT_FLAGGED
            return outcome
        if not severity_filter.admits(assessment.severity):
            outcome.skip_reason = SkipReason.FILTERED_OUT
            return outcome

        conflict = await self.find_rename_collision(conn, venue, proposed)
        if conflict is not None:
            logger.info(
                "Rename of venue %d to %r would collide with venue %d (similarity=%.2f, distance=%s)",
                venue.id,
                proposed,
                conflict.venue.id,
                conflict.similarity_score,
                conflict.distance_meters,
            )
            outcome.status = FixStatus.DUPLICATE_DETECTED
            outcome.conflict = conflict
            return outcome

        outcome.status = FixStatus.RENAMED
        if dry_run:
            logger.info("[dry-run] Would rename venue %d: %r → %r", venue.id, venue.name, proposed)
            return outcome

        row = await conn.fetchrow(
            _RENAME_SQL,
            venue.id,
            proposed,
            normalize_name(proposed),
            venue_slug(proposed, venue.id),
        )
        if row is None:
            raise VenueNotFoundError(venue.id)

        renamed = VenueRecord.from_row(row)
        assessment.venue = renamed
        logger.info("Renamed venue %d: %r → %r (slug=%s)", venue.id, venue.name, proposed, renamed.slug)
        return outcome

    async def find_rename_collision(
        self, conn: Any, venue: VenueRecord, proposed_name: str
    ) -> Optional[Candidate]:
        """Best nearby venue already scoring >= the collision bar against proposed_name."""
        candidates = await self.search.find_duplicates(
            conn,
            venue,
            SearchOptions(
                radius_meters=self.collision_radius_m,
                limit=_COLLISION_SEARCH_LIMIT,
                name=proposed_name,
                exhaustive=True,
            ),
        )
        for candidate in candidates:
            if candidate.similarity_score >= self.collision_similarity:
                return candidate
        return None
