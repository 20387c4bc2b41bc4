"""Shared dependencies for the venue review router."""
from dataclasses import dataclass

from fastapi import HTTPException, Request

from services.dedup.resolution.exclusions import ExclusionRegistry
from services.dedup.resolution.merge import MergeOrchestrator
from services.dedup.resolution.name_quality import NameQualityAssessor
from services.dedup.resolution.pairs import DuplicatePairFinder
from services.dedup.resolution.search import DuplicateSearch

ADMIN_USER_HEADER = "X-Admin-User-Id"


async def require_admin_user(request: Request) -> str:
    """
    Reviewer identity from the X-Admin-User-Id header.

    Authentication happens upstream; the header is trusted as-is.
    Missing or blank header -> 401.
    """
    actor_id = (request.headers.get(ADMIN_USER_HEADER) or "").strip()
    if not actor_id:
        raise HTTPException(status_code=401, detail=f"Missing {ADMIN_USER_HEADER} header")
    return actor_id


@dataclass
class DedupServices:
    search: DuplicateSearch
    exclusions: ExclusionRegistry
    merger: MergeOrchestrator
    assessor: NameQualityAssessor
    pairs: DuplicatePairFinder


def get_services(request: Request) -> DedupServices:
    """Engine components built once in lifespan and stored on app.state."""
    services = getattr(request.app.state, "dedup", None)
    if services is None:
        raise HTTPException(status_code=503, detail="Dedup engine unavailable")
    return services
