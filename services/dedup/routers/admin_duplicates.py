"""
Admin venue review: duplicate candidates, exclusions, merges, name quality.

Engine operations run on the asyncpg pool; the read-only listings (venue
lookup, merge history) go through SA sessions.
"""

from typing import Optional

import asyncpg
from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from services.dedup.config import settings
from services.dedup.db.models import Venue, VenueMergeAudit
from services.dedup.db.session import get_db, get_pool
from services.dedup.resolution.pairs import summarize_pairs
from services.dedup.resolution.search import SearchOptions
from services.dedup.resolution.venues import fetch_venue
from services.dedup.routers._admin_deps import DedupServices, get_services, require_admin_user

router = APIRouter(prefix="/admin/venues", tags=["admin-venues"])

# ---------------------------------------------------------------------------
# Pydantic models
# ---------------------------------------------------------------------------

class ExclusionCreate(BaseModel):
    venue_id_a: int
    venue_id_b: int
    reason: Optional[str] = Field(default=None, max_length=1000)


class MergeRequest(BaseModel):
    source_id: int
    target_id: int
    reason: Optional[str] = Field(default=None, max_length=200)
    similarity_score: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    distance_meters: Optional[float] = Field(default=None, ge=0.0)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _like_pattern(q: str) -> str:
    """Substring ILIKE pattern with the wildcards in q matched literally."""
    escaped = q.strip().replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


def _envelope(request: Request, data) -> dict:
    return {
        "success": True,
        "data": data,
        "requestId": getattr(request.state, "request_id", None),
    }


def venue_to_summary(venue: Venue) -> dict:
    return {
        "id": venue.id,
        "name": venue.name,
        "slug": venue.slug,
        "address": venue.address,
        "city_id": venue.city_id,
        "latitude": venue.latitude,
        "longitude": venue.longitude,
    }


def audit_to_dict(audit: VenueMergeAudit) -> dict:
    return {
        "id": audit.id,
        "source_venue_id": audit.source_venue_id,
        "target_venue_id": audit.target_venue_id,
        "merged_by": audit.merged_by,
        "merge_reason": audit.merge_reason,
        "similarity_score": audit.similarity_score,
        "distance_meters": audit.distance_meters,
        "reassignment_counts": audit.reassignment_counts,
        "source_snapshot": audit.source_snapshot,
        "inserted_at": audit.inserted_at.isoformat() if audit.inserted_at else None,
    }


# ---------------------------------------------------------------------------
# Read-only listings (SA)
# ---------------------------------------------------------------------------

@router.get("/search")
async def search_venues(
    request: Request,
    q: str = Query(..., min_length=1, max_length=200),
    city_id: Optional[int] = Query(None),
    limit: int = Query(20, ge=1, le=100),
    db: AsyncSession = Depends(get_db),
    actor_id: str = Depends(require_admin_user),
):
    """Case-insensitive name lookup, for picking a venue to compare by hand."""
    stmt = select(Venue).where(Venue.name.ilike(_like_pattern(q), escape="\\"))
    if city_id is not None:
        stmt = stmt.where(Venue.city_id == city_id)
    stmt = stmt.order_by(Venue.name.asc(), Venue.id.asc()).limit(limit)

    result = await db.execute(stmt)
    venues = result.scalars().all()
    return _envelope(request, {"venues": [venue_to_summary(v) for v in venues]})


@router.get("/merges/recent")
async def recent_merges(
    request: Request,
    limit: int = Query(50, ge=1, le=200),
    db: AsyncSession = Depends(get_db),
    actor_id: str = Depends(require_admin_user),
):
    stmt = (
        select(VenueMergeAudit)
        .order_by(VenueMergeAudit.inserted_at.desc(), VenueMergeAudit.id.desc())
        .limit(limit)
    )
    result = await db.execute(stmt)
    return _envelope(request, {"merges": [audit_to_dict(a) for a in result.scalars().all()]})


@router.get("/{venue_id}/merges")
async def merge_history(
    venue_id: int,
    request: Request,
    db: AsyncSession = Depends(get_db),
    actor_id: str = Depends(require_admin_user),
):
    """Every merge that folded another venue into this one, newest first."""
    stmt = (
        select(VenueMergeAudit)
        .where(VenueMergeAudit.target_venue_id == venue_id)
        .order_by(VenueMergeAudit.inserted_at.desc(), VenueMergeAudit.id.desc())
    )
    result = await db.execute(stmt)
    return _envelope(request, {"merges": [audit_to_dict(a) for a in result.scalars().all()]})


# ---------------------------------------------------------------------------
# Engine operations (asyncpg)
# ---------------------------------------------------------------------------

@router.get("/pairs")
async def duplicate_pairs(
    request: Request,
    city_id: int = Query(...),
    radius_meters: float = Query(settings.pair_radius_m, gt=0, le=5_000),
    limit: int = Query(settings.pair_limit, ge=1, le=1000),
    pool: asyncpg.Pool = Depends(get_pool),
    services: DedupServices = Depends(get_services),
    actor_id: str = Depends(require_admin_user),
):
    """Every passing pair of one city, most confident first, with a summary."""
    async with pool.acquire() as conn:
        pairs = await services.pairs.find_duplicate_pairs(conn, city_id, radius_meters, limit)

    return _envelope(request, {
        "city_id": city_id,
        "summary": summarize_pairs(pairs).to_dict(),
        "pairs": [p.to_dict() for p in pairs],
    })


@router.get("/clusters")
async def duplicate_clusters(
    request: Request,
    city_id: int = Query(...),
    radius_meters: float = Query(settings.pair_radius_m, gt=0, le=5_000),
    limit: int = Query(50, ge=1, le=500),
    pool: asyncpg.Pool = Depends(get_pool),
    services: DedupServices = Depends(get_services),
    actor_id: str = Depends(require_admin_user),
):
    async with pool.acquire() as conn:
        clusters = await services.pairs.find_duplicate_clusters(conn, city_id, radius_meters, limit)
    return _envelope(request, {"city_id": city_id, "clusters": [c.to_dict() for c in clusters]})


@router.get("/{venue_id}/duplicates")
async def find_duplicates(
    venue_id: int,
    request: Request,
    radius_meters: float = Query(settings.curation_radius_m, gt=0, le=50_000),
    limit: int = Query(settings.curation_limit, ge=1, le=100),
    pool: asyncpg.Pool = Depends(get_pool),
    services: DedupServices = Depends(get_services),
    actor_id: str = Depends(require_admin_user),
):
    async with pool.acquire() as conn:
        venue = await fetch_venue(conn, venue_id)
        if venue is None:
            raise HTTPException(status_code=404, detail=f"Venue {venue_id} not found")
        candidates = await services.search.find_duplicates(
            conn, venue, SearchOptions(radius_meters=radius_meters, limit=limit)
        )

    return _envelope(request, {
        "venue": {"id": venue.id, "name": venue.name, "city_id": venue.city_id},
        "candidates": [c.to_dict() for c in candidates],
    })


@router.get("/{venue_id}/name-quality")
async def name_quality(
    venue_id: int,
    request: Request,
    pool: asyncpg.Pool = Depends(get_pool),
    services: DedupServices = Depends(get_services),
    actor_id: str = Depends(require_admin_user),
):
    async with pool.acquire() as conn:
        venue = await fetch_venue(conn, venue_id)
    if venue is None:
        raise HTTPException(status_code=404, detail=f"Venue {venue_id} not found")
    return _envelope(request, services.assessor.assess(venue).to_dict())


@router.post("/exclusions")
async def create_exclusion(
    body: ExclusionCreate,
    request: Request,
    pool: asyncpg.Pool = Depends(get_pool),
    services: DedupServices = Depends(get_services),
    actor_id: str = Depends(require_admin_user),
):
    """Mark two venues as not duplicates. Repeating the call returns the stored pair."""
    async with pool.acquire() as conn:
        pair = await services.exclusions.exclude(
            conn, body.venue_id_a, body.venue_id_b, reviewer=actor_id, reason=body.reason
        )
    return _envelope(request, pair.to_dict())


@router.delete("/exclusions/{venue_id_a}/{venue_id_b}")
async def delete_exclusion(
    venue_id_a: int,
    venue_id_b: int,
    request: Request,
    pool: asyncpg.Pool = Depends(get_pool),
    services: DedupServices = Depends(get_services),
    actor_id: str = Depends(require_admin_user),
):
    async with pool.acquire() as conn:
        removed = await services.exclusions.remove(conn, venue_id_a, venue_id_b)
    if not removed:
        raise HTTPException(status_code=404, detail="Exclusion not found")
    return _envelope(request, {"removed": True})


@router.post("/merge")
async def merge_venues(
    body: MergeRequest,
    request: Request,
    services: DedupServices = Depends(get_services),
    actor_id: str = Depends(require_admin_user),
):
    """Fold source into target. 404 missing venue, 409 source already merged."""
    result = await services.merger.merge(
        body.source_id,
        body.target_id,
        reviewer=actor_id,
        reason=body.reason,
        similarity_score=body.similarity_score,
        distance_meters=body.distance_meters,
    )
    return _envelope(request, {
        "target": {
            "id": result.target.id,
            "name": result.target.name,
            "provider_ids": result.target.provider_ids,
        },
        "audit": result.audit.to_dict(),
    })
