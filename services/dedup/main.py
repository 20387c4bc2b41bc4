"""
Venue dedup review service: duplicate candidates, exclusions, merges, name quality.

Entrypoint: uvicorn services.dedup.main:app --host 0.0.0.0 --port 8000
"""

import logging
import uuid
from contextlib import asynccontextmanager

import asyncpg
from fastapi import FastAPI, Request, Response
from sqlalchemy.ext.asyncio import async_sessionmaker
from starlette.responses import JSONResponse

from services.dedup.config import settings
from services.dedup.db.engine import create_engine, init_schema
from services.dedup.middleware.sentry import setup_sentry
from services.dedup.resolution.candidates import CandidateFinder, create_indexes, ensure_extensions
from services.dedup.resolution.errors import InvalidPairError, MergeConflictError, VenueNotFoundError
from services.dedup.resolution.exclusions import ExclusionRegistry
from services.dedup.resolution.merge import MergeOrchestrator
from services.dedup.resolution.name_quality import NameQualityAssessor
from services.dedup.resolution.pairs import DuplicatePairFinder
from services.dedup.resolution.search import DuplicateSearch
from services.dedup.resolution.similarity import DEFAULT_SCORER
from services.dedup.resolution.thresholds import ThresholdPolicy
from services.dedup.routers import admin_duplicates, health
from services.dedup.routers._admin_deps import DedupServices

logger = logging.getLogger(__name__)


def build_services(pool: asyncpg.Pool) -> DedupServices:
    """Wire the engine components. One scorer instance is shared by all of them."""
    exclusions = ExclusionRegistry()
    policy = ThresholdPolicy.from_settings(settings)
    search = DuplicateSearch(
        finder=CandidateFinder(),
        exclusions=exclusions,
        scorer=DEFAULT_SCORER,
        policy=policy,
    )
    return DedupServices(
        search=search,
        exclusions=exclusions,
        merger=MergeOrchestrator(pool),
        assessor=NameQualityAssessor(search=search, scorer=DEFAULT_SCORER),
        pairs=DuplicatePairFinder(scorer=DEFAULT_SCORER, policy=policy),
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup/shutdown lifecycle."""
    logging.getLogger("services.dedup").setLevel(settings.log_level)
    setup_sentry()
    app.state.settings = settings

    sa_engine = None
    try:
        sa_engine = create_engine()
        app.state.db_engine = sa_engine
        # expire_on_commit=False: NullPool returns connection after commit
        app.state.db_session_factory = async_sessionmaker(sa_engine, expire_on_commit=False)
    except Exception as e:
        logger.warning("SA engine failed to init: %s", e)

    db_pool = None
    try:
        db_pool = await asyncpg.create_pool(
            settings.database_url,
            min_size=settings.db_pool_min_size,
            max_size=settings.db_pool_max_size,
            command_timeout=30,
        )
    except Exception as e:
        logger.warning("DB pool failed to connect: %s", e)

    app.state.db_pool = db_pool
    app.state.dedup = build_services(db_pool) if db_pool else None

    if db_pool:
        try:
            await ensure_extensions(db_pool)
            await create_indexes(db_pool)
        except asyncpg.PostgresError as e:
            # Candidate search falls back to city-only queries without PostGIS
            logger.warning("Spatial setup failed: %s", e)
    if sa_engine:
        try:
            await init_schema(sa_engine)
        except Exception as e:
            logger.warning("Dedup schema init failed: %s", e)

    yield

    if sa_engine:
        await sa_engine.dispose()
    if db_pool:
        await db_pool.close()


app = FastAPI(
    title="Venue Dedup API",
    version=settings.app_version,
    docs_url="/docs" if settings.environment == "development" else None,
    redoc_url=None,
    lifespan=lifespan,
)

app.include_router(health.router)
app.include_router(admin_duplicates.router)


@app.middleware("http")
async def request_id_middleware(request: Request, call_next) -> Response:
    request_id = request.headers.get("x-request-id", str(uuid.uuid4()))
    request.state.request_id = request_id
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response


# -- Exception Handlers --

def _error_response(request: Request, status_code: int, code: str, message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={
            "success": False,
            "error": {"code": code, "message": message},
            "requestId": getattr(request.state, "request_id", str(uuid.uuid4())),
        },
    )


@app.exception_handler(MergeConflictError)
async def merge_conflict_handler(request: Request, exc: MergeConflictError) -> JSONResponse:
    return _error_response(request, 409, "MERGE_CONFLICT", str(exc))


@app.exception_handler(VenueNotFoundError)
async def venue_not_found_handler(request: Request, exc: VenueNotFoundError) -> JSONResponse:
    return _error_response(request, 404, "VENUE_NOT_FOUND", str(exc))


@app.exception_handler(InvalidPairError)
async def invalid_pair_handler(request: Request, exc: InvalidPairError) -> JSONResponse:
    return _error_response(request, 422, "INVALID_PAIR", str(exc))


@app.exception_handler(404)
async def not_found_handler(request: Request, exc) -> JSONResponse:
    message = exc.detail if getattr(exc, "detail", None) else "Resource not found."
    return _error_response(request, 404, "NOT_FOUND", str(message))


@app.exception_handler(500)
async def internal_error_handler(request: Request, exc) -> JSONResponse:
    return _error_response(request, 500, "INTERNAL_ERROR", "An unexpected error occurred.")
