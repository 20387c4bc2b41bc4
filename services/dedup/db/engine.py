"""
AsyncEngine factory and schema bootstrap.

NullPool because the engine SQL runs on the asyncpg pool; SA is only used
for the review interface's read queries and for creating the two tables the
dedup engine owns.
"""

from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlalchemy.pool import NullPool

from services.dedup.config import settings
from services.dedup.db.models import ENGINE_OWNED_TABLES, Base


def create_engine() -> AsyncEngine:
    url = settings.database_url.replace("postgresql://", "postgresql+asyncpg://", 1)
    return create_async_engine(
        url,
        poolclass=NullPool,
        echo=settings.debug and settings.environment == "development",
    )


async def init_schema(engine: AsyncEngine) -> None:
    """
    Create venue_duplicate_exclusions and venue_merge_audits if missing.

    The venues table and its dependents belong to the host application and
    are never created here.
    """
    tables = [Base.metadata.tables[name] for name in ENGINE_OWNED_TABLES]
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all, tables=tables, checkfirst=True)
