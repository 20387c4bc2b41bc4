"""
FastAPI dependencies for database access.

Two handles live on app.state:
  db_session_factory  SA async sessions, read-side admin queries
  db_pool             asyncpg pool, every engine operation
"""

from collections.abc import AsyncGenerator

import asyncpg
from fastapi import HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker


async def get_db(request: Request) -> AsyncGenerator[AsyncSession, None]:
    # expire_on_commit=False on the factory: NullPool hands the connection back at commit
    factory: async_sessionmaker = request.app.state.db_session_factory
    async with factory() as session:
        yield session


def get_pool(request: Request) -> asyncpg.Pool:
    pool = getattr(request.app.state, "db_pool", None)
    if pool is None:
        raise HTTPException(status_code=503, detail="Database pool not initialised")
    return pool
