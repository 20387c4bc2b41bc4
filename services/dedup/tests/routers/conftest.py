"""
Fixtures for the HTTP layer.

The real application is used (exception handlers and request id middleware
included) with its state wired to FakeVenueDB and a MockSASession instead of
running the lifespan.
"""

import pytest
from httpx import ASGITransport, AsyncClient

from services.dedup.tests.helpers.mock_sa import MockSASession


@pytest.fixture
def mock_session():
    """Pass session.mock as the get_db override."""
    return MockSASession()


@pytest.fixture
def app(pool, mock_session):
    from services.dedup.config import settings
    from services.dedup.db.session import get_db
    from services.dedup.main import app as _app
    from services.dedup.main import build_services

    _app.state.settings = settings
    _app.state.db_pool = pool
    _app.state.dedup = build_services(pool)

    async def override_get_db():
        yield mock_session.mock

    _app.dependency_overrides[get_db] = override_get_db
    yield _app
    _app.dependency_overrides.clear()
    _app.state.db_pool = None
    _app.state.dedup = None


@pytest.fixture
async def client(app):
    """Async HTTP client bound to the test app."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
