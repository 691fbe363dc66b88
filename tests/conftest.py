"""
TimeSync Backend — Test Configuration (conftest.py)
=====================================================

What:  Shared pytest fixtures for the entire test suite.
How:   pytest auto-discovers conftest.py and makes fixtures available to all tests.

Fixture Hierarchy:
    Function-scoped (created fresh for each test):
    ├── db_engine: async engine on a fresh SQLite file under tmp_path
    ├── session_factory: async_sessionmaker bound to db_engine
    ├── db_session: one session for store/journal unit tests
    ├── coordinator: SyncCoordinator with fast retries
    ├── mock_db_session: Mock database session (no real DB needed)
    └── test_client: HTTPX AsyncClient for API endpoint testing
"""

import os

# Override settings for testing BEFORE any timesync imports
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///./timesync_test.db"
os.environ["LOG_LEVEL"] = "WARNING"
os.environ["DB_AUTO_CREATE"] = "false"

from unittest.mock import AsyncMock, MagicMock  # noqa: E402

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from httpx import AsyncClient, ASGITransport  # noqa: E402

from timesync.config import Settings  # noqa: E402
from timesync.database import (  # noqa: E402
    build_engine,
    build_session_factory,
    create_schema,
    get_session_factory,
)
from timesync.schemas.sync import ClientChange, SyncRequest  # noqa: E402
from timesync.services.sync_coordinator import SyncCoordinator  # noqa: E402


# ══════════════════════════════════════════════════════════════════════════
# Helpers
# ══════════════════════════════════════════════════════════════════════════

def make_change(
    record_id: str = "t1",
    kind: str = "time_entry",
    operation: str = "create",
    base_revision: int = 0,
    client_timestamp: int = 1_000,
    **fields,
) -> ClientChange:
    """Build a ClientChange; time entries get a start_time unless given."""
    if kind == "time_entry" and operation == "create" and "start_time" not in fields:
        fields["start_time"] = 1_700_000_000_000
    return ClientChange(
        kind=kind,
        id=record_id,
        base_revision=base_revision,
        operation=operation,
        client_timestamp=client_timestamp,
        fields=fields,
    )


def make_request(client_id: str, last_synced_at: int = 0, changes=None) -> SyncRequest:
    return SyncRequest(client_id=client_id, last_synced_at=last_synced_at, changes=changes or [])


# ══════════════════════════════════════════════════════════════════════════
# Database Fixtures
# ══════════════════════════════════════════════════════════════════════════

@pytest.fixture
def test_settings():
    """Settings with retries that do not sleep."""
    return Settings(sync_max_attempts=3, sync_retry_min_wait=0.0, sync_retry_max_wait=0.0)


@pytest_asyncio.fixture
async def db_engine(tmp_path):
    """
    Async engine on a fresh SQLite file with all tables created.

    A file (not :memory:) so that every session sees the same database.
    """
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'timesync.db'}")
    await create_schema(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return build_session_factory(db_engine)


@pytest_asyncio.fixture
async def db_session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def coordinator(session_factory, test_settings):
    return SyncCoordinator(session_factory, config=test_settings)


@pytest.fixture
def mock_db_session():
    """
    Provides a mock async database session.

    Usage:
        async def test_conflict(mock_db_session):
            mock_db_session.execute.return_value.rowcount = 0
    """
    session = AsyncMock()
    session.execute = AsyncMock()
    session.flush = AsyncMock()
    session.commit = AsyncMock()
    session.rollback = AsyncMock()
    session.close = AsyncMock()
    session.add = MagicMock()
    return session


# ══════════════════════════════════════════════════════════════════════════
# API Fixtures
# ══════════════════════════════════════════════════════════════════════════

@pytest.fixture
def api_app(session_factory):
    """
    A fresh app per test (fresh rate limiter state), with the session
    factory dependency pointed at the test database.
    """
    from timesync.main import create_app

    app = create_app()
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    yield app
    app.dependency_overrides.clear()


@pytest_asyncio.fixture
async def test_client(api_app):
    """
    Provides an async HTTP test client for endpoint testing.

    Usage:
        async def test_health(test_client):
            response = await test_client.get("/health")
            assert response.status_code == 200
    """
    transport = ASGITransport(app=api_app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
