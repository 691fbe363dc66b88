"""
TimeSync Backend — Database Session Management
================================================

What:  Async SQLAlchemy engine, session factory, and FastAPI dependencies.
How:   Creates an async engine with connection pooling. Unlike a plain CRUD
       API, sync calls manage their own transactions (one per merge attempt),
       so routes receive the session *factory* rather than a session.
Who:   Used by route handlers via FastAPI's dependency injection system,
       and by the lifespan handler for startup tasks.
When:  Engine is created at module import; sessions are created per attempt.
"""

from typing import AsyncGenerator

from fastapi import Depends
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from timesync.config import settings


def build_engine(database_url: str, echo: bool = False) -> AsyncEngine:
    """
    Create an async engine for the given URL.

    Pool sizing settings apply to server databases only; SQLite connections
    use the dialect's default pool.
    """
    if database_url.startswith("sqlite"):
        return create_async_engine(database_url, echo=echo)
    return create_async_engine(
        database_url,
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_max_overflow,
        pool_pre_ping=settings.db_pool_pre_ping,
        pool_recycle=3600,
        echo=echo,
    )


def build_session_factory(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    # expire_on_commit=False: records are serialized after their transaction commits
    return async_sessionmaker(bind, class_=AsyncSession, expire_on_commit=False)


# ── Engine Configuration ──────────────────────────────────────────────────
engine = build_engine(settings.database_url, echo=settings.log_level == "DEBUG")

# ── Session Factory ───────────────────────────────────────────────────────
async_session_factory = build_session_factory(engine)


# ── Base Model ────────────────────────────────────────────────────────────
class Base(DeclarativeBase):
    """
    Base class for all SQLAlchemy ORM models.

    All models inherit from this class to register with the shared metadata
    used by Alembic and by `create_schema()`.
    """
    pass


# ── Dependencies ──────────────────────────────────────────────────────────
def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """
    FastAPI dependency that provides the session factory.

    Tests override this dependency to point the app at a temporary database.
    """
    return async_session_factory


async def get_db_session(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
) -> AsyncGenerator[AsyncSession, None]:
    """
    FastAPI dependency that provides a read-oriented database session per request.

    How it works:
        1. Creates a new session from the factory
        2. Yields it to the route handler
        3. On success: commits; on error: rolls back and re-raises
        4. Always: closes the session (returns connection to pool)
    """
    async with session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()


# ── Lifecycle Helpers ─────────────────────────────────────────────────────
async def create_schema(bind: AsyncEngine = engine) -> None:
    """
    Create all tables that do not exist yet.

    When:  Startup with DB_AUTO_CREATE=true, and in tests. Production schemas
           are managed by Alembic.
    """
    # Import models so they register with Base.metadata
    from timesync.models import journal, records  # noqa: F401

    async with bind.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def dispose_engine() -> None:
    """
    What:  Gracefully closes all connections in the pool.
    When:  Called during application shutdown (lifespan handler).
    """
    await engine.dispose()
