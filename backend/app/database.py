"""
Exposure Backend — Database Session Management
================================================

What:  Engine and session factory for the places, photos and admin_users
       tables, plus the per-request session dependency.
How:   One engine per process (asyncpg in production, aiosqlite locally and
       in tests); get_db_session commits after the handler or rolls back.
Who:   Route handlers through Depends, the thumbnail queue (own sessions
       per job) and the startup admin sync.

Transactions:
    Photo mutations commit inside the place lock themselves (see
    PhotoService). The request-level commit below is then a no-op; it still
    covers read-modify-write handlers that only flush.

SQLite:
    Pool sizing arguments are not valid for SQLite's pool, so they are only
    passed for server databases. Foreign keys are switched on per connection.
"""

from typing import Any, AsyncGenerator, Dict

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from app.config import settings


def build_engine(database_url: str) -> AsyncEngine:
    """Create an async engine with pool settings appropriate to the backend."""
    engine_kwargs: Dict[str, Any] = {"echo": settings.log_level == "DEBUG"}
    if not database_url.startswith("sqlite"):
        engine_kwargs.update(
            pool_size=settings.db_pool_size,
            max_overflow=settings.db_max_overflow,
            pool_pre_ping=settings.db_pool_pre_ping,
            pool_recycle=3600,
        )

    new_engine = create_async_engine(database_url, **engine_kwargs)

    if database_url.startswith("sqlite"):
        @event.listens_for(new_engine.sync_engine, "connect")
        def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

    return new_engine


# ── Engine & Session Factory ──────────────────────────────────────────────
engine = build_engine(settings.database_url)

# expire_on_commit=False: attributes stay readable after the service commits
async_session_factory = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy ORM models (shared metadata for Alembic)."""
    pass


# ── Session Dependency ────────────────────────────────────────────────────
async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """
    One session per request: commit after the handler returns, rollback if
    it raised, close either way.
    """
    async with async_session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()


async def dispose_engine() -> None:
    """Close all pooled connections during application shutdown."""
    await engine.dispose()
