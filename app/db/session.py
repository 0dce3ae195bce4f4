"""
Database Session Management
===========================

Provides the async database engine, session factory and the FastAPI
session dependency.

The entitlement services take the *session factory* rather than a
session: each ledger transition, receipt insert and event append runs in
its own short transaction so that per-key serialization covers the
commit.
"""

import logging

from sqlalchemy import event, text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from app.config import settings

logger = logging.getLogger(__name__)

# Global engine instance
_engine: AsyncEngine | None = None
_async_session_factory: async_sessionmaker[AsyncSession] | None = None


def create_engine_for_url(url: str, **kwargs) -> AsyncEngine:
    """
    Create an async engine for ``url``.

    PostgreSQL gets a pooled engine; SQLite (tests, local tooling) gets
    foreign-key enforcement switched on for every connection.
    """
    if url.startswith("sqlite"):
        engine = create_async_engine(url, **kwargs)

        @event.listens_for(engine.sync_engine, "connect")
        def _enable_sqlite_fks(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

        return engine

    return create_async_engine(
        url,
        echo=settings.DATABASE_ECHO,
        pool_size=20,
        max_overflow=40,
        pool_recycle=300,
        pool_use_lifo=True,
        pool_timeout=30,
        **kwargs,
    )


def make_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Build a session factory bound to ``engine``."""
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


def get_engine() -> AsyncEngine:
    """Get or create the async database engine."""
    global _engine

    if _engine is None:
        if not settings.database_url_async:
            raise ValueError(
                "Database URL not configured. "
                "Please set DATABASE_URL environment variable."
            )
        _engine = create_engine_for_url(settings.database_url_async)

    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Get or create the async session factory."""
    global _async_session_factory

    if _async_session_factory is None:
        _async_session_factory = make_session_factory(get_engine())

    return _async_session_factory


async def init_db() -> None:
    """
    Initialize database connection.

    Called on application startup.
    """
    engine = get_engine()
    async with engine.connect() as conn:
        await conn.execute(text("SELECT 1"))
    logger.info("Database connection established")


async def close_db() -> None:
    """
    Close database connections.

    Called on application shutdown to clean up resources.
    """
    global _engine, _async_session_factory

    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _async_session_factory = None
        logger.info("Database connections closed")
