"""Database module.

Database models and engine wiring:
- SQLAlchemy 2.x ORM models (documents, categories, verification, audit)
- Async engine and session factory construction from settings
- Connection pooling via psycopg on PostgreSQL, aiosqlite for local runs

Engines and session factories are created explicitly and handed to the
services that need them; nothing here is a module-level singleton.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from docintake.db.models import Base

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator

    from docintake.core.config import DatabaseSettings

logger = logging.getLogger(__name__)


def normalize_database_url(url: str) -> str:
    """Ensure the URL selects an async driver.

    Args:
        url: Database URL from settings.

    Returns:
        URL using postgresql+psycopg for PostgreSQL, unchanged otherwise.
    """
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+psycopg://", 1)
    if url.startswith("postgres://"):
        return url.replace("postgres://", "postgresql+psycopg://", 1)
    return url


def create_engine_from_settings(settings: DatabaseSettings) -> AsyncEngine:
    """Create the async engine described by the database settings.

    Args:
        settings: DatabaseSettings instance.

    Returns:
        Configured AsyncEngine.
    """
    url = normalize_database_url(settings.url)
    engine_kwargs: dict[str, Any] = {"echo": settings.echo}

    # Pool settings only apply to PostgreSQL
    if not settings.is_sqlite:
        engine_kwargs.update(
            pool_size=settings.pool_size,
            max_overflow=settings.max_overflow,
            pool_timeout=settings.pool_timeout,
            pool_pre_ping=True,
        )

    engine = create_async_engine(url, **engine_kwargs)
    logger.debug("Created database engine for dialect=%s", engine.dialect.name)
    return engine


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Create a session factory bound to the engine."""
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


async def create_schema(engine: AsyncEngine) -> None:
    """Create missing tables. Existing tables are left untouched."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database schema created")


@asynccontextmanager
async def session_scope(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    """Open a session that rolls back on error and always closes.

    Usage:
        async with session_scope(factory) as session:
            result = await session.execute(query)
            await session.commit()

    Yields:
        AsyncSession for database operations.
    """
    session = session_factory()
    try:
        yield session
    except BaseException:
        await session.rollback()
        raise
    finally:
        await session.close()


__all__ = [
    "create_engine_from_settings",
    "create_schema",
    "create_session_factory",
    "normalize_database_url",
    "session_scope",
]
