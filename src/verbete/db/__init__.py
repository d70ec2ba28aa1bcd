"""Verbete database module.

- SQLAlchemy 2.x ORM models
- Alembic migration configuration
- Async engine and session factory (psycopg in deployments)
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator

    from sqlalchemy.ext.asyncio import AsyncEngine

    from verbete.core.config import DatabaseSettings

# Module-level session factory (initialized on first use)
_engine: AsyncEngine | None = None
_async_session_factory: async_sessionmaker[AsyncSession] | None = None


def to_async_url(url: str) -> str:
    """Point plain PostgreSQL URLs at the async psycopg driver."""
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+psycopg://", 1)
    if url.startswith("postgres://"):
        return url.replace("postgres://", "postgresql+psycopg://", 1)
    return url


def create_engine_from_settings(settings: DatabaseSettings) -> AsyncEngine:
    """Build an async engine for the configured database."""
    url = to_async_url(settings.url)
    options: dict[str, Any] = {"echo": settings.echo}
    if not url.startswith("sqlite"):
        options.update(
            pool_size=settings.pool_size,
            max_overflow=settings.max_overflow,
            pool_pre_ping=True,
        )
    return create_async_engine(url, **options)


def _init_engine() -> None:
    """Initialize the database engine and session factory."""
    global _engine, _async_session_factory

    if _engine is not None:
        return

    from verbete.core.settings import get_settings

    _engine = create_engine_from_settings(get_settings().database)
    _async_session_factory = async_sessionmaker(
        bind=_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Return the shared session factory, creating the engine if needed."""
    _init_engine()
    if _async_session_factory is None:
        msg = "Database session factory not initialized"
        raise RuntimeError(msg)
    return _async_session_factory


@asynccontextmanager
async def get_async_session() -> AsyncGenerator[AsyncSession, None]:
    """Get an async database session.

    Rolls back on error and always closes. Committing is left to the caller.

    Usage:
        async with get_async_session() as session:
            result = await session.execute(query)
            await session.commit()

    Yields:
        AsyncSession for database operations.
    """
    session = get_session_factory()()
    try:
        yield session
    except Exception:
        await session.rollback()
        raise
    finally:
        await session.close()


async def close_engine() -> None:
    """Dispose of the engine during application shutdown."""
    global _engine, _async_session_factory

    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _async_session_factory = None
