"""Pytest configuration and shared fixtures.

Tests run against an in-memory SQLite database through aiosqlite; the
models only use portable column types, so the schema is created straight
from the metadata instead of through Alembic.

Time-dependent services accept an explicit ``now``; tests pin it to
``tests.factories.NOW`` so day arithmetic is deterministic.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from unittest.mock import MagicMock

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from verbete.core.config import AlertSettings, SchedulerSettings, Settings, SMTPSettings
from verbete.db.models import Base
from verbete.services.dispatch import NotificationDispatcher
from verbete.services.email import EmailNotifier


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------
@pytest.fixture
def settings() -> Settings:
    """Settings with explicit values, independent of the environment."""
    return Settings(
        _env_file=None,
        environment="dev",
        frontend_url="https://verbete.test",
        smtp=SMTPSettings(host="localhost", port=1025, retry_base_delay=0),
        alerts=AlertSettings(admin_emails=["editoria@verbete.test"]),
        scheduler=SchedulerSettings(timezone="America/Sao_Paulo"),
    )


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------
@pytest.fixture
async def engine() -> AsyncGenerator[AsyncEngine, None]:
    """In-memory database shared by every connection of one test."""
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


# ---------------------------------------------------------------------------
# Notifications
# ---------------------------------------------------------------------------
@pytest.fixture
def notifier() -> MagicMock:
    """Notifier double; every send_* method is an AsyncMock."""
    return MagicMock(spec=EmailNotifier)


@pytest.fixture
def dispatcher() -> NotificationDispatcher:
    return NotificationDispatcher()


# ---------------------------------------------------------------------------
# API client
# ---------------------------------------------------------------------------
@pytest.fixture
async def api_client(
    settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    notifier: MagicMock,
) -> AsyncGenerator[AsyncClient, None]:
    """HTTP client for the app, wired to the test database and notifier."""
    from verbete.api import create_app
    from verbete.api.routers.author import get_db_session

    app = create_app(settings)
    app.state.notifier = notifier

    async def override_session() -> AsyncGenerator[AsyncSession, None]:
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db_session] = override_session

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    await app.state.dispatcher.drain()
