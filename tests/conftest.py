"""
Matching Test Configuration and Fixtures
Shared pytest fixtures for all test modules.
"""
import os
import tempfile
from typing import AsyncGenerator, Generator

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from backend.events import EventBus
from backend.models import Base
from tests.fixtures.factories import FakePushChannel, FakeRedis


# =============================================================================
# Database Fixtures
# =============================================================================


@pytest.fixture
def database_url() -> Generator[str, None, None]:
    """URL of a fresh SQLite file; each test gets its own."""
    fd, db_path = tempfile.mkstemp(suffix=".db")
    os.close(fd)

    yield f"sqlite+aiosqlite:///{db_path}"

    try:
        os.unlink(db_path)
    except OSError:
        pass


@pytest_asyncio.fixture
async def async_engine(database_url):
    """Create an async SQLite engine with the full schema."""
    engine = create_async_engine(
        database_url,
        connect_args={"check_same_thread": False},
        echo=False,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(async_engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind=async_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


@pytest_asyncio.fixture
async def async_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session
        await session.rollback()


# =============================================================================
# Redis Fixtures
# =============================================================================


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def event_bus(fake_redis) -> EventBus:
    """Event bus wired to the in-memory Redis."""
    return EventBus(client=fake_redis, max_retries=3)


# =============================================================================
# Push Fixtures
# =============================================================================


@pytest.fixture
def push_channel() -> FakePushChannel:
    return FakePushChannel()
