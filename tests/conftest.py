"""Test fixtures for the meeting sync engine.

Provides:
- File-backed SQLite engine (aiosqlite) with foreign keys enforced; every
  session gets its own connection
- session_factory callable matching src.meetsync.core.database.get_session
- MeetingSyncRepository wired to the test database
- Settings tuned for fast worker loops
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from datetime import timedelta

import pytest
import pytest_asyncio
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine

from src.meetsync.config import Settings
from src.meetsync.core.database import Base
from src.meetsync.meetings import models  # noqa: F401
from src.meetsync.meetings.repository import MeetingSyncRepository


@pytest_asyncio.fixture
async def engine(tmp_path) -> AsyncGenerator[AsyncEngine, None]:
    """Fresh database file per test.

    A shared single connection would let a late session close roll back
    another session's open transaction.
    """
    test_engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'meetsync.db'}")

    @event.listens_for(test_engine.sync_engine, "connect")
    def _enable_foreign_keys(dbapi_connection, connection_record) -> None:
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield test_engine

    await test_engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine):
    """Session factory callable yielding AsyncSession instances."""

    async def _factory() -> AsyncGenerator[AsyncSession, None]:
        async with AsyncSession(engine, expire_on_commit=False) as session:
            yield session

    return _factory


@pytest.fixture
def repository(session_factory) -> MeetingSyncRepository:
    return MeetingSyncRepository(session_factory, claim_ttl=timedelta(minutes=5))


@pytest.fixture
def settings() -> Settings:
    """Settings with short pauses for worker loop tests."""
    return Settings(
        MEETINGS_SYNC_WORKERS=1,
        MEETINGS_PAUSE_ON_NONE_SECONDS=0.01,
        MEETINGS_PAUSE_ON_ERROR_SECONDS=0.01,
        MEETINGS_HOST_POOL="",
        MEETINGS_MAX_SIMULTANEOUS_PER_HOST=1,
        MEETINGS_ERROR_REARM_INTERVAL_MINUTES=0,
    )
