"""Shared fixtures for database backed service tests."""

from __future__ import annotations

from collections.abc import AsyncIterator
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from billing_jobs.models import Base
from billing_jobs.sessions import SessionScopeFactory, build_session_scope

# Monday 2026-03-09, 10:00 in Buenos Aires.
DEFAULT_NOW = datetime(2026, 3, 9, 13, 0, tzinfo=UTC)


class MutableClock:
    """Callable clock that tests move explicitly."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock() -> MutableClock:
    return MutableClock(DEFAULT_NOW)


@pytest_asyncio.fixture
async def scoped_session(tmp_path: Path) -> AsyncIterator[SessionScopeFactory]:
    database_url = f"sqlite+aiosqlite:///{tmp_path / 'billing-jobs.sqlite'}"
    engine = create_async_engine(database_url)
    session_factory = async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        autoflush=False,
        expire_on_commit=False,
    )

    async with engine.begin() as connection:
        await connection.run_sync(Base.metadata.create_all)

    try:
        yield build_session_scope(session_factory)
    finally:
        await engine.dispose()
