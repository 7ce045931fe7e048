"""Tests for the shared session scope helper."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

import pytest
from sqlalchemy import func, select

from billing_jobs import sessions
from billing_jobs.models import JobLock
from billing_jobs.services import agency_registry, job_locks, job_runs, runner

ACQUIRED_AT = datetime(2026, 3, 9, 13, 0, tzinfo=UTC)


def _lock(lock_key: str) -> JobLock:
    return JobLock(
        lock_key=lock_key,
        acquired_at=ACQUIRED_AT,
        expires_at=ACQUIRED_AT,
        owner_run_id="run-a",
    )


async def _count_locks(scoped_session: Any) -> int:
    async with scoped_session() as session:
        return int(await session.scalar(select(func.count()).select_from(JobLock)))


@pytest.mark.asyncio
async def test_scope_commits_on_clean_exit(scoped_session: Any) -> None:
    async with scoped_session() as session:
        session.add(_lock("billing:run_anchor:2026-03-09"))

    assert await _count_locks(scoped_session) == 1


@pytest.mark.asyncio
async def test_scope_rolls_back_and_reraises(scoped_session: Any) -> None:
    with pytest.raises(RuntimeError, match="boom"):
        async with scoped_session() as session:
            session.add(_lock("billing:run_anchor:2026-03-09"))
            await session.flush()
            raise RuntimeError("boom")

    assert await _count_locks(scoped_session) == 0


def test_services_share_one_scope_factory_alias() -> None:
    assert job_locks.SessionScopeFactory is sessions.SessionScopeFactory
    assert job_runs.SessionScopeFactory is sessions.SessionScopeFactory
    assert agency_registry.SessionScopeFactory is sessions.SessionScopeFactory
    assert runner.SessionScopeFactory is sessions.SessionScopeFactory
