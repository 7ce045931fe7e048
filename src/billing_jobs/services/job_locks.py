"""Leased, TTL-bounded job locks backed by the shared database."""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any, cast

from sqlalchemy import CursorResult, or_, select, update
from sqlalchemy.exc import IntegrityError

from billing_jobs.models import JobLock
from billing_jobs.sessions import SessionScopeFactory

_lock_logger = logging.getLogger("billing_jobs.locks")


class LockCreateOutcome(str, Enum):
    """Result of the insert attempt that precedes any steal."""

    CREATED = "created"
    CONFLICT = "conflict"


@dataclass(slots=True, frozen=True)
class LockAcquisition:
    """Outcome of one acquisition attempt."""

    lock_key: str
    owner_run_id: str
    acquired: bool
    stolen: bool = False
    expires_at: datetime | None = None


class JobLockManager:
    """Acquire, steal and release named leases.

    At most one unreleased, unexpired row exists per lock key. A row that is
    expired or already released can be taken over by a new owner.
    """

    def __init__(
        self,
        *,
        session_factory: SessionScopeFactory | None = None,
        now_factory: Callable[[], datetime] | None = None,
    ) -> None:
        if session_factory is None:
            from billing_jobs.database import session_scope

            session_factory = session_scope

        self._session_factory = session_factory
        self._now_factory = now_factory or self._default_now

    async def acquire(
        self,
        lock_key: str,
        *,
        ttl_seconds: int,
        owner_run_id: str,
        metadata: Mapping[str, Any] | None = None,
    ) -> LockAcquisition:
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be greater than zero")

        now = self._now_factory()
        expires_at = now + timedelta(seconds=ttl_seconds)
        metadata_json = dict(metadata) if metadata else None

        outcome = await self._try_create(
            lock_key=lock_key,
            owner_run_id=owner_run_id,
            acquired_at=now,
            expires_at=expires_at,
            metadata_json=metadata_json,
        )
        if outcome is LockCreateOutcome.CREATED:
            _lock_logger.debug(
                "job_lock_acquired",
                extra={"lock_key": lock_key, "run_id": owner_run_id},
            )
            return LockAcquisition(
                lock_key=lock_key,
                owner_run_id=owner_run_id,
                acquired=True,
                expires_at=expires_at,
            )

        stolen = await self._try_steal(
            lock_key=lock_key,
            owner_run_id=owner_run_id,
            now=now,
            expires_at=expires_at,
            metadata_json=metadata_json,
        )
        if not stolen:
            _lock_logger.debug(
                "job_lock_denied",
                extra={"lock_key": lock_key, "run_id": owner_run_id},
            )
            return LockAcquisition(
                lock_key=lock_key,
                owner_run_id=owner_run_id,
                acquired=False,
            )

        _lock_logger.info(
            "job_lock_taken_over",
            extra={"lock_key": lock_key, "run_id": owner_run_id},
        )
        return LockAcquisition(
            lock_key=lock_key,
            owner_run_id=owner_run_id,
            acquired=True,
            stolen=True,
            expires_at=expires_at,
        )

    async def release(self, lock_key: str, *, owner_run_id: str) -> bool:
        """Release the lease only when ``owner_run_id`` still holds it."""

        now = self._now_factory()
        async with self._session_factory() as session:
            result = await session.execute(
                update(JobLock)
                .where(
                    JobLock.lock_key == lock_key,
                    JobLock.owner_run_id == owner_run_id,
                    JobLock.released_at.is_(None),
                )
                .values(released_at=now, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            released = cast(CursorResult[Any], result).rowcount > 0

        if not released:
            _lock_logger.warning(
                "job_lock_release_skipped_not_owner",
                extra={"lock_key": lock_key, "run_id": owner_run_id},
            )
        return released

    async def get(self, lock_key: str) -> JobLock | None:
        async with self._session_factory() as session:
            result = await session.execute(
                select(JobLock).where(JobLock.lock_key == lock_key)
            )
            return result.scalar_one_or_none()

    async def _try_create(
        self,
        *,
        lock_key: str,
        owner_run_id: str,
        acquired_at: datetime,
        expires_at: datetime,
        metadata_json: dict[str, Any] | None,
    ) -> LockCreateOutcome:
        try:
            async with self._session_factory() as session:
                session.add(
                    JobLock(
                        lock_key=lock_key,
                        acquired_at=acquired_at,
                        expires_at=expires_at,
                        owner_run_id=owner_run_id,
                        metadata_json=metadata_json,
                    )
                )
                await session.flush()
        except IntegrityError:
            return LockCreateOutcome.CONFLICT
        return LockCreateOutcome.CREATED

    async def _try_steal(
        self,
        *,
        lock_key: str,
        owner_run_id: str,
        now: datetime,
        expires_at: datetime,
        metadata_json: dict[str, Any] | None,
    ) -> bool:
        async with self._session_factory() as session:
            result = await session.execute(
                update(JobLock)
                .where(
                    JobLock.lock_key == lock_key,
                    or_(
                        JobLock.expires_at <= now,
                        JobLock.released_at.is_not(None),
                    ),
                )
                .values(
                    {
                        JobLock.acquired_at: now,
                        JobLock.expires_at: expires_at,
                        JobLock.owner_run_id: owner_run_id,
                        JobLock.metadata_json: metadata_json,
                        JobLock.released_at: None,
                        JobLock.updated_at: now,
                    }
                )
                .execution_options(synchronize_session=False)
            )
            return cast(CursorResult[Any], result).rowcount > 0

    @staticmethod
    def _default_now() -> datetime:
        return datetime.now(UTC)


__all__ = [
    "JobLockManager",
    "LockAcquisition",
    "LockCreateOutcome",
]
