"""Durable execution records for billing jobs."""

from __future__ import annotations

import logging
import traceback
from collections.abc import Callable, Mapping
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import func, select

from billing_jobs.models import JobRun, JobRunStatus, JobSource
from billing_jobs.sessions import SessionScopeFactory

JobCounters = dict[str, int | float | bool | str | None]

_ledger_logger = logging.getLogger("billing_jobs.ledger")


class JobRunStateError(RuntimeError):
    """Raised when a run row cannot make the requested transition."""


def _normalize_datetime(value: datetime | None) -> datetime | None:
    if value is None:
        return None

    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)

    return value.astimezone(UTC)


def _format_error_stack(error: BaseException) -> str:
    return "".join(traceback.format_exception(error)).rstrip()


class JobRunLedger:
    """Create runs in RUNNING and move each one exactly once to a terminal state."""

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

    async def start(
        self,
        *,
        job_name: str,
        run_id: str,
        source: JobSource,
        target_date_ar: str | None = None,
        adapter: str | None = None,
        metadata: Mapping[str, Any] | None = None,
        actor_user_id: int | None = None,
    ) -> JobRun:
        job_run = JobRun(
            job_name=job_name,
            run_id=run_id,
            source=source,
            status=JobRunStatus.RUNNING,
            started_at=self._now_factory(),
            target_date_ar=target_date_ar,
            adapter=adapter,
            metadata_json=dict(metadata) if metadata else None,
            created_by=actor_user_id,
        )
        async with self._session_factory() as session:
            session.add(job_run)
            await session.flush()

        _ledger_logger.debug(
            "job_run_started",
            extra={"job_name": job_name, "run_id": run_id, "source": source.value},
        )
        return job_run

    async def finish(
        self,
        job_run: JobRun,
        *,
        status: JobRunStatus,
        counters: Mapping[str, Any],
        metadata: Mapping[str, Any] | None = None,
        error: BaseException | None = None,
        error_message: str | None = None,
    ) -> JobRun:
        """Persist the terminal status, counters and duration of ``job_run``.

        Error details are stored only for FAILED runs. A row that already left
        RUNNING is never modified again.
        """

        if not status.is_terminal:
            raise JobRunStateError("A job run can only finish with a terminal status")

        finished_at = self._now_factory()
        async with self._session_factory() as session:
            stored = await session.get(JobRun, job_run.id)
            if stored is None:
                raise JobRunStateError(f"Job run {job_run.run_id} does not exist")
            if stored.status is not JobRunStatus.RUNNING:
                raise JobRunStateError(
                    f"Job run {job_run.run_id} already finished as {stored.status.value}"
                )

            started_at = _normalize_datetime(stored.started_at) or finished_at
            elapsed = finished_at - started_at
            stored.status = status
            stored.finished_at = finished_at
            stored.duration_ms = max(0, int(elapsed.total_seconds() * 1000))
            stored.counters_json = dict(counters)
            if metadata:
                stored.metadata_json = {**(stored.metadata_json or {}), **metadata}
            if status is JobRunStatus.FAILED and error is not None:
                stored.error_message = error_message or str(error) or type(error).__name__
                stored.error_stack = _format_error_stack(error)
            elif status is JobRunStatus.FAILED:
                stored.error_message = error_message
            await session.flush()

        _ledger_logger.debug(
            "job_run_finished",
            extra={
                "job_name": stored.job_name,
                "run_id": stored.run_id,
                "status": status.value,
                "duration_ms": stored.duration_ms,
            },
        )
        return stored

    async def get(self, run_id: str) -> JobRun | None:
        async with self._session_factory() as session:
            result = await session.execute(select(JobRun).where(JobRun.run_id == run_id))
            return result.scalar_one_or_none()

    async def list_recent(self, *, limit: int = 12) -> list[JobRun]:
        """Return the latest runs, newest first."""

        async with self._session_factory() as session:
            result = await session.execute(
                select(JobRun)
                .order_by(JobRun.started_at.desc(), JobRun.created_at.desc())
                .limit(max(1, limit))
            )
            return list(result.scalars().all())

    async def count_failed_since(self, since: datetime) -> int:
        async with self._session_factory() as session:
            result = await session.execute(
                select(func.count())
                .select_from(JobRun)
                .where(
                    JobRun.status == JobRunStatus.FAILED,
                    JobRun.started_at >= since,
                )
            )
            return int(result.scalar_one())

    async def list_stale_running(self, *, older_than: datetime) -> list[JobRun]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(JobRun)
                .where(
                    JobRun.status == JobRunStatus.RUNNING,
                    JobRun.started_at < older_than,
                )
                .order_by(JobRun.started_at.asc())
            )
            return list(result.scalars().all())

    @staticmethod
    def _default_now() -> datetime:
        return datetime.now(UTC)


__all__ = [
    "JobCounters",
    "JobRunLedger",
    "JobRunStateError",
]
