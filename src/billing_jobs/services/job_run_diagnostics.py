"""Detection of job runs stuck in RUNNING past their lock lease."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from billing_jobs.services.job_runs import JobRunLedger

_diagnostics_logger = logging.getLogger("billing_jobs.diagnostics")


@dataclass(slots=True, frozen=True)
class StaleRunRecord:
    run_id: str
    job_name: str
    started_at: datetime
    target_date_ar: str | None
    adapter: str | None


class JobRunDiagnosticsService:
    """Report RUNNING rows whose lease has lapsed.

    A row older than the lock TTL belongs to a holder that crashed or hung.
    The row is reported and left untouched; a later attempt steals the lock
    and records its own run.
    """

    def __init__(
        self,
        *,
        ledger: JobRunLedger,
        lock_ttl_seconds: int,
        now_factory: Callable[[], datetime] | None = None,
    ) -> None:
        self._ledger = ledger
        self._lock_ttl = timedelta(seconds=lock_ttl_seconds)
        self._now_factory = now_factory or (lambda: datetime.now(UTC))

    async def find_stale_runs(self) -> tuple[StaleRunRecord, ...]:
        cutoff = self._now_factory() - self._lock_ttl
        stale_runs = tuple(
            StaleRunRecord(
                run_id=run.run_id,
                job_name=run.job_name,
                started_at=run.started_at,
                target_date_ar=run.target_date_ar,
                adapter=run.adapter,
            )
            for run in await self._ledger.list_stale_running(older_than=cutoff)
        )
        if stale_runs:
            _diagnostics_logger.warning(
                "stale_job_runs_detected",
                extra={
                    "stale_runs": [
                        {"run_id": record.run_id, "job_name": record.job_name}
                        for record in stale_runs
                    ],
                },
            )
        return stale_runs


__all__ = ["JobRunDiagnosticsService", "StaleRunRecord"]
