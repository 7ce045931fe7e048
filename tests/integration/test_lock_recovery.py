"""Crash recovery of a job whose holder died while holding its lock."""

from __future__ import annotations

import logging
from typing import Any

import pytest

from billing_jobs.config import Settings
from billing_jobs.models import JobRunStatus, JobSource
from billing_jobs.services.collection_operations import (
    ExportPendingResult,
    UnconfiguredCollectionOperations,
)
from billing_jobs.services.job_locks import JobLockManager
from billing_jobs.services.job_run_diagnostics import JobRunDiagnosticsService
from billing_jobs.services.job_runs import JobRunLedger
from billing_jobs.services.runner import BillingJobRunner

LOCK_KEY = "billing:export_batch:debug_csv:2026-03-09"


class ExportOnlyOperations(UnconfiguredCollectionOperations):
    def __init__(self) -> None:
        self.exports = 0

    async def export_pending_batches(self, **_: Any) -> ExportPendingResult:
        self.exports += 1
        return ExportPendingResult(
            no_op=False,
            batches_considered=1,
            batches_exported=1,
            batch_ids=(41,),
        )


@pytest.mark.asyncio
async def test_crashed_holder_is_reported_and_its_lock_is_taken_over(
    scoped_session: Any,
    clock: Any,
    caplog: pytest.LogCaptureFixture,
) -> None:
    locks = JobLockManager(session_factory=scoped_session, now_factory=clock)
    ledger = JobRunLedger(session_factory=scoped_session, now_factory=clock)
    await locks.acquire(LOCK_KEY, ttl_seconds=900, owner_run_id="crashed-run")
    await ledger.start(
        job_name="export_pd_batch",
        run_id="crashed-run",
        source=JobSource.CRON,
        target_date_ar="2026-03-09",
        adapter="debug_csv",
    )

    operations = ExportOnlyOperations()
    runner = BillingJobRunner(
        settings=Settings(),
        operations=operations,
        lock_manager=locks,
        ledger=ledger,
        session_factory=scoped_session,
        now_factory=clock,
    )

    blocked = await runner.export_pd_batch(source=JobSource.MANUAL)
    assert blocked.status is JobRunStatus.SKIPPED_LOCKED
    assert operations.exports == 0

    clock.advance(minutes=16)
    diagnostics = JobRunDiagnosticsService(
        ledger=ledger,
        lock_ttl_seconds=900,
        now_factory=clock,
    )
    with caplog.at_level(logging.WARNING, logger="billing_jobs.diagnostics"):
        stale_runs = await diagnostics.find_stale_runs()

    assert [record.run_id for record in stale_runs] == ["crashed-run"]
    assert "stale_job_runs_detected" in caplog.messages

    recovered = await runner.export_pd_batch(source=JobSource.MANUAL)

    assert recovered.status is JobRunStatus.SUCCESS
    assert operations.exports == 1
    crashed = await ledger.get("crashed-run")
    assert crashed is not None
    assert crashed.status is JobRunStatus.RUNNING
    lock = await locks.get(LOCK_KEY)
    assert lock is not None
    assert lock.owner_run_id == recovered.run_id
    assert lock.released_at is not None
