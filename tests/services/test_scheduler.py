"""Tests for scheduler service lifecycle and billing cron registration."""

from __future__ import annotations

from pathlib import Path

import pytest

from billing_jobs.config import Settings
from billing_jobs.services import cron_jobs
from billing_jobs.services.cron_jobs import (
    BILLING_CRON_TICK_JOB_ID,
    register_billing_cron_job,
    run_scheduled_billing_cron_tick,
    set_billing_job_runner,
)
from billing_jobs.services.scheduler import SchedulerService


async def _noop_job() -> None:
    return None


def _scheduler(tmp_path: Path, *, enabled: bool = True) -> SchedulerService:
    return SchedulerService(
        enabled=enabled,
        jobstore_url=f"sqlite:///{tmp_path / 'scheduler-jobs.sqlite'}",
        timezone="America/Argentina/Buenos_Aires",
    )


@pytest.mark.asyncio
async def test_scheduler_service_registers_cron_jobs(tmp_path: Path) -> None:
    scheduler = _scheduler(tmp_path)

    scheduler.add_cron_job(job_id="cron-job", func=_noop_job, minute="*/5")

    await scheduler.start()
    try:
        assert scheduler.running is True
        jobs = scheduler.list_jobs()
        assert [job.job_id for job in jobs] == ["cron-job"]
        assert "cron" in jobs[0].trigger.lower()
        assert jobs[0].next_run_time is not None

        scheduler.remove_job("cron-job")
        assert scheduler.list_jobs() == []
        with pytest.raises(LookupError):
            scheduler.remove_job("cron-job")
    finally:
        await scheduler.shutdown()


@pytest.mark.asyncio
async def test_scheduler_service_rejects_operations_when_disabled(
    tmp_path: Path,
) -> None:
    scheduler = _scheduler(tmp_path, enabled=False)

    await scheduler.start()

    assert scheduler.running is False
    with pytest.raises(RuntimeError, match="disabled"):
        scheduler.list_jobs()
    with pytest.raises(RuntimeError, match="disabled"):
        scheduler.add_cron_job(job_id="cron-job", func=_noop_job)


@pytest.mark.asyncio
async def test_register_billing_cron_job_uses_configured_schedule(
    tmp_path: Path,
) -> None:
    settings = Settings(BILLING_CRON_MINUTE="15", BILLING_CRON_HOUR="6-20")
    scheduler = _scheduler(tmp_path)

    register_billing_cron_job(scheduler, settings)

    await scheduler.start()
    try:
        jobs = scheduler.list_jobs()
        assert [job.job_id for job in jobs] == [BILLING_CRON_TICK_JOB_ID]
        assert jobs[0].name == "Billing cron tick"
        assert "minute='15'" in jobs[0].trigger
        assert "hour='6-20'" in jobs[0].trigger
    finally:
        await scheduler.shutdown()


def test_register_billing_cron_job_is_skipped_when_scheduler_disabled(
    tmp_path: Path,
) -> None:
    scheduler = _scheduler(tmp_path, enabled=False)

    register_billing_cron_job(scheduler, Settings())

    assert scheduler.enabled is False


@pytest.mark.asyncio
async def test_scheduled_tick_requires_runner() -> None:
    set_billing_job_runner(None)

    with pytest.raises(RuntimeError, match="not initialized"):
        await run_scheduled_billing_cron_tick()


@pytest.mark.asyncio
async def test_scheduled_tick_delegates_to_runner(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    from billing_jobs.services.runner import BillingCronTickResult

    class StubRunner:
        def __init__(self) -> None:
            self.ticks = 0

        async def run_cron_tick(self) -> BillingCronTickResult:
            self.ticks += 1
            return BillingCronTickResult(
                enabled=True,
                timezone="America/Argentina/Buenos_Aires",
                target_date_ar="2026-03-09",
            )

    runner = StubRunner()
    monkeypatch.setattr(cron_jobs, "_billing_job_runner", runner)

    tick = await run_scheduled_billing_cron_tick()

    assert runner.ticks == 1
    assert tick.target_date_ar == "2026-03-09"
