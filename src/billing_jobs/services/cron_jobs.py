"""Scheduled entry points for the billing cron tick."""

from __future__ import annotations

import logging

from billing_jobs.config import Settings
from billing_jobs.services.runner import BillingCronTickResult, BillingJobRunner
from billing_jobs.services.scheduler import SchedulerService

BILLING_CRON_TICK_JOB_ID = "billing-cron-tick"

_job_logger = logging.getLogger("billing_jobs.scheduler.jobs")

_billing_job_runner: BillingJobRunner | None = None


def set_billing_job_runner(runner: BillingJobRunner | None) -> None:
    global _billing_job_runner
    _billing_job_runner = runner


def _require_billing_job_runner() -> BillingJobRunner:
    if _billing_job_runner is None:
        raise RuntimeError("Billing job runner is not initialized")

    return _billing_job_runner


async def run_scheduled_billing_cron_tick() -> BillingCronTickResult:
    tick = await _require_billing_job_runner().run_cron_tick()
    if not tick.enabled:
        return tick

    statuses = {
        name: result.status.value
        for name, result in (
            ("run_anchor", tick.run_anchor),
            ("prepare_batch", tick.prepare_batch),
            ("export_batch", tick.export_batch),
            ("reconcile_batch", tick.reconcile_batch),
            ("fallback_create", tick.fallback_create),
            ("fallback_status_sync", tick.fallback_status_sync),
        )
        if result is not None
    }
    _job_logger.info(
        "billing_cron_tick_completed",
        extra={"target_date_ar": tick.target_date_ar, "statuses": statuses},
    )
    return tick


def register_billing_cron_job(scheduler: SchedulerService, settings: Settings) -> None:
    if not scheduler.enabled:
        return

    scheduler.add_cron_job(
        job_id=BILLING_CRON_TICK_JOB_ID,
        func=run_scheduled_billing_cron_tick,
        minute=settings.BILLING_CRON_MINUTE,
        hour=settings.BILLING_CRON_HOUR,
        name="Billing cron tick",
    )


__all__ = [
    "BILLING_CRON_TICK_JOB_ID",
    "register_billing_cron_job",
    "run_scheduled_billing_cron_tick",
    "set_billing_job_runner",
]
