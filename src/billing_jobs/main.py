"""Process entry point for the billing jobs scheduler."""

from __future__ import annotations

import asyncio
import logging
import signal
from typing import Any, cast

from apscheduler.util import ref_to_obj  # type: ignore[import-untyped]

from billing_jobs.config import Settings, get_settings
from billing_jobs.database import close_database, initialize_database
from billing_jobs.services.collection_operations import (
    CollectionOperations,
    UnconfiguredCollectionOperations,
)
from billing_jobs.services.cron_jobs import (
    register_billing_cron_job,
    set_billing_job_runner,
)
from billing_jobs.services.job_run_diagnostics import JobRunDiagnosticsService
from billing_jobs.services.job_runs import JobRunLedger
from billing_jobs.services.runner import BillingJobRunner
from billing_jobs.services.scheduler import SchedulerService
from billing_jobs.utils.logging import setup_logging

__all__ = ["build_collection_operations", "main", "run_service"]

_lifecycle_logger = logging.getLogger("billing_jobs.lifecycle")


def build_collection_operations(settings: Settings) -> CollectionOperations:
    """Instantiate the operations backend named by ``BILLING_OPERATIONS_FACTORY``.

    The value is a ``"package.module:factory"`` reference to a zero-argument
    callable.
    """

    reference = settings.BILLING_OPERATIONS_FACTORY.strip()
    if not reference:
        _lifecycle_logger.warning("collection_operations_not_configured")
        return UnconfiguredCollectionOperations()

    factory = ref_to_obj(reference)
    return cast(CollectionOperations, factory())


def _install_signal_handlers(
    shutdown_requested: asyncio.Event,
) -> dict[signal.Signals, Any]:
    loop = asyncio.get_running_loop()
    previous_handlers: dict[signal.Signals, Any] = {}

    for handled_signal in (signal.SIGTERM, signal.SIGINT):
        previous_handlers[handled_signal] = signal.getsignal(handled_signal)

        def _signal_handler(signum: int, frame: object | None) -> None:
            if shutdown_requested.is_set():
                return
            _lifecycle_logger.warning(
                "shutdown_signal_received",
                extra={"reason": signal.Signals(signum).name},
            )
            loop.call_soon_threadsafe(shutdown_requested.set)

        signal.signal(handled_signal, _signal_handler)

    return previous_handlers


async def run_service(settings: Settings | None = None) -> None:
    settings = settings or get_settings()
    setup_logging(settings)

    await initialize_database()

    ledger = JobRunLedger()
    diagnostics = JobRunDiagnosticsService(
        ledger=ledger,
        lock_ttl_seconds=settings.BILLING_JOB_LOCK_TTL_SECONDS,
    )
    stale_runs = await diagnostics.find_stale_runs()

    runner = BillingJobRunner(
        settings=settings,
        operations=build_collection_operations(settings),
        ledger=ledger,
    )
    set_billing_job_runner(runner)

    scheduler_service = SchedulerService.from_settings(settings)
    register_billing_cron_job(scheduler_service, settings)
    await scheduler_service.start()

    _lifecycle_logger.info(
        "billing_jobs_started",
        extra={
            "timezone": settings.BILLING_JOBS_TZ,
            "status": "enabled" if settings.BILLING_JOBS_ENABLED else "disabled",
            "stale_runs": len(stale_runs),
        },
    )

    shutdown_requested = asyncio.Event()
    previous_handlers = _install_signal_handlers(shutdown_requested)
    try:
        await shutdown_requested.wait()
    finally:
        await scheduler_service.shutdown()
        set_billing_job_runner(None)
        for handled_signal, previous_handler in previous_handlers.items():
            signal.signal(handled_signal, previous_handler)
        await close_database()
        _lifecycle_logger.info("billing_jobs_stopped")


def main() -> None:
    asyncio.run(run_service())


if __name__ == "__main__":
    main()
