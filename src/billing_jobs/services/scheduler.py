"""APScheduler wrapper that owns the billing cron schedule."""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime
from typing import cast

from apscheduler.events import EVENT_JOB_ERROR  # type: ignore[import-untyped]
from apscheduler.events import EVENT_JOB_EXECUTED
from apscheduler.events import EVENT_JOB_MISSED
from apscheduler.events import JobEvent
from apscheduler.events import JobExecutionEvent
from apscheduler.job import Job  # type: ignore[import-untyped]
from apscheduler.jobstores.sqlalchemy import SQLAlchemyJobStore  # type: ignore[import-untyped]
from apscheduler.schedulers.asyncio import AsyncIOScheduler  # type: ignore[import-untyped]
from apscheduler.triggers.cron import CronTrigger  # type: ignore[import-untyped]

from billing_jobs.config import Settings

JobCallable = Callable[[], Awaitable[None] | None]

_scheduler_logger = logging.getLogger("billing_jobs.scheduler")


@dataclass(slots=True, frozen=True)
class SchedulerJobState:
    job_id: str
    name: str | None
    trigger: str
    next_run_time: datetime | None


class SchedulerService:
    """Start, stop and register cron jobs; log every execution outcome."""

    def __init__(
        self,
        *,
        enabled: bool,
        jobstore_url: str,
        timezone: str,
        scheduler: AsyncIOScheduler | None = None,
    ) -> None:
        self._enabled = enabled
        self._timezone = timezone
        self._scheduler = scheduler or AsyncIOScheduler(
            jobstores={"default": SQLAlchemyJobStore(url=jobstore_url)},
            job_defaults={"coalesce": True, "max_instances": 1},
            timezone=timezone,
        )
        self._scheduler.add_listener(
            self._handle_job_event,
            EVENT_JOB_EXECUTED | EVENT_JOB_ERROR | EVENT_JOB_MISSED,
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> SchedulerService:
        return cls(
            enabled=settings.SCHEDULER_ENABLED,
            jobstore_url=settings.SCHEDULER_JOBSTORE_URL,
            timezone=settings.BILLING_JOBS_TZ,
        )

    @property
    def enabled(self) -> bool:
        return self._enabled

    @property
    def running(self) -> bool:
        if not self._enabled:
            return False
        return cast(bool, self._scheduler.running)

    async def start(self) -> None:
        if not self._enabled:
            _scheduler_logger.info("scheduler_disabled")
            return

        if self._scheduler.running:
            return

        self._scheduler.start()
        _scheduler_logger.info("scheduler_started", extra={"timezone": self._timezone})

    async def shutdown(self) -> None:
        if not self._enabled or not self._scheduler.running:
            return

        self._scheduler.shutdown(wait=False)
        _scheduler_logger.info("scheduler_shutdown")

    def add_cron_job(
        self,
        *,
        job_id: str,
        func: JobCallable | str,
        minute: str = "*",
        hour: str = "*",
        day_of_week: str = "*",
        name: str | None = None,
        replace_existing: bool = True,
    ) -> Job:
        """Register ``func`` on a cron schedule evaluated in the billing timezone.

        Persistent job stores need ``func`` as an importable reference, so a
        ``"module:function"`` string is accepted as well as a callable.
        """

        self._ensure_enabled()
        trigger = CronTrigger(
            minute=minute,
            hour=hour,
            day_of_week=day_of_week,
            timezone=self._timezone,
        )
        return self._scheduler.add_job(
            func=func,
            trigger=trigger,
            id=job_id,
            name=name,
            replace_existing=replace_existing,
        )

    def remove_job(self, job_id: str) -> None:
        self._ensure_enabled()
        if self._scheduler.get_job(job_id) is None:
            raise LookupError(f"Scheduler job '{job_id}' not found")
        self._scheduler.remove_job(job_id)

    def list_jobs(self) -> list[SchedulerJobState]:
        self._ensure_enabled()
        return [self._job_to_state(job) for job in self._scheduler.get_jobs()]

    def _ensure_enabled(self) -> None:
        if self._enabled:
            return
        raise RuntimeError("Scheduler is disabled")

    @staticmethod
    def _job_to_state(job: Job) -> SchedulerJobState:
        return SchedulerJobState(
            job_id=job.id,
            name=job.name,
            trigger=str(job.trigger),
            next_run_time=getattr(job, "next_run_time", None),
        )

    @staticmethod
    def _handle_job_event(event: JobEvent) -> None:
        if event.code == EVENT_JOB_MISSED:
            _scheduler_logger.warning(
                "scheduler_job_missed",
                extra={
                    "job_id": event.job_id,
                    "scheduled_run_time": event.scheduled_run_time.isoformat(),
                },
            )
            return

        if not isinstance(event, JobExecutionEvent):
            return

        if event.exception is None:
            _scheduler_logger.info(
                "scheduler_job_succeeded",
                extra={"job_id": event.job_id},
            )
            return

        _scheduler_logger.error(
            "scheduler_job_failed",
            extra={
                "job_id": event.job_id,
                "exception": str(event.exception),
                "traceback": event.traceback,
            },
        )


__all__ = ["SchedulerJobState", "SchedulerService"]
