"""Billing job orchestration: locking, ledger bookkeeping and cron sequencing."""

from __future__ import annotations

import hashlib
import logging
from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any
from uuid import uuid4

from billing_jobs.config import (
    FallbackProvider,
    Settings,
    normalize_fallback_provider,
)
from billing_jobs.models import JobRun, JobRunStatus, JobSource
from billing_jobs.services.agency_registry import (
    SqlRolloutRegistry,
    SqlSubscriptionRegistry,
    SubscriptionRegistry,
)
from billing_jobs.services.agency_rollout import (
    AgencyCollectionsRollout,
    AgencyRolloutResolver,
    can_auto_sync_fallback,
    enabled_for_fallback,
    enabled_for_pd_automation,
)
from billing_jobs.services.business_calendar import BusinessCalendar, is_date_key
from billing_jobs.services.collection_operations import CollectionOperations
from billing_jobs.services.job_locks import JobLockManager
from billing_jobs.services.job_runs import JobCounters, JobRunLedger
from billing_jobs.sessions import SessionScopeFactory

_runner_logger = logging.getLogger("billing_jobs.runner")

FAILED_RUNS_WINDOW = timedelta(hours=24)
MAX_REPORTED_ERRORS = 20

RolloutPredicate = Callable[[AgencyCollectionsRollout | None], bool]


class BillingJobName(str, Enum):
    RUN_ANCHOR_DAILY = "run_anchor_daily"
    PREPARE_PD_BATCH = "prepare_pd_batch"
    EXPORT_PD_BATCH = "export_pd_batch"
    RECONCILE_PD_BATCH = "reconcile_pd_batch"
    FALLBACK_CREATE = "fallback_create"
    FALLBACK_STATUS_SYNC = "fallback_status_sync"


@dataclass(slots=True, frozen=True)
class BillingJobResult:
    """What a caller learns about one job invocation."""

    job_name: BillingJobName
    run_id: str
    status: JobRunStatus
    target_date_ar: str | None
    adapter: str | None
    started_at: datetime
    finished_at: datetime
    duration_ms: int
    counters: JobCounters
    lock_key: str | None
    skipped_locked: bool = False
    no_op: bool = False
    error_message: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "job_name": self.job_name.value,
            "run_id": self.run_id,
            "status": self.status.value,
            "target_date_ar": self.target_date_ar,
            "adapter": self.adapter,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat(),
            "duration_ms": self.duration_ms,
            "counters": dict(self.counters),
            "lock_key": self.lock_key,
            "skipped_locked": self.skipped_locked,
            "no_op": self.no_op,
            "error_message": self.error_message,
        }


@dataclass(slots=True, frozen=True)
class BillingCronTickResult:
    enabled: bool
    timezone: str
    target_date_ar: str | None = None
    run_anchor: BillingJobResult | None = None
    prepare_batch: BillingJobResult | None = None
    export_batch: BillingJobResult | None = None
    reconcile_batch: BillingJobResult | None = None
    fallback_create: BillingJobResult | None = None
    fallback_status_sync: BillingJobResult | None = None

    def to_dict(self) -> dict[str, Any]:
        def _dump(result: BillingJobResult | None) -> dict[str, Any] | None:
            return result.to_dict() if result is not None else None

        return {
            "enabled": self.enabled,
            "timezone": self.timezone,
            "target_date_ar": self.target_date_ar,
            "run_anchor": _dump(self.run_anchor),
            "prepare_batch": _dump(self.prepare_batch),
            "export_batch": _dump(self.export_batch),
            "reconcile_batch": _dump(self.reconcile_batch),
            "fallback_create": _dump(self.fallback_create),
            "fallback_status_sync": _dump(self.fallback_status_sync),
        }


@dataclass(slots=True, frozen=True)
class BillingJobsOverview:
    timezone: str
    today_date_ar: str
    jobs_failed_last_24h: int
    recent_runs: tuple[JobRun, ...]

    def to_dict(self) -> dict[str, Any]:
        return {
            "timezone": self.timezone,
            "today_date_ar": self.today_date_ar,
            "jobs_failed_last_24h": self.jobs_failed_last_24h,
            "recent_runs": [serialize_job_run(run) for run in self.recent_runs],
        }


@dataclass(slots=True, frozen=True)
class _JobOutcome:
    status: JobRunStatus
    counters: JobCounters
    metadata: dict[str, Any] | None = None
    no_op: bool = False
    error_message: str | None = None


@dataclass(slots=True, frozen=True)
class _AgencyPartition:
    considered: int
    eligible_agency_ids: tuple[int, ...] = field(default_factory=tuple)

    @property
    def processed(self) -> int:
        return len(self.eligible_agency_ids)

    @property
    def skipped_disabled(self) -> int:
        return self.considered - self.processed

    def to_counters(self) -> JobCounters:
        return {
            "agencies_considered": self.considered,
            "agencies_processed": self.processed,
            "agencies_skipped_disabled": self.skipped_disabled,
        }


def serialize_job_run(run: JobRun) -> dict[str, Any]:
    def _iso(value: datetime | None) -> str | None:
        return value.isoformat() if value is not None else None

    return {
        "job_name": run.job_name,
        "run_id": run.run_id,
        "source": run.source.value,
        "status": run.status.value,
        "started_at": _iso(run.started_at),
        "finished_at": _iso(run.finished_at),
        "duration_ms": run.duration_ms,
        "target_date_ar": run.target_date_ar,
        "adapter": run.adapter,
        "counters": run.counters_json or {},
        "error_message": run.error_message,
        "created_by": run.created_by,
    }


def _derive_status(*, errors: int, processed: int, no_op: bool) -> JobRunStatus:
    if errors > 0:
        return JobRunStatus.PARTIAL if processed > 0 else JobRunStatus.FAILED
    if no_op:
        return JobRunStatus.NO_OP
    return JobRunStatus.SUCCESS


def _join_errors(errors: Sequence[str]) -> str | None:
    return "; ".join(errors[:MAX_REPORTED_ERRORS]) or None


def _positive_id(value: int | None) -> int | None:
    if value is None or value <= 0:
        return None
    return value


class BillingJobRunner:
    """Run the five billing job kinds under a lock with a ledger entry each.

    Every job follows the same template: resolve the target date, apply CRON
    deferrals, acquire the lock, open a RUNNING ledger row, run the domain
    operation, finish the row and release the lock. Contention and deferrals
    are results, not errors.
    """

    def __init__(
        self,
        *,
        settings: Settings,
        operations: CollectionOperations,
        lock_manager: JobLockManager | None = None,
        ledger: JobRunLedger | None = None,
        rollout_resolver: AgencyRolloutResolver | None = None,
        subscriptions: SubscriptionRegistry | None = None,
        calendar: BusinessCalendar | None = None,
        session_factory: SessionScopeFactory | None = None,
        now_factory: Callable[[], datetime] | None = None,
    ) -> None:
        self._settings = settings
        self._operations = operations
        self._now_factory = now_factory or (lambda: datetime.now(UTC))
        self._locks = lock_manager or JobLockManager(
            session_factory=session_factory, now_factory=now_factory
        )
        self._ledger = ledger or JobRunLedger(
            session_factory=session_factory, now_factory=now_factory
        )
        self._subscriptions = subscriptions or SqlSubscriptionRegistry(
            session_factory=session_factory
        )
        self._rollouts = rollout_resolver or AgencyRolloutResolver(
            registry=SqlRolloutRegistry(session_factory=session_factory),
            require_agency_flag=settings.BILLING_COLLECTIONS_ROLLOUT_REQUIRE_AGENCY_FLAG,
        )
        self._calendar = calendar or BusinessCalendar.from_settings(settings)

    @property
    def calendar(self) -> BusinessCalendar:
        return self._calendar

    async def run_anchor_daily(
        self,
        *,
        source: JobSource = JobSource.SYSTEM,
        target_date_ar: str | None = None,
        actor_user_id: int | None = None,
        override_fx: bool = False,
        now: datetime | None = None,
    ) -> BillingJobResult:
        now = now or self._now_factory()
        target = self._resolve_target_date(target_date_ar, now)
        anchor_date = self._calendar.start_of_local_day(target)

        async def execute() -> _JobOutcome:
            partition = await self._partition_agencies(enabled_for_pd_automation)
            if not partition.eligible_agency_ids:
                return _JobOutcome(
                    status=JobRunStatus.NO_OP,
                    no_op=True,
                    counters={
                        "anchor_date": target,
                        "subscriptions_considered": 0,
                        "subscriptions_processed": 0,
                        "cycles_created": 0,
                        "charges_created": 0,
                        "attempts_created": 0,
                        "skipped_idempotent": 0,
                        "errors_count": 0,
                        **partition.to_counters(),
                    },
                )

            summary = await self._operations.anchor_billing_cycles(
                anchor_date=anchor_date,
                agency_ids=list(partition.eligible_agency_ids),
                override_fx=override_fx,
                actor_user_id=actor_user_id,
            )
            status = _derive_status(
                errors=len(summary.errors),
                processed=summary.subscriptions_processed,
                no_op=summary.subscriptions_processed == 0,
            )
            return _JobOutcome(
                status=status,
                no_op=status is JobRunStatus.NO_OP,
                counters={**summary.to_counters(), **partition.to_counters()},
                metadata={
                    "fx_rates_used": list(summary.fx_rates_used),
                    "errors": list(summary.errors),
                },
                error_message=_join_errors(summary.errors),
            )

        return await self._execute(
            job_name=BillingJobName.RUN_ANCHOR_DAILY,
            source=source,
            lock_key=f"billing:run_anchor:{target}",
            target_date_ar=target,
            adapter=None,
            actor_user_id=actor_user_id,
            metadata={"override_fx": override_fx},
            deferral=self._cron_deferral(source=source, target=target, now=now),
            execute=execute,
        )

    async def prepare_pd_batch(
        self,
        *,
        source: JobSource = JobSource.SYSTEM,
        target_date_ar: str | None = None,
        adapter: str | None = None,
        actor_user_id: int | None = None,
        dry_run: bool = False,
        force: bool = False,
        now: datetime | None = None,
    ) -> BillingJobResult:
        now = now or self._now_factory()
        target = self._resolve_target_date(target_date_ar, now)
        adapter_name = self._resolve_adapter(adapter)

        async def execute() -> _JobOutcome:
            prepared = await self._operations.prepare_presentment_batch(
                business_date=self._calendar.start_of_local_day(target),
                adapter=adapter_name,
                dry_run=dry_run,
                force=force,
                global_cutoff_hour_ar=self._settings.batch_cutoff_hour_ar,
                actor_user_id=actor_user_id,
            )
            return _JobOutcome(
                status=JobRunStatus.NO_OP if prepared.no_op else JobRunStatus.SUCCESS,
                no_op=prepared.no_op,
                counters=prepared.to_counters(),
            )

        return await self._execute(
            job_name=BillingJobName.PREPARE_PD_BATCH,
            source=source,
            lock_key=f"billing:prepare_batch:{adapter_name}:{target}",
            target_date_ar=target,
            adapter=adapter_name,
            actor_user_id=actor_user_id,
            metadata={"dry_run": dry_run, "force": force},
            deferral=None
            if force
            else self._cron_deferral(source=source, target=target, now=now),
            execute=execute,
        )

    async def export_pd_batch(
        self,
        *,
        source: JobSource = JobSource.SYSTEM,
        target_date_ar: str | None = None,
        adapter: str | None = None,
        batch_id: int | None = None,
        actor_user_id: int | None = None,
        force: bool = False,
        now: datetime | None = None,
    ) -> BillingJobResult:
        now = now or self._now_factory()
        target = self._resolve_target_date(target_date_ar, now)
        adapter_name = self._resolve_adapter(adapter)
        explicit_batch_id = _positive_id(batch_id)

        async def execute() -> _JobOutcome:
            if explicit_batch_id is not None:
                exported = await self._operations.export_presentment_batch(
                    batch_id=explicit_batch_id,
                    actor_user_id=actor_user_id,
                )
                status = (
                    JobRunStatus.SUCCESS
                    if exported.exported and not exported.already_exported
                    else JobRunStatus.NO_OP
                )
                return _JobOutcome(
                    status=status,
                    no_op=status is JobRunStatus.NO_OP,
                    counters=exported.to_counters(),
                )

            result = await self._operations.export_pending_batches(
                adapter=adapter_name,
                actor_user_id=actor_user_id,
            )
            return _JobOutcome(
                status=_derive_status(
                    errors=len(result.errors),
                    processed=result.batches_exported,
                    no_op=result.no_op,
                ),
                no_op=result.no_op,
                counters=result.to_counters(),
                metadata={"errors": list(result.errors)},
                error_message=_join_errors(result.errors),
            )

        if explicit_batch_id is not None:
            lock_key = f"billing:export_batch:{explicit_batch_id}"
        else:
            lock_key = f"billing:export_batch:{adapter_name}:{target}"

        deferral = None
        if explicit_batch_id is None and not force:
            deferral = self._cron_deferral(
                source=source, target=target, now=now, check_cutoff=True
            )

        return await self._execute(
            job_name=BillingJobName.EXPORT_PD_BATCH,
            source=source,
            lock_key=lock_key,
            target_date_ar=target,
            adapter=adapter_name,
            actor_user_id=actor_user_id,
            metadata={"batch_id": explicit_batch_id, "force": force},
            deferral=deferral,
            execute=execute,
        )

    async def reconcile_pd_batch(
        self,
        *,
        source: JobSource = JobSource.SYSTEM,
        outbound_batch_id: int | None = None,
        file_name: str | None = None,
        file_bytes: bytes | None = None,
        file_content_type: str | None = None,
        actor_user_id: int | None = None,
        now: datetime | None = None,
    ) -> BillingJobResult:
        """Import a bank response file against an exported batch.

        Locks are keyed by batch and by the SHA-256 of the response file.
        """

        now = now or self._now_factory()
        target = self._calendar.date_key(now)
        batch_id = _positive_id(outbound_batch_id)
        file_hash = hashlib.sha256(file_bytes).hexdigest() if file_bytes else None

        async def execute() -> _JobOutcome:
            if batch_id is None or not file_bytes:
                return _JobOutcome(
                    status=JobRunStatus.NO_OP,
                    no_op=True,
                    counters={
                        "no_op": True,
                        "reason": "missing_inbound_file_or_batch",
                    },
                )

            imported = await self._operations.import_response_batch(
                outbound_batch_id=batch_id,
                file_name=file_name or f"respuesta-{batch_id}.csv",
                file_bytes=file_bytes,
                content_type=file_content_type or "text/csv",
                actor_user_id=actor_user_id,
            )
            return _JobOutcome(
                status=(
                    JobRunStatus.NO_OP
                    if imported.already_imported
                    else JobRunStatus.SUCCESS
                ),
                no_op=imported.already_imported,
                counters=imported.to_counters(),
            )

        if batch_id is not None:
            lock_key = f"billing:reconcile:{batch_id}:{file_hash or 'nofile'}"
        else:
            lock_key = f"billing:reconcile:{target}:nofile"

        return await self._execute(
            job_name=BillingJobName.RECONCILE_PD_BATCH,
            source=source,
            lock_key=lock_key,
            target_date_ar=target,
            adapter=None,
            actor_user_id=actor_user_id,
            metadata={"outbound_batch_id": batch_id, "file_sha256": file_hash},
            deferral=self._cron_deferral(source=source, target=target, now=now),
            execute=execute,
        )

    async def fallback_create(
        self,
        *,
        source: JobSource = JobSource.SYSTEM,
        target_date_ar: str | None = None,
        provider: str | None = None,
        charge_id: int | None = None,
        actor_user_id: int | None = None,
        dry_run: bool = False,
        now: datetime | None = None,
    ) -> BillingJobResult:
        now = now or self._now_factory()
        target = self._resolve_target_date(target_date_ar, now)
        provider_name = self._resolve_provider(provider)
        explicit_charge_id = _positive_id(charge_id)

        async def execute() -> _JobOutcome:
            if not self._settings.BILLING_DUNNING_ENABLE_FALLBACK:
                return self._fallback_disabled_outcome()

            partition = await self._partition_agencies(enabled_for_fallback)
            if not partition.eligible_agency_ids:
                return self._no_eligible_agencies_outcome(partition)

            created = await self._operations.create_fallback_intents(
                provider=provider_name,
                agency_ids=list(partition.eligible_agency_ids),
                charge_id=explicit_charge_id,
                dry_run=dry_run,
                actor_user_id=actor_user_id,
            )
            return _JobOutcome(
                status=JobRunStatus.NO_OP if created.no_op else JobRunStatus.SUCCESS,
                no_op=created.no_op,
                counters={**created.to_counters(), **partition.to_counters()},
            )

        if explicit_charge_id is not None:
            lock_key = f"billing:fallback_create:charge:{explicit_charge_id}"
        else:
            lock_key = f"billing:fallback_create:{provider_name}:{target}"

        return await self._execute(
            job_name=BillingJobName.FALLBACK_CREATE,
            source=source,
            lock_key=lock_key,
            target_date_ar=target,
            adapter=provider_name,
            actor_user_id=actor_user_id,
            metadata={"dry_run": dry_run, "charge_id": explicit_charge_id},
            deferral=self._cron_deferral(source=source, target=target, now=now),
            execute=execute,
        )

    async def fallback_status_sync(
        self,
        *,
        source: JobSource = JobSource.SYSTEM,
        target_date_ar: str | None = None,
        provider: str | None = None,
        fallback_intent_id: int | None = None,
        limit: int | None = None,
        actor_user_id: int | None = None,
        now: datetime | None = None,
    ) -> BillingJobResult:
        now = now or self._now_factory()
        target = self._resolve_target_date(target_date_ar, now)
        provider_name = self._resolve_provider(provider)
        explicit_intent_id = _positive_id(fallback_intent_id)
        from_cron = source is JobSource.CRON
        batch_size = limit if limit and limit > 0 else (
            self._settings.BILLING_FALLBACK_SYNC_BATCH_SIZE
        )

        async def execute() -> _JobOutcome:
            if not self._settings.BILLING_DUNNING_ENABLE_FALLBACK:
                return self._fallback_disabled_outcome()

            partition = await self._partition_agencies(
                can_auto_sync_fallback if from_cron else enabled_for_fallback
            )
            if not partition.eligible_agency_ids:
                return self._no_eligible_agencies_outcome(partition)

            synced = await self._operations.sync_fallback_statuses(
                provider=provider_name,
                agency_ids=list(partition.eligible_agency_ids),
                fallback_intent_id=explicit_intent_id,
                limit=batch_size,
                only_auto_sync_enabled=from_cron,
                actor_user_id=actor_user_id,
            )
            return _JobOutcome(
                status=JobRunStatus.NO_OP if synced.no_op else JobRunStatus.SUCCESS,
                no_op=synced.no_op,
                counters={**synced.to_counters(), **partition.to_counters()},
            )

        if explicit_intent_id is not None:
            lock_key = f"billing:fallback_sync:intent:{explicit_intent_id}"
        else:
            lock_key = f"billing:fallback_sync:{provider_name}:{target}"

        return await self._execute(
            job_name=BillingJobName.FALLBACK_STATUS_SYNC,
            source=source,
            lock_key=lock_key,
            target_date_ar=target,
            adapter=provider_name,
            actor_user_id=actor_user_id,
            metadata={"fallback_intent_id": explicit_intent_id, "limit": batch_size},
            deferral=self._cron_deferral(source=source, target=target, now=now),
            execute=execute,
        )

    async def run_cron_tick(self, *, now: datetime | None = None) -> BillingCronTickResult:
        """Run every enabled job for the current operational date.

        A tick never raises: a job that blows up before its ledger row exists
        is reported as a FAILED result.
        """

        settings = self._settings
        if not settings.BILLING_JOBS_ENABLED:
            _runner_logger.debug("billing_cron_tick_disabled")
            return BillingCronTickResult(enabled=False, timezone=settings.BILLING_JOBS_TZ)

        now = now or self._now_factory()
        date_key = self._calendar.date_key(now)
        source = JobSource.CRON

        run_anchor = await self._run_cron_step(
            BillingJobName.RUN_ANCHOR_DAILY,
            date_key,
            lambda: self.run_anchor_daily(
                source=source,
                target_date_ar=date_key,
                override_fx=settings.BILLING_RUN_ANCHOR_OVERRIDE_FX,
                now=now,
            ),
        )
        prepare_batch = await self._run_cron_step(
            BillingJobName.PREPARE_PD_BATCH,
            date_key,
            lambda: self.prepare_pd_batch(
                source=source,
                target_date_ar=date_key,
                adapter=settings.BILLING_PD_ADAPTER,
                now=now,
            ),
        )

        export_batch = None
        if settings.BILLING_BATCH_AUTO_EXPORT:
            export_batch = await self._run_cron_step(
                BillingJobName.EXPORT_PD_BATCH,
                date_key,
                lambda: self.export_pd_batch(
                    source=source,
                    target_date_ar=date_key,
                    adapter=settings.BILLING_PD_ADAPTER,
                    now=now,
                ),
            )

        reconcile_batch = None
        if settings.BILLING_BATCH_AUTO_RECONCILE:
            reconcile_batch = await self._run_cron_step(
                BillingJobName.RECONCILE_PD_BATCH,
                date_key,
                lambda: self.reconcile_pd_batch(source=source, now=now),
            )

        fallback_create = None
        fallback_status_sync = None
        if settings.BILLING_DUNNING_ENABLE_FALLBACK:
            fallback_create = await self._run_cron_step(
                BillingJobName.FALLBACK_CREATE,
                date_key,
                lambda: self.fallback_create(
                    source=source,
                    target_date_ar=date_key,
                    provider=settings.fallback_default_provider,
                    now=now,
                ),
            )
            if settings.BILLING_FALLBACK_AUTO_SYNC:
                fallback_status_sync = await self._run_cron_step(
                    BillingJobName.FALLBACK_STATUS_SYNC,
                    date_key,
                    lambda: self.fallback_status_sync(
                        source=source,
                        target_date_ar=date_key,
                        provider=settings.fallback_default_provider,
                        now=now,
                    ),
                )

        return BillingCronTickResult(
            enabled=True,
            timezone=settings.BILLING_JOBS_TZ,
            target_date_ar=date_key,
            run_anchor=run_anchor,
            prepare_batch=prepare_batch,
            export_batch=export_batch,
            reconcile_batch=reconcile_batch,
            fallback_create=fallback_create,
            fallback_status_sync=fallback_status_sync,
        )

    async def list_recent_runs(self, *, limit: int = 12) -> list[JobRun]:
        return await self._ledger.list_recent(limit=limit)

    async def overview(
        self, *, now: datetime | None = None, runs_limit: int = 12
    ) -> BillingJobsOverview:
        now = now or self._now_factory()
        failed = await self._ledger.count_failed_since(now - FAILED_RUNS_WINDOW)
        recent = await self._ledger.list_recent(limit=runs_limit)
        return BillingJobsOverview(
            timezone=self._calendar.timezone,
            today_date_ar=self._calendar.date_key(now),
            jobs_failed_last_24h=failed,
            recent_runs=tuple(recent),
        )

    async def _execute(
        self,
        *,
        job_name: BillingJobName,
        source: JobSource,
        lock_key: str,
        target_date_ar: str,
        adapter: str | None,
        actor_user_id: int | None,
        metadata: Mapping[str, Any],
        deferral: JobCounters | None,
        execute: Callable[[], Awaitable[_JobOutcome]],
    ) -> BillingJobResult:
        run_id = uuid4().hex
        started_at = self._now_factory()
        log_context = {
            "job_name": job_name.value,
            "run_id": run_id,
            "source": source.value,
            "lock_key": lock_key,
            "target_date_ar": target_date_ar,
            "adapter": adapter,
        }

        def build_result(
            status: JobRunStatus,
            counters: JobCounters,
            *,
            skipped_locked: bool = False,
            no_op: bool = False,
            error_message: str | None = None,
        ) -> BillingJobResult:
            finished_at = self._now_factory()
            return BillingJobResult(
                job_name=job_name,
                run_id=run_id,
                status=status,
                target_date_ar=target_date_ar,
                adapter=adapter,
                started_at=started_at,
                finished_at=finished_at,
                duration_ms=max(
                    0, int((finished_at - started_at).total_seconds() * 1000)
                ),
                counters=counters,
                lock_key=lock_key,
                skipped_locked=skipped_locked,
                no_op=no_op or status is JobRunStatus.NO_OP,
                error_message=error_message,
            )

        if deferral is not None:
            _runner_logger.info(
                "billing_job_deferred",
                extra={**log_context, "reason": deferral.get("reason")},
            )
            return build_result(JobRunStatus.NO_OP, deferral, no_op=True)

        acquisition = await self._locks.acquire(
            lock_key,
            ttl_seconds=self._settings.BILLING_JOB_LOCK_TTL_SECONDS,
            owner_run_id=run_id,
            metadata={
                "job_name": job_name.value,
                "source": source.value,
                "target_date_ar": target_date_ar,
                "adapter": adapter,
            },
        )
        if not acquisition.acquired:
            _runner_logger.info("billing_job_skipped_locked", extra=log_context)
            return build_result(
                JobRunStatus.SKIPPED_LOCKED,
                {"skipped_locked": 1},
                skipped_locked=True,
                no_op=True,
            )

        try:
            job_run = await self._ledger.start(
                job_name=job_name.value,
                run_id=run_id,
                source=source,
                target_date_ar=target_date_ar,
                adapter=adapter,
                metadata={**metadata, "lock_key": lock_key},
                actor_user_id=actor_user_id,
            )
            _runner_logger.info(
                "billing_job_started",
                extra={**log_context, "lock_stolen": acquisition.stolen},
            )

            try:
                outcome = await execute()
            except Exception as error:
                counters: JobCounters = {"errors_count": 1}
                finished = await self._ledger.finish(
                    job_run,
                    status=JobRunStatus.FAILED,
                    counters=counters,
                    metadata={"lock_key": lock_key},
                    error=error,
                )
                _runner_logger.exception("billing_job_failed", extra=log_context)
                return build_result(
                    JobRunStatus.FAILED,
                    counters,
                    error_message=finished.error_message,
                )

            await self._ledger.finish(
                job_run,
                status=outcome.status,
                counters=outcome.counters,
                metadata={**(outcome.metadata or {}), "lock_key": lock_key},
                error_message=outcome.error_message,
            )
            _runner_logger.info(
                "billing_job_finished",
                extra={
                    **log_context,
                    "status": outcome.status.value,
                    "counters": outcome.counters,
                },
            )
            return build_result(
                outcome.status,
                outcome.counters,
                no_op=outcome.no_op,
                error_message=outcome.error_message,
            )
        finally:
            await self._locks.release(lock_key, owner_run_id=run_id)

    async def _run_cron_step(
        self,
        job_name: BillingJobName,
        date_key: str,
        step: Callable[[], Awaitable[BillingJobResult]],
    ) -> BillingJobResult:
        try:
            return await step()
        except Exception as error:
            _runner_logger.exception(
                "billing_cron_step_failed",
                extra={"job_name": job_name.value, "target_date_ar": date_key},
            )
            now = self._now_factory()
            return BillingJobResult(
                job_name=job_name,
                run_id=uuid4().hex,
                status=JobRunStatus.FAILED,
                target_date_ar=date_key,
                adapter=None,
                started_at=now,
                finished_at=now,
                duration_ms=0,
                counters={"errors_count": 1},
                lock_key=None,
                error_message=str(error) or type(error).__name__,
            )

    def _cron_deferral(
        self,
        *,
        source: JobSource,
        target: str,
        now: datetime,
        check_cutoff: bool = False,
    ) -> JobCounters | None:
        if source is not JobSource.CRON:
            return None

        if not self._calendar.is_business_day(target):
            return {
                "no_op": True,
                "reason": "non_business_day",
                "skipped_non_business_day": 1,
                "deferred_by_cutoff": 0,
            }

        if check_cutoff and self._has_passed_cutoff(target, now):
            return {
                "no_op": True,
                "reason": "deferred_to_next_window",
                "deferred_by_cutoff": 1,
                "skipped_non_business_day": 0,
            }
        return None

    def _has_passed_cutoff(self, target: str, now: datetime) -> bool:
        cutoff_hour = self._settings.batch_cutoff_hour_ar
        if cutoff_hour is None:
            return False
        if self._calendar.date_key(now) != target:
            return False
        return self._calendar.local_hour(now) >= cutoff_hour

    async def _partition_agencies(self, predicate: RolloutPredicate) -> _AgencyPartition:
        agency_ids = list(
            dict.fromkeys(
                agency_id
                for agency_id in await self._subscriptions.list_active_agency_ids()
                if agency_id > 0
            )
        )
        rollouts = await self._rollouts.resolve_many(agency_ids)
        eligible = tuple(
            agency_id for agency_id in agency_ids if predicate(rollouts.get(agency_id))
        )
        return _AgencyPartition(considered=len(agency_ids), eligible_agency_ids=eligible)

    def _resolve_target_date(self, target_date_ar: str | None, now: datetime) -> str:
        explicit = str(target_date_ar or "").strip()
        if is_date_key(explicit):
            return explicit
        if explicit:
            _runner_logger.warning(
                "billing_job_target_date_invalid",
                extra={"target_date_ar": explicit, "reason": "invalid_date_key"},
            )
        return self._calendar.date_key(now)

    def _resolve_adapter(self, adapter: str | None) -> str:
        return (
            str(adapter or "").strip().lower() or self._settings.BILLING_PD_ADAPTER
        )

    def _resolve_provider(self, provider: str | None) -> FallbackProvider:
        return (
            normalize_fallback_provider(provider)
            or self._settings.fallback_default_provider
        )

    @staticmethod
    def _fallback_disabled_outcome() -> _JobOutcome:
        return _JobOutcome(
            status=JobRunStatus.NO_OP,
            no_op=True,
            counters={"no_op": True, "reason": "fallback_disabled"},
        )

    @staticmethod
    def _no_eligible_agencies_outcome(partition: _AgencyPartition) -> _JobOutcome:
        return _JobOutcome(
            status=JobRunStatus.NO_OP,
            no_op=True,
            counters={
                "no_op": True,
                "reason": "no_eligible_agencies",
                **partition.to_counters(),
            },
        )


__all__ = [
    "BillingCronTickResult",
    "BillingJobName",
    "BillingJobResult",
    "BillingJobRunner",
    "BillingJobsOverview",
    "serialize_job_run",
]
