"""Contract for the domain operations the job runner drives.

Each operation is idempotent on its own: re-running it for a scope that was
already processed reports ``skipped_idempotent`` (or ``already_exported``,
``already_imported``) instead of repeating side effects. The runner trusts
those results and only turns them into ledger counters.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol

from billing_jobs.config import FallbackProvider
from billing_jobs.services.job_runs import JobCounters

MAX_REPORTED_REASONS = 20


@dataclass(slots=True, frozen=True)
class AnchorSummary:
    anchor_date: str
    subscriptions_total: int = 0
    subscriptions_processed: int = 0
    cycles_created: int = 0
    charges_created: int = 0
    attempts_created: int = 0
    skipped_idempotent: int = 0
    errors: tuple[str, ...] = ()
    fx_rates_used: tuple[dict[str, Any], ...] = ()

    def to_counters(self) -> JobCounters:
        return {
            "anchor_date": self.anchor_date,
            "subscriptions_considered": self.subscriptions_total,
            "subscriptions_processed": self.subscriptions_processed,
            "cycles_created": self.cycles_created,
            "charges_created": self.charges_created,
            "attempts_created": self.attempts_created,
            "skipped_idempotent": self.skipped_idempotent,
            "errors_count": len(self.errors),
        }


@dataclass(slots=True, frozen=True)
class PrepareBatchResult:
    no_op: bool
    adapter: str
    dry_run: bool = False
    batch_id: int | None = None
    attempts_count: int = 0
    amount_total: float = 0.0
    eligible_attempts: int = 0
    deferred_by_cutoff: int = 0
    skipped_idempotent: int = 0
    agencies_considered: int = 0
    agencies_processed: int = 0
    agencies_skipped_disabled: int = 0

    def to_counters(self) -> JobCounters:
        return {
            "no_op": self.no_op,
            "dry_run": self.dry_run,
            "batch_id": self.batch_id,
            "adapter": self.adapter,
            "attempts_count": self.attempts_count,
            "amount_total": self.amount_total,
            "eligible_attempts": self.eligible_attempts,
            "deferred_by_cutoff": self.deferred_by_cutoff,
            "skipped_idempotent": self.skipped_idempotent,
            "agencies_considered": self.agencies_considered,
            "agencies_processed": self.agencies_processed,
            "agencies_skipped_disabled": self.agencies_skipped_disabled,
        }


@dataclass(slots=True, frozen=True)
class ExportPendingResult:
    no_op: bool
    batches_considered: int = 0
    batches_exported: int = 0
    already_exported: int = 0
    batch_ids: tuple[int, ...] = ()
    errors: tuple[str, ...] = ()

    def to_counters(self) -> JobCounters:
        return {
            "batches_considered": self.batches_considered,
            "batches_exported": self.batches_exported,
            "already_exported": self.already_exported,
            "no_op": self.no_op,
            "errors_count": len(self.errors),
            "batch_ids": ",".join(str(batch_id) for batch_id in self.batch_ids),
        }


@dataclass(slots=True, frozen=True)
class ExportBatchResult:
    batch_id: int
    exported: bool
    already_exported: bool = False
    status: str | None = None
    amount_total: float = 0.0
    record_count: int = 0

    def to_counters(self) -> JobCounters:
        return {
            "batch_id": self.batch_id,
            "exported": self.exported,
            "already_exported": self.already_exported,
            "status": self.status,
            "amount_total": self.amount_total,
            "record_count": self.record_count,
        }


@dataclass(slots=True, frozen=True)
class FallbackCreateResult:
    no_op: bool
    considered: int = 0
    created: int = 0
    skipped_idempotent: int = 0
    ids: tuple[int, ...] = ()
    reasons: tuple[str, ...] = field(default_factory=tuple)

    def to_counters(self) -> JobCounters:
        reasons = ";".join(self.reasons[:MAX_REPORTED_REASONS])
        return {
            "considered": self.considered,
            "created": self.created,
            "skipped_idempotent": self.skipped_idempotent,
            "no_op": self.no_op,
            "ids": ",".join(str(item) for item in self.ids),
            "reasons": reasons or None,
        }


@dataclass(slots=True, frozen=True)
class FallbackSyncResult:
    no_op: bool
    considered: int = 0
    paid: int = 0
    pending: int = 0
    expired: int = 0
    failed: int = 0
    ids: tuple[int, ...] = ()

    def to_counters(self) -> JobCounters:
        return {
            "considered": self.considered,
            "paid": self.paid,
            "pending": self.pending,
            "expired": self.expired,
            "failed": self.failed,
            "no_op": self.no_op,
            "ids": ",".join(str(item) for item in self.ids),
        }


@dataclass(slots=True, frozen=True)
class ResponseImportResult:
    outbound_batch_id: int
    inbound_batch_id: int | None = None
    already_imported: bool = False
    matched_rows: int = 0
    paid: int = 0
    rejected: int = 0
    error_rows: int = 0
    fiscal_issued: int = 0
    fiscal_failed: int = 0

    def to_counters(self) -> JobCounters:
        return {
            "outbound_batch_id": self.outbound_batch_id,
            "inbound_batch_id": self.inbound_batch_id,
            "already_imported": self.already_imported,
            "matched_rows": self.matched_rows,
            "paid": self.paid,
            "rejected": self.rejected,
            "error_rows": self.error_rows,
            "fiscal_issued": self.fiscal_issued,
            "fiscal_failed": self.fiscal_failed,
        }


class CollectionOperations(Protocol):
    """Domain side of every billing job."""

    async def anchor_billing_cycles(
        self,
        *,
        anchor_date: datetime,
        agency_ids: Sequence[int] | None,
        override_fx: bool,
        actor_user_id: int | None,
    ) -> AnchorSummary: ...

    async def prepare_presentment_batch(
        self,
        *,
        business_date: datetime,
        adapter: str,
        dry_run: bool,
        force: bool,
        global_cutoff_hour_ar: int | None,
        actor_user_id: int | None,
    ) -> PrepareBatchResult: ...

    async def export_pending_batches(
        self,
        *,
        adapter: str,
        actor_user_id: int | None,
    ) -> ExportPendingResult: ...

    async def export_presentment_batch(
        self,
        *,
        batch_id: int,
        actor_user_id: int | None,
    ) -> ExportBatchResult: ...

    async def import_response_batch(
        self,
        *,
        outbound_batch_id: int,
        file_name: str,
        file_bytes: bytes,
        content_type: str,
        actor_user_id: int | None,
    ) -> ResponseImportResult: ...

    async def create_fallback_intents(
        self,
        *,
        provider: FallbackProvider,
        agency_ids: Sequence[int] | None,
        charge_id: int | None,
        dry_run: bool,
        actor_user_id: int | None,
    ) -> FallbackCreateResult: ...

    async def sync_fallback_statuses(
        self,
        *,
        provider: FallbackProvider,
        agency_ids: Sequence[int] | None,
        fallback_intent_id: int | None,
        limit: int,
        only_auto_sync_enabled: bool,
        actor_user_id: int | None,
    ) -> FallbackSyncResult: ...


class CollectionOperationsNotConfiguredError(RuntimeError):
    """Raised when a job runs without a configured operations backend."""


class UnconfiguredCollectionOperations:
    """Placeholder backend that fails every job with a clear message."""

    def _fail(self, operation: str) -> CollectionOperationsNotConfiguredError:
        return CollectionOperationsNotConfiguredError(
            f"{operation} requires BILLING_OPERATIONS_FACTORY to be configured"
        )

    async def anchor_billing_cycles(self, **_: Any) -> AnchorSummary:
        raise self._fail("anchor_billing_cycles")

    async def prepare_presentment_batch(self, **_: Any) -> PrepareBatchResult:
        raise self._fail("prepare_presentment_batch")

    async def export_pending_batches(self, **_: Any) -> ExportPendingResult:
        raise self._fail("export_pending_batches")

    async def export_presentment_batch(self, **_: Any) -> ExportBatchResult:
        raise self._fail("export_presentment_batch")

    async def import_response_batch(self, **_: Any) -> ResponseImportResult:
        raise self._fail("import_response_batch")

    async def create_fallback_intents(self, **_: Any) -> FallbackCreateResult:
        raise self._fail("create_fallback_intents")

    async def sync_fallback_statuses(self, **_: Any) -> FallbackSyncResult:
        raise self._fail("sync_fallback_statuses")


__all__ = [
    "AnchorSummary",
    "CollectionOperations",
    "CollectionOperationsNotConfiguredError",
    "ExportBatchResult",
    "ExportPendingResult",
    "FallbackCreateResult",
    "FallbackSyncResult",
    "PrepareBatchResult",
    "ResponseImportResult",
    "UnconfiguredCollectionOperations",
]
