"""Job run ledger ORM model."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import (
    DateTime,
    Enum as SqlEnum,
    Index,
    Integer,
    JSON,
    String,
    Text,
    Uuid,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column

from billing_jobs.models.base import Base


class JobSource(str, Enum):
    """Origin of a job invocation."""

    CRON = "CRON"
    MANUAL = "MANUAL"
    SYSTEM = "SYSTEM"


class JobRunStatus(str, Enum):
    """Run state machine: RUNNING is the only non-terminal state."""

    RUNNING = "RUNNING"
    SUCCESS = "SUCCESS"
    PARTIAL = "PARTIAL"
    FAILED = "FAILED"
    SKIPPED_LOCKED = "SKIPPED_LOCKED"
    NO_OP = "NO_OP"

    @property
    def is_terminal(self) -> bool:
        return self is not JobRunStatus.RUNNING


class JobRun(Base):
    """Execution record for one job attempt."""

    __tablename__ = "billing_job_runs"
    __table_args__ = (
        Index("ix_billing_job_runs_job_name_started_at", "job_name", "started_at"),
        Index("ix_billing_job_runs_status_started_at", "status", "started_at"),
    )

    id: Mapped[UUID] = mapped_column(
        Uuid(as_uuid=True), primary_key=True, default=uuid4
    )
    job_name: Mapped[str] = mapped_column(String(64), nullable=False)
    run_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    source: Mapped[JobSource] = mapped_column(
        SqlEnum(JobSource, name="billing_job_source"),
        nullable=False,
    )
    status: Mapped[JobRunStatus] = mapped_column(
        SqlEnum(JobRunStatus, name="billing_job_run_status"),
        nullable=False,
    )
    started_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )
    finished_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    duration_ms: Mapped[int | None] = mapped_column(Integer)
    target_date_ar: Mapped[str | None] = mapped_column(String(10))
    adapter: Mapped[str | None] = mapped_column(String(64))
    counters_json: Mapped[dict[str, Any] | None] = mapped_column("counters", JSON)
    error_message: Mapped[str | None] = mapped_column(Text)
    error_stack: Mapped[str | None] = mapped_column(Text)
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column("metadata", JSON)
    created_by: Mapped[int | None] = mapped_column(Integer)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )


__all__ = ["JobRun", "JobRunStatus", "JobSource"]
