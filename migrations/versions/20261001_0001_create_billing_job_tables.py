"""create billing job lock and run tables

Revision ID: 20261001_0001
Revises:
Create Date: 2026-10-01 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

revision: str = "20261001_0001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "billing_job_locks",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("lock_key", sa.String(length=255), nullable=False),
        sa.Column("acquired_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("owner_run_id", sa.String(length=64), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=True),
        sa.Column("released_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("lock_key"),
    )
    op.create_index(
        "ix_billing_job_locks_expires_at",
        "billing_job_locks",
        ["expires_at"],
        unique=False,
    )

    op.create_table(
        "billing_job_runs",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("job_name", sa.String(length=64), nullable=False),
        sa.Column("run_id", sa.String(length=64), nullable=False),
        sa.Column(
            "source",
            sa.Enum("CRON", "MANUAL", "SYSTEM", name="billing_job_source"),
            nullable=False,
        ),
        sa.Column(
            "status",
            sa.Enum(
                "RUNNING",
                "SUCCESS",
                "PARTIAL",
                "FAILED",
                "SKIPPED_LOCKED",
                "NO_OP",
                name="billing_job_run_status",
            ),
            nullable=False,
        ),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("duration_ms", sa.Integer(), nullable=True),
        sa.Column("target_date_ar", sa.String(length=10), nullable=True),
        sa.Column("adapter", sa.String(length=64), nullable=True),
        sa.Column("counters", sa.JSON(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("error_stack", sa.Text(), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=True),
        sa.Column("created_by", sa.Integer(), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("run_id"),
    )
    op.create_index(
        "ix_billing_job_runs_job_name_started_at",
        "billing_job_runs",
        ["job_name", "started_at"],
        unique=False,
    )
    op.create_index(
        "ix_billing_job_runs_status_started_at",
        "billing_job_runs",
        ["status", "started_at"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("ix_billing_job_runs_status_started_at", table_name="billing_job_runs")
    op.drop_index(
        "ix_billing_job_runs_job_name_started_at", table_name="billing_job_runs"
    )
    op.drop_table("billing_job_runs")
    op.drop_index("ix_billing_job_locks_expires_at", table_name="billing_job_locks")
    op.drop_table("billing_job_locks")
