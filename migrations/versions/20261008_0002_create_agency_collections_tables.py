"""create agency subscription and collections rollout tables

Revision ID: 20261008_0002
Revises: 20261001_0001
Create Date: 2026-10-08 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

revision: str = "20261008_0002"
down_revision: Union[str, None] = "20261001_0001"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "agency_billing_subscriptions",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("agency_id", sa.Integer(), nullable=False),
        sa.Column(
            "status",
            sa.Enum("ACTIVE", "PAUSED", "CANCELED", name="subscription_status"),
            nullable=False,
        ),
        sa.Column("anchor_day", sa.Integer(), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_agency_billing_subscriptions_agency_id",
        "agency_billing_subscriptions",
        ["agency_id"],
        unique=False,
    )
    op.create_index(
        "ix_agency_billing_subscriptions_status",
        "agency_billing_subscriptions",
        ["status"],
        unique=False,
    )

    op.create_table(
        "agency_collections_configs",
        sa.Column("agency_id", sa.Integer(), autoincrement=False, nullable=False),
        sa.Column(
            "collections_pd_enabled",
            sa.Boolean(),
            server_default=sa.false(),
            nullable=False,
        ),
        sa.Column(
            "collections_dunning_enabled",
            sa.Boolean(),
            server_default=sa.false(),
            nullable=False,
        ),
        sa.Column(
            "collections_fallback_enabled",
            sa.Boolean(),
            server_default=sa.false(),
            nullable=False,
        ),
        sa.Column("collections_fallback_provider", sa.String(length=16), nullable=True),
        sa.Column(
            "collections_fallback_auto_sync_enabled",
            sa.Boolean(),
            server_default=sa.false(),
            nullable=False,
        ),
        sa.Column(
            "collections_suspended",
            sa.Boolean(),
            server_default=sa.false(),
            nullable=False,
        ),
        sa.Column("collections_cutoff_override_hour_ar", sa.Integer(), nullable=True),
        sa.Column("collections_notes", sa.Text(), nullable=True),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.PrimaryKeyConstraint("agency_id"),
    )


def downgrade() -> None:
    op.drop_table("agency_collections_configs")
    op.drop_index(
        "ix_agency_billing_subscriptions_status",
        table_name="agency_billing_subscriptions",
    )
    op.drop_index(
        "ix_agency_billing_subscriptions_agency_id",
        table_name="agency_billing_subscriptions",
    )
    op.drop_table("agency_billing_subscriptions")
