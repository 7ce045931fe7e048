"""Agency billing subscription registry model."""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from sqlalchemy import DateTime, Enum as SqlEnum, Index, Integer, func
from sqlalchemy.orm import Mapped, mapped_column

from billing_jobs.models.base import Base


class SubscriptionStatus(str, Enum):
    """Lifecycle state of an agency subscription."""

    ACTIVE = "ACTIVE"
    PAUSED = "PAUSED"
    CANCELED = "CANCELED"


class AgencyBillingSubscription(Base):
    """Subscription row used to enumerate agencies with active billing."""

    __tablename__ = "agency_billing_subscriptions"
    __table_args__ = (
        Index("ix_agency_billing_subscriptions_status", "status"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    agency_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    status: Mapped[SubscriptionStatus] = mapped_column(
        SqlEnum(SubscriptionStatus, name="subscription_status"),
        nullable=False,
        default=SubscriptionStatus.ACTIVE,
    )
    anchor_day: Mapped[int | None] = mapped_column(Integer)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )


__all__ = ["AgencyBillingSubscription", "SubscriptionStatus"]
