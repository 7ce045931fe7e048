"""Per-agency collections rollout overrides."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, DateTime, Integer, String, Text, false, func
from sqlalchemy.orm import Mapped, mapped_column

from billing_jobs.models.base import Base


class AgencyCollectionsConfig(Base):
    """Operator managed automation flags for one agency."""

    __tablename__ = "agency_collections_configs"

    agency_id: Mapped[int] = mapped_column(
        Integer, primary_key=True, autoincrement=False
    )
    collections_pd_enabled: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default=false()
    )
    collections_dunning_enabled: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default=false()
    )
    collections_fallback_enabled: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default=false()
    )
    collections_fallback_provider: Mapped[str | None] = mapped_column(String(16))
    collections_fallback_auto_sync_enabled: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default=false()
    )
    collections_suspended: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default=false()
    )
    collections_cutoff_override_hour_ar: Mapped[int | None] = mapped_column(Integer)
    collections_notes: Mapped[str | None] = mapped_column(Text)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )


__all__ = ["AgencyCollectionsConfig"]
