"""SQL-backed registries for active agencies and their rollout overrides."""

from __future__ import annotations

from collections.abc import Sequence
from typing import Protocol

from sqlalchemy import select
from sqlalchemy.exc import OperationalError, ProgrammingError

from billing_jobs.models import (
    AgencyBillingSubscription,
    AgencyCollectionsConfig,
    SubscriptionStatus,
)
from billing_jobs.services.agency_rollout import RolloutRegistryUnavailableError
from billing_jobs.sessions import SessionScopeFactory


class SubscriptionRegistry(Protocol):
    async def list_active_agency_ids(self) -> list[int]:
        """Return ids of agencies with an active billing subscription."""
        ...


class _SqlRegistry:
    def __init__(self, *, session_factory: SessionScopeFactory | None = None) -> None:
        if session_factory is None:
            from billing_jobs.database import session_scope

            session_factory = session_scope

        self._session_factory = session_factory


class SqlSubscriptionRegistry(_SqlRegistry):
    async def list_active_agency_ids(self) -> list[int]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(AgencyBillingSubscription.agency_id)
                .where(AgencyBillingSubscription.status == SubscriptionStatus.ACTIVE)
                .distinct()
                .order_by(AgencyBillingSubscription.agency_id)
            )
            return [int(agency_id) for agency_id in result.scalars().all()]


class SqlRolloutRegistry(_SqlRegistry):
    """Read override rows; a missing table surfaces as an unavailable registry."""

    async def fetch_rows(
        self, agency_ids: Sequence[int]
    ) -> Sequence[AgencyCollectionsConfig]:
        if not agency_ids:
            return []
        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    select(AgencyCollectionsConfig).where(
                        AgencyCollectionsConfig.agency_id.in_(list(agency_ids))
                    )
                )
                return list(result.scalars().all())
        except (OperationalError, ProgrammingError) as error:
            raise RolloutRegistryUnavailableError(
                "agency rollout table is not available"
            ) from error


__all__ = [
    "SqlRolloutRegistry",
    "SqlSubscriptionRegistry",
    "SubscriptionRegistry",
]
