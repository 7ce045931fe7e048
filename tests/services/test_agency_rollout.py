"""Tests for per-agency rollout resolution."""

from __future__ import annotations

from collections.abc import Sequence
from pathlib import Path
from typing import Any

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from billing_jobs.models import (
    AgencyBillingSubscription,
    AgencyCollectionsConfig,
    SubscriptionStatus,
)
from billing_jobs.services.agency_registry import (
    SqlRolloutRegistry,
    SqlSubscriptionRegistry,
)
from billing_jobs.services.agency_rollout import (
    AgencyRolloutResolver,
    RolloutRegistryUnavailableError,
    build_default_rollout,
    can_auto_sync_fallback,
    enabled_for_dunning,
    enabled_for_fallback,
    enabled_for_pd_automation,
    resolve_cutoff_hour,
)


class StaticRegistry:
    def __init__(self, rows: Sequence[AgencyCollectionsConfig]) -> None:
        self.rows = list(rows)
        self.requested: list[list[int]] = []

    async def fetch_rows(self, agency_ids: Sequence[int]) -> list[AgencyCollectionsConfig]:
        self.requested.append(list(agency_ids))
        return [row for row in self.rows if row.agency_id in agency_ids]


class BrokenRegistry:
    async def fetch_rows(self, agency_ids: Sequence[int]) -> list[AgencyCollectionsConfig]:
        raise RolloutRegistryUnavailableError("agency rollout table is not available")


@pytest.mark.asyncio
async def test_agencies_without_row_are_disabled_when_flag_is_required() -> None:
    resolver = AgencyRolloutResolver(registry=StaticRegistry([]), require_agency_flag=True)

    rollout = (await resolver.resolve_many([5]))[5]

    assert rollout.has_config is False
    assert enabled_for_pd_automation(rollout) is False
    assert enabled_for_dunning(rollout) is False
    assert enabled_for_fallback(rollout) is False


@pytest.mark.asyncio
async def test_agencies_without_row_are_enabled_when_flag_is_optional() -> None:
    resolver = AgencyRolloutResolver(registry=StaticRegistry([]), require_agency_flag=False)

    rollout = (await resolver.resolve_many([5]))[5]

    assert enabled_for_pd_automation(rollout) is True
    assert enabled_for_fallback(rollout) is True
    assert can_auto_sync_fallback(rollout) is False


@pytest.mark.asyncio
async def test_override_row_wins_and_suspension_disables_everything() -> None:
    registry = StaticRegistry(
        [
            AgencyCollectionsConfig(
                agency_id=1,
                collections_pd_enabled=True,
                collections_dunning_enabled=True,
                collections_fallback_enabled=True,
                collections_fallback_provider="mp",
                collections_fallback_auto_sync_enabled=True,
                collections_suspended=False,
                collections_cutoff_override_hour_ar=14,
            ),
            AgencyCollectionsConfig(
                agency_id=2,
                collections_pd_enabled=True,
                collections_fallback_enabled=True,
                collections_fallback_auto_sync_enabled=True,
                collections_suspended=True,
                collections_cutoff_override_hour_ar=31,
            ),
        ]
    )
    resolver = AgencyRolloutResolver(registry=registry)

    resolved = await resolver.resolve_many([1, 2])

    active, suspended = resolved[1], resolved[2]
    assert active.collections_fallback_provider == "MP"
    assert enabled_for_pd_automation(active) is True
    assert can_auto_sync_fallback(active) is True
    assert resolve_cutoff_hour(active, 15) == 14
    assert enabled_for_pd_automation(suspended) is False
    assert enabled_for_fallback(suspended) is False
    assert can_auto_sync_fallback(suspended) is False
    assert suspended.collections_cutoff_override_hour_ar is None
    assert resolve_cutoff_hour(suspended, 15) == 15


@pytest.mark.asyncio
async def test_missing_or_broken_registry_fails_open(
    caplog: pytest.LogCaptureFixture,
) -> None:
    missing = AgencyRolloutResolver(registry=None, require_agency_flag=True)
    broken = AgencyRolloutResolver(registry=BrokenRegistry(), require_agency_flag=True)

    with caplog.at_level("WARNING", logger="billing_jobs.rollout"):
        from_missing = await missing.resolve_many([3])
        from_broken = await broken.resolve_many([3])

    assert enabled_for_pd_automation(from_missing[3]) is True
    assert enabled_for_pd_automation(from_broken[3]) is True
    assert can_auto_sync_fallback(from_broken[3]) is False
    assert caplog.messages.count("agency_rollout_registry_unavailable") == 2


@pytest.mark.asyncio
async def test_resolver_ignores_invalid_and_duplicate_ids() -> None:
    registry = StaticRegistry([])
    resolver = AgencyRolloutResolver(registry=registry)

    resolved = await resolver.resolve_many([4, 0, -2, True, 4, 9])  # type: ignore[list-item]

    assert list(resolved) == [4, 9]
    assert registry.requested == [[4, 9]]
    assert await resolver.resolve_many([]) == {}


def test_missing_rollout_never_enables_automation() -> None:
    assert enabled_for_pd_automation(None) is False
    assert can_auto_sync_fallback(None) is False
    assert resolve_cutoff_hour(None, None) is None
    assert resolve_cutoff_hour(build_default_rollout(1, require_agency_flag=False), 9) == 9


@pytest.mark.asyncio
async def test_sql_registries_read_subscriptions_and_overrides(scoped_session: Any) -> None:
    async with scoped_session() as session:
        session.add_all(
            [
                AgencyBillingSubscription(agency_id=8, status=SubscriptionStatus.ACTIVE),
                AgencyBillingSubscription(agency_id=3, status=SubscriptionStatus.ACTIVE),
                AgencyBillingSubscription(agency_id=8, status=SubscriptionStatus.ACTIVE),
                AgencyBillingSubscription(agency_id=5, status=SubscriptionStatus.CANCELED),
                AgencyCollectionsConfig(agency_id=3, collections_pd_enabled=True),
            ]
        )

    subscriptions = SqlSubscriptionRegistry(session_factory=scoped_session)
    overrides = SqlRolloutRegistry(session_factory=scoped_session)

    assert await subscriptions.list_active_agency_ids() == [3, 8]
    rows = await overrides.fetch_rows([3, 8])
    assert [row.agency_id for row in rows] == [3]
    assert await overrides.fetch_rows([]) == []


@pytest.mark.asyncio
async def test_sql_rollout_registry_without_table_is_unavailable(tmp_path: Path) -> None:
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'empty.sqlite'}")
    session_factory = async_sessionmaker(bind=engine, class_=AsyncSession)
    registry = SqlRolloutRegistry(session_factory=session_factory)

    try:
        with pytest.raises(RolloutRegistryUnavailableError):
            await registry.fetch_rows([1])

        resolver = AgencyRolloutResolver(registry=registry, require_agency_flag=True)
        resolved = await resolver.resolve_many([1])
        assert enabled_for_pd_automation(resolved[1]) is True
    finally:
        await engine.dispose()
