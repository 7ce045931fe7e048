"""Per-agency collections automation flags with safe defaults."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from typing import Protocol

from billing_jobs.config import FallbackProvider, normalize_fallback_provider

_rollout_logger = logging.getLogger("billing_jobs.rollout")


class RolloutRegistryUnavailableError(RuntimeError):
    """Raised when the rollout override store cannot be queried at all."""


class RolloutRow(Protocol):
    agency_id: int
    collections_pd_enabled: bool | None
    collections_dunning_enabled: bool | None
    collections_fallback_enabled: bool | None
    collections_fallback_provider: str | None
    collections_fallback_auto_sync_enabled: bool | None
    collections_suspended: bool | None
    collections_cutoff_override_hour_ar: int | None
    collections_notes: str | None


class RolloutRegistry(Protocol):
    async def fetch_rows(self, agency_ids: Sequence[int]) -> Sequence[RolloutRow]:
        """Return override rows for the given agencies."""
        ...


@dataclass(slots=True, frozen=True)
class AgencyCollectionsRollout:
    """Effective automation flags for one agency."""

    agency_id: int
    has_config: bool
    collections_pd_enabled: bool
    collections_dunning_enabled: bool
    collections_fallback_enabled: bool
    collections_fallback_provider: FallbackProvider | None
    collections_fallback_auto_sync_enabled: bool
    collections_suspended: bool
    collections_cutoff_override_hour_ar: int | None
    collections_notes: str | None


def _valid_hour(value: int | None) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        hour = int(value)
    except (TypeError, ValueError):
        return None
    if hour < 0 or hour > 23:
        return None
    return hour


def build_default_rollout(
    agency_id: int, *, require_agency_flag: bool
) -> AgencyCollectionsRollout:
    """Rollout for an agency without an override row.

    Fail-closed fleets disable everything until an operator opts the agency in.
    Auto-sync of fallback intents is always opt-in.
    """

    enabled_by_default = not require_agency_flag
    return AgencyCollectionsRollout(
        agency_id=agency_id,
        has_config=False,
        collections_pd_enabled=enabled_by_default,
        collections_dunning_enabled=enabled_by_default,
        collections_fallback_enabled=enabled_by_default,
        collections_fallback_provider=None,
        collections_fallback_auto_sync_enabled=False,
        collections_suspended=False,
        collections_cutoff_override_hour_ar=None,
        collections_notes=None,
    )


def rollout_from_row(row: RolloutRow) -> AgencyCollectionsRollout:
    return AgencyCollectionsRollout(
        agency_id=row.agency_id,
        has_config=True,
        collections_pd_enabled=bool(row.collections_pd_enabled),
        collections_dunning_enabled=bool(row.collections_dunning_enabled),
        collections_fallback_enabled=bool(row.collections_fallback_enabled),
        collections_fallback_provider=normalize_fallback_provider(
            row.collections_fallback_provider
        ),
        collections_fallback_auto_sync_enabled=bool(
            row.collections_fallback_auto_sync_enabled
        ),
        collections_suspended=bool(row.collections_suspended),
        collections_cutoff_override_hour_ar=_valid_hour(
            row.collections_cutoff_override_hour_ar
        ),
        collections_notes=row.collections_notes or None,
    )


class AgencyRolloutResolver:
    """Resolve rollout flags for a batch of agencies on every call."""

    def __init__(
        self,
        *,
        registry: RolloutRegistry | None,
        require_agency_flag: bool = True,
    ) -> None:
        self._registry = registry
        self._require_agency_flag = require_agency_flag

    @property
    def require_agency_flag(self) -> bool:
        return self._require_agency_flag

    async def resolve_many(
        self, agency_ids: Iterable[int]
    ) -> dict[int, AgencyCollectionsRollout]:
        unique_ids = list(
            dict.fromkeys(
                agency_id
                for agency_id in agency_ids
                if isinstance(agency_id, int)
                and not isinstance(agency_id, bool)
                and agency_id > 0
            )
        )
        if not unique_ids:
            return {}

        if self._registry is None:
            return self._fail_open(unique_ids, reason="registry_missing")

        try:
            rows = await self._registry.fetch_rows(unique_ids)
        except RolloutRegistryUnavailableError as error:
            return self._fail_open(unique_ids, reason=str(error) or "unavailable")

        resolved = {
            agency_id: build_default_rollout(
                agency_id, require_agency_flag=self._require_agency_flag
            )
            for agency_id in unique_ids
        }
        for row in rows:
            if row.agency_id in resolved:
                resolved[row.agency_id] = rollout_from_row(row)
        return resolved

    def _fail_open(
        self, agency_ids: Sequence[int], *, reason: str
    ) -> dict[int, AgencyCollectionsRollout]:
        _rollout_logger.warning(
            "agency_rollout_registry_unavailable",
            extra={"agency_count": len(agency_ids), "reason": reason},
        )
        return {
            agency_id: build_default_rollout(agency_id, require_agency_flag=False)
            for agency_id in agency_ids
        }


def enabled_for_pd_automation(rollout: AgencyCollectionsRollout | None) -> bool:
    if rollout is None:
        return False
    return not rollout.collections_suspended and rollout.collections_pd_enabled


def enabled_for_dunning(rollout: AgencyCollectionsRollout | None) -> bool:
    if rollout is None:
        return False
    return not rollout.collections_suspended and rollout.collections_dunning_enabled


def enabled_for_fallback(rollout: AgencyCollectionsRollout | None) -> bool:
    if rollout is None:
        return False
    return not rollout.collections_suspended and rollout.collections_fallback_enabled


def can_auto_sync_fallback(rollout: AgencyCollectionsRollout | None) -> bool:
    return (
        enabled_for_fallback(rollout)
        and rollout is not None
        and rollout.collections_fallback_auto_sync_enabled
    )


def resolve_cutoff_hour(
    rollout: AgencyCollectionsRollout | None,
    global_cutoff: int | None,
) -> int | None:
    """Per-agency override wins, then the global cutoff, otherwise no cutoff."""

    if rollout is not None:
        override = _valid_hour(rollout.collections_cutoff_override_hour_ar)
        if override is not None:
            return override
    return _valid_hour(global_cutoff)


__all__ = [
    "AgencyCollectionsRollout",
    "AgencyRolloutResolver",
    "RolloutRegistry",
    "RolloutRegistryUnavailableError",
    "RolloutRow",
    "build_default_rollout",
    "can_auto_sync_fallback",
    "enabled_for_dunning",
    "enabled_for_fallback",
    "enabled_for_pd_automation",
    "resolve_cutoff_hour",
    "rollout_from_row",
]
