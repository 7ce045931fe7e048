"""Tests for the process entry point wiring."""

from __future__ import annotations

import importlib
from collections.abc import Iterator
from pathlib import Path
from types import ModuleType

import pytest

from billing_jobs.config import Settings, get_settings
from billing_jobs.services.collection_operations import (
    CollectionOperationsNotConfiguredError,
    UnconfiguredCollectionOperations,
)


@pytest.fixture
def main_module(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> Iterator[ModuleType]:
    monkeypatch.setenv(
        "DATABASE_URL", f"sqlite+aiosqlite:///{tmp_path / 'billing-jobs.sqlite'}"
    )
    get_settings.cache_clear()
    try:
        yield importlib.import_module("billing_jobs.main")
    finally:
        get_settings.cache_clear()


@pytest.mark.asyncio
async def test_missing_operations_factory_uses_failing_backend(
    main_module: ModuleType,
) -> None:
    operations = main_module.build_collection_operations(Settings())

    assert isinstance(operations, UnconfiguredCollectionOperations)
    with pytest.raises(CollectionOperationsNotConfiguredError, match="BILLING_OPERATIONS_FACTORY"):
        await operations.export_pending_batches(adapter="debug_csv", actor_user_id=None)


def test_operations_factory_reference_is_resolved(main_module: ModuleType) -> None:
    settings = Settings(
        BILLING_OPERATIONS_FACTORY=(
            "billing_jobs.services.collection_operations:UnconfiguredCollectionOperations"
        )
    )

    operations = main_module.build_collection_operations(settings)

    assert isinstance(operations, UnconfiguredCollectionOperations)


def test_malformed_operations_factory_reference_raises(main_module: ModuleType) -> None:
    with pytest.raises(ValueError):
        main_module.build_collection_operations(
            Settings(BILLING_OPERATIONS_FACTORY="not-a-reference")
        )
