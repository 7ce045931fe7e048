"""Tests for lenient settings parsing and anchor date computation."""

from __future__ import annotations

from datetime import UTC, datetime

import pytest
from pydantic import ValidationError

from billing_jobs.config import Settings, compute_next_anchor_date, get_settings


def test_defaults_match_documented_values() -> None:
    settings = Settings()

    assert settings.BILLING_JOBS_ENABLED is False
    assert settings.BILLING_JOBS_TZ == "America/Argentina/Buenos_Aires"
    assert settings.BILLING_PD_ADAPTER == "debug_csv"
    assert settings.BILLING_BATCH_AUTO_EXPORT is True
    assert settings.BILLING_BATCH_AUTO_RECONCILE is False
    assert settings.BILLING_ANCHOR_DAY == 8
    assert settings.dunning_retry_days == (2, 4)
    assert settings.BILLING_JOB_LOCK_TTL_SECONDS == 900
    assert settings.batch_cutoff_hour_ar is None
    assert settings.fallback_default_provider == "CIG_QR"
    assert settings.BILLING_FALLBACK_SYNC_BATCH_SIZE == 100
    assert settings.BILLING_COLLECTIONS_ROLLOUT_REQUIRE_AGENCY_FLAG is True


def test_flags_accept_spanish_and_fall_back_on_garbage() -> None:
    settings = Settings(
        BILLING_JOBS_ENABLED="si",
        BILLING_BATCH_AUTO_EXPORT="maybe",
        BILLING_BATCH_AUTO_RECONCILE="si",
        BILLING_FALLBACK_AUTO_SYNC=" ON ",
        BILLING_COLLECTIONS_ROLLOUT_REQUIRE_AGENCY_FLAG="0",
    )

    assert settings.BILLING_JOBS_ENABLED is True
    assert settings.BILLING_BATCH_AUTO_EXPORT is True
    assert settings.BILLING_BATCH_AUTO_RECONCILE is True
    assert settings.BILLING_FALLBACK_AUTO_SYNC is True
    assert settings.BILLING_COLLECTIONS_ROLLOUT_REQUIRE_AGENCY_FLAG is False


def test_numeric_settings_are_clamped_or_defaulted() -> None:
    settings = Settings(
        BILLING_ANCHOR_DAY="45",
        BILLING_JOB_LOCK_TTL_SECONDS="5",
        BILLING_FALLBACK_SYNC_BATCH_SIZE="-3",
        BILLING_SUSPEND_AFTER_DAYS="soon",
        BILLING_DEFAULT_VAT_RATE="n/a",
    )

    assert settings.BILLING_ANCHOR_DAY == 31
    assert settings.BILLING_JOB_LOCK_TTL_SECONDS == 60
    assert settings.BILLING_FALLBACK_SYNC_BATCH_SIZE == 1
    assert settings.BILLING_SUSPEND_AFTER_DAYS == 7
    assert settings.BILLING_DEFAULT_VAT_RATE == pytest.approx(0.21)
    assert Settings(BILLING_ANCHOR_DAY="abc").BILLING_ANCHOR_DAY == 8
    assert Settings(BILLING_ANCHOR_DAY=0).BILLING_ANCHOR_DAY == 1


def test_text_settings_are_normalized() -> None:
    settings = Settings(
        BILLING_JOBS_TZ="Mars/Olympus_Mons",
        BILLING_PD_ADAPTER=" SFTP_Bank ",
        BILLING_FALLBACK_DEFAULT_PROVIDER="mp",
        BILLING_DUNNING_RETRY_DAYS="4, 2, x, -1, 2",
        BILLING_AR_HOLIDAYS_JSON='["2026-03-24", "bogus"]',
        BILLING_BATCH_CUTOFF_HOUR_AR=" 15 ",
    )

    assert settings.BILLING_JOBS_TZ == "America/Argentina/Buenos_Aires"
    assert settings.BILLING_PD_ADAPTER == "sftp_bank"
    assert settings.fallback_default_provider == "MP"
    assert settings.dunning_retry_days == (2, 4)
    assert settings.holiday_date_keys == frozenset({"2026-03-24"})
    assert settings.batch_cutoff_hour_ar == 15


@pytest.mark.parametrize("raw", ["", "24", "-1", "noon"])
def test_invalid_cutoff_hour_disables_cutoff(raw: str) -> None:
    assert Settings(BILLING_BATCH_CUTOFF_HOUR_AR=raw).batch_cutoff_hour_ar is None


def test_unknown_provider_and_empty_retry_days_use_defaults() -> None:
    settings = Settings(
        BILLING_FALLBACK_DEFAULT_PROVIDER="paypal",
        BILLING_DUNNING_RETRY_DAYS="0, -2",
    )

    assert settings.fallback_default_provider == "CIG_QR"
    assert settings.dunning_retry_days == (2, 4)


def test_settings_read_environment_and_are_frozen(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("BILLING_JOBS_ENABLED", "yes")
    monkeypatch.setenv("BILLING_PD_ADAPTER", "Galicia")
    get_settings.cache_clear()
    try:
        settings = get_settings()
        assert settings.BILLING_JOBS_ENABLED is True
        assert settings.BILLING_PD_ADAPTER == "galicia"
        assert get_settings() is settings
        with pytest.raises(ValidationError):
            settings.BILLING_JOBS_ENABLED = False
    finally:
        get_settings.cache_clear()


def test_next_anchor_moves_to_next_month_once_day_has_passed() -> None:
    now = datetime(2026, 3, 9, 13, 0, tzinfo=UTC)

    assert compute_next_anchor_date(now, 8) == datetime(2026, 4, 8, 3, 0, tzinfo=UTC)
    assert compute_next_anchor_date(now, 9) == datetime(2026, 3, 9, 3, 0, tzinfo=UTC)


def test_next_anchor_clamps_to_short_months_and_rolls_the_year() -> None:
    assert compute_next_anchor_date(
        datetime(2026, 2, 10, 12, 0, tzinfo=UTC), 31
    ) == datetime(2026, 2, 28, 3, 0, tzinfo=UTC)
    assert compute_next_anchor_date(
        datetime(2026, 12, 20, 12, 0, tzinfo=UTC), 8
    ) == datetime(2027, 1, 8, 3, 0, tzinfo=UTC)


def test_next_anchor_uses_local_day_and_settings() -> None:
    # 01:00 UTC on the 9th is still the 8th in Buenos Aires.
    now = datetime(2026, 3, 9, 1, 0, tzinfo=UTC)
    settings = Settings(BILLING_ANCHOR_DAY=8)

    assert compute_next_anchor_date(now, settings=settings) == datetime(
        2026, 3, 8, 3, 0, tzinfo=UTC
    )
    assert compute_next_anchor_date(now, 0) == datetime(2026, 4, 1, 3, 0, tzinfo=UTC)
