"""Application settings loaded from environment variables."""

from __future__ import annotations

import calendar
from datetime import UTC, datetime
from functools import lru_cache
from pathlib import Path
from typing import Literal
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import Field, ValidationInfo, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from billing_jobs.services.business_calendar import (
    BUENOS_AIRES_TIME_ZONE,
    parse_holiday_date_keys,
)

FallbackProvider = Literal["CIG_QR", "MP", "OTHER"]

DEFAULT_ANCHOR_DAY = 8
DEFAULT_DUNNING_RETRY_DAYS: tuple[int, ...] = (2, 4)
MIN_LOCK_TTL_SECONDS = 60

_TRUE_VALUES = frozenset({"1", "true", "yes", "on", "si"})
_FALSE_VALUES = frozenset({"0", "false", "no", "off"})
_FALLBACK_PROVIDERS: tuple[FallbackProvider, ...] = ("CIG_QR", "MP", "OTHER")


def parse_boolean(value: object, fallback: bool) -> bool:
    if isinstance(value, bool):
        return value
    raw = str(value if value is not None else "").strip().lower()
    if raw in _TRUE_VALUES:
        return True
    if raw in _FALSE_VALUES:
        return False
    return fallback


def parse_integer(value: object, fallback: int) -> int:
    if isinstance(value, bool):
        return fallback
    if isinstance(value, int):
        return value
    try:
        return int(str(value if value is not None else "").strip())
    except ValueError:
        return fallback


def parse_number(value: object, fallback: float) -> float:
    if isinstance(value, bool):
        return fallback
    if isinstance(value, int | float):
        return float(value)
    try:
        return float(str(value if value is not None else "").strip())
    except ValueError:
        return fallback


def parse_retry_days(raw: str | None) -> tuple[int, ...]:
    """Parse a comma separated offset list into sorted unique positive days."""

    offsets: set[int] = set()
    for item in str(raw or "").split(","):
        try:
            offset = int(item.strip())
        except ValueError:
            continue
        if offset > 0:
            offsets.add(offset)
    return tuple(sorted(offsets))


def parse_cutoff_hour(value: object) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        hour = int(str(value).strip())
    except ValueError:
        return None
    if hour < 0 or hour > 23:
        return None
    return hour


def normalize_fallback_provider(value: object) -> FallbackProvider | None:
    normalized = str(value or "").strip().upper()
    for provider in _FALLBACK_PROVIDERS:
        if provider == normalized:
            return provider
    return None


class Settings(BaseSettings):
    """Runtime configuration sourced from environment variables and .env."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        frozen=True,
    )

    DATABASE_URL: str = "sqlite+aiosqlite:///./data/billing_jobs.db"
    LOG_LEVEL: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    LOG_FORMAT: Literal["json", "text"] = "text"
    LOG_FILE: Path | None = None
    LOG_FILE_MAX_BYTES: int = Field(default=10_485_760, ge=1)
    LOG_FILE_BACKUP_COUNT: int = Field(default=5, ge=1)
    SCHEDULER_ENABLED: bool = True
    SCHEDULER_JOBSTORE_URL: str = "sqlite:///./scheduler-jobs.sqlite"
    BILLING_CRON_MINUTE: str = "*/30"
    BILLING_CRON_HOUR: str = "*"

    BILLING_JOBS_ENABLED: bool = False
    BILLING_JOBS_TZ: str = BUENOS_AIRES_TIME_ZONE
    BILLING_PD_ADAPTER: str = "debug_csv"
    BILLING_BATCH_AUTO_EXPORT: bool = True
    BILLING_BATCH_AUTO_RECONCILE: bool = False
    BILLING_ANCHOR_DAY: int = DEFAULT_ANCHOR_DAY
    BILLING_RUN_ANCHOR_OVERRIDE_FX: bool = False
    BILLING_DUNNING_RETRY_DAYS: str = "2,4"
    BILLING_DUNNING_USE_BUSINESS_DAYS: bool = True
    BILLING_AR_HOLIDAYS_JSON: str = ""
    BILLING_SUSPEND_AFTER_DAYS: int = 7
    BILLING_DEFAULT_VAT_RATE: float = 0.21
    BILLING_DIRECT_DEBIT_DISCOUNT_PCT: float = 10.0
    BILLING_DUNNING_ENABLE_FALLBACK: bool = True
    BILLING_FALLBACK_DEFAULT_PROVIDER: str = "CIG_QR"
    BILLING_FALLBACK_EXPIRES_HOURS: int = 72
    BILLING_FALLBACK_SYNC_BATCH_SIZE: int = 100
    BILLING_FALLBACK_AUTO_SYNC: bool = False
    BILLING_JOB_LOCK_TTL_SECONDS: int = 15 * 60
    BILLING_BATCH_CUTOFF_HOUR_AR: str = ""
    BILLING_COLLECTIONS_ROLLOUT_REQUIRE_AGENCY_FLAG: bool = True
    BILLING_OPERATIONS_FACTORY: str = ""

    @field_validator("LOG_FILE", mode="before")
    @classmethod
    def parse_log_file(cls, value: object) -> object:
        if value in (None, ""):
            return None
        return value

    @field_validator(
        "BILLING_JOBS_ENABLED",
        "BILLING_BATCH_AUTO_EXPORT",
        "BILLING_BATCH_AUTO_RECONCILE",
        "BILLING_RUN_ANCHOR_OVERRIDE_FX",
        "BILLING_DUNNING_USE_BUSINESS_DAYS",
        "BILLING_DUNNING_ENABLE_FALLBACK",
        "BILLING_FALLBACK_AUTO_SYNC",
        "BILLING_COLLECTIONS_ROLLOUT_REQUIRE_AGENCY_FLAG",
        mode="before",
    )
    @classmethod
    def parse_flag(cls, value: object, info: ValidationInfo) -> bool:
        return parse_boolean(value, cls._field_default(info))

    @field_validator("BILLING_JOBS_TZ", mode="before")
    @classmethod
    def parse_timezone(cls, value: object) -> str:
        raw = str(value or "").strip()
        if not raw:
            return BUENOS_AIRES_TIME_ZONE
        try:
            ZoneInfo(raw)
        except (ZoneInfoNotFoundError, ValueError):
            return BUENOS_AIRES_TIME_ZONE
        return raw

    @field_validator("BILLING_PD_ADAPTER", mode="before")
    @classmethod
    def parse_adapter(cls, value: object) -> str:
        return str(value or "").strip().lower() or "debug_csv"

    @field_validator("BILLING_ANCHOR_DAY", mode="before")
    @classmethod
    def parse_anchor_day(cls, value: object) -> int:
        return min(31, max(1, parse_integer(value, DEFAULT_ANCHOR_DAY)))

    @field_validator(
        "BILLING_SUSPEND_AFTER_DAYS",
        "BILLING_FALLBACK_EXPIRES_HOURS",
        "BILLING_FALLBACK_SYNC_BATCH_SIZE",
        mode="before",
    )
    @classmethod
    def parse_positive_integer(cls, value: object, info: ValidationInfo) -> int:
        return max(1, parse_integer(value, cls._field_default(info)))

    @field_validator("BILLING_JOB_LOCK_TTL_SECONDS", mode="before")
    @classmethod
    def parse_lock_ttl(cls, value: object) -> int:
        return max(MIN_LOCK_TTL_SECONDS, parse_integer(value, 15 * 60))

    @field_validator(
        "BILLING_DEFAULT_VAT_RATE",
        "BILLING_DIRECT_DEBIT_DISCOUNT_PCT",
        mode="before",
    )
    @classmethod
    def parse_rate(cls, value: object, info: ValidationInfo) -> float:
        return parse_number(value, cls._field_default(info))

    @field_validator("BILLING_FALLBACK_DEFAULT_PROVIDER", mode="before")
    @classmethod
    def parse_fallback_provider(cls, value: object) -> str:
        return normalize_fallback_provider(value) or "CIG_QR"

    @field_validator(
        "BILLING_DUNNING_RETRY_DAYS",
        "BILLING_AR_HOLIDAYS_JSON",
        "BILLING_BATCH_CUTOFF_HOUR_AR",
        mode="before",
    )
    @classmethod
    def parse_raw_text(cls, value: object) -> str:
        if value is None:
            return ""
        if isinstance(value, list | tuple):
            return ",".join(str(item) for item in value)
        return str(value).strip()

    @classmethod
    def _field_default(cls, info: ValidationInfo) -> object:
        field_name = info.field_name
        if field_name is None:
            return None
        return cls.model_fields[field_name].default

    @property
    def dunning_retry_days(self) -> tuple[int, ...]:
        return parse_retry_days(self.BILLING_DUNNING_RETRY_DAYS) or (
            DEFAULT_DUNNING_RETRY_DAYS
        )

    @property
    def holiday_date_keys(self) -> frozenset[str]:
        return frozenset(parse_holiday_date_keys(self.BILLING_AR_HOLIDAYS_JSON))

    @property
    def batch_cutoff_hour_ar(self) -> int | None:
        return parse_cutoff_hour(self.BILLING_BATCH_CUTOFF_HOUR_AR)

    @property
    def fallback_default_provider(self) -> FallbackProvider:
        return normalize_fallback_provider(
            self.BILLING_FALLBACK_DEFAULT_PROVIDER
        ) or "CIG_QR"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return a cached settings instance."""

    return Settings()


def compute_next_anchor_date(
    now: datetime,
    anchor_day: int | None = None,
    *,
    settings: Settings | None = None,
) -> datetime:
    """Return the start of the next anchor day as a UTC instant.

    When today's local day of month is already past the anchor day the target
    moves to next month. Months shorter than the anchor day clamp to their last
    day.
    """

    configured_day = (
        settings.BILLING_ANCHOR_DAY if settings is not None else DEFAULT_ANCHOR_DAY
    )
    day = min(31, max(1, int(anchor_day if anchor_day is not None else configured_day)))
    zone = ZoneInfo(
        settings.BILLING_JOBS_TZ if settings is not None else BUENOS_AIRES_TIME_ZONE
    )

    aware_now = now if now.tzinfo is not None else now.replace(tzinfo=UTC)
    today = aware_now.astimezone(zone).date()

    year, month = today.year, today.month
    if today.day > day:
        month += 1
        if month > 12:
            month = 1
            year += 1

    target_day = min(day, calendar.monthrange(year, month)[1])
    return datetime(year, month, target_day, tzinfo=zone).astimezone(UTC)


__all__ = [
    "DEFAULT_ANCHOR_DAY",
    "DEFAULT_DUNNING_RETRY_DAYS",
    "FallbackProvider",
    "Settings",
    "compute_next_anchor_date",
    "get_settings",
    "normalize_fallback_provider",
    "parse_boolean",
    "parse_cutoff_hour",
    "parse_integer",
    "parse_retry_days",
]
