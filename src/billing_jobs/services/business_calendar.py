"""Business-day arithmetic for a single fixed operating timezone."""

from __future__ import annotations

import json
import re
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import UTC, date, datetime, timedelta
from typing import TYPE_CHECKING
from zoneinfo import ZoneInfo

if TYPE_CHECKING:
    from billing_jobs.config import Settings

BUENOS_AIRES_TIME_ZONE = "America/Argentina/Buenos_Aires"
NEXT_BUSINESS_DAY_SEARCH_LIMIT = 370

_DATE_KEY_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}$")

DateInput = date | datetime | str


class CalendarResolutionError(ValueError):
    """Raised when a date cannot be resolved against the business calendar."""


def is_date_key(value: str) -> bool:
    if not _DATE_KEY_PATTERN.match(value):
        return False
    try:
        date.fromisoformat(value)
    except ValueError:
        return False
    return True


def parse_holiday_date_keys(raw: str | None) -> list[str]:
    """Parse a JSON array or comma separated list of ``YYYY-MM-DD`` keys.

    Entries that are not valid date keys are dropped.
    """

    trimmed = str(raw or "").strip()
    if not trimmed:
        return []

    candidates: Iterable[object]
    try:
        parsed = json.loads(trimmed)
    except ValueError:
        parsed = None

    if isinstance(parsed, list):
        candidates = parsed
    else:
        candidates = trimmed.split(",")

    return [
        key
        for key in (str(item if item is not None else "").strip() for item in candidates)
        if is_date_key(key)
    ]


@dataclass(slots=True, frozen=True)
class OperationalDate:
    """Requested target date and the business date it resolves to."""

    target_date_ar: str
    business_date_ar: str
    business_day: bool
    deferred_to_next_business_day: bool


@dataclass(slots=True, frozen=True)
class BusinessCalendar:
    """Weekend and holiday aware calendar evaluated in one timezone."""

    timezone: str = BUENOS_AIRES_TIME_ZONE
    holidays: frozenset[str] = field(default_factory=frozenset)

    @classmethod
    def from_settings(cls, settings: Settings) -> BusinessCalendar:
        return cls(
            timezone=settings.BILLING_JOBS_TZ,
            holidays=settings.holiday_date_keys,
        )

    @property
    def zone(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)

    def date_key(self, value: DateInput) -> str:
        """Return the local ``YYYY-MM-DD`` key for a date, instant or key."""

        return self._local_date(value).isoformat()

    def is_business_day(self, value: DateInput) -> bool:
        local_date = self._local_date(value)
        if local_date.weekday() >= 5:
            return False
        return local_date.isoformat() not in self.holidays

    def next_business_day(self, value: DateInput) -> str:
        """Return the first business day on or after ``value`` as a date key."""

        current = self._local_date(value)
        for _ in range(NEXT_BUSINESS_DAY_SEARCH_LIMIT):
            if self.is_business_day(current):
                return current.isoformat()
            current += timedelta(days=1)

        raise CalendarResolutionError(
            f"No business day found within {NEXT_BUSINESS_DAY_SEARCH_LIMIT} days "
            f"of {self._local_date(value).isoformat()}"
        )

    def add_business_days(self, value: DateInput, days: int) -> datetime:
        """Advance ``days`` business days and return the local midnight."""

        current = self._local_date(value)
        remaining = max(0, int(days))
        while remaining > 0:
            current += timedelta(days=1)
            if self.is_business_day(current):
                remaining -= 1

        return self.start_of_local_day(current)

    def local_hour(self, instant: datetime) -> int:
        return self._as_aware(instant).astimezone(self.zone).hour

    def start_of_local_day(self, value: DateInput) -> datetime:
        local_date = self._local_date(value)
        return datetime(
            local_date.year, local_date.month, local_date.day, tzinfo=self.zone
        )

    def resolve_operational_date(
        self,
        *,
        target_date_ar: str | None = None,
        now: datetime | None = None,
        allow_non_business_day: bool = False,
    ) -> OperationalDate:
        """Resolve the business date a run should operate on."""

        if target_date_ar and is_date_key(target_date_ar):
            target = target_date_ar
        else:
            target = self.date_key(now or datetime.now(UTC))

        business_day = self.is_business_day(target)
        if business_day or allow_non_business_day:
            return OperationalDate(
                target_date_ar=target,
                business_date_ar=target,
                business_day=business_day,
                deferred_to_next_business_day=False,
            )

        return OperationalDate(
            target_date_ar=target,
            business_date_ar=self.next_business_day(target),
            business_day=False,
            deferred_to_next_business_day=True,
        )

    def retry_schedule(
        self,
        anchor: DateInput,
        offsets: Sequence[int],
        *,
        use_business_days: bool = True,
    ) -> list[datetime]:
        """Return the local midnight of each dunning retry offset from ``anchor``."""

        scheduled: list[datetime] = []
        for offset in offsets:
            if use_business_days and offset > 0:
                scheduled.append(self.add_business_days(anchor, offset))
                continue
            local_date = self._local_date(anchor) + timedelta(days=offset)
            scheduled.append(self.start_of_local_day(local_date))
        return scheduled

    def _local_date(self, value: DateInput) -> date:
        if isinstance(value, str):
            raw = value.strip()
            if not is_date_key(raw):
                raise CalendarResolutionError(f"Invalid date key: {value!r}")
            return date.fromisoformat(raw)

        if isinstance(value, datetime):
            return self._as_aware(value).astimezone(self.zone).date()

        return value

    @staticmethod
    def _as_aware(value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value


__all__ = [
    "BUENOS_AIRES_TIME_ZONE",
    "BusinessCalendar",
    "CalendarResolutionError",
    "DateInput",
    "NEXT_BUSINESS_DAY_SEARCH_LIMIT",
    "OperationalDate",
    "is_date_key",
    "parse_holiday_date_keys",
]
