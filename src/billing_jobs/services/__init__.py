"""Service layer helpers for the billing collections job orchestrator."""

from billing_jobs import __version__
from billing_jobs.services.business_calendar import (
    BUENOS_AIRES_TIME_ZONE,
    BusinessCalendar,
    CalendarResolutionError,
    OperationalDate,
    parse_holiday_date_keys,
)

__all__ = [
    "__version__",
    "BUENOS_AIRES_TIME_ZONE",
    "BusinessCalendar",
    "CalendarResolutionError",
    "OperationalDate",
    "parse_holiday_date_keys",
]
