"""ORM model exports."""

from billing_jobs import __version__
from billing_jobs.models.agency_billing_subscription import (
    AgencyBillingSubscription,
    SubscriptionStatus,
)
from billing_jobs.models.agency_collections_config import AgencyCollectionsConfig
from billing_jobs.models.base import Base
from billing_jobs.models.job_lock import JobLock
from billing_jobs.models.job_run import JobRun, JobRunStatus, JobSource

__all__ = [
    "__version__",
    "AgencyBillingSubscription",
    "AgencyCollectionsConfig",
    "Base",
    "JobLock",
    "JobRun",
    "JobRunStatus",
    "JobSource",
    "SubscriptionStatus",
]
