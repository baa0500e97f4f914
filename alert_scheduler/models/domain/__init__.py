"""
Domain models shared by the store adapters and the batch jobs.
"""

from .job_board_domain import (
    JOB_ALERT_EMAIL,
    WEEKLY_DIGEST_EMAIL,
    Alert,
    AlertFrequency,
    AlertOwner,
    DigestJobEntry,
    EmailPriority,
    EmailUnsubscribe,
    Job,
    JobQuery,
    WeeklyDigest,
)

__all__ = [
    "JOB_ALERT_EMAIL",
    "WEEKLY_DIGEST_EMAIL",
    "Alert",
    "AlertFrequency",
    "AlertOwner",
    "DigestJobEntry",
    "EmailPriority",
    "EmailUnsubscribe",
    "Job",
    "JobQuery",
    "WeeklyDigest",
]
