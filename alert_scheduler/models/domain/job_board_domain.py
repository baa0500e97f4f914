"""
Domain models for the job board records the scheduler reads and updates.

These lightweight dataclasses describe the rows the batch jobs select. The
store adapters build them from database rows; the batch jobs never see raw
rows.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Literal

AlertFrequency = Literal["immediate", "daily"]
EmailPriority = Literal["low", "normal", "high", "critical"]

JOB_ALERT_EMAIL = "job_alert"
WEEKLY_DIGEST_EMAIL = "weekly_digest"

DEFAULT_DISPLAY_NAME = "Job Seeker"


@dataclass(slots=True)
class AlertOwner:
    """User fields needed to address an alert or digest email."""

    id: str
    email: str
    name: str | None = None

    @property
    def display_name(self) -> str:
        return self.name or DEFAULT_DISPLAY_NAME


@dataclass(slots=True)
class Alert:
    """A saved job search owned by a user."""

    id: str
    user: AlertOwner
    frequency: AlertFrequency
    job_title: str | None = None
    location: str | None = None
    job_types: list[str] = field(default_factory=list)
    categories: list[str] = field(default_factory=list)
    companies: list[str] = field(default_factory=list)
    salary_min: int | None = None
    salary_max: int | None = None
    is_active: bool = True
    email_enabled: bool = True
    last_triggered: datetime | None = None
    total_jobs_sent: int = 0


@dataclass(slots=True)
class WeeklyDigest:
    """A weekly digest subscription bound to one day of the week (Sunday=0)."""

    id: str
    user: AlertOwner
    day_of_week: int
    location: str | None = None
    categories: list[str] = field(default_factory=list)
    job_types: list[str] = field(default_factory=list)
    is_active: bool = True
    last_sent_at: datetime | None = None
    total_digests_sent: int = 0


@dataclass(slots=True)
class Job:
    """A job posting."""

    id: str
    title: str
    company: str
    location: str
    created_at: datetime
    job_type: str | None = None
    categories: list[str] = field(default_factory=list)
    salary_min: int | None = None
    salary_max: int | None = None
    description: str | None = None
    is_remote: bool = False
    status: str = "active"
    expires_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass(slots=True)
class EmailUnsubscribe:
    """Per-address email suppression record."""

    email: str
    unsubscribe_all: bool = False
    unsubscribe_from: list[str] = field(default_factory=list)

    def suppresses(self, email_type: str) -> bool:
        return self.unsubscribe_all or email_type in self.unsubscribe_from


@dataclass(slots=True)
class JobQuery:
    """
    Store-agnostic job filter built by the batch jobs.

    Every populated field narrows the result (logical AND). Text filters are
    case-insensitive substring matches. When ``include_remote`` is set, remote
    jobs satisfy the location filter unconditionally.
    """

    created_after: datetime
    title_contains: str | None = None
    location_contains: str | None = None
    include_remote: bool = False
    job_types: list[str] = field(default_factory=list)
    categories: list[str] = field(default_factory=list)
    companies: list[str] = field(default_factory=list)
    salary_min: int | None = None
    salary_max: int | None = None
    status: str | None = None


@dataclass(slots=True)
class DigestJobEntry:
    """Compact job summary rendered into a weekly digest email."""

    id: str
    title: str
    company: str
    location: str
    job_type: str
    posted_date: str
    url: str
    salary: str | None = None
