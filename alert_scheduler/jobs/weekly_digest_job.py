"""
Weekly digest job - one summary email per subscriber on their chosen day.

Days of the week are numbered Sunday=0 and evaluated in the scheduler
timezone, so a subscriber in Los Angeles gets Monday's digest on their
Monday even when UTC has already rolled over.
"""

import math
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from zoneinfo import ZoneInfo

from alert_scheduler.config import settings
from alert_scheduler.infrastructure.observability.logging import get_logger
from alert_scheduler.models.domain import (
    WEEKLY_DIGEST_EMAIL,
    DigestJobEntry,
    Job,
    JobQuery,
    WeeklyDigest,
)
from alert_scheduler.repositories.job_board_store import JobBoardStore
from alert_scheduler.services.email_queue import EmailDispatchQueue

logger = get_logger(__name__)

DIGEST_BATCH_SIZE = 100
MAX_JOBS_PER_DIGEST = 15
JOB_LOOKBACK = timedelta(days=7)
RESEND_AFTER = timedelta(days=6)
DEFAULT_JOB_TYPE = "Full-time"
INVALID_DATE = "Invalid Date"


def current_day_of_week(now: datetime, timezone: str) -> int:
    """Day index with Sunday=0, in the given IANA timezone."""
    local = now.astimezone(ZoneInfo(timezone))
    return (local.weekday() + 1) % 7


def format_relative_date(value, now: datetime | None = None) -> str:
    """
    Human friendly age of a posting, e.g. "3 hours ago".

    Never raises; anything that is not a usable past timestamp renders as
    "Invalid Date".
    """
    if not isinstance(value, datetime):
        return INVALID_DATE

    now = now or datetime.now(UTC)
    try:
        if value.tzinfo is None:
            value = value.replace(tzinfo=UTC)
        seconds = (now - value).total_seconds()
    except (OverflowError, TypeError, ValueError):
        return INVALID_DATE

    if math.isnan(seconds) or seconds < 0:
        return INVALID_DATE

    minutes = int(seconds // 60)
    if minutes <= 1:
        return "Just now"
    if minutes < 60:
        return f"{minutes} minutes ago"

    hours = minutes // 60
    if hours < 24:
        return "1 hour ago" if hours == 1 else f"{hours} hours ago"

    days = hours // 24
    if days < 30:
        return "1 day ago" if days == 1 else f"{days} days ago"

    months = days // 30
    if months < 12:
        return "1 month ago" if months == 1 else f"{months} months ago"

    years = months // 12
    return "1 year ago" if years == 1 else f"{years} years ago"


def format_salary_range(salary_min: int | None, salary_max: int | None) -> str | None:
    if not salary_min or not salary_max:
        return None
    return f"${salary_min:,} - ${salary_max:,}"


def build_digest_job_query(digest: WeeklyDigest, now: datetime) -> JobQuery:
    return JobQuery(
        created_after=now - JOB_LOOKBACK,
        location_contains=digest.location or None,
        include_remote=True,
        job_types=list(digest.job_types),
        categories=list(digest.categories),
        status="active",
    )


def to_digest_entry(job: Job, base_url: str, now: datetime) -> DigestJobEntry:
    return DigestJobEntry(
        id=job.id,
        title=job.title,
        company=job.company,
        location=job.location,
        salary=format_salary_range(job.salary_min, job.salary_max),
        job_type=job.job_type or DEFAULT_JOB_TYPE,
        posted_date=format_relative_date(job.created_at, now),
        url=f"{base_url.rstrip('/')}/jobs/{job.id}",
    )


class WeeklyDigestJob:
    """Queues weekly digest emails for subscribers whose day is today."""

    def __init__(
        self,
        store: JobBoardStore,
        queue: EmailDispatchQueue,
        now: Callable[[], datetime] | None = None,
        timezone: str | None = None,
        base_url: str | None = None,
        default_location: str | None = None,
    ):
        self.store = store
        self.queue = queue
        self._now = now or (lambda: datetime.now(UTC))
        self.timezone = timezone or settings.CRON_TIMEZONE
        self.base_url = base_url or settings.BASE_URL
        self.default_location = default_location or settings.DIGEST_DEFAULT_LOCATION
        self.is_running = False

    async def run_digests(self) -> dict:
        if self.is_running:
            logger.warning("Digest job already running, skipping")
            return {"skipped": True, "error": "Already running"}

        self.is_running = True
        result = {
            "day_of_week": None,
            "digests_found": 0,
            "emails_queued": 0,
            "skipped_unsubscribed": 0,
            "failed": 0,
        }

        try:
            now = self._now()
            day_of_week = current_day_of_week(now, self.timezone)
            result["day_of_week"] = day_of_week

            digests = await self.store.list_due_digests(
                day_of_week, now - RESEND_AFTER, DIGEST_BATCH_SIZE
            )
            result["digests_found"] = len(digests)

            logger.info("Processing weekly digests", day_of_week=day_of_week, count=len(digests))

            for digest in digests:
                try:
                    outcome = await self._process_digest(digest, now)
                    result[outcome] += 1
                except Exception as e:
                    result["failed"] += 1
                    logger.error("Failed to process digest", digest_id=digest.id, error=str(e))
        finally:
            self.is_running = False

        logger.info("Weekly digests processed", **result)
        return result

    async def _process_digest(self, digest: WeeklyDigest, now: datetime) -> str:
        unsubscribe = await self.store.get_unsubscribe(digest.user.email)
        if unsubscribe and unsubscribe.suppresses(WEEKLY_DIGEST_EMAIL):
            logger.debug("User unsubscribed from weekly digests", digest_id=digest.id)
            return "skipped_unsubscribed"

        jobs = await self.store.find_jobs(
            build_digest_job_query(digest, now), MAX_JOBS_PER_DIGEST
        )
        entries = [to_digest_entry(job, self.base_url, now) for job in jobs]

        await self.queue.enqueue_digest_email(
            address=digest.user.email,
            display_name=digest.user.display_name,
            jobs=entries,
            location=digest.location or self.default_location,
            user_id=digest.user.id,
            priority="normal",
        )
        await self.store.record_digest_sent(digest.id, now)

        logger.info("Weekly digest queued", digest_id=digest.id, job_count=len(entries))
        return "emails_queued"
