from datetime import UTC, datetime

import pytest

from alert_scheduler.models.domain import (
    Alert,
    AlertOwner,
    EmailUnsubscribe,
    Job,
    JobQuery,
    WeeklyDigest,
)
from alert_scheduler.services.email_queue import EmailQueueError

# Monday 2024-01-15, 09:00 in America/Los_Angeles
NOW = datetime(2024, 1, 15, 17, 0, tzinfo=UTC)

_NEVER = datetime.min.replace(tzinfo=UTC)


def job_matches(query: JobQuery, job: Job) -> bool:
    """In-memory equivalent of ``build_job_query_sql`` for the fake store."""
    if job.created_at < query.created_after:
        return False
    if query.status is not None and job.status != query.status:
        return False
    if query.title_contains and query.title_contains.lower() not in job.title.lower():
        return False
    if query.location_contains:
        in_location = query.location_contains.lower() in (job.location or "").lower()
        if not in_location and not (query.include_remote and job.is_remote):
            return False
    if query.job_types and job.job_type not in query.job_types:
        return False
    if query.categories and not set(query.categories) & set(job.categories):
        return False
    if query.companies and job.company not in query.companies:
        return False
    if query.salary_min and (job.salary_min is None or job.salary_min < query.salary_min):
        return False
    if query.salary_max and (job.salary_max is None or job.salary_max > query.salary_max):
        return False
    return True


class FakeJobBoardStore:
    """In-memory JobBoardStore with the same selection rules as the SQL adapter."""

    def __init__(self):
        self.alerts: list[Alert] = []
        self.digests: list[WeeklyDigest] = []
        self.jobs: list[Job] = []
        self.unsubscribes: dict[str, EmailUnsubscribe] = {}
        self.users: list[dict] = []
        self.email_logs: list[dict] = []
        self.search_analytics: list[dict] = []
        self.ranking_scores: dict[str, float] = {}
        self.failures: dict[str, Exception] = {}

    def _maybe_fail(self, operation: str) -> None:
        if operation in self.failures:
            raise self.failures[operation]

    async def list_due_alerts(self, frequency, triggered_before, limit):
        self._maybe_fail("list_due_alerts")
        due = [
            a
            for a in self.alerts
            if a.is_active
            and a.email_enabled
            and a.frequency == frequency
            and (a.last_triggered is None or a.last_triggered < triggered_before)
        ]
        due.sort(key=lambda a: (a.last_triggered is not None, a.last_triggered or _NEVER, a.id))
        return due[:limit]

    async def find_jobs(self, query: JobQuery, limit):
        self._maybe_fail("find_jobs")
        matches = [job for job in self.jobs if job_matches(query, job)]
        matches.sort(key=lambda job: job.created_at, reverse=True)
        return matches[:limit]

    async def record_alert_sent(self, alert_id, sent_at, jobs_sent):
        self._maybe_fail("record_alert_sent")
        for alert in self.alerts:
            if alert.id == alert_id:
                alert.last_triggered = sent_at
                alert.total_jobs_sent += jobs_sent

    async def list_due_digests(self, day_of_week, sent_before, limit):
        self._maybe_fail("list_due_digests")
        due = [
            d
            for d in self.digests
            if d.is_active
            and d.day_of_week == day_of_week
            and (d.last_sent_at is None or d.last_sent_at < sent_before)
        ]
        due.sort(key=lambda d: (d.last_sent_at is not None, d.last_sent_at or _NEVER, d.id))
        return due[:limit]

    async def record_digest_sent(self, digest_id, sent_at):
        for digest in self.digests:
            if digest.id == digest_id:
                digest.last_sent_at = sent_at
                digest.total_digests_sent += 1

    async def get_unsubscribe(self, email):
        return self.unsubscribes.get(email)

    async def clear_expired_magic_links(self, now):
        self._maybe_fail("clear_expired_magic_links")
        count = 0
        for user in self.users:
            if user.get("magic_link_token") and user["magic_link_expires"] < now:
                user["magic_link_token"] = None
                user["magic_link_expires"] = None
                count += 1
        return count

    async def clear_expired_password_resets(self, now):
        self._maybe_fail("clear_expired_password_resets")
        count = 0
        for user in self.users:
            if user.get("password_reset_token") and user["password_reset_expires"] < now:
                user["password_reset_token"] = None
                user["password_reset_expires"] = None
                count += 1
        return count

    async def delete_email_logs(self, created_before, statuses):
        self._maybe_fail("delete_email_logs")
        keep = [
            log
            for log in self.email_logs
            if not (log["created_at"] < created_before and log["status"] in statuses)
        ]
        deleted = len(self.email_logs) - len(keep)
        self.email_logs = keep
        return deleted

    async def expire_jobs(self, now, created_before):
        self._maybe_fail("expire_jobs")
        count = 0
        for job in self.jobs:
            if job.status == "expired":
                continue
            if job.expires_at is not None:
                stale = job.expires_at < now
            else:
                stale = job.created_at < created_before
            if stale:
                job.status = "expired"
                job.updated_at = now
                count += 1
        return count

    async def list_active_jobs(self):
        self._maybe_fail("list_active_jobs")
        return [job for job in self.jobs if job.status == "active"]

    async def update_ranking_score(self, job_id, score):
        self.ranking_scores[job_id] = score

    async def list_search_queries(self, since):
        return [row["query"] for row in self.search_analytics if row["created_at"] >= since]

    async def delete_search_analytics(self, created_before):
        self._maybe_fail("delete_search_analytics")
        keep = [row for row in self.search_analytics if row["created_at"] >= created_before]
        deleted = len(self.search_analytics) - len(keep)
        self.search_analytics = keep
        return deleted


class FakeEmailQueue:
    def __init__(self):
        self.alert_emails: list[dict] = []
        self.digest_emails: list[dict] = []
        self.fail_for: set[str] = set()

    async def enqueue_alert_email(
        self, address, display_name, jobs, alert_id, user_id, priority="normal"
    ):
        if address in self.fail_for:
            raise EmailQueueError("queue unavailable", "job_alert")
        self.alert_emails.append(
            {
                "address": address,
                "display_name": display_name,
                "jobs": list(jobs),
                "alert_id": alert_id,
                "user_id": user_id,
                "priority": priority,
            }
        )
        return f"job_alert-{len(self.alert_emails)}"

    async def enqueue_digest_email(
        self, address, display_name, jobs, location, user_id, priority="normal"
    ):
        if address in self.fail_for:
            raise EmailQueueError("queue unavailable", "weekly_digest")
        self.digest_emails.append(
            {
                "address": address,
                "display_name": display_name,
                "jobs": list(jobs),
                "location": location,
                "user_id": user_id,
                "priority": priority,
            }
        )
        return f"weekly_digest-{len(self.digest_emails)}"


def make_owner(n: int = 1, name: str | None = "Alex") -> AlertOwner:
    return AlertOwner(id=f"user-{n}", email=f"user{n}@example.com", name=name)


def make_job(job_id: str, created_at: datetime, **fields) -> Job:
    defaults = {
        "title": "Software Engineer",
        "company": "Acme",
        "location": "Modesto, CA",
        "job_type": "full_time",
    }
    defaults.update(fields)
    return Job(id=job_id, created_at=created_at, **defaults)


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def clock():
    return lambda: NOW


@pytest.fixture
def fake_store():
    return FakeJobBoardStore()


@pytest.fixture
def fake_queue():
    return FakeEmailQueue()


@pytest.fixture
def job_factory():
    return make_job


@pytest.fixture
def owner_factory():
    return make_owner
