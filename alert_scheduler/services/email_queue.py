"""
Outbound email dispatch queue.

The batch jobs only hand off work: each email is serialized to a JSON payload
and pushed onto a per-priority Redis list that the email worker drains.
Delivery, retries and templating happen downstream.
"""

import json
import uuid
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any, Protocol
from urllib.parse import quote

import redis.asyncio as redis
from redis.asyncio.connection import ConnectionPool

from alert_scheduler.config import settings
from alert_scheduler.infrastructure.observability.logging import get_logger
from alert_scheduler.models.domain import (
    JOB_ALERT_EMAIL,
    WEEKLY_DIGEST_EMAIL,
    DigestJobEntry,
    EmailPriority,
    Job,
)

logger = get_logger(__name__)

PRIORITY_SCORES: dict[str, int] = {
    "critical": 100,
    "high": 75,
    "normal": 50,
    "low": 25,
}


class EmailQueueError(Exception):
    """Raised when an email job cannot be handed to the queue."""

    def __init__(self, message: str, email_type: str = "unknown"):
        super().__init__(message)
        self.email_type = email_type


class EmailDispatchQueue(Protocol):
    """Fire-and-forget hand-off of alert and digest emails."""

    async def enqueue_alert_email(
        self,
        address: str,
        display_name: str,
        jobs: list[Job],
        alert_id: str,
        user_id: str,
        priority: EmailPriority = "normal",
    ) -> str: ...

    async def enqueue_digest_email(
        self,
        address: str,
        display_name: str,
        jobs: list[DigestJobEntry],
        location: str,
        user_id: str,
        priority: EmailPriority = "normal",
    ) -> str: ...


def alert_subject(jobs: list[Job]) -> str:
    first = jobs[0]
    if len(jobs) == 1:
        return f"🎯 New Job Alert: {first.title} at {first.company}"
    return f"🎯 {len(jobs)} New Job Matches: {first.title} and more"


def digest_subject(job_count: int, location: str) -> str:
    if job_count > 0:
        return f"📊 Your Weekly Job Digest: {job_count} New Jobs in {location}"
    return f"📊 Your Weekly Job Digest: Stay Updated in {location}"


def unsubscribe_url(base_url: str, address: str, email_type: str) -> str:
    email = quote(address, safe="")
    return f"{base_url}/api/email-alerts/unsubscribe?email={email}&type={email_type}"


def _job_summary(job: Job) -> dict[str, Any]:
    return {
        "id": job.id,
        "title": job.title,
        "company": job.company,
        "location": job.location,
        "job_type": job.job_type,
        "salary_min": job.salary_min,
        "salary_max": job.salary_max,
        "is_remote": job.is_remote,
        "created_at": job.created_at.isoformat(),
    }


def _digest_entry(entry: DigestJobEntry) -> dict[str, Any]:
    return {
        "id": entry.id,
        "title": entry.title,
        "company": entry.company,
        "location": entry.location,
        "salary": entry.salary,
        "job_type": entry.job_type,
        "posted_date": entry.posted_date,
        "url": entry.url,
    }


class RedisEmailQueue:
    """``EmailDispatchQueue`` backed by Redis lists, one per priority."""

    def __init__(
        self,
        redis_url: str | None = None,
        queue_key: str | None = None,
        base_url: str | None = None,
        now: Callable[[], datetime] | None = None,
    ):
        self.redis_url = redis_url or settings.REDIS_URL
        self.queue_key = queue_key or settings.EMAIL_QUEUE_KEY
        self.base_url = (base_url or settings.BASE_URL).rstrip("/")
        self._now = now or (lambda: datetime.now(UTC))
        self.pool: ConnectionPool | None = None
        self.client: redis.Redis | None = None
        self._initialized = False

    async def initialize(self) -> None:
        """Open the connection pool and verify the server answers."""
        if self._initialized:
            return

        try:
            self.pool = ConnectionPool.from_url(
                self.redis_url,
                max_connections=10,
                retry_on_timeout=True,
                socket_connect_timeout=10,
                socket_timeout=10,
                health_check_interval=30,
                decode_responses=True,
            )
            self.client = redis.Redis(connection_pool=self.pool)

            await self.client.ping()

            self._initialized = True
            logger.info("Email queue initialized", queue_key=self.queue_key)

        except Exception as e:
            logger.error("Failed to initialize email queue", error=str(e))
            self._initialized = False
            raise RuntimeError("Email queue initialization failed") from e

    async def close(self) -> None:
        try:
            if self.client:
                await self.client.aclose()
            if self.pool:
                await self.pool.disconnect()
            self._initialized = False
            logger.info("Email queue closed")
        except Exception as e:
            logger.error("Error closing email queue", error=str(e))

    def queue_name(self, priority: str) -> str:
        return f"{self.queue_key}:{priority}"

    async def _push(self, payload: dict[str, Any]) -> str:
        if not self._initialized:
            await self.initialize()

        try:
            await self.client.rpush(self.queue_name(payload["priority"]), json.dumps(payload))
        except redis.RedisError as e:
            logger.error(
                "Failed to enqueue email",
                email_type=payload["type"],
                email_id=payload["id"],
                error=str(e),
            )
            raise EmailQueueError(f"Enqueue failed: {e}", email_type=payload["type"]) from e

        logger.debug(
            "Email queued",
            email_type=payload["type"],
            email_id=payload["id"],
            priority=payload["priority"],
        )
        return payload["id"]

    def _payload(
        self,
        *,
        email_type: str,
        address: str,
        subject: str,
        data: dict[str, Any],
        user_id: str,
        priority: str,
        alert_id: str | None = None,
    ) -> dict[str, Any]:
        created_at = self._now()
        return {
            "id": f"{email_type}-{uuid.uuid4().hex}",
            "type": email_type,
            "to": address,
            "subject": subject,
            "template": email_type,
            "data": data,
            "user_id": user_id,
            "alert_id": alert_id,
            "priority": priority,
            "metadata": {
                "priority_score": PRIORITY_SCORES.get(priority, PRIORITY_SCORES["normal"]),
                "source": "alert-scheduler",
            },
            "created_at": created_at.isoformat(),
        }

    async def enqueue_alert_email(
        self,
        address: str,
        display_name: str,
        jobs: list[Job],
        alert_id: str,
        user_id: str,
        priority: EmailPriority = "normal",
    ) -> str:
        if not jobs:
            raise EmailQueueError("Alert email requires at least one job", JOB_ALERT_EMAIL)

        data = {
            "user_name": display_name,
            "jobs": [_job_summary(job) for job in jobs],
            "alert_id": alert_id,
            "unsubscribe_url": unsubscribe_url(self.base_url, address, JOB_ALERT_EMAIL),
            "manage_alerts_url": f"{self.base_url}/profile/alerts",
        }
        payload = self._payload(
            email_type=JOB_ALERT_EMAIL,
            address=address,
            subject=alert_subject(jobs),
            data=data,
            user_id=user_id,
            priority=priority,
            alert_id=alert_id,
        )
        return await self._push(payload)

    async def enqueue_digest_email(
        self,
        address: str,
        display_name: str,
        jobs: list[DigestJobEntry],
        location: str,
        user_id: str,
        priority: EmailPriority = "normal",
    ) -> str:
        data = {
            "user_name": display_name,
            "jobs": [_digest_entry(entry) for entry in jobs],
            "location": location,
            "total_jobs": len(jobs),
            "unsubscribe_url": unsubscribe_url(self.base_url, address, WEEKLY_DIGEST_EMAIL),
            "manage_alerts_url": f"{self.base_url}/profile/alerts",
        }
        payload = self._payload(
            email_type=WEEKLY_DIGEST_EMAIL,
            address=address,
            subject=digest_subject(len(jobs), location),
            data=data,
            user_id=user_id,
            priority=priority,
        )
        return await self._push(payload)
