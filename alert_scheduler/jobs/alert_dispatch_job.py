"""
Alert dispatch job - matches saved job alerts against fresh postings.

Runs for one alert frequency at a time:
- immediate: every 5 minutes, alerts not triggered in the last 5 minutes
- daily: once a day, alerts not triggered in the last 24 hours

For each eligible alert (oldest trigger first, at most ALERT_BATCH_SIZE per
run) the job looks for postings from the last 24 hours, queues one email
when something matched and records the trigger. Each alert is processed in
its own error boundary so one bad record never stops the batch.
"""

from collections.abc import Callable
from datetime import UTC, datetime, timedelta

from alert_scheduler.infrastructure.observability.logging import get_logger
from alert_scheduler.models.domain import JOB_ALERT_EMAIL, Alert, JobQuery
from alert_scheduler.repositories.job_board_store import JobBoardStore
from alert_scheduler.services.email_queue import EmailDispatchQueue

logger = get_logger(__name__)

ALERT_BATCH_SIZE = 100
MAX_JOBS_PER_ALERT = 10
JOB_LOOKBACK = timedelta(hours=24)

TRIGGER_WINDOWS: dict[str, timedelta] = {
    "immediate": timedelta(minutes=5),
    "daily": timedelta(hours=24),
}


def alert_trigger_cutoff(frequency: str, now: datetime) -> datetime:
    """Alerts last triggered before this instant are due again."""
    try:
        return now - TRIGGER_WINDOWS[frequency]
    except KeyError:
        raise ValueError(f"Unknown alert frequency '{frequency}'") from None


def build_alert_job_query(alert: Alert, now: datetime) -> JobQuery:
    """Every non-empty alert filter narrows the match."""
    return JobQuery(
        created_after=now - JOB_LOOKBACK,
        title_contains=alert.job_title or None,
        location_contains=alert.location or None,
        job_types=list(alert.job_types),
        categories=list(alert.categories),
        companies=list(alert.companies),
        salary_min=alert.salary_min,
        salary_max=alert.salary_max,
    )


class AlertDispatchJob:
    """Queues job alert emails for one alert frequency."""

    def __init__(
        self,
        store: JobBoardStore,
        queue: EmailDispatchQueue,
        now: Callable[[], datetime] | None = None,
    ):
        self.store = store
        self.queue = queue
        self._now = now or (lambda: datetime.now(UTC))
        self.is_running = False

    async def run_alerts(self, frequency: str) -> dict:
        """
        Process every due alert of the given frequency.

        Returns:
            dict: {
                "frequency": str,
                "alerts_found": int,
                "emails_queued": int,
                "skipped_unsubscribed": int,
                "skipped_no_matches": int,
                "failed": int,
            }
        """
        if self.is_running:
            logger.warning("Alert job already running, skipping", frequency=frequency)
            return {"frequency": frequency, "skipped": True, "error": "Already running"}

        self.is_running = True
        now = self._now()
        result = {
            "frequency": frequency,
            "alerts_found": 0,
            "emails_queued": 0,
            "skipped_unsubscribed": 0,
            "skipped_no_matches": 0,
            "failed": 0,
        }

        try:
            cutoff = alert_trigger_cutoff(frequency, now)
            alerts = await self.store.list_due_alerts(frequency, cutoff, ALERT_BATCH_SIZE)
            result["alerts_found"] = len(alerts)

            logger.info("Processing job alerts", frequency=frequency, count=len(alerts))

            for alert in alerts:
                try:
                    outcome = await self._process_alert(alert, now)
                    result[outcome] += 1
                except Exception as e:
                    result["failed"] += 1
                    logger.error(
                        "Failed to process alert",
                        alert_id=alert.id,
                        frequency=frequency,
                        error=str(e),
                    )
        finally:
            self.is_running = False

        logger.info("Job alerts processed", **result)
        return result

    async def _process_alert(self, alert: Alert, now: datetime) -> str:
        unsubscribe = await self.store.get_unsubscribe(alert.user.email)
        if unsubscribe and unsubscribe.suppresses(JOB_ALERT_EMAIL):
            logger.debug("User unsubscribed from job alerts", alert_id=alert.id)
            return "skipped_unsubscribed"

        jobs = await self.store.find_jobs(build_alert_job_query(alert, now), MAX_JOBS_PER_ALERT)
        if not jobs:
            return "skipped_no_matches"

        await self.queue.enqueue_alert_email(
            address=alert.user.email,
            display_name=alert.user.display_name,
            jobs=jobs,
            alert_id=alert.id,
            user_id=alert.user.id,
            priority="normal",
        )
        await self.store.record_alert_sent(alert.id, now, len(jobs))

        logger.info("Job alert queued", alert_id=alert.id, job_count=len(jobs))
        return "emails_queued"
