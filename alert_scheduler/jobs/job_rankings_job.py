"""
Job rankings job - expires stale postings and refreshes ranking scores.

Expiry is the primary step: a job expires when its ``expires_at`` has
passed, or when it has no ``expires_at`` and is older than 90 days. Expired
is terminal, so a second run over the same data changes nothing.

Ranking score (0-165):
- recency: 100 points minus one per day of age, floored at 0
- salary: salary_min / 2000, capped at 50
- full-time: +10
- remote: +5
"""

from collections import Counter
from collections.abc import Callable
from datetime import UTC, datetime, timedelta

from alert_scheduler.infrastructure.observability.logging import get_logger
from alert_scheduler.models.domain import Job
from alert_scheduler.repositories.job_board_store import JobBoardStore

logger = get_logger(__name__)

JOB_MAX_AGE = timedelta(days=90)
TRENDING_WINDOW = timedelta(days=7)
TRENDING_LIMIT = 10

FULL_TIME_TYPES = {"full_time", "full-time", "fulltime"}


def compute_ranking_score(job: Job, now: datetime) -> float:
    created_at = job.created_at
    if created_at.tzinfo is None:
        created_at = created_at.replace(tzinfo=UTC)
    days_old = (now - created_at).days
    score = float(max(0, 100 - days_old))

    if job.salary_min:
        score += min(50.0, job.salary_min / 2000)

    if job.job_type and job.job_type.strip().lower() in FULL_TIME_TYPES:
        score += 10
    if job.is_remote:
        score += 5

    return round(score, 2)


def top_search_terms(queries: list[str], limit: int = TRENDING_LIMIT) -> list[tuple[str, int]]:
    counts = Counter(q.strip().lower() for q in queries if q and q.strip())
    return counts.most_common(limit)


class JobRankingsJob:
    def __init__(self, store: JobBoardStore, now: Callable[[], datetime] | None = None):
        self.store = store
        self._now = now or (lambda: datetime.now(UTC))
        self.is_running = False

    async def run_rankings(self) -> dict:
        if self.is_running:
            logger.warning("Job rankings already running, skipping")
            return {"skipped": True, "error": "Already running"}

        self.is_running = True
        now = self._now()
        result = {
            "expired_jobs": 0,
            "ranked_jobs": 0,
            "trending_terms": [],
            "errors": [],
        }

        try:
            try:
                result["expired_jobs"] = await self.store.expire_jobs(now, now - JOB_MAX_AGE)
                logger.info("Expired jobs updated", count=result["expired_jobs"])
            except Exception as e:
                error_msg = f"Failed to expire jobs: {e}"
                logger.error(error_msg)
                result["errors"].append(error_msg)

            try:
                result["ranked_jobs"] = await self._refresh_scores(now)
                queries = await self.store.list_search_queries(now - TRENDING_WINDOW)
                result["trending_terms"] = [
                    {"term": term, "count": count} for term, count in top_search_terms(queries)
                ]
                logger.info(
                    "Rankings refreshed",
                    ranked_jobs=result["ranked_jobs"],
                    trending_terms=result["trending_terms"],
                )
            except Exception as e:
                error_msg = f"Failed to refresh rankings: {e}"
                logger.error(error_msg)
                result["errors"].append(error_msg)
        finally:
            self.is_running = False

        logger.info(
            "Job rankings completed",
            expired_jobs=result["expired_jobs"],
            ranked_jobs=result["ranked_jobs"],
            errors=len(result["errors"]),
        )
        return result

    async def _refresh_scores(self, now: datetime) -> int:
        jobs = await self.store.list_active_jobs()
        for job in jobs:
            await self.store.update_ranking_score(job.id, compute_ranking_score(job, now))
        return len(jobs)
