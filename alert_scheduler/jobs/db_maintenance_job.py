"""
Database maintenance job - search analytics retention (180 days).
"""

from collections.abc import Callable
from datetime import UTC, datetime, timedelta

from alert_scheduler.infrastructure.observability.logging import get_logger
from alert_scheduler.repositories.job_board_store import JobBoardStore

logger = get_logger(__name__)

SEARCH_ANALYTICS_RETENTION = timedelta(days=180)


class DatabaseMaintenanceJob:
    def __init__(self, store: JobBoardStore, now: Callable[[], datetime] | None = None):
        self.store = store
        self._now = now or (lambda: datetime.now(UTC))

    async def run_maintenance(self) -> dict:
        result = {"deleted_search_analytics": 0, "errors": []}

        try:
            result["deleted_search_analytics"] = await self.store.delete_search_analytics(
                self._now() - SEARCH_ANALYTICS_RETENTION
            )
        except Exception as e:
            error_msg = f"Failed to purge search analytics: {e}"
            logger.error(error_msg)
            result["errors"].append(error_msg)

        logger.info("Database maintenance completed", **result)
        return result
