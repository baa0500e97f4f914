"""
Token cleanup job - daily expiry of auth tokens and email log retention.

Steps (each isolated, a failure is recorded and the next step still runs):
1. Clear expired magic-link tokens
2. Clear expired password-reset tokens
3. Delete email logs in a terminal status older than 90 days
"""

from collections.abc import Callable
from datetime import UTC, datetime, timedelta

from alert_scheduler.infrastructure.observability.logging import get_logger
from alert_scheduler.repositories.job_board_store import JobBoardStore

logger = get_logger(__name__)

EMAIL_LOG_RETENTION = timedelta(days=90)
TERMINAL_EMAIL_STATUSES = ["sent", "delivered", "failed", "bounced"]


class TokenCleanupJob:
    def __init__(self, store: JobBoardStore, now: Callable[[], datetime] | None = None):
        self.store = store
        self._now = now or (lambda: datetime.now(UTC))
        self.is_running = False

    async def run_cleanup(self) -> dict:
        """
        Returns:
            dict: {
                "expired_magic_links": int,
                "expired_password_resets": int,
                "deleted_email_logs": int,
                "errors": list,
            }
        """
        if self.is_running:
            logger.warning("Token cleanup already running, skipping")
            return {"skipped": True, "error": "Already running"}

        self.is_running = True
        now = self._now()
        result = {
            "expired_magic_links": 0,
            "expired_password_resets": 0,
            "deleted_email_logs": 0,
            "errors": [],
        }

        try:
            try:
                result["expired_magic_links"] = await self.store.clear_expired_magic_links(now)
            except Exception as e:
                error_msg = f"Failed to clear expired magic links: {e}"
                logger.error(error_msg)
                result["errors"].append(error_msg)

            try:
                result["expired_password_resets"] = await self.store.clear_expired_password_resets(
                    now
                )
            except Exception as e:
                error_msg = f"Failed to clear expired password resets: {e}"
                logger.error(error_msg)
                result["errors"].append(error_msg)

            try:
                result["deleted_email_logs"] = await self.store.delete_email_logs(
                    now - EMAIL_LOG_RETENTION, TERMINAL_EMAIL_STATUSES
                )
            except Exception as e:
                error_msg = f"Failed to delete old email logs: {e}"
                logger.error(error_msg)
                result["errors"].append(error_msg)
        finally:
            self.is_running = False

        logger.info("Token cleanup completed", **result)
        return result
