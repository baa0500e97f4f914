"""
Recurring task registry for the alert scheduler.

The six batch tasks and their cron schedules live in ``SCHEDULED_TASKS``;
``TaskScheduler`` turns them into APScheduler jobs on the running event loop.
Schedules use standard crontab numbering (Sunday=0) and are evaluated in
``CRON_TIMEZONE``.
"""

import re
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from apscheduler.job import Job as SchedulerJob
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from alert_scheduler.config import settings
from alert_scheduler.infrastructure.observability.logging import get_logger
from alert_scheduler.jobs.alert_dispatch_job import AlertDispatchJob
from alert_scheduler.jobs.db_maintenance_job import DatabaseMaintenanceJob
from alert_scheduler.jobs.job_rankings_job import JobRankingsJob
from alert_scheduler.jobs.token_cleanup_job import TokenCleanupJob
from alert_scheduler.jobs.weekly_digest_job import WeeklyDigestJob
from alert_scheduler.repositories.job_board_store import JobBoardStore
from alert_scheduler.scheduler.batch_runner import BatchJobRunner, BatchRunResult, TaskHandler
from alert_scheduler.services.email_queue import EmailDispatchQueue

logger = get_logger(__name__)


@dataclass(frozen=True, slots=True)
class TaskDefinition:
    name: str
    schedule: str
    description: str


SCHEDULED_TASKS: tuple[TaskDefinition, ...] = (
    TaskDefinition("immediate-alerts", "*/5 * * * *", "Process immediate job alerts"),
    TaskDefinition("daily-alerts", "0 9 * * *", "Process daily job alerts"),
    TaskDefinition("weekly-digests", "0 9 * * 1", "Send weekly job digests"),
    TaskDefinition("token-cleanup", "0 2 * * *", "Clean up expired tokens and old email logs"),
    TaskDefinition("job-rankings", "0 */6 * * *", "Expire old jobs and refresh rankings"),
    TaskDefinition("db-maintenance", "0 3 * * *", "Purge old search analytics"),
)

TASK_NAMES = tuple(task.name for task in SCHEDULED_TASKS)

# APScheduler numbers weekdays from Monday; crontab numbers them from Sunday.
_CRONTAB_DAY_NAMES = ("sun", "mon", "tue", "wed", "thu", "fri", "sat", "sun")
_DAY_NUMBER = re.compile(r"(?<![/\d])\d(?!\d)")


def cron_trigger(expression: str, timezone: str) -> CronTrigger:
    """Build a trigger from a five-field crontab expression."""
    fields = expression.split()
    if len(fields) != 5:
        raise ValueError(f"Expected 5 cron fields, got {len(fields)}: '{expression}'")

    minute, hour, day, month, day_of_week = fields
    day_of_week = _DAY_NUMBER.sub(lambda m: _CRONTAB_DAY_NAMES[int(m.group())], day_of_week)
    return CronTrigger(
        minute=minute,
        hour=hour,
        day=day,
        month=month,
        day_of_week=day_of_week,
        timezone=timezone,
    )


def build_task_handlers(
    store: JobBoardStore,
    queue: EmailDispatchQueue,
    now: Callable[[], datetime] | None = None,
) -> dict[str, TaskHandler]:
    """Bind each scheduled task name to its batch job."""
    immediate = AlertDispatchJob(store, queue, now=now)
    daily = AlertDispatchJob(store, queue, now=now)
    digests = WeeklyDigestJob(store, queue, now=now)
    tokens = TokenCleanupJob(store, now=now)
    rankings = JobRankingsJob(store, now=now)
    maintenance = DatabaseMaintenanceJob(store, now=now)

    return {
        "immediate-alerts": lambda: immediate.run_alerts("immediate"),
        "daily-alerts": lambda: daily.run_alerts("daily"),
        "weekly-digests": digests.run_digests,
        "token-cleanup": tokens.run_cleanup,
        "job-rankings": rankings.run_rankings,
        "db-maintenance": maintenance.run_maintenance,
    }


@dataclass
class SchedulerState:
    running: bool = False
    jobs: dict[str, SchedulerJob] = field(default_factory=dict)


class TaskScheduler:
    """Owns the recurring timers for the batch tasks."""

    def __init__(
        self,
        handlers: dict[str, TaskHandler],
        timezone: str | None = None,
        tasks: tuple[TaskDefinition, ...] = SCHEDULED_TASKS,
    ):
        self.timezone = timezone or settings.CRON_TIMEZONE
        self.tasks = tasks
        self.runners = {name: BatchJobRunner(name, handler) for name, handler in handlers.items()}
        self.state = SchedulerState()
        self._scheduler: AsyncIOScheduler | None = None

    @property
    def is_running(self) -> bool:
        return self.state.running

    async def initialize(self) -> None:
        """Start the timers. Calling again while running is a no-op."""
        if self.state.running:
            logger.info("Task scheduler already running")
            return

        missing = [task.name for task in self.tasks if task.name not in self.runners]
        if missing:
            raise ValueError(f"No handler registered for tasks: {', '.join(missing)}")

        self._scheduler = AsyncIOScheduler(timezone=self.timezone)
        self._scheduler.start()

        for task in self.tasks:
            self._register(task)

        self.state.running = True
        logger.info(
            "Task scheduler initialized",
            tasks=list(self.state.jobs),
            timezone=self.timezone,
        )

    def _register(self, task: TaskDefinition) -> None:
        job = self._scheduler.add_job(
            self.runners[task.name].run,
            trigger=cron_trigger(task.schedule, self.timezone),
            id=task.name,
            name=task.description,
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        self.state.jobs[task.name] = job
        logger.info("Task registered", task=task.name, schedule=task.schedule)

    async def stop(self) -> None:
        """Stop every timer. Safe to call repeatedly."""
        if not self.state.running:
            return

        logger.info("Stopping task scheduler", tasks=list(self.state.jobs))

        self._scheduler.remove_all_jobs()
        self._scheduler.shutdown(wait=False)

        self._scheduler = None
        self.state.jobs.clear()
        self.state.running = False
        logger.info("Task scheduler stopped")

    def get_status(self) -> list[dict[str, Any]]:
        """Live state of each registered task."""
        status = []
        for name in self.state.jobs:
            job = self._scheduler.get_job(name) if self._scheduler else None
            next_run = getattr(job, "next_run_time", None)
            status.append(
                {
                    "name": name,
                    "running": next_run is not None,
                    "next_run_time": next_run.isoformat() if next_run else None,
                }
            )
        return status

    async def run_task(self, name: str) -> BatchRunResult:
        """Run one task immediately, outside its schedule."""
        if name not in self.runners:
            raise ValueError(
                f"Unknown task '{name}'. Available tasks: {', '.join(sorted(self.runners))}"
            )
        return await self.runners[name].run()
