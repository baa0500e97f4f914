"""
Operator CLI for the alert scheduler.

    alert-scheduler start          run the scheduler in the foreground
    alert-scheduler stop           stop the running scheduler
    alert-scheduler status         show scheduled tasks of the running scheduler
    alert-scheduler test           call the web app's cron endpoints
    alert-scheduler run <task>     run one task once and exit
    alert-scheduler help           show this help
"""

import asyncio
import os
import signal
import sys
import time
from collections.abc import Awaitable, Callable

from alert_scheduler.config import settings
from alert_scheduler.db.pool import db_pool
from alert_scheduler.infrastructure.observability.logging import get_logger, setup_logging
from alert_scheduler.repositories.job_board_store import PostgresJobBoardStore
from alert_scheduler.scheduler.endpoint_tester import CronEndpointTester
from alert_scheduler.scheduler.instance_guard import SingleInstanceGuard, process_alive
from alert_scheduler.scheduler.lifecycle import (
    ProcessLifecycleManager,
    install_lifecycle_handlers,
    read_status_snapshot,
)
from alert_scheduler.scheduler.task_scheduler import (
    SCHEDULED_TASKS,
    TaskScheduler,
    build_task_handlers,
)
from alert_scheduler.services.email_queue import RedisEmailQueue

logger = get_logger(__name__)

CommandHandler = Callable[[list[str]], Awaitable[int]]

NO_TASKS_MESSAGE = "No cron jobs are currently scheduled"

# Extra wait on top of the scheduler shutdown timeout before giving up on stop
STOP_GRACE_SECONDS = 5
STOP_POLL_INTERVAL = 0.5

ENVIRONMENT_HELP = (
    ("CRON_SCHEDULER_LOG_LEVEL", "debug | info | warn | error (default: info)"),
    ("CRON_SCHEDULER_HEALTH_INTERVAL", "health check interval in ms (default: 60000)"),
    ("CRON_SCHEDULER_SHUTDOWN_TIMEOUT", "graceful shutdown timeout in ms (default: 30000)"),
    ("CRON_SCHEDULER_TEST_TIMEOUT", "endpoint test timeout in ms (default: 10000)"),
    ("CRON_SCHEDULER_LOCK_STALE_AFTER", "lock heartbeat staleness in ms (default: 900000)"),
    ("CRON_SCHEDULER_PID_FILE", "PID file path (default: ./cron-scheduler.pid)"),
    ("CRON_SCHEDULER_LOCK_FILE", "lock file path (default: ./cron-scheduler.lock)"),
    ("CRON_SCHEDULER_STATUS_FILE", "status file path (default: ./cron-scheduler.status.json)"),
    ("CRON_TIMEZONE", "IANA timezone for schedules (default: America/Los_Angeles)"),
    ("NEXT_PUBLIC_BASE_URL", "web app base URL (default: http://localhost:3000)"),
    ("CRON_SECRET", "bearer token for cron endpoints"),
    ("DATABASE_URL", "job board PostgreSQL connection string"),
    ("REDIS_URL", "email queue Redis URL"),
)


def _build_scheduler() -> tuple[TaskScheduler, RedisEmailQueue]:
    queue = RedisEmailQueue()
    scheduler = TaskScheduler(build_task_handlers(PostgresJobBoardStore(), queue))
    return scheduler, queue


async def start_command(args: list[str]) -> int:
    scheduler, queue = _build_scheduler()
    manager = ProcessLifecycleManager(
        scheduler,
        SingleInstanceGuard.from_settings(),
        status_file=settings.CRON_SCHEDULER_STATUS_FILE,
        health_interval_ms=settings.CRON_SCHEDULER_HEALTH_INTERVAL,
        shutdown_timeout_ms=settings.CRON_SCHEDULER_SHUTDOWN_TIMEOUT,
        startup_hooks=[db_pool.initialize, queue.initialize],
        shutdown_hooks=[queue.close, db_pool.close],
    )
    install_lifecycle_handlers(manager)

    if not await manager.start():
        return 1

    print(f"Cron scheduler running (pid {manager.guard.pid}). Press Ctrl+C to stop.")
    return await manager.wait()


async def _wait_for_exit(pid: int, timeout: float) -> bool:
    deadline = time.monotonic() + timeout
    while process_alive(pid):
        if time.monotonic() >= deadline:
            return False
        await asyncio.sleep(STOP_POLL_INTERVAL)
    return True


async def stop_command(args: list[str]) -> int:
    """
    Signal the running scheduler and wait for it to exit.

    The scheduler stops its own timers and removes its lock on SIGTERM; the
    lock is only cleared here when its holder is gone.
    """
    guard = SingleInstanceGuard.from_settings()
    pid = guard.read_pid()

    if pid and pid != os.getpid() and process_alive(pid):
        os.kill(pid, signal.SIGTERM)
        logger.info("Sent SIGTERM to scheduler", target_pid=pid)
        print(f"Sent stop signal to scheduler (pid {pid})")

        timeout = settings.CRON_SCHEDULER_SHUTDOWN_TIMEOUT / 1000 + STOP_GRACE_SECONDS
        if not await _wait_for_exit(pid, timeout):
            logger.warning("Scheduler did not exit in time", target_pid=pid, timeout_s=timeout)
            print(f"Scheduler (pid {pid}) is still running; lock left in place")
            return 0
    else:
        print("No running scheduler found")

    if guard.clear_stale_lock():
        print("Removed stale lock file")
    print("Cron scheduler stopped")
    return 0


async def status_command(args: list[str]) -> int:
    guard = SingleInstanceGuard.from_settings()
    pid = guard.read_pid()
    snapshot = read_status_snapshot(settings.CRON_SCHEDULER_STATUS_FILE)

    tasks = (snapshot or {}).get("tasks") or []
    if not pid or not process_alive(pid) or not tasks:
        print(NO_TASKS_MESSAGE)
        return 0

    print(f"Cron scheduler running (pid {pid}), last update {snapshot.get('updated_at')}")
    for task in tasks:
        state = "running" if task.get("running") else "stopped"
        next_run = task.get("next_run_time") or "-"
        print(f"  {task['name']:<18} {state:<8} next run: {next_run}")
    return 0


async def test_command(args: list[str]) -> int:
    tester = CronEndpointTester(
        base_url=settings.BASE_URL,
        secret=settings.CRON_SECRET,
        timeout_ms=settings.CRON_SCHEDULER_TEST_TIMEOUT,
    )
    print(f"Testing cron endpoints at {tester.base_url}")

    results = await tester.test_all()
    for result in results:
        if result.ok:
            print(f"  OK    {result.path}: {result.message or 'success'}")
        else:
            print(f"  FAIL  {result.path}: {result.error}")

    failed = sum(1 for result in results if not result.ok)
    print(f"{len(results) - failed}/{len(results)} endpoints passed")
    return 1 if failed else 0


async def run_command(args: list[str]) -> int:
    if not args:
        print("Usage: alert-scheduler run <task>")
        return 1

    name = args[0].strip().lower()
    scheduler, queue = _build_scheduler()
    if name not in scheduler.runners:
        print(f"Unknown task '{name}'. Available tasks: {', '.join(scheduler.runners)}")
        return 1

    await db_pool.initialize()
    try:
        await queue.initialize()
        result = await scheduler.run_task(name)
    finally:
        await queue.close()
        await db_pool.close()

    if result.ok:
        print(f"{name} completed in {result.duration_ms}ms: {result.result}")
        return 0
    print(f"{name} failed after {result.duration_ms}ms: {result.error}")
    return 1


def help_text() -> str:
    lines = [
        "Usage: alert-scheduler <command>",
        "",
        "Commands:",
        "  start          Start the cron scheduler",
        "  stop           Stop the running cron scheduler",
        "  status         Show scheduled tasks",
        "  test           Test the cron HTTP endpoints",
        "  run <task>     Run one task immediately",
        "  help           Show this help",
        "",
        "Scheduled tasks:",
    ]
    lines += [f"  {t.name:<18} {t.schedule:<14} {t.description}" for t in SCHEDULED_TASKS]
    lines += ["", "Environment variables:"]
    lines += [f"  {name:<34} {description}" for name, description in ENVIRONMENT_HELP]
    return "\n".join(lines)


async def help_command(args: list[str]) -> int:
    print(help_text())
    return 0


COMMANDS: dict[str, CommandHandler] = {
    "start": start_command,
    "stop": stop_command,
    "status": status_command,
    "test": test_command,
    "run": run_command,
    "help": help_command,
}


async def run_cli(argv: list[str]) -> int:
    command = argv[0].strip().lower() if argv else "help"
    handler = COMMANDS.get(command, help_command)
    try:
        return await handler(argv[1:])
    except Exception as e:
        logger.exception("Command failed", command=command, error=str(e))
        print(f"Error: {e}", file=sys.stderr)
        return 1


def main(argv: list[str] | None = None) -> None:
    """CLI entrypoint."""
    setup_logging(settings.stdlib_log_level())
    sys.exit(asyncio.run(run_cli(sys.argv[1:] if argv is None else argv)))


if __name__ == "__main__":
    main()
