"""
Process lifecycle for the long-running scheduler.

Startup: take the instance lock, write the PID file, run startup hooks
(pool/queue connections), start the timers and the periodic health check.

Shutdown paths:
- graceful (SIGTERM, SIGINT, SIGUSR2): stop health check and timers, run
  shutdown hooks, remove PID and lock files, exit 0. A watchdog forces exit 1
  when this takes longer than the shutdown timeout; a second signal forces
  exit 1 immediately.
- emergency (uncaught exception, unhandled task error): best-effort file
  cleanup, exit 1.
- lock lost (another instance recovered the lock as stale): graceful path,
  exit 1.

Cleanup only removes files that still name this process.
"""

import asyncio
import json
import os
import signal
import sys
import time
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import psutil

from alert_scheduler.infrastructure.observability.logging import get_logger, log_health_check
from alert_scheduler.scheduler.instance_guard import InstanceLockError, SingleInstanceGuard
from alert_scheduler.scheduler.task_scheduler import TaskScheduler

logger = get_logger(__name__)

MEMORY_WARNING_MB = 200

Hook = Callable[[], Awaitable[Any]]


def write_status_snapshot(path: Path, payload: dict[str, Any]) -> None:
    """Atomically replace the status file read by ``status``."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(path.name + ".tmp")
    tmp.write_text(json.dumps(payload, indent=2), encoding="utf-8")
    os.replace(tmp, path)


def read_status_snapshot(path: Path) -> dict[str, Any] | None:
    try:
        return json.loads(Path(path).read_text(encoding="utf-8"))
    except FileNotFoundError:
        return None
    except (OSError, json.JSONDecodeError) as e:
        logger.warning("Unreadable status file", status_file=str(path), error=str(e))
        return None


class ProcessLifecycleManager:
    def __init__(
        self,
        scheduler: TaskScheduler,
        guard: SingleInstanceGuard,
        *,
        status_file: Path,
        health_interval_ms: int = 60000,
        shutdown_timeout_ms: int = 30000,
        startup_hooks: list[Hook] | None = None,
        shutdown_hooks: list[Hook] | None = None,
        force_exit: Callable[[int], None] = os._exit,
    ):
        self.scheduler = scheduler
        self.guard = guard
        self.status_file = Path(status_file)
        self.health_interval = health_interval_ms / 1000
        self.shutdown_timeout = shutdown_timeout_ms / 1000
        self.startup_hooks = startup_hooks or []
        self.shutdown_hooks = shutdown_hooks or []
        self._force_exit = force_exit

        self.is_shutting_down = False
        self.exit_code: int | None = None
        self._started_at = time.monotonic()
        self._done: asyncio.Event | None = None
        self._health_task: asyncio.Task | None = None
        self._shutdown_task: asyncio.Task | None = None

    # ------------------------------------------------------------------
    # Startup
    # ------------------------------------------------------------------

    async def start(self) -> bool:
        """Acquire the instance lock and start the timers. False on failure."""
        self._done = asyncio.Event()
        self._started_at = time.monotonic()

        if not self.guard.check_lock():
            logger.error(
                "Another scheduler instance is already running",
                lock_file=str(self.guard.lock_file),
            )
            return False

        try:
            self.guard.write_pid_file()
            for hook in self.startup_hooks:
                await hook()
            await self.scheduler.initialize()
        except Exception as e:
            logger.exception("Scheduler startup failed", error=str(e))
            await self.scheduler.stop()
            await self._run_shutdown_hooks()
            self._cleanup_files()
            return False

        self._health_task = asyncio.create_task(self._health_loop())
        self._write_snapshot()

        logger.info(
            "Scheduler started",
            pid=self.guard.pid,
            tasks=[task["name"] for task in self.scheduler.get_status()],
        )
        return True

    async def wait(self) -> int:
        """Block until a shutdown path sets the exit code."""
        await self._done.wait()
        return self.exit_code if self.exit_code is not None else 0

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------

    def handle_signal(self, signame: str) -> None:
        if self.is_shutting_down:
            logger.warning("Second shutdown signal received, forcing exit", signal=signame)
            self._cleanup_files()
            self._force_exit(1)
            return

        logger.info("Shutdown signal received", signal=signame)
        self.is_shutting_down = True
        self._shutdown_task = asyncio.create_task(self._shutdown(signame))

    async def graceful_shutdown(self, reason: str = "requested") -> None:
        if self.is_shutting_down:
            return
        self.is_shutting_down = True
        await self._shutdown(reason)

    async def _shutdown(self, reason: str, exit_code: int = 0) -> None:
        loop = asyncio.get_running_loop()
        watchdog = loop.call_later(self.shutdown_timeout, self._shutdown_timed_out)

        logger.info("Graceful shutdown started", reason=reason)
        try:
            await self._stop_health_check()
            await self.scheduler.stop()
            await self._run_shutdown_hooks()
        except Exception as e:
            logger.exception("Graceful shutdown failed", error=str(e))
            exit_code = 1
        finally:
            watchdog.cancel()
            self._cleanup_files()

        logger.info("Graceful shutdown completed", exit_code=exit_code)
        self._finish(exit_code)

    async def _run_shutdown_hooks(self) -> None:
        for hook in self.shutdown_hooks:
            try:
                await hook()
            except Exception as e:
                logger.error(
                    "Shutdown hook failed",
                    hook=getattr(hook, "__qualname__", repr(hook)),
                    error=str(e),
                )

    def _shutdown_timed_out(self) -> None:
        logger.error("Graceful shutdown timed out, forcing exit", timeout_s=self.shutdown_timeout)
        self._cleanup_files()
        self._force_exit(1)

    def emergency_shutdown(
        self, reason: str, error: BaseException | None = None, **fields: Any
    ) -> None:
        logger.critical(
            "Emergency shutdown",
            reason=reason,
            error=str(error) if error else None,
            error_type=type(error).__name__ if error else None,
            **fields,
        )
        self.is_shutting_down = True
        self._cleanup_files()
        self._finish(1)
        sys.stdout.flush()
        self._force_exit(1)

    def _finish(self, exit_code: int) -> None:
        self.exit_code = exit_code
        if self._done is not None:
            self._done.set()

    def _cleanup_files(self) -> None:
        self.guard.remove_pid_file()
        self.guard.remove_lock()
        snapshot = read_status_snapshot(self.status_file)
        if snapshot and snapshot.get("pid") != self.guard.pid:
            return
        try:
            self.status_file.unlink(missing_ok=True)
        except OSError as e:
            logger.error("Failed to remove status file", error=str(e))

    async def _stop_health_check(self) -> None:
        if self._health_task is None:
            return
        self._health_task.cancel()
        try:
            await self._health_task
        except asyncio.CancelledError:
            pass
        self._health_task = None

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    async def _health_loop(self) -> None:
        while True:
            await asyncio.sleep(self.health_interval)
            try:
                self.health_check()
            except Exception as e:
                logger.error("Health check failed", error=str(e))

    def health_check(self) -> dict[str, Any]:
        memory_mb = round(psutil.Process(os.getpid()).memory_info().rss / (1024 * 1024), 2)
        uptime_seconds = round(time.monotonic() - self._started_at, 1)

        log_health_check(
            "cron_scheduler",
            healthy=True,
            memory_mb=memory_mb,
            uptime_seconds=uptime_seconds,
        )
        if memory_mb > MEMORY_WARNING_MB:
            logger.warning(
                "High memory usage", memory_mb=memory_mb, threshold_mb=MEMORY_WARNING_MB
            )

        try:
            self.guard.refresh_heartbeat()
        except InstanceLockError as e:
            self._lock_lost(e)
            return {}
        return self._write_snapshot(memory_mb=memory_mb, uptime_seconds=uptime_seconds)

    def _lock_lost(self, error: InstanceLockError) -> None:
        if self.is_shutting_down:
            return
        logger.error("Instance lock lost, shutting down", error=str(error))
        self.is_shutting_down = True
        self._shutdown_task = asyncio.create_task(self._shutdown("lock_lost", exit_code=1))

    def _write_snapshot(self, **fields: Any) -> dict[str, Any]:
        payload = {
            "pid": self.guard.pid,
            "updated_at": datetime.now(UTC).isoformat(),
            "tasks": self.scheduler.get_status(),
            **fields,
        }
        try:
            write_status_snapshot(self.status_file, payload)
        except OSError as e:
            logger.warning(
                "Failed to write status file", status_file=str(self.status_file), error=str(e)
            )
        return payload


def install_lifecycle_handlers(
    manager: ProcessLifecycleManager, loop: asyncio.AbstractEventLoop | None = None
) -> None:
    """Wire process signals and last-resort exception hooks to ``manager``."""
    loop = loop or asyncio.get_running_loop()

    for name in ("SIGTERM", "SIGINT", "SIGUSR2"):
        sig = getattr(signal, name, None)
        if sig is not None:
            loop.add_signal_handler(sig, manager.handle_signal, name)

    def _excepthook(exc_type, exc, tb):
        if issubclass(exc_type, KeyboardInterrupt):
            sys.__excepthook__(exc_type, exc, tb)
            return
        manager.emergency_shutdown("uncaught_exception", exc)

    def _loop_exception_handler(loop, context):
        manager.emergency_shutdown(
            "unhandled_task_exception",
            context.get("exception"),
            message=context.get("message"),
        )

    sys.excepthook = _excepthook
    loop.set_exception_handler(_loop_exception_handler)
