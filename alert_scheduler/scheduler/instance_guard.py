"""
Single-instance guard for the scheduler process.

Two files:
- lock file: created exclusively, holds JSON {"pid", "started_at", "heartbeat"}
- PID file: plain PID for external tooling (``stop``, process managers)

A lock left behind by a crashed process is recovered when its PID is no
longer alive, or when its heartbeat is older than ``stale_after_ms`` (covers
PID reuse in containers where the probe alone cannot be trusted).

Removal and heartbeat refresh are owner-checked: a process never deletes or
rewrites a lock or PID file that names another process.
"""

import json
import os
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import psutil

from alert_scheduler.config import settings
from alert_scheduler.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

# A lock file younger than this may still be mid-write by its creator
EMPTY_LOCK_GRACE_SECONDS = 5


class InstanceLockError(Exception):
    """Raised when the lock or PID file cannot be read or written."""

    def __init__(self, message: str, path: Path | None = None):
        super().__init__(message)
        self.path = path


def process_alive(pid: int) -> bool:
    try:
        return psutil.Process(pid).status() != psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        return False
    except psutil.AccessDenied:
        # Exists but owned by someone else
        return True


def _parse_lock(text: str) -> dict[str, Any] | None:
    text = text.strip()
    if not text:
        return None
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        return None

    if isinstance(data, int):
        return {"pid": data}
    if isinstance(data, dict) and isinstance(data.get("pid"), int):
        return data
    return None


class SingleInstanceGuard:
    def __init__(
        self,
        lock_file: Path,
        pid_file: Path,
        stale_after_ms: int = 900000,
        now: Callable[[], datetime] | None = None,
        pid: int | None = None,
    ):
        self.lock_file = Path(lock_file)
        self.pid_file = Path(pid_file)
        self.stale_after = timedelta(milliseconds=stale_after_ms)
        self._now = now or (lambda: datetime.now(UTC))
        self.pid = pid or os.getpid()
        self.started_at: datetime | None = None
        self.held = False

    @classmethod
    def from_settings(cls) -> "SingleInstanceGuard":
        return cls(
            lock_file=settings.CRON_SCHEDULER_LOCK_FILE,
            pid_file=settings.CRON_SCHEDULER_PID_FILE,
            stale_after_ms=settings.CRON_SCHEDULER_LOCK_STALE_AFTER,
        )

    # ------------------------------------------------------------------
    # Lock file
    # ------------------------------------------------------------------

    def check_lock(self) -> bool:
        """
        Try to take the lock for this process.

        Returns False when another live instance holds it. A stale lock is
        removed and the acquisition retried once.
        """
        for attempt in range(2):
            try:
                fd = os.open(self.lock_file, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
            except FileExistsError:
                if attempt == 0 and self._lock_is_stale():
                    logger.warning("Removing stale lock file", lock_file=str(self.lock_file))
                    self._unlink(self.lock_file)
                    continue
                return False
            except OSError as e:
                raise InstanceLockError(f"Cannot create lock file: {e}", self.lock_file) from e

            self.started_at = self._now()
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(self._lock_payload(), f)

            self.held = True
            logger.info("Instance lock acquired", lock_file=str(self.lock_file), pid=self.pid)
            return True

        return False

    def read_lock(self) -> dict[str, Any] | None:
        try:
            return _parse_lock(self.lock_file.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except OSError as e:
            raise InstanceLockError(f"Cannot read lock file: {e}", self.lock_file) from e

    def _lock_is_stale(self) -> bool:
        info = self.read_lock()
        if info is None:
            return not self._recently_modified(self.lock_file)

        holder = info["pid"]
        if holder == self.pid:
            return True

        if not process_alive(holder):
            logger.info("Lock holder is not running", holder_pid=holder)
            return True

        heartbeat = self._parse_timestamp(info.get("heartbeat"))
        if heartbeat and self._now() - heartbeat > self.stale_after:
            logger.warning(
                "Lock heartbeat expired",
                holder_pid=holder,
                heartbeat=heartbeat.isoformat(),
            )
            return True

        return False

    def owns_lock(self) -> bool:
        info = self.read_lock()
        return info is not None and info["pid"] == self.pid

    def refresh_heartbeat(self) -> None:
        """
        Rewrite the heartbeat of a held lock.

        Raises InstanceLockError when the lock file no longer names this
        process, e.g. after another instance recovered it as stale.
        """
        if not self.held:
            return

        if not self.owns_lock():
            self.held = False
            raise InstanceLockError("Lock file is no longer held by this process", self.lock_file)

        tmp = self.lock_file.with_name(self.lock_file.name + ".tmp")
        try:
            tmp.write_text(json.dumps(self._lock_payload()), encoding="utf-8")
            os.replace(tmp, self.lock_file)
        except OSError as e:
            raise InstanceLockError(f"Cannot refresh lock heartbeat: {e}", self.lock_file) from e

    def remove_lock(self) -> None:
        """Delete the lock file if it still names this process."""
        try:
            info = self.read_lock()
        except InstanceLockError as e:
            logger.error("Failed to read lock file", lock_file=str(self.lock_file), error=str(e))
            self.held = False
            return

        if info is not None and info["pid"] != self.pid:
            logger.warning(
                "Lock file belongs to another process, leaving it",
                lock_file=str(self.lock_file),
                holder_pid=info["pid"],
            )
        elif info is not None or self.held:
            self._unlink(self.lock_file)
        self.held = False

    def clear_stale_lock(self) -> bool:
        """Delete the lock file when its holder is gone. True if removed."""
        if not self.lock_file.exists() or not self._lock_is_stale():
            return False
        logger.info("Removing stale lock file", lock_file=str(self.lock_file))
        self._unlink(self.lock_file)
        return True

    def _lock_payload(self) -> dict[str, Any]:
        return {
            "pid": self.pid,
            "started_at": (self.started_at or self._now()).isoformat(),
            "heartbeat": self._now().isoformat(),
        }

    # ------------------------------------------------------------------
    # PID file
    # ------------------------------------------------------------------

    def write_pid_file(self) -> None:
        try:
            self.pid_file.write_text(str(self.pid), encoding="utf-8")
        except OSError as e:
            raise InstanceLockError(f"Cannot write PID file: {e}", self.pid_file) from e

    def remove_pid_file(self) -> None:
        """Delete the PID file if it still records this process."""
        recorded = self.read_pid()
        if recorded is None or recorded == self.pid:
            self._unlink(self.pid_file)
        else:
            logger.warning(
                "PID file belongs to another process, leaving it",
                pid_file=str(self.pid_file),
                recorded_pid=recorded,
            )

    def read_pid(self) -> int | None:
        try:
            return int(self.pid_file.read_text(encoding="utf-8").strip())
        except (FileNotFoundError, ValueError):
            return None

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _unlink(self, path: Path) -> None:
        try:
            path.unlink(missing_ok=True)
        except OSError as e:
            logger.error("Failed to remove file", path=str(path), error=str(e))

    def _recently_modified(self, path: Path) -> bool:
        try:
            mtime = datetime.fromtimestamp(path.stat().st_mtime, UTC)
        except FileNotFoundError:
            return False
        return (datetime.now(UTC) - mtime).total_seconds() < EMPTY_LOCK_GRACE_SECONDS

    @staticmethod
    def _parse_timestamp(value) -> datetime | None:
        if not value:
            return None
        try:
            parsed = datetime.fromisoformat(value)
        except (TypeError, ValueError):
            return None
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)
