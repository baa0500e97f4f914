"""
Timing and error boundary around one unit of scheduled batch work.
"""

import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from alert_scheduler.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

TaskHandler = Callable[[], Awaitable[dict[str, Any]]]


@dataclass(slots=True)
class BatchRunResult:
    name: str
    status: str
    duration_ms: int
    result: dict[str, Any] = field(default_factory=dict)
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.status == "completed"


class BatchJobRunner:
    """
    Runs a named handler, logging start and end with the elapsed time.

    Handler exceptions are logged and returned as a failed result instead of
    propagating, so the timer driving the runner keeps firing.
    """

    def __init__(
        self, name: str, handler: TaskHandler, clock: Callable[[], float] = time.monotonic
    ):
        self.name = name
        self.handler = handler
        self._clock = clock

    async def run(self) -> BatchRunResult:
        logger.info("Starting scheduled task", task=self.name)
        started = self._clock()

        try:
            result = await self.handler()
        except Exception as e:
            duration_ms = int((self._clock() - started) * 1000)
            logger.exception(
                "Scheduled task failed", task=self.name, duration_ms=duration_ms, error=str(e)
            )
            return BatchRunResult(self.name, "failed", duration_ms, error=str(e))

        duration_ms = int((self._clock() - started) * 1000)
        logger.info(
            "Scheduled task completed", task=self.name, duration_ms=duration_ms, result=result
        )
        return BatchRunResult(self.name, "completed", duration_ms, result=result or {})
