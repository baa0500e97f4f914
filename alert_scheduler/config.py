from pathlib import Path

from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from alert_scheduler.infrastructure.observability.logging import get_logger

ENV_PATH = Path(__file__).resolve().parent.parent / ".env.local"

logger = get_logger(__name__)

LOG_LEVELS = ("debug", "info", "warn", "error")

# (default, min, max) in milliseconds
HEALTH_INTERVAL_RANGE = (60000, 30000, 300000)
SHUTDOWN_TIMEOUT_RANGE = (30000, 5000, 60000)
TEST_TIMEOUT_RANGE = (10000, 5000, 30000)


def _clamp_ms(value, name: str, bounds: tuple[int, int, int]) -> int:
    default, low, high = bounds
    try:
        number = int(str(value).strip())
    except (TypeError, ValueError):
        logger.warning("Invalid number, using default", setting=name, value=value, default=default)
        return default

    if number < low or number > high:
        clamped = max(low, min(high, number))
        logger.warning(
            "Number out of range, clamping",
            setting=name,
            value=number,
            min=low,
            max=high,
            clamped=clamped,
        )
        return clamped
    return number


class Settings(BaseSettings):
    # Environment settings
    environment: str = "development"

    # Scheduler process settings
    CRON_SCHEDULER_LOG_LEVEL: str = "info"
    CRON_SCHEDULER_HEALTH_INTERVAL: int = HEALTH_INTERVAL_RANGE[0]
    CRON_SCHEDULER_SHUTDOWN_TIMEOUT: int = SHUTDOWN_TIMEOUT_RANGE[0]
    CRON_SCHEDULER_TEST_TIMEOUT: int = TEST_TIMEOUT_RANGE[0]
    CRON_SCHEDULER_LOCK_STALE_AFTER: int = 900000  # 15 minutes
    CRON_SCHEDULER_PID_FILE: Path = Field(default_factory=lambda: Path.cwd() / "cron-scheduler.pid")
    CRON_SCHEDULER_LOCK_FILE: Path = Field(
        default_factory=lambda: Path.cwd() / "cron-scheduler.lock"
    )
    CRON_SCHEDULER_STATUS_FILE: Path = Field(
        default_factory=lambda: Path.cwd() / "cron-scheduler.status.json"
    )
    CRON_TIMEZONE: str = "America/Los_Angeles"

    # Endpoint testing
    BASE_URL: str = Field(
        default="http://localhost:3000",
        validation_alias=AliasChoices("BASE_URL", "NEXT_PUBLIC_BASE_URL"),
    )
    CRON_SECRET: str = "test"

    # Job board database
    DATABASE_URL: str = "postgresql://localhost:5432/jobboard"

    # Email queue (Redis)
    REDIS_URL: str = "redis://localhost:6379/0"
    EMAIL_QUEUE_KEY: str = "email-queue"

    DIGEST_DEFAULT_LOCATION: str = "209 Area"

    # =================================================================
    # DATABASE POOL SETTINGS
    # =================================================================
    DB_POOL_MIN_SIZE: int = 1
    DB_POOL_MAX_SIZE: int = 4
    DB_POOL_TIMEOUT: float = 30.0
    DB_POOL_MAX_IDLE: float = 600.0  # 10 minutes
    DB_POOL_MAX_LIFETIME: float = 3600.0  # 1 hour

    model_config = SettingsConfigDict(
        env_file=str(ENV_PATH),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @field_validator("CRON_SCHEDULER_LOG_LEVEL", mode="before")
    @classmethod
    def _validate_log_level(cls, value):
        level = str(value or "").strip().lower()
        if level not in LOG_LEVELS:
            logger.warning("Invalid log level, using 'info'", value=value)
            return "info"
        return level

    @field_validator("CRON_SCHEDULER_HEALTH_INTERVAL", mode="before")
    @classmethod
    def _validate_health_interval(cls, value):
        return _clamp_ms(value, "CRON_SCHEDULER_HEALTH_INTERVAL", HEALTH_INTERVAL_RANGE)

    @field_validator("CRON_SCHEDULER_SHUTDOWN_TIMEOUT", mode="before")
    @classmethod
    def _validate_shutdown_timeout(cls, value):
        return _clamp_ms(value, "CRON_SCHEDULER_SHUTDOWN_TIMEOUT", SHUTDOWN_TIMEOUT_RANGE)

    @field_validator("CRON_SCHEDULER_TEST_TIMEOUT", mode="before")
    @classmethod
    def _validate_test_timeout(cls, value):
        return _clamp_ms(value, "CRON_SCHEDULER_TEST_TIMEOUT", TEST_TIMEOUT_RANGE)

    def stdlib_log_level(self) -> str:
        """Map the scheduler log level onto a stdlib logging level name."""
        level = self.CRON_SCHEDULER_LOG_LEVEL
        return "WARNING" if level == "warn" else level.upper()

    def get_db_pool_config(self) -> dict:
        """
        Get database pool configuration.

        The scheduler runs one batch at a time per task, so the pool stays small.
        """
        return {
            "min_size": self.DB_POOL_MIN_SIZE,
            "max_size": self.DB_POOL_MAX_SIZE,
            "timeout": self.DB_POOL_TIMEOUT,
            "max_idle": self.DB_POOL_MAX_IDLE,
            "max_lifetime": self.DB_POOL_MAX_LIFETIME,
        }


settings = Settings()
