"""
Persistence layer for the job board records the scheduler touches.

``JobBoardStore`` is the narrow interface the batch jobs depend on.
``PostgresJobBoardStore`` implements it on top of the shared psycopg pool;
every write is scoped by primary key or by an idempotent bulk predicate so
concurrent batches never need cross-batch locking.
"""

from datetime import datetime
from typing import Any, Protocol

from alert_scheduler.db.helpers import execute_query, fetch_all, fetch_one, with_db_retry
from alert_scheduler.infrastructure.observability.logging import get_logger
from alert_scheduler.models.domain import (
    Alert,
    AlertOwner,
    EmailUnsubscribe,
    Job,
    JobQuery,
    WeeklyDigest,
)

logger = get_logger(__name__)


class JobBoardStore(Protocol):
    """Operations the scheduler needs from the job board database."""

    async def list_due_alerts(
        self, frequency: str, triggered_before: datetime, limit: int
    ) -> list[Alert]: ...

    async def find_jobs(self, query: JobQuery, limit: int) -> list[Job]: ...

    async def record_alert_sent(self, alert_id: str, sent_at: datetime, jobs_sent: int) -> None: ...

    async def list_due_digests(
        self, day_of_week: int, sent_before: datetime, limit: int
    ) -> list[WeeklyDigest]: ...

    async def record_digest_sent(self, digest_id: str, sent_at: datetime) -> None: ...

    async def get_unsubscribe(self, email: str) -> EmailUnsubscribe | None: ...

    async def clear_expired_magic_links(self, now: datetime) -> int: ...

    async def clear_expired_password_resets(self, now: datetime) -> int: ...

    async def delete_email_logs(self, created_before: datetime, statuses: list[str]) -> int: ...

    async def expire_jobs(self, now: datetime, created_before: datetime) -> int: ...

    async def list_active_jobs(self) -> list[Job]: ...

    async def update_ranking_score(self, job_id: str, score: float) -> None: ...

    async def list_search_queries(self, since: datetime) -> list[str]: ...

    async def delete_search_analytics(self, created_before: datetime) -> int: ...


def _row_to_owner(row: dict[str, Any]) -> AlertOwner:
    return AlertOwner(
        id=str(row["user_id"]),
        email=row["user_email"],
        name=row.get("user_name"),
    )


def _row_to_alert(row: dict[str, Any]) -> Alert:
    return Alert(
        id=str(row["id"]),
        user=_row_to_owner(row),
        frequency=row["frequency"],
        job_title=row.get("job_title"),
        location=row.get("location"),
        job_types=list(row.get("job_types") or []),
        categories=list(row.get("categories") or []),
        companies=list(row.get("companies") or []),
        salary_min=row.get("salary_min"),
        salary_max=row.get("salary_max"),
        is_active=row["is_active"],
        email_enabled=row["email_enabled"],
        last_triggered=row.get("last_triggered"),
        total_jobs_sent=row.get("total_jobs_sent") or 0,
    )


def _row_to_digest(row: dict[str, Any]) -> WeeklyDigest:
    return WeeklyDigest(
        id=str(row["id"]),
        user=_row_to_owner(row),
        day_of_week=row["day_of_week"],
        location=row.get("location"),
        categories=list(row.get("categories") or []),
        job_types=list(row.get("job_types") or []),
        is_active=row["is_active"],
        last_sent_at=row.get("last_sent_at"),
        total_digests_sent=row.get("total_digests_sent") or 0,
    )


def _row_to_job(row: dict[str, Any]) -> Job:
    return Job(
        id=str(row["id"]),
        title=row["title"],
        company=row["company"],
        location=row.get("location") or "",
        created_at=row["created_at"],
        job_type=row.get("job_type"),
        categories=list(row.get("categories") or []),
        salary_min=row.get("salary_min"),
        salary_max=row.get("salary_max"),
        description=row.get("description"),
        is_remote=bool(row.get("is_remote")),
        status=row.get("status") or "active",
        expires_at=row.get("expires_at"),
        updated_at=row.get("updated_at"),
    )


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def build_job_query_sql(query: JobQuery) -> tuple[str, list[Any]]:
    """
    Render a ``JobQuery`` to a WHERE clause and its parameters.

    Every populated field adds one ANDed clause; zero salary bounds are
    ignored.
    """
    clauses = ["created_at >= %s"]
    params: list[Any] = [query.created_after]

    if query.status is not None:
        clauses.append("status = %s")
        params.append(query.status)

    if query.title_contains:
        clauses.append("title ILIKE %s")
        params.append(f"%{_escape_like(query.title_contains)}%")

    if query.location_contains:
        if query.include_remote:
            clauses.append("(location ILIKE %s OR is_remote = true)")
        else:
            clauses.append("location ILIKE %s")
        params.append(f"%{_escape_like(query.location_contains)}%")

    if query.job_types:
        clauses.append("job_type = ANY(%s)")
        params.append(list(query.job_types))

    if query.categories:
        clauses.append("categories && %s::text[]")
        params.append(list(query.categories))

    if query.companies:
        clauses.append("company = ANY(%s)")
        params.append(list(query.companies))

    if query.salary_min:
        clauses.append("salary_min >= %s")
        params.append(query.salary_min)

    if query.salary_max:
        clauses.append("salary_max <= %s")
        params.append(query.salary_max)

    return " AND ".join(clauses), params


class PostgresJobBoardStore:
    """``JobBoardStore`` backed by PostgreSQL through the shared pool."""

    JOB_COLUMNS = """
        id, title, company, location, job_type, categories, salary_min, salary_max,
        description, is_remote, status, expires_at, created_at, updated_at
    """

    # ------------------------------------------------------------------
    # Alerts
    # ------------------------------------------------------------------

    @with_db_retry()
    async def list_due_alerts(
        self, frequency: str, triggered_before: datetime, limit: int
    ) -> list[Alert]:
        query = """
            SELECT a.id, a.user_id, a.frequency, a.job_title, a.location, a.job_types,
                   a.categories, a.companies, a.salary_min, a.salary_max, a.is_active,
                   a.email_enabled, a.last_triggered, a.total_jobs_sent,
                   u.email AS user_email, u.name AS user_name
            FROM alerts a
            JOIN users u ON u.id = a.user_id
            WHERE a.is_active = true
              AND a.email_enabled = true
              AND a.frequency = %s
              AND (a.last_triggered IS NULL OR a.last_triggered < %s)
            ORDER BY a.last_triggered ASC NULLS FIRST, a.id ASC
            LIMIT %s
        """
        rows = await fetch_all(query, (frequency, triggered_before, limit))
        return [_row_to_alert(row) for row in rows]

    @with_db_retry()
    async def find_jobs(self, query: JobQuery, limit: int) -> list[Job]:
        where, params = build_job_query_sql(query)
        sql = f"""
            SELECT {self.JOB_COLUMNS}
            FROM jobs
            WHERE {where}
            ORDER BY created_at DESC
            LIMIT %s
        """
        rows = await fetch_all(sql, (*params, limit))
        return [_row_to_job(row) for row in rows]

    async def record_alert_sent(self, alert_id: str, sent_at: datetime, jobs_sent: int) -> None:
        await execute_query(
            """
            UPDATE alerts
            SET last_triggered = %s,
                total_jobs_sent = total_jobs_sent + %s,
                updated_at = %s
            WHERE id = %s
            """,
            (sent_at, jobs_sent, sent_at, alert_id),
        )

    # ------------------------------------------------------------------
    # Weekly digests
    # ------------------------------------------------------------------

    @with_db_retry()
    async def list_due_digests(
        self, day_of_week: int, sent_before: datetime, limit: int
    ) -> list[WeeklyDigest]:
        query = """
            SELECT d.id, d.user_id, d.day_of_week, d.location, d.categories, d.job_types,
                   d.is_active, d.last_sent_at, d.total_digests_sent,
                   u.email AS user_email, u.name AS user_name
            FROM weekly_digests d
            JOIN users u ON u.id = d.user_id
            WHERE d.is_active = true
              AND d.day_of_week = %s
              AND (d.last_sent_at IS NULL OR d.last_sent_at < %s)
            ORDER BY d.last_sent_at ASC NULLS FIRST, d.id ASC
            LIMIT %s
        """
        rows = await fetch_all(query, (day_of_week, sent_before, limit))
        return [_row_to_digest(row) for row in rows]

    async def record_digest_sent(self, digest_id: str, sent_at: datetime) -> None:
        await execute_query(
            """
            UPDATE weekly_digests
            SET last_sent_at = %s,
                total_digests_sent = total_digests_sent + 1,
                updated_at = %s
            WHERE id = %s
            """,
            (sent_at, sent_at, digest_id),
        )

    # ------------------------------------------------------------------
    # Suppression
    # ------------------------------------------------------------------

    @with_db_retry()
    async def get_unsubscribe(self, email: str) -> EmailUnsubscribe | None:
        row = await fetch_one(
            """
            SELECT email, unsubscribe_all, unsubscribe_from
            FROM email_unsubscribes
            WHERE email = %s
            """,
            (email,),
        )
        if not row:
            return None
        return EmailUnsubscribe(
            email=row["email"],
            unsubscribe_all=bool(row["unsubscribe_all"]),
            unsubscribe_from=list(row.get("unsubscribe_from") or []),
        )

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    async def clear_expired_magic_links(self, now: datetime) -> int:
        return await execute_query(
            """
            UPDATE users
            SET magic_link_token = NULL, magic_link_expires = NULL
            WHERE magic_link_token IS NOT NULL
              AND magic_link_expires < %s
            """,
            (now,),
        )

    async def clear_expired_password_resets(self, now: datetime) -> int:
        return await execute_query(
            """
            UPDATE users
            SET password_reset_token = NULL, password_reset_expires = NULL
            WHERE password_reset_token IS NOT NULL
              AND password_reset_expires < %s
            """,
            (now,),
        )

    async def delete_email_logs(self, created_before: datetime, statuses: list[str]) -> int:
        return await execute_query(
            """
            DELETE FROM email_logs
            WHERE created_at < %s
              AND status = ANY(%s)
            """,
            (created_before, list(statuses)),
        )

    async def expire_jobs(self, now: datetime, created_before: datetime) -> int:
        return await execute_query(
            """
            UPDATE jobs
            SET status = 'expired', updated_at = %s
            WHERE status <> 'expired'
              AND (
                (expires_at IS NOT NULL AND expires_at < %s)
                OR (expires_at IS NULL AND created_at < %s)
              )
            """,
            (now, now, created_before),
        )

    @with_db_retry()
    async def list_active_jobs(self) -> list[Job]:
        rows = await fetch_all(
            f"SELECT {self.JOB_COLUMNS} FROM jobs WHERE status = 'active'",
        )
        return [_row_to_job(row) for row in rows]

    async def update_ranking_score(self, job_id: str, score: float) -> None:
        await execute_query(
            "UPDATE jobs SET ranking_score = %s WHERE id = %s",
            (score, job_id),
        )

    @with_db_retry()
    async def list_search_queries(self, since: datetime) -> list[str]:
        rows = await fetch_all(
            "SELECT query FROM search_analytics WHERE created_at >= %s",
            (since,),
        )
        return [row["query"] or "" for row in rows]

    async def delete_search_analytics(self, created_before: datetime) -> int:
        return await execute_query(
            "DELETE FROM search_analytics WHERE created_at < %s",
            (created_before,),
        )
