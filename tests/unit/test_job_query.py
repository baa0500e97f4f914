from datetime import timedelta

from alert_scheduler.models.domain import JobQuery
from alert_scheduler.repositories.job_board_store import build_job_query_sql


def test_only_created_after_is_required(now):
    where, params = build_job_query_sql(JobQuery(created_after=now))

    assert where == "created_at >= %s"
    assert params == [now]


def test_every_populated_filter_is_anded(now):
    since = now - timedelta(days=1)
    query = JobQuery(
        created_after=since,
        location_contains="Modesto",
        job_types=["full_time", "part_time"],
        companies=["Acme"],
        salary_max=90000,
    )

    where, params = build_job_query_sql(query)

    assert where == (
        "created_at >= %s AND location ILIKE %s AND job_type = ANY(%s)"
        " AND company = ANY(%s) AND salary_max <= %s"
    )
    assert params == [since, "%Modesto%", ["full_time", "part_time"], ["Acme"], 90000]


def test_remote_only_bypasses_location_when_enabled(now):
    without_remote, _ = build_job_query_sql(
        JobQuery(created_after=now, location_contains="Fresno")
    )
    with_remote, _ = build_job_query_sql(
        JobQuery(created_after=now, location_contains="Fresno", include_remote=True)
    )

    assert "is_remote" not in without_remote
    assert "(location ILIKE %s OR is_remote = true)" in with_remote


def test_zero_salary_bounds_are_ignored(now):
    where, params = build_job_query_sql(JobQuery(created_after=now, salary_min=0, salary_max=0))

    assert "salary" not in where
    assert params == [now]


def test_sql_rendering(now):
    query = JobQuery(
        created_after=now,
        title_contains="50%_off",
        location_contains="Modesto",
        include_remote=True,
        categories=["health"],
        salary_min=40000,
        status="active",
    )

    where, params = build_job_query_sql(query)

    assert where == (
        "created_at >= %s AND status = %s AND title ILIKE %s"
        " AND (location ILIKE %s OR is_remote = true)"
        " AND categories && %s::text[] AND salary_min >= %s"
    )
    assert params == [now, "active", "%50\\%\\_off%", "%Modesto%", ["health"], 40000]
