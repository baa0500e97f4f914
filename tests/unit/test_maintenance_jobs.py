from datetime import timedelta

import pytest

from alert_scheduler.db.helpers import DatabaseError
from alert_scheduler.jobs.db_maintenance_job import DatabaseMaintenanceJob
from alert_scheduler.jobs.job_rankings_job import (
    JobRankingsJob,
    compute_ranking_score,
    top_search_terms,
)
from alert_scheduler.jobs.token_cleanup_job import TokenCleanupJob


@pytest.mark.asyncio
async def test_job_expiry_scenario(fake_store, clock, now, job_factory):
    expired_by_date = job_factory(
        "past", now - timedelta(days=10), expires_at=now - timedelta(hours=1)
    )
    too_old = job_factory("old", now - timedelta(days=91))
    fresh = job_factory("fresh", now - timedelta(days=10), expires_at=now + timedelta(days=5))
    old_but_dated = job_factory(
        "dated", now - timedelta(days=120), expires_at=now + timedelta(days=1)
    )
    fake_store.jobs += [expired_by_date, too_old, fresh, old_but_dated]

    result = await JobRankingsJob(fake_store, now=clock).run_rankings()

    assert result["expired_jobs"] == 2
    assert expired_by_date.status == "expired"
    assert expired_by_date.updated_at == now
    assert too_old.status == "expired"
    assert fresh.status == "active"
    assert old_but_dated.status == "active"


@pytest.mark.asyncio
async def test_job_expiry_is_idempotent(fake_store, clock, now, job_factory):
    fake_store.jobs.append(job_factory("old", now - timedelta(days=91)))
    job = JobRankingsJob(fake_store, now=clock)

    first = await job.run_rankings()
    second = await job.run_rankings()

    assert first["expired_jobs"] == 1
    assert second["expired_jobs"] == 0


@pytest.mark.asyncio
async def test_rankings_scores_and_trending_terms(fake_store, clock, now, job_factory):
    fake_store.jobs += [
        job_factory("J1", now - timedelta(days=1), salary_min=60000, is_remote=True),
        job_factory("J2", now - timedelta(days=95)),
    ]
    fake_store.search_analytics += [
        {"query": "Nurse", "created_at": now - timedelta(days=1)},
        {"query": "nurse ", "created_at": now - timedelta(days=2)},
        {"query": "driver", "created_at": now - timedelta(days=3)},
        {"query": "welder", "created_at": now - timedelta(days=9)},
    ]

    result = await JobRankingsJob(fake_store, now=clock).run_rankings()

    # J2 expires first, so only J1 is ranked
    assert result["ranked_jobs"] == 1
    assert fake_store.ranking_scores == {"J1": 99 + 30 + 10 + 5}
    assert result["trending_terms"] == [
        {"term": "nurse", "count": 2},
        {"term": "driver", "count": 1},
    ]


@pytest.mark.asyncio
async def test_ranking_failure_does_not_hide_expiry(fake_store, clock, now, job_factory):
    fake_store.jobs.append(job_factory("old", now - timedelta(days=91)))
    fake_store.failures["list_active_jobs"] = DatabaseError("boom", operation="fetch_all")

    result = await JobRankingsJob(fake_store, now=clock).run_rankings()

    assert result["expired_jobs"] == 1
    assert len(result["errors"]) == 1


def test_compute_ranking_score_bounds(now, job_factory):
    ancient = job_factory("J", now - timedelta(days=500), salary_min=500000, job_type="contract")
    assert compute_ranking_score(ancient, now) == 50


def test_compute_ranking_score_accepts_naive_timestamps(now, job_factory):
    # timestamp without time zone columns come back naive, in UTC
    job = job_factory("J", (now - timedelta(days=10)).replace(tzinfo=None))
    assert compute_ranking_score(job, now) == 100


def test_top_search_terms_limit():
    queries = [f"term{i}" for i in range(20)] + ["term1"]
    terms = top_search_terms(queries)
    assert len(terms) == 10
    assert terms[0] == ("term1", 2)


@pytest.mark.asyncio
async def test_token_cleanup(fake_store, clock, now):
    fake_store.users += [
        {
            "magic_link_token": "m1",
            "magic_link_expires": now - timedelta(minutes=1),
            "password_reset_token": "p1",
            "password_reset_expires": now + timedelta(hours=1),
        },
        {
            "magic_link_token": None,
            "magic_link_expires": None,
            "password_reset_token": "p2",
            "password_reset_expires": now - timedelta(hours=1),
        },
    ]
    fake_store.email_logs += [
        {"status": "sent", "created_at": now - timedelta(days=91)},
        {"status": "bounced", "created_at": now - timedelta(days=100)},
        {"status": "pending", "created_at": now - timedelta(days=120)},
        {"status": "delivered", "created_at": now - timedelta(days=10)},
    ]

    result = await TokenCleanupJob(fake_store, now=clock).run_cleanup()

    assert result == {
        "expired_magic_links": 1,
        "expired_password_resets": 1,
        "deleted_email_logs": 2,
        "errors": [],
    }
    assert fake_store.users[0]["password_reset_token"] == "p1"
    assert [log["status"] for log in fake_store.email_logs] == ["pending", "delivered"]


@pytest.mark.asyncio
async def test_token_cleanup_steps_are_isolated(fake_store, clock):
    fake_store.failures["clear_expired_magic_links"] = DatabaseError("down", operation="execute")

    result = await TokenCleanupJob(fake_store, now=clock).run_cleanup()

    assert len(result["errors"]) == 1
    assert "magic links" in result["errors"][0]
    assert result["expired_password_resets"] == 0


@pytest.mark.asyncio
async def test_db_maintenance_purges_old_analytics(fake_store, clock, now):
    fake_store.search_analytics += [
        {"query": "a", "created_at": now - timedelta(days=181)},
        {"query": "b", "created_at": now - timedelta(days=179)},
    ]

    result = await DatabaseMaintenanceJob(fake_store, now=clock).run_maintenance()

    assert result["deleted_search_analytics"] == 1
    assert [row["query"] for row in fake_store.search_analytics] == ["b"]


@pytest.mark.asyncio
async def test_db_maintenance_reports_failure(fake_store, clock):
    fake_store.failures["delete_search_analytics"] = DatabaseError("down", operation="execute")

    result = await DatabaseMaintenanceJob(fake_store, now=clock).run_maintenance()

    assert result["deleted_search_analytics"] == 0
    assert result["errors"]
