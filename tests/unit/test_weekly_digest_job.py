from datetime import UTC, datetime, timedelta
from zoneinfo import ZoneInfoNotFoundError

import pytest

from alert_scheduler.jobs.weekly_digest_job import (
    WeeklyDigestJob,
    current_day_of_week,
    format_relative_date,
    format_salary_range,
)
from alert_scheduler.models.domain import EmailUnsubscribe, WeeklyDigest


def _digest_job(store, queue, clock):
    return WeeklyDigestJob(
        store,
        queue,
        now=clock,
        timezone="America/Los_Angeles",
        base_url="https://jobs.example.com",
        default_location="209 Area",
    )


@pytest.mark.asyncio
async def test_only_todays_digests_are_sent(fake_store, fake_queue, clock, owner_factory):
    # NOW is Monday in Los Angeles
    monday = WeeklyDigest(id="mon", user=owner_factory(1), day_of_week=1)
    tuesday = WeeklyDigest(id="tue", user=owner_factory(2), day_of_week=2)
    fake_store.digests += [monday, tuesday]

    result = await _digest_job(fake_store, fake_queue, clock).run_digests()

    assert result["day_of_week"] == 1
    assert result["digests_found"] == 1
    assert [e["user_id"] for e in fake_queue.digest_emails] == ["user-1"]
    assert tuesday.last_sent_at is None


@pytest.mark.asyncio
async def test_digest_sent_within_six_days_is_skipped(
    fake_store, fake_queue, clock, now, owner_factory
):
    recent = WeeklyDigest(
        id="recent", user=owner_factory(1), day_of_week=1, last_sent_at=now - timedelta(days=5)
    )
    due = WeeklyDigest(
        id="due", user=owner_factory(2), day_of_week=1, last_sent_at=now - timedelta(days=7)
    )
    fake_store.digests += [recent, due]

    result = await _digest_job(fake_store, fake_queue, clock).run_digests()

    assert result["digests_found"] == 1
    assert due.last_sent_at == now
    assert due.total_digests_sent == 1


@pytest.mark.asyncio
async def test_digest_entries_and_location(
    fake_store, fake_queue, clock, now, owner_factory, job_factory
):
    fake_store.digests.append(
        WeeklyDigest(id="d1", user=owner_factory(1, name=None), day_of_week=1, location="Modesto")
    )
    fake_store.jobs += [
        job_factory("J1", now - timedelta(hours=3), salary_min=80000, salary_max=120000),
        job_factory(
            "J2", now - timedelta(days=2), location="Anywhere", is_remote=True, job_type=None
        ),
        job_factory("J3", now - timedelta(days=1), location="Fresno"),
        job_factory("J4", now - timedelta(days=8)),
        job_factory("J5", now - timedelta(days=1), status="expired"),
    ]

    result = await _digest_job(fake_store, fake_queue, clock).run_digests()

    assert result["emails_queued"] == 1
    email = fake_queue.digest_emails[0]
    assert email["location"] == "Modesto"
    assert email["display_name"] == "Job Seeker"

    entries = {entry.id: entry for entry in email["jobs"]}
    assert list(entries) == ["J1", "J2"]
    assert entries["J1"].salary == "$80,000 - $120,000"
    assert entries["J1"].posted_date == "3 hours ago"
    assert entries["J1"].url == "https://jobs.example.com/jobs/J1"
    assert entries["J2"].salary is None
    assert entries["J2"].job_type == "Full-time"
    assert entries["J2"].posted_date == "2 days ago"


@pytest.mark.asyncio
async def test_digest_defaults_location_and_sends_without_jobs(
    fake_store, fake_queue, clock, owner_factory
):
    fake_store.digests.append(WeeklyDigest(id="d1", user=owner_factory(1), day_of_week=1))

    await _digest_job(fake_store, fake_queue, clock).run_digests()

    assert fake_queue.digest_emails[0]["location"] == "209 Area"
    assert fake_queue.digest_emails[0]["jobs"] == []


@pytest.mark.asyncio
async def test_digest_unsubscribe_all(fake_store, fake_queue, clock, owner_factory):
    fake_store.digests += [
        WeeklyDigest(id="d1", user=owner_factory(1), day_of_week=1),
        WeeklyDigest(id="d2", user=owner_factory(2), day_of_week=1),
    ]
    fake_store.unsubscribes["user1@example.com"] = EmailUnsubscribe(
        email="user1@example.com", unsubscribe_all=True
    )

    result = await _digest_job(fake_store, fake_queue, clock).run_digests()

    assert result["skipped_unsubscribed"] == 1
    assert result["emails_queued"] == 1


def test_day_of_week_uses_scheduler_timezone():
    # 02:00 UTC Tuesday is still Monday evening in Los Angeles
    instant = datetime(2024, 1, 16, 2, 0, tzinfo=UTC)
    assert current_day_of_week(instant, "America/Los_Angeles") == 1
    assert current_day_of_week(instant, "UTC") == 2
    assert current_day_of_week(datetime(2024, 1, 14, 12, 0, tzinfo=UTC), "UTC") == 0


@pytest.mark.parametrize(
    "age, expected",
    [
        (timedelta(seconds=30), "Just now"),
        (timedelta(minutes=1), "Just now"),
        (timedelta(minutes=5), "5 minutes ago"),
        (timedelta(hours=1), "1 hour ago"),
        (timedelta(hours=5), "5 hours ago"),
        (timedelta(days=1), "1 day ago"),
        (timedelta(days=29), "29 days ago"),
        (timedelta(days=30), "1 month ago"),
        (timedelta(days=95), "3 months ago"),
        (timedelta(days=400), "1 year ago"),
    ],
)
def test_format_relative_date(now, age, expected):
    assert format_relative_date(now - age, now) == expected


@pytest.mark.parametrize("value", [None, "2024-01-01", 12345, float("nan")])
def test_format_relative_date_invalid_input(now, value):
    assert format_relative_date(value, now) == "Invalid Date"


def test_format_relative_date_future_is_invalid(now):
    assert format_relative_date(now + timedelta(hours=2), now) == "Invalid Date"


def test_format_salary_range():
    assert format_salary_range(50000, 70000) == "$50,000 - $70,000"
    assert format_salary_range(50000, None) is None
    assert format_salary_range(None, 70000) is None


@pytest.mark.asyncio
async def test_bad_timezone_does_not_leave_job_running(fake_store, fake_queue, clock):
    job = WeeklyDigestJob(
        fake_store, fake_queue, now=clock, timezone="Not/AZone", default_location="209 Area"
    )

    with pytest.raises(ZoneInfoNotFoundError):
        await job.run_digests()

    assert job.is_running is False
