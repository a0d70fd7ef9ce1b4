"""Tests for the async JobStore."""

from datetime import datetime, timezone

import pytest

from lucid import db
from lucid.config import DEFAULT_SLOTS
from lucid.store import JobStore

# Thursday 2026-03-05, 00:00 in Chicago
MIDNIGHT_CHICAGO = datetime(2026, 3, 5, 6, 0, tzinfo=timezone.utc)


@pytest.fixture
def fixed_store(db_path):
    return JobStore(db_path, DEFAULT_SLOTS, "America/Chicago", clock=lambda: MIDNIGHT_CHICAGO)


class TestScheduleJobsForUser:
    @pytest.mark.asyncio
    async def test_creates_daily_plan(self, fixed_store, add_user):
        add_user("alice")
        created = await fixed_store.schedule_jobs_for_user("alice")
        assert len(created) == 7
        assert all(j.status == "pending" for j in created)
        assert {j.schedule_date for j in created} == {"2026-03-05"}

    @pytest.mark.asyncio
    async def test_idempotent(self, fixed_store, add_user, db_conn):
        add_user("alice")
        await fixed_store.schedule_jobs_for_user("alice")
        again = await fixed_store.schedule_jobs_for_user("alice")
        assert again == []
        assert len(db.list_jobs(db_conn, user_id="alice")) == 7

    @pytest.mark.asyncio
    async def test_uses_user_timezone(self, fixed_store, add_user):
        add_user("bea", timezone_name="Europe/Berlin")
        created = await fixed_store.schedule_jobs_for_user("bea")
        # It is already 07:00 in Berlin, so the morning slot rolls to tomorrow
        morning = next(j for j in created if j.job_type == "morning_reflection")
        assert morning.scheduled_for == "2026-03-06T06:00:00+00:00"
        assert morning.schedule_date == "2026-03-06"
        evening = next(j for j in created if j.job_type == "evening_consolidation")
        assert evening.scheduled_for == "2026-03-05T19:00:00+00:00"

    @pytest.mark.asyncio
    async def test_unknown_user_gets_default_timezone(self, fixed_store):
        created = await fixed_store.schedule_jobs_for_user("newcomer")
        morning = next(j for j in created if j.job_type == "morning_reflection")
        assert morning.scheduled_for == "2026-03-05T13:00:00+00:00"


class TestUsers:
    @pytest.mark.asyncio
    async def test_active_users(self, store, add_user):
        add_user("alice")
        add_user("bob", agents_enabled=False)
        users = await store.get_active_users(7)
        assert {u.id for u in users} == {"alice", "bob"}

    @pytest.mark.asyncio
    async def test_agents_enabled(self, store, add_user):
        add_user("alice")
        add_user("bob", agents_enabled=False)
        assert await store.user_agents_enabled("alice") is True
        assert await store.user_agents_enabled("bob") is False
        assert await store.user_agents_enabled("ghost") is False


class TestJobs:
    @pytest.mark.asyncio
    async def test_due_jobs_and_transitions(self, store, add_due_job):
        job_id = add_due_job("alice")
        due = await store.get_due_jobs()
        assert [j.id for j in due] == [job_id]

        assert await store.mark_job_started(job_id) is True
        assert await store.mark_job_completed(job_id, 2, 0) is True
        assert await store.get_due_jobs() == []
        assert (await store.get_job(job_id)).status == "completed"

    @pytest.mark.asyncio
    async def test_create_ad_hoc_job(self, store):
        job = await store.create_job("alice", "dream_session")
        assert job.job_type == "dream_session"
        assert job.schedule_date is None


class TestResearchTasks:
    @pytest.mark.asyncio
    async def test_failed_records_error_and_timestamp(self, store):
        task_id = await store.create_research_task("alice", "q")
        await store.mark_task_started(task_id)
        await store.mark_task_failed(task_id, "boom")
        task = await store.get_research_task(task_id)
        assert task.status == "failed"
        assert task.results["error"] == "boom"
        assert "timestamp" in task.results

    @pytest.mark.asyncio
    async def test_reset_stuck_returns_count(self, store, db_conn):
        task_id = await store.create_research_task("alice", "q")
        await store.mark_task_started(task_id)
        db_conn.execute(
            "UPDATE research_tasks SET last_attempted_at = '2000-01-01T00:00:00+00:00' WHERE id = ?",
            (task_id,),
        )
        db_conn.commit()
        assert await store.reset_stuck_tasks(10, max_attempts=3) == 1
        assert await store.reset_stuck_tasks(10, max_attempts=3) == 0
