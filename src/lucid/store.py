"""Async job and research-task store over the sqlite database.

Each call runs its sqlite work on a worker thread with its own connection,
so every store operation is a suspension point for the event loop.
"""

import asyncio
import logging
from datetime import date, datetime, timedelta
from pathlib import Path

from . import db
from .circadian import plan_day, resolve_timezone

logger = logging.getLogger("lucid.store")


class JobStore:
    def __init__(self, db_path: Path, slots: dict[str, str], default_timezone: str,
                 clock=db.utcnow):
        self.db_path = db_path
        self.slots = slots
        self.default_timezone = default_timezone
        self.clock = clock

    async def _run(self, fn, *args, **kwargs):
        def work():
            with db.get_db(self.db_path) as conn:
                return fn(conn, *args, **kwargs)
        return await asyncio.to_thread(work)

    # -- users --------------------------------------------------------------

    async def get_user(self, user_id: str) -> db.User | None:
        return await self._run(db.get_user, user_id)

    async def get_active_users(self, active_days: int) -> list[db.User]:
        """Users active in the last ``active_days`` days, most recent first."""
        since = self.clock() - timedelta(days=active_days)
        return await self._run(db.get_recently_active_users, since)

    async def user_agents_enabled(self, user_id: str) -> bool:
        user = await self.get_user(user_id)
        return user is not None and user.agents_enabled

    # -- jobs ---------------------------------------------------------------

    async def get_due_jobs(self) -> list[db.Job]:
        return await self._run(db.get_due_jobs, self.clock())

    async def get_job(self, job_id: int) -> db.Job | None:
        return await self._run(db.get_job, job_id)

    async def create_job(
        self, user_id: str, job_type: str, scheduled_for: datetime | None = None,
    ) -> db.Job:
        """Create an ad hoc job outside the daily plan."""
        def work(conn):
            job_id = db.create_job(conn, user_id, job_type, scheduled_for or self.clock())
            return db.get_job(conn, job_id)
        return await self._run(work)

    async def schedule_jobs_for_user(
        self, user_id: str, local_date: date | None = None,
    ) -> list[db.Job]:
        """Materialize the circadian plan for one user and date.

        Idempotent: job types already present for a date are left alone.
        Returns only the jobs created by this call.
        """
        now = self.clock()

        def work(conn):
            user = db.get_user(conn, user_id)
            tz = resolve_timezone(user.timezone if user else None, self.default_timezone)
            plan_date = local_date or now.astimezone(tz).date()
            created = []
            for planned in plan_day(plan_date, tz, self.slots, now):
                job_id = db.create_job(
                    conn, user_id, planned.job_type,
                    planned.scheduled_for, planned.schedule_date,
                )
                if job_id is not None:
                    created.append(db.get_job(conn, job_id))
            return created

        created = await self._run(work)
        logger.debug("Scheduled %d job(s) for user %s", len(created), user_id)
        return created

    async def mark_job_started(self, job_id: int) -> bool:
        return await self._run(db.mark_job_started, job_id)

    async def mark_job_completed(
        self, job_id: int, thoughts_generated: int, research_tasks_created: int,
    ) -> bool:
        return await self._run(
            db.mark_job_completed, job_id, thoughts_generated, research_tasks_created,
        )

    async def mark_job_failed(self, job_id: int, error_message: str) -> bool:
        return await self._run(db.mark_job_failed, job_id, error_message)

    async def mark_job_skipped(self, job_id: int, reason: str) -> bool:
        return await self._run(db.mark_job_skipped, job_id, reason)

    # -- thoughts -----------------------------------------------------------

    async def add_thought(
        self, user_id: str, content: str, job_id: int | None = None, job_type: str | None = None,
    ) -> int:
        return await self._run(db.create_thought, user_id, content, job_id, job_type)

    async def get_recent_thoughts(self, user_id: str, limit: int = 10) -> list[db.Thought]:
        return await self._run(db.get_recent_thoughts, user_id, limit)

    # -- research tasks -----------------------------------------------------

    async def create_research_task(
        self,
        user_id: str,
        query: str,
        approach: str = "exploratory",
        purpose: str | None = None,
        priority: int = 5,
    ) -> int:
        return await self._run(db.create_research_task, user_id, query, approach, purpose, priority)

    async def get_research_task(self, task_id: int) -> db.ResearchTask | None:
        return await self._run(db.get_research_task, task_id)

    async def reset_stuck_tasks(self, threshold_minutes: int, max_attempts: int) -> int:
        """Reclaim stale in-progress tasks. Returns the number reset to pending."""
        reset_ids, failed_ids = await self._run(
            db.reset_stuck_research_tasks, threshold_minutes, max_attempts, self.clock(),
        )
        if failed_ids:
            logger.warning(
                "Failed %d stuck research task(s) out of attempts: %s", len(failed_ids), failed_ids,
            )
        if reset_ids:
            logger.info("Reset %d stuck research task(s): %s", len(reset_ids), reset_ids)
        return len(reset_ids)

    async def get_pending_tasks(self, limit: int) -> list[db.ResearchTask]:
        return await self._run(db.get_pending_research_tasks, limit)

    async def mark_task_started(self, task_id: int) -> bool:
        return await self._run(db.mark_research_task_started, task_id)

    async def mark_task_completed(self, task_id: int, results: dict) -> bool:
        return await self._run(db.mark_research_task_completed, task_id, results)

    async def mark_task_failed(self, task_id: int, error: str) -> bool:
        error_results = {"error": error, "timestamp": db.to_timestamp(self.clock())}
        return await self._run(db.mark_research_task_failed, task_id, error_results)
