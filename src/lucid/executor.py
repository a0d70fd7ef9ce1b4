"""Runs one agent job end to end and records its terminal state."""

import asyncio
import logging
from typing import Awaitable, Callable

from .agents import AgentResult, Handler
from .db import Job, JobType
from .store import JobStore

logger = logging.getLogger("lucid.executor")

CANCELLED_MESSAGE = "Cancelled during shutdown"


class JobDeadlineError(Exception):
    """A handler ran past the job-level deadline."""

    def __init__(self, timeout: float):
        super().__init__(f"Job exceeded {timeout:g}s deadline")
        self.timeout = timeout


def _error_message(exc: BaseException) -> str:
    return str(exc) or type(exc).__name__


class JobExecutor:
    """Executes jobs through a static job-type -> handler table.

    ``precondition`` is re-checked right before each run and returns a skip
    reason, or None when the job may proceed.
    """

    def __init__(
        self,
        store: JobStore,
        handlers: dict[JobType, Handler],
        precondition: Callable[[Job], Awaitable[str | None]] | None = None,
        job_timeout: float | None = None,
    ):
        missing = [jt.value for jt in JobType if jt not in handlers]
        if missing:
            raise ValueError(f"No handler registered for job type(s): {', '.join(missing)}")
        self.store = store
        self.handlers = handlers
        self.precondition = precondition
        self.job_timeout = job_timeout or None

    async def _invoke(self, handler: Handler, job: Job) -> AgentResult:
        if not self.job_timeout:
            return await handler(job.user_id, job.id)
        deadline = asyncio.timeout(self.job_timeout)
        try:
            async with deadline:
                return await handler(job.user_id, job.id)
        except TimeoutError as e:
            # A TimeoutError raised by the handler itself is an ordinary failure
            if deadline.expired():
                raise JobDeadlineError(self.job_timeout) from e
            raise

    async def execute(self, job: Job) -> str | None:
        """Run ``job`` and return the terminal status it reached.

        Returns None if the job was no longer pending and nothing ran.
        Handler failures are recorded, never raised. Cancellation is
        recorded as a failure and then propagates.
        """
        if self.precondition is not None:
            reason = await self.precondition(job)
            if reason:
                if await self.store.mark_job_skipped(job.id, reason):
                    logger.info("Skipped job %d (%s) for %s: %s", job.id, job.job_type, job.user_id, reason)
                    return "skipped"
                return None

        if not await self.store.mark_job_started(job.id):
            logger.info("Job %d is no longer pending, not running it", job.id)
            return None

        try:
            job_type = JobType(job.job_type)
        except ValueError:
            message = f"Unknown job type: {job.job_type}"
            logger.error("Job %d failed: %s", job.id, message)
            await self.store.mark_job_failed(job.id, message)
            return "failed"

        handler = self.handlers[job_type]
        logger.info("Running job %d (%s) for %s", job.id, job.job_type, job.user_id)
        try:
            result = await self._invoke(handler, job)
        except asyncio.CancelledError:
            logger.warning("Job %d cancelled", job.id)
            await self.store.mark_job_failed(job.id, CANCELLED_MESSAGE)
            raise
        except Exception as e:
            logger.error("Job %d (%s) failed for %s: %s", job.id, job.job_type, job.user_id, e)
            await self.store.mark_job_failed(job.id, _error_message(e))
            return "failed"

        await self.store.mark_job_completed(
            job.id, result.thoughts_generated, result.research_tasks_created,
        )
        logger.info(
            "Completed job %d (%s) for %s: %d thought(s), %d research task(s)",
            job.id, job.job_type, job.user_id,
            result.thoughts_generated, result.research_tasks_created,
        )
        return "completed"
