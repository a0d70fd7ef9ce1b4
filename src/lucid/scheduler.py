"""Agent job scheduler: daily generation, due-job dispatch, research ticks."""

import asyncio
import fcntl
import logging
import os
import signal
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from zoneinfo import ZoneInfo

from croniter import croniter

from . import db
from .agents import build_handlers
from .config import Config, load_config
from .executor import JobExecutor
from .guard import ConcurrencyGuard, UserLease
from .research import ResearchAnalyzer, ResearchSummary, ResearchTaskRunner
from .search import SearchClient
from .store import JobStore

logger = logging.getLogger("lucid.scheduler")

AGENTS_DISABLED = "Autonomous agents disabled"
AGENTS_DISABLED_BY_USER = "Agents disabled by user"

DAEMON_LOCK_PATH = Path("/tmp/lucid-scheduler-daemon.lock")


@dataclass
class GenerationSummary:
    users: int = 0
    scheduled: int = 0  # users that got a plan
    skipped: int = 0  # users with agents disabled
    failed: int = 0
    jobs_created: int = 0


def make_precondition(config: Config, store: JobStore):
    """Build the check the executor runs right before each job."""

    async def precondition(job: db.Job) -> str | None:
        if not config.agents.enabled:
            return AGENTS_DISABLED
        if not await store.user_agents_enabled(job.user_id):
            return AGENTS_DISABLED_BY_USER
        return None

    return precondition


class JobScheduler:
    def __init__(
        self,
        config: Config,
        store: JobStore,
        executor: JobExecutor,
        research_runner: ResearchTaskRunner | None = None,
        guard: ConcurrencyGuard | None = None,
        clock=db.utcnow,
    ):
        self.config = config
        self.store = store
        self.executor = executor
        self.research_runner = research_runner
        self.guard = guard or ConcurrencyGuard()
        self.clock = clock
        self._loops: list[asyncio.Task] = []
        self._inflight: set[asyncio.Task] = set()
        self._research_ticks: set[asyncio.Task] = set()

    @property
    def running(self) -> bool:
        return bool(self._loops)

    @property
    def inflight_count(self) -> int:
        return len(self._inflight)

    # -- lifecycle ----------------------------------------------------------

    async def start(self) -> None:
        """Catch up on today's jobs, then start the periodic loops."""
        if self._loops:
            return
        logger.info(
            "Scheduler starting (dispatch every %ds, generation '%s' %s)",
            self.config.scheduler.dispatch_interval,
            self.config.scheduler.generation_cron,
            self.config.scheduler.generation_timezone,
        )
        await self.generate_daily_jobs()

        self._loops.append(asyncio.create_task(self._generation_loop(), name="lucid-generation"))
        self._loops.append(asyncio.create_task(self._dispatch_loop(), name="lucid-dispatch"))
        if self.research_runner is not None and self.config.research.enabled:
            self._loops.append(asyncio.create_task(self._research_loop(), name="lucid-research"))

    async def stop(self) -> None:
        """Stop the loops and wait for in-flight user sequences to finish."""
        loops, self._loops = self._loops, []
        for task in loops:
            task.cancel()
        await asyncio.gather(*loops, return_exceptions=True)

        inflight = list(self._inflight | self._research_ticks)
        if inflight:
            grace = self.config.scheduler.shutdown_grace_seconds
            logger.info("Waiting up to %ds for %d in-flight task(s)", grace, len(inflight))
            _, pending = await asyncio.wait(inflight, timeout=grace)
            for task in pending:
                task.cancel()
            if pending:
                logger.warning("Cancelled %d task(s) at shutdown", len(pending))
                await asyncio.gather(*pending, return_exceptions=True)
        logger.info("Scheduler stopped")

    async def wait_idle(self) -> None:
        """Wait until no user sequences are in flight."""
        while self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)

    # -- loops --------------------------------------------------------------

    def _next_generation_delay(self) -> float:
        tz = ZoneInfo(self.config.scheduler.generation_timezone)
        now = self.clock().astimezone(tz)
        next_run = croniter(self.config.scheduler.generation_cron, now).get_next(datetime)
        return max((next_run - now).total_seconds(), 0.0)

    async def _generation_loop(self) -> None:
        while True:
            try:
                delay = self._next_generation_delay()
            except Exception as e:
                # Bad generation_cron or generation_timezone
                retry_in = self.config.scheduler.dispatch_interval
                logger.error("Cannot compute next daily generation: %s (retrying in %ss)", e, retry_in)
                await asyncio.sleep(retry_in)
                continue
            logger.debug("Next daily generation in %.0fs", delay)
            await asyncio.sleep(delay)
            try:
                await self.generate_daily_jobs()
            except Exception as e:
                logger.error("Daily generation error: %s", e)

    async def _dispatch_loop(self) -> None:
        while True:
            try:
                await self.dispatch_due_jobs()
            except Exception as e:
                logger.error("Dispatch tick error: %s", e)
            await asyncio.sleep(self.config.scheduler.dispatch_interval)

    async def _research_loop(self) -> None:
        while True:
            await asyncio.sleep(self.config.research.interval)
            # Runs as its own task so a slow tick overlaps the next firing,
            # which the runner's single-flight flag turns into a no-op
            task = asyncio.create_task(self.run_research_tick(), name="lucid-research-tick")
            self._research_ticks.add(task)
            task.add_done_callback(self._research_ticks.discard)

    # -- operations ---------------------------------------------------------

    async def generate_daily_jobs(self) -> GenerationSummary:
        """Materialize today's circadian jobs for every recently active user."""
        summary = GenerationSummary()
        if not self.config.agents.enabled:
            logger.debug("Autonomous agents disabled, skipping daily generation")
            return summary

        try:
            users = await self.store.get_active_users(self.config.scheduler.active_user_days)
        except Exception as e:
            logger.error("Failed to fetch users for job generation: %s", e)
            return summary

        if not users:
            logger.info("No recently active users for job generation")
            return summary

        summary.users = len(users)
        for user in users:
            if not user.agents_enabled:
                logger.info("Skipping job generation for %s (agents disabled)", user.id)
                summary.skipped += 1
                continue
            try:
                created = await self.store.schedule_jobs_for_user(user.id)
            except Exception as e:
                logger.error("Failed to schedule jobs for %s: %s", user.id, e)
                summary.failed += 1
                continue
            summary.scheduled += 1
            summary.jobs_created += len(created)
            logger.info(
                "Scheduled %d job(s) for %s: %s",
                len(created), user.id, ", ".join(j.job_type for j in created) or "none new",
            )

        logger.info(
            "Daily generation: %d user(s), %d scheduled, %d skipped, %d failed",
            summary.users, summary.scheduled, summary.skipped, summary.failed,
        )
        return summary

    async def schedule_jobs_for_user(self, user_id: str) -> list[db.Job]:
        """Create today's plan for one user, e.g. right after signup."""
        if not self.config.agents.enabled:
            logger.info("Not scheduling jobs for %s (autonomous agents disabled)", user_id)
            return []
        if not await self.store.user_agents_enabled(user_id):
            logger.info("Not scheduling jobs for %s (agents disabled by user)", user_id)
            return []
        return await self.store.schedule_jobs_for_user(user_id)

    async def dispatch_due_jobs(self) -> list[str]:
        """One dispatch tick. Returns the user ids whose jobs were started.

        Users that already have a sequence running are left for a later tick,
        as are users beyond the in-flight cap.
        """
        jobs = await self.store.get_due_jobs()
        if not jobs:
            logger.debug("No due jobs")
            return []

        by_user: dict[str, list[db.Job]] = {}
        for job in jobs:
            by_user.setdefault(job.user_id, []).append(job)

        cap = self.config.scheduler.max_concurrent_users
        dispatched = []
        deferred = 0
        for user_id, user_jobs in by_user.items():
            if self.guard.is_held(user_id):
                logger.debug("User %s already processing, skipping this tick", user_id)
                continue
            if cap and len(self._inflight) >= cap:
                deferred += 1
                continue
            lease = self.guard.acquire(user_id)
            if lease is None:
                continue
            user_jobs.sort(key=lambda j: (j.scheduled_for, j.id))
            task = asyncio.create_task(
                self._run_user_jobs(lease, user_jobs), name=f"lucid-user-{user_id}",
            )
            self._inflight.add(task)
            task.add_done_callback(self._inflight.discard)
            dispatched.append(user_id)

        if deferred:
            logger.info("Deferred %d user(s) to next tick (%d in flight)", deferred, len(self._inflight))
        if dispatched:
            logger.info("Dispatched due jobs for %d user(s)", len(dispatched))
        return dispatched

    async def _run_user_jobs(self, lease: UserLease, jobs: list[db.Job]) -> None:
        with lease:
            for job in jobs:
                try:
                    await self.executor.execute(job)
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    logger.error("Error processing job %d for %s: %s", job.id, job.user_id, e)

    async def trigger_job(self, job_id: int) -> str | None:
        """Run one job now under its user's lock.

        Raises LookupError for an unknown id and UserBusyError when the
        user already has a job executing.
        """
        job = await self.store.get_job(job_id)
        if job is None:
            raise LookupError(f"Job {job_id} not found")
        logger.info("Manually triggering job %d", job_id)
        with self.guard.lease(job.user_id):
            return await self.executor.execute(job)

    async def run_research_tick(self) -> ResearchSummary:
        if self.research_runner is None:
            return ResearchSummary()
        return await self.research_runner.run_once()


def build_scheduler(config: Config, llm=None) -> JobScheduler:
    """Wire store, handlers, executor and research runner from config."""
    store = JobStore(config.db_path, config.agents.slots, config.agents.default_timezone)
    llm_kwargs = {"llm": llm} if llm is not None else {}
    executor = JobExecutor(
        store,
        build_handlers(config, store, **llm_kwargs),
        precondition=make_precondition(config, store),
        job_timeout=config.scheduler.job_timeout_minutes * 60,
    )
    runner = ResearchTaskRunner(
        store,
        SearchClient(config.search),
        ResearchAnalyzer(config.agents, **llm_kwargs),
        config.research,
    )
    return JobScheduler(config, store, executor, research_runner=runner)


def prepare_database(config: Config) -> None:
    config.db_path.parent.mkdir(parents=True, exist_ok=True)
    db.init_db(config.db_path)


async def run_once(config: Config) -> int:
    """Single pass: generate, dispatch, wait, then one research tick."""
    scheduler = build_scheduler(config)
    await scheduler.generate_daily_jobs()
    dispatched = await scheduler.dispatch_due_jobs()
    await scheduler.wait_idle()
    if config.research.enabled:
        await scheduler.run_research_tick()
    return len(dispatched)


async def _serve(config: Config) -> None:
    scheduler = build_scheduler(config)
    stop_event = asyncio.Event()

    loop = asyncio.get_running_loop()
    for signum in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(signum, _request_shutdown, signum, stop_event)

    await scheduler.start()
    await stop_event.wait()
    await scheduler.stop()


def _request_shutdown(signum: int, stop_event: asyncio.Event) -> None:
    logger.info("Received signal %d, shutting down gracefully...", signum)
    stop_event.set()


def run_daemon(config: Config) -> None:
    """Run the scheduler loops until SIGTERM/SIGINT."""
    # Acquire exclusive lock to prevent multiple daemon instances
    lock_file = open(DAEMON_LOCK_PATH, "w")
    try:
        fcntl.flock(lock_file, fcntl.LOCK_EX | fcntl.LOCK_NB)
    except BlockingIOError:
        logger.error("Another scheduler daemon is already running. Exiting.")
        lock_file.close()
        return

    lock_file.write(str(os.getpid()))
    lock_file.flush()

    logger.info("STARTUP Scheduler daemon starting (pid: %d)", os.getpid())
    logger.info("STARTUP Autonomous agents: %s", "enabled" if config.agents.enabled else "disabled")
    logger.info("STARTUP Web research: %s", "enabled" if config.research.enabled else "disabled")
    logger.info("STARTUP Max concurrent users: %d", config.scheduler.max_concurrent_users)

    try:
        asyncio.run(_serve(config))
    finally:
        fcntl.flock(lock_file, fcntl.LOCK_UN)
        lock_file.close()

    logger.info("Shutdown complete.")


def main():
    """Entry point for scheduler script."""
    import argparse

    from .logging_setup import setup_logging

    parser = argparse.ArgumentParser(description="Lucid agent job scheduler")
    parser.add_argument("-c", "--config", help="Path to config file")
    parser.add_argument("--daemon", "-d", action="store_true", help="Run as daemon (continuous loop)")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable verbose logging")
    args = parser.parse_args()

    config = load_config(Path(args.config) if args.config else None)
    setup_logging(config, verbose=args.verbose, daemon_mode=args.daemon)
    prepare_database(config)

    if args.daemon:
        run_daemon(config)
    else:
        dispatched = asyncio.run(run_once(config))
        logger.info("Dispatched jobs for %d user(s)", dispatched)


if __name__ == "__main__":
    main()
