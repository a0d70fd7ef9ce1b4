"""CLI interface for local testing and administration."""

import argparse
import asyncio
import json
import sys
from datetime import datetime
from pathlib import Path

from . import db
from .config import load_config
from .guard import UserBusyError
from .logging_setup import setup_logging
from .scheduler import build_scheduler, prepare_database


def _config(args):
    return load_config(Path(args.config) if args.config else None)


def cmd_init(args):
    """Initialize the database."""
    config = _config(args)
    prepare_database(config)
    print(f"Database initialized at {config.db_path}")


# -- users --------------------------------------------------------------------


def cmd_user_add(args):
    config = _config(args)
    with db.get_db(config.db_path) as conn:
        db.upsert_user(
            conn, args.user_id,
            display_name=args.name,
            timezone_name=args.timezone,
            agents_enabled=not args.disabled,
        )
    print(f"User {args.user_id} saved")


def cmd_user_list(args):
    config = _config(args)
    with db.get_db(config.db_path) as conn:
        users = db.list_users(conn)

    if not users:
        print("No users found")
        return

    for u in users:
        agents = "on" if u.agents_enabled else "off"
        print(f"{u.id:20} agents={agents:3} tz={u.timezone or '-':20} last_active={u.last_active_at or '-'}")


def _set_agents(args, enabled: bool):
    config = _config(args)
    with db.get_db(config.db_path) as conn:
        found = db.set_agents_enabled(conn, args.user_id, enabled)
    if not found:
        print(f"User {args.user_id} not found", file=sys.stderr)
        sys.exit(1)
    print(f"Agents {'enabled' if enabled else 'disabled'} for {args.user_id}")


def cmd_user_enable(args):
    _set_agents(args, True)


def cmd_user_disable(args):
    _set_agents(args, False)


def cmd_user_touch(args):
    """Mark a user as active now."""
    config = _config(args)
    with db.get_db(config.db_path) as conn:
        found = db.touch_user(conn, args.user_id)
    if not found:
        print(f"User {args.user_id} not found", file=sys.stderr)
        sys.exit(1)
    print(f"Marked {args.user_id} active")


# -- jobs ---------------------------------------------------------------------


def cmd_jobs_list(args):
    config = _config(args)
    with db.get_db(config.db_path) as conn:
        jobs = db.list_jobs(
            conn,
            user_id=args.user,
            status=args.status,
            job_type=args.type,
            limit=args.limit,
        )

    if not jobs:
        print("No jobs found")
        return

    for j in jobs:
        print(f"[{j.id}] {j.status:10} {j.user_id:15} {j.job_type:26} {j.scheduled_for}")


def cmd_jobs_show(args):
    config = _config(args)
    with db.get_db(config.db_path) as conn:
        job = db.get_job(conn, args.job_id)
    if not job:
        print(f"Job {args.job_id} not found", file=sys.stderr)
        sys.exit(1)

    print(f"Job ID: {job.id}")
    print(f"Type: {job.job_type}")
    print(f"Status: {job.status}")
    print(f"User: {job.user_id}")
    print(f"Scheduled for: {job.scheduled_for}")
    if job.schedule_date:
        print(f"Schedule date: {job.schedule_date}")
    if job.started_at:
        print(f"Started: {job.started_at}")
    if job.completed_at:
        print(f"Completed: {job.completed_at}")
    print(f"Thoughts generated: {job.thoughts_generated}")
    print(f"Research tasks created: {job.research_tasks_created}")
    if job.skip_reason:
        print(f"\nSkipped: {job.skip_reason}")
    if job.error_message:
        print(f"\nError:\n{job.error_message}")


def cmd_jobs_add(args):
    """Create an ad hoc job."""
    try:
        job_type = db.JobType(args.job_type)
    except ValueError:
        valid = ", ".join(jt.value for jt in db.JobType)
        print(f"Unknown job type {args.job_type!r}. Valid types: {valid}", file=sys.stderr)
        sys.exit(1)

    scheduled_for = datetime.fromisoformat(args.at) if args.at else db.utcnow()
    config = _config(args)
    with db.get_db(config.db_path) as conn:
        job_id = db.create_job(conn, args.user_id, job_type.value, scheduled_for)
    print(f"Created job {job_id} ({job_type.value}) for {args.user_id}")


def cmd_jobs_trigger(args):
    """Run one pending job now."""
    config = _config(args)
    scheduler = build_scheduler(config)
    try:
        status = asyncio.run(scheduler.trigger_job(args.job_id))
    except LookupError as e:
        print(str(e), file=sys.stderr)
        sys.exit(1)
    except UserBusyError as e:
        print(str(e), file=sys.stderr)
        sys.exit(1)

    if status is None:
        print(f"Job {args.job_id} was not pending, nothing ran")
    else:
        print(f"Job {args.job_id}: {status}")


def cmd_jobs_schedule(args):
    """Create today's circadian jobs for one user."""
    config = _config(args)
    scheduler = build_scheduler(config)
    created = asyncio.run(scheduler.schedule_jobs_for_user(args.user_id))
    if not created:
        print(f"No new jobs for {args.user_id}")
        return
    for j in created:
        print(f"[{j.id}] {j.job_type:26} {j.scheduled_for}")


# -- research -----------------------------------------------------------------


def cmd_research_add(args):
    config = _config(args)
    with db.get_db(config.db_path) as conn:
        try:
            task_id = db.create_research_task(
                conn, args.user_id, args.query,
                approach=args.approach,
                purpose=args.purpose,
                priority=args.priority,
            )
        except ValueError as e:
            print(str(e), file=sys.stderr)
            sys.exit(1)
    print(f"Created research task {task_id}")


def cmd_research_list(args):
    config = _config(args)
    with db.get_db(config.db_path) as conn:
        tasks = db.list_research_tasks(conn, status=args.status, limit=args.limit)

    if not tasks:
        print("No research tasks found")
        return

    for t in tasks:
        query_preview = t.query[:60] + "..." if len(t.query) > 60 else t.query
        print(f"[{t.id}] {t.status:11} p{t.priority:<2} {t.approach:11} {t.user_id:15} {query_preview}")
        if args.verbose_results and t.results:
            print(json.dumps(t.results, indent=2))


def cmd_research_run(args):
    """Run one research tick now."""
    config = _config(args)
    scheduler = build_scheduler(config)
    summary = asyncio.run(scheduler.run_research_tick())
    print(f"Processed {summary.processed}: {summary.successful} successful, {summary.failed} failed")


def main():
    parser = argparse.ArgumentParser(description="Lucid CLI")
    parser.add_argument("-c", "--config", help="Path to config file")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable verbose (DEBUG) logging")
    subparsers = parser.add_subparsers(dest="command", required=True)

    # init
    subparsers.add_parser("init", help="Initialize database")

    # user
    user_parser = subparsers.add_parser("user", help="User management")
    user_subparsers = user_parser.add_subparsers(dest="user_action", required=True)

    user_add_parser = user_subparsers.add_parser("add", help="Add or update a user")
    user_add_parser.add_argument("user_id", help="User ID")
    user_add_parser.add_argument("--name", help="Display name")
    user_add_parser.add_argument("--timezone", help="IANA timezone, e.g. America/Chicago")
    user_add_parser.add_argument("--disabled", action="store_true", help="Create with agents disabled")

    user_subparsers.add_parser("list", help="List users")

    for action, help_text in (
        ("enable", "Enable autonomous agents for a user"),
        ("disable", "Disable autonomous agents for a user"),
        ("touch", "Mark a user as active now"),
    ):
        p = user_subparsers.add_parser(action, help=help_text)
        p.add_argument("user_id", help="User ID")

    # jobs
    jobs_parser = subparsers.add_parser("jobs", help="Agent jobs")
    jobs_subparsers = jobs_parser.add_subparsers(dest="jobs_action", required=True)

    jobs_list_parser = jobs_subparsers.add_parser("list", help="List jobs")
    jobs_list_parser.add_argument("-u", "--user", help="Filter by user")
    jobs_list_parser.add_argument("-s", "--status", choices=db.JOB_STATUSES, help="Filter by status")
    jobs_list_parser.add_argument("-t", "--type", help="Filter by job type")
    jobs_list_parser.add_argument("-l", "--limit", type=int, default=50, help="Max results")

    jobs_show_parser = jobs_subparsers.add_parser("show", help="Show job details")
    jobs_show_parser.add_argument("job_id", type=int, help="Job ID")

    jobs_add_parser = jobs_subparsers.add_parser("add", help="Create an ad hoc job")
    jobs_add_parser.add_argument("user_id", help="User ID")
    jobs_add_parser.add_argument("job_type", help="Job type")
    jobs_add_parser.add_argument("--at", help="ISO timestamp to run at (default: now)")

    jobs_trigger_parser = jobs_subparsers.add_parser("trigger", help="Run a pending job now")
    jobs_trigger_parser.add_argument("job_id", type=int, help="Job ID")

    jobs_schedule_parser = jobs_subparsers.add_parser("schedule", help="Create today's jobs for a user")
    jobs_schedule_parser.add_argument("user_id", help="User ID")

    # research
    research_parser = subparsers.add_parser("research", help="Research tasks")
    research_subparsers = research_parser.add_subparsers(dest="research_action", required=True)

    research_add_parser = research_subparsers.add_parser("add", help="Queue a research task")
    research_add_parser.add_argument("user_id", help="User ID")
    research_add_parser.add_argument("query", help="Search query")
    research_add_parser.add_argument(
        "--approach", default="exploratory", choices=db.RESEARCH_APPROACHES, help="Research approach",
    )
    research_add_parser.add_argument("--priority", type=int, default=5, help="Higher runs first")
    research_add_parser.add_argument("--purpose", help="Why this is being researched")

    research_list_parser = research_subparsers.add_parser("list", help="List research tasks")
    research_list_parser.add_argument("-s", "--status", choices=db.RESEARCH_STATUSES, help="Filter by status")
    research_list_parser.add_argument("-l", "--limit", type=int, default=50, help="Max results")
    research_list_parser.add_argument(
        "--results", dest="verbose_results", action="store_true", help="Print stored results",
    )

    research_subparsers.add_parser("run", help="Run one research tick")

    args = parser.parse_args()

    # Load config and setup logging (except for init which doesn't need full config)
    if args.command != "init":
        config = load_config(Path(args.config) if args.config else None)
        setup_logging(config, verbose=args.verbose)

    if args.command == "user":
        user_commands = {
            "add": cmd_user_add,
            "list": cmd_user_list,
            "enable": cmd_user_enable,
            "disable": cmd_user_disable,
            "touch": cmd_user_touch,
        }
        user_commands[args.user_action](args)
    elif args.command == "jobs":
        jobs_commands = {
            "list": cmd_jobs_list,
            "show": cmd_jobs_show,
            "add": cmd_jobs_add,
            "trigger": cmd_jobs_trigger,
            "schedule": cmd_jobs_schedule,
        }
        jobs_commands[args.jobs_action](args)
    elif args.command == "research":
        research_commands = {
            "add": cmd_research_add,
            "list": cmd_research_list,
            "run": cmd_research_run,
        }
        research_commands[args.research_action](args)
    else:
        cmd_init(args)


if __name__ == "__main__":
    main()
