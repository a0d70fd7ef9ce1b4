"""Database operations for lucid agent jobs and research tasks."""

import json
import logging
import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from pathlib import Path
from typing import Iterator

logger = logging.getLogger("lucid.db")


class JobType(str, Enum):
    """Closed set of agent job types."""

    MORNING_REFLECTION = "morning_reflection"
    MIDDAY_CURIOSITY = "midday_curiosity"
    AFTERNOON_SYNTHESIS = "afternoon_synthesis"
    EVENING_CONSOLIDATION = "evening_consolidation"
    NIGHT_DREAM = "night_dream"
    DOCUMENT_REFLECTION = "document_reflection"
    SELF_REVIEW = "self_review"
    # Specialized sessions, created ad hoc rather than by the daily plan
    MORNING_CURIOSITY_SESSION = "morning_curiosity_session"
    DREAM_SESSION = "dream_session"
    STATE_SESSION = "state_session"
    ORBIT_SESSION = "orbit_session"


JOB_STATUSES = ("pending", "running", "completed", "failed", "skipped")
TERMINAL_JOB_STATUSES = frozenset({"completed", "failed", "skipped"})

RESEARCH_APPROACHES = ("gentle", "exploratory", "supportive", "analytical")
RESEARCH_STATUSES = ("pending", "in_progress", "completed", "failed")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_timestamp(dt: datetime) -> str:
    """Format a datetime as the UTC ISO string stored in the database."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="seconds")


def parse_timestamp(value: str) -> datetime:
    dt = datetime.fromisoformat(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


@dataclass
class User:
    id: str
    display_name: str | None = None
    timezone: str | None = None
    agents_enabled: bool = True
    last_active_at: str | None = None
    created_at: str | None = None


@dataclass
class Job:
    id: int
    user_id: str
    job_type: str
    status: str
    scheduled_for: str
    schedule_date: str | None = None
    started_at: str | None = None
    completed_at: str | None = None
    error_message: str | None = None
    skip_reason: str | None = None
    thoughts_generated: int = 0
    research_tasks_created: int = 0
    created_at: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_JOB_STATUSES


@dataclass
class ResearchTask:
    id: int
    user_id: str
    query: str
    approach: str = "exploratory"
    purpose: str | None = None
    priority: int = 5
    status: str = "pending"
    results: dict | None = None
    attempt_count: int = 0
    last_attempted_at: str | None = None
    created_at: str | None = None
    completed_at: str | None = None


@dataclass
class Thought:
    id: int
    user_id: str
    content: str
    job_id: int | None = None
    job_type: str | None = None
    created_at: str | None = None


def init_db(db_path: Path) -> None:
    """Initialize database with schema."""
    schema_path = Path(__file__).parent.parent.parent / "schema.sql"
    with sqlite3.connect(db_path) as conn:
        conn.executescript(schema_path.read_text())


@contextmanager
def get_db(db_path: Path) -> Iterator[sqlite3.Connection]:
    """Get database connection with row factory."""
    # timeout=30.0 waits up to 30s for locks instead of failing immediately
    conn = sqlite3.connect(db_path, timeout=30.0)
    conn.execute("PRAGMA journal_mode=WAL")
    conn.row_factory = sqlite3.Row
    try:
        yield conn
        conn.commit()
    finally:
        conn.close()


# ============================================================================
# Users
# ============================================================================


def _row_to_user(row: sqlite3.Row) -> User:
    return User(
        id=row["id"],
        display_name=row["display_name"],
        timezone=row["timezone"],
        agents_enabled=bool(row["agents_enabled"]),
        last_active_at=row["last_active_at"],
        created_at=row["created_at"],
    )


def upsert_user(
    conn: sqlite3.Connection,
    user_id: str,
    display_name: str | None = None,
    timezone_name: str | None = None,
    agents_enabled: bool = True,
) -> None:
    conn.execute(
        """
        INSERT INTO users (id, display_name, timezone, agents_enabled, last_active_at)
        VALUES (?, ?, ?, ?, ?)
        ON CONFLICT(id) DO UPDATE SET
            display_name = COALESCE(excluded.display_name, users.display_name),
            timezone = COALESCE(excluded.timezone, users.timezone),
            agents_enabled = excluded.agents_enabled
        """,
        (user_id, display_name, timezone_name, 1 if agents_enabled else 0, to_timestamp(utcnow())),
    )


def get_user(conn: sqlite3.Connection, user_id: str) -> User | None:
    row = conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
    if not row:
        return None
    return _row_to_user(row)


def list_users(conn: sqlite3.Connection) -> list[User]:
    cursor = conn.execute("SELECT * FROM users ORDER BY id")
    return [_row_to_user(row) for row in cursor.fetchall()]


def touch_user(conn: sqlite3.Connection, user_id: str, at: datetime | None = None) -> bool:
    """Record user activity. Returns False if the user does not exist."""
    cursor = conn.execute(
        "UPDATE users SET last_active_at = ? WHERE id = ?",
        (to_timestamp(at or utcnow()), user_id),
    )
    return cursor.rowcount > 0


def set_agents_enabled(conn: sqlite3.Connection, user_id: str, enabled: bool) -> bool:
    cursor = conn.execute(
        "UPDATE users SET agents_enabled = ? WHERE id = ?",
        (1 if enabled else 0, user_id),
    )
    return cursor.rowcount > 0


def get_recently_active_users(
    conn: sqlite3.Connection, since: datetime,
) -> list[User]:
    """Users active at or after ``since``, most recently active first."""
    cursor = conn.execute(
        """
        SELECT * FROM users
        WHERE last_active_at IS NOT NULL AND last_active_at >= ?
        ORDER BY last_active_at DESC
        """,
        (to_timestamp(since),),
    )
    return [_row_to_user(row) for row in cursor.fetchall()]


# ============================================================================
# Agent jobs
# ============================================================================


def _row_to_job(row: sqlite3.Row) -> Job:
    return Job(
        id=row["id"],
        user_id=row["user_id"],
        job_type=row["job_type"],
        status=row["status"],
        scheduled_for=row["scheduled_for"],
        schedule_date=row["schedule_date"],
        started_at=row["started_at"],
        completed_at=row["completed_at"],
        error_message=row["error_message"],
        skip_reason=row["skip_reason"],
        thoughts_generated=row["thoughts_generated"] or 0,
        research_tasks_created=row["research_tasks_created"] or 0,
        created_at=row["created_at"],
    )


def create_job(
    conn: sqlite3.Connection,
    user_id: str,
    job_type: str,
    scheduled_for: datetime,
    schedule_date: str | None = None,
) -> int | None:
    """Create a pending job and return its ID.

    Returns None if a job of this type already exists for the user on
    ``schedule_date``.
    """
    cursor = conn.execute(
        """
        INSERT OR IGNORE INTO agent_jobs (user_id, job_type, scheduled_for, schedule_date)
        VALUES (?, ?, ?, ?)
        RETURNING id
        """,
        (user_id, job_type, to_timestamp(scheduled_for), schedule_date),
    )
    row = cursor.fetchone()
    if not row:
        return None
    logger.debug("Created %s job %d for user %s", job_type, row[0], user_id)
    return row[0]


def get_job(conn: sqlite3.Connection, job_id: int) -> Job | None:
    row = conn.execute("SELECT * FROM agent_jobs WHERE id = ?", (job_id,)).fetchone()
    if not row:
        return None
    return _row_to_job(row)


def get_due_jobs(conn: sqlite3.Connection, now: datetime) -> list[Job]:
    """Pending jobs whose scheduled time has passed, oldest first."""
    cursor = conn.execute(
        """
        SELECT * FROM agent_jobs
        WHERE status = 'pending' AND scheduled_for <= ?
        ORDER BY scheduled_for ASC, id ASC
        """,
        (to_timestamp(now),),
    )
    return [_row_to_job(row) for row in cursor.fetchall()]


def list_jobs(
    conn: sqlite3.Connection,
    user_id: str | None = None,
    status: str | None = None,
    job_type: str | None = None,
    limit: int = 50,
) -> list[Job]:
    filters = []
    params: list = []
    if user_id is not None:
        filters.append("user_id = ?")
        params.append(user_id)
    if status is not None:
        filters.append("status = ?")
        params.append(status)
    if job_type is not None:
        filters.append("job_type = ?")
        params.append(job_type)
    where_clause = f"WHERE {' AND '.join(filters)}" if filters else ""
    params.append(limit)
    cursor = conn.execute(
        f"SELECT * FROM agent_jobs {where_clause} ORDER BY scheduled_for DESC, id DESC LIMIT ?",
        params,
    )
    return [_row_to_job(row) for row in cursor.fetchall()]


def mark_job_started(conn: sqlite3.Connection, job_id: int) -> bool:
    """pending -> running. Returns False if the job was no longer pending."""
    cursor = conn.execute(
        "UPDATE agent_jobs SET status = 'running', started_at = ? WHERE id = ? AND status = 'pending'",
        (to_timestamp(utcnow()), job_id),
    )
    return cursor.rowcount > 0


def mark_job_completed(
    conn: sqlite3.Connection,
    job_id: int,
    thoughts_generated: int,
    research_tasks_created: int,
) -> bool:
    """running -> completed with handler counters."""
    cursor = conn.execute(
        """
        UPDATE agent_jobs
        SET status = 'completed', completed_at = ?,
            thoughts_generated = ?, research_tasks_created = ?
        WHERE id = ? AND status = 'running'
        """,
        (to_timestamp(utcnow()), thoughts_generated, research_tasks_created, job_id),
    )
    return cursor.rowcount > 0


def mark_job_failed(conn: sqlite3.Connection, job_id: int, error_message: str) -> bool:
    cursor = conn.execute(
        """
        UPDATE agent_jobs SET status = 'failed', completed_at = ?, error_message = ?
        WHERE id = ? AND status IN ('pending', 'running')
        """,
        (to_timestamp(utcnow()), error_message, job_id),
    )
    return cursor.rowcount > 0


def mark_job_skipped(conn: sqlite3.Connection, job_id: int, reason: str) -> bool:
    """pending|running -> skipped. A skip is not a failure, error_message stays NULL."""
    cursor = conn.execute(
        """
        UPDATE agent_jobs SET status = 'skipped', completed_at = ?, skip_reason = ?
        WHERE id = ? AND status IN ('pending', 'running')
        """,
        (to_timestamp(utcnow()), reason, job_id),
    )
    return cursor.rowcount > 0


# ============================================================================
# Research tasks
# ============================================================================


def _row_to_research_task(row: sqlite3.Row) -> ResearchTask:
    return ResearchTask(
        id=row["id"],
        user_id=row["user_id"],
        query=row["query"],
        approach=row["approach"],
        purpose=row["purpose"],
        priority=row["priority"],
        status=row["status"],
        results=json.loads(row["results"]) if row["results"] else None,
        attempt_count=row["attempt_count"],
        last_attempted_at=row["last_attempted_at"],
        created_at=row["created_at"],
        completed_at=row["completed_at"],
    )


def create_research_task(
    conn: sqlite3.Connection,
    user_id: str,
    query: str,
    approach: str = "exploratory",
    purpose: str | None = None,
    priority: int = 5,
) -> int:
    """Create a pending research task and return its ID."""
    if approach not in RESEARCH_APPROACHES:
        raise ValueError(f"Unknown research approach: {approach}")
    cursor = conn.execute(
        """
        INSERT INTO research_tasks (user_id, query, approach, purpose, priority)
        VALUES (?, ?, ?, ?, ?)
        RETURNING id
        """,
        (user_id, query, approach, purpose, priority),
    )
    task_id = cursor.fetchone()[0]
    logger.debug("Created research task %d for user %s", task_id, user_id)
    return task_id


def get_research_task(conn: sqlite3.Connection, task_id: int) -> ResearchTask | None:
    row = conn.execute("SELECT * FROM research_tasks WHERE id = ?", (task_id,)).fetchone()
    if not row:
        return None
    return _row_to_research_task(row)


def list_research_tasks(
    conn: sqlite3.Connection, status: str | None = None, limit: int = 50,
) -> list[ResearchTask]:
    if status is not None:
        cursor = conn.execute(
            "SELECT * FROM research_tasks WHERE status = ? ORDER BY created_at DESC, id DESC LIMIT ?",
            (status, limit),
        )
    else:
        cursor = conn.execute(
            "SELECT * FROM research_tasks ORDER BY created_at DESC, id DESC LIMIT ?",
            (limit,),
        )
    return [_row_to_research_task(row) for row in cursor.fetchall()]


def get_pending_research_tasks(conn: sqlite3.Connection, limit: int) -> list[ResearchTask]:
    """Pending tasks, highest priority first, then oldest first."""
    cursor = conn.execute(
        """
        SELECT * FROM research_tasks
        WHERE status = 'pending'
        ORDER BY priority DESC, created_at ASC, id ASC
        LIMIT ?
        """,
        (limit,),
    )
    return [_row_to_research_task(row) for row in cursor.fetchall()]


def mark_research_task_started(conn: sqlite3.Connection, task_id: int) -> bool:
    cursor = conn.execute(
        """
        UPDATE research_tasks
        SET status = 'in_progress', last_attempted_at = ?, attempt_count = attempt_count + 1
        WHERE id = ? AND status = 'pending'
        """,
        (to_timestamp(utcnow()), task_id),
    )
    return cursor.rowcount > 0


def mark_research_task_completed(
    conn: sqlite3.Connection, task_id: int, results: dict,
) -> bool:
    cursor = conn.execute(
        """
        UPDATE research_tasks SET status = 'completed', results = ?, completed_at = ?
        WHERE id = ? AND status = 'in_progress'
        """,
        (json.dumps(results), to_timestamp(utcnow()), task_id),
    )
    return cursor.rowcount > 0


def mark_research_task_failed(
    conn: sqlite3.Connection, task_id: int, error_results: dict,
) -> bool:
    cursor = conn.execute(
        """
        UPDATE research_tasks SET status = 'failed', results = ?, completed_at = ?
        WHERE id = ? AND status IN ('pending', 'in_progress')
        """,
        (json.dumps(error_results), to_timestamp(utcnow()), task_id),
    )
    return cursor.rowcount > 0


def reset_stuck_research_tasks(
    conn: sqlite3.Connection,
    stuck_after_minutes: int,
    max_attempts: int,
    now: datetime | None = None,
) -> tuple[list[int], list[int]]:
    """Reclaim tasks stuck in_progress past the staleness threshold.

    Tasks with attempts left go back to pending (clearing last_attempted_at
    so the same stale period is never reclaimed twice); tasks that have used
    ``max_attempts`` are failed.

    Returns (reset_ids, failed_ids).
    """
    cutoff = to_timestamp((now or utcnow()) - timedelta(minutes=stuck_after_minutes))

    cursor = conn.execute(
        """
        UPDATE research_tasks
        SET status = 'failed', completed_at = ?,
            results = json_object('error', 'Task stuck in progress - worker may have crashed')
        WHERE status = 'in_progress'
        AND last_attempted_at < ?
        AND attempt_count >= ?
        RETURNING id
        """,
        (to_timestamp(now or utcnow()), cutoff, max_attempts),
    )
    failed_ids = [row[0] for row in cursor.fetchall()]

    cursor = conn.execute(
        """
        UPDATE research_tasks
        SET status = 'pending', last_attempted_at = NULL
        WHERE status = 'in_progress'
        AND last_attempted_at < ?
        RETURNING id
        """,
        (cutoff,),
    )
    reset_ids = [row[0] for row in cursor.fetchall()]
    return reset_ids, failed_ids


# ============================================================================
# Thoughts
# ============================================================================


def create_thought(
    conn: sqlite3.Connection,
    user_id: str,
    content: str,
    job_id: int | None = None,
    job_type: str | None = None,
) -> int:
    cursor = conn.execute(
        """
        INSERT INTO thoughts (user_id, job_id, job_type, content, created_at)
        VALUES (?, ?, ?, ?, ?)
        RETURNING id
        """,
        (user_id, job_id, job_type, content, to_timestamp(utcnow())),
    )
    return cursor.fetchone()[0]


def get_recent_thoughts(conn: sqlite3.Connection, user_id: str, limit: int = 10) -> list[Thought]:
    cursor = conn.execute(
        """
        SELECT id, user_id, content, job_id, job_type, created_at FROM thoughts
        WHERE user_id = ?
        ORDER BY created_at DESC, id DESC
        LIMIT ?
        """,
        (user_id, limit),
    )
    return [
        Thought(
            id=row["id"],
            user_id=row["user_id"],
            content=row["content"],
            job_id=row["job_id"],
            job_type=row["job_type"],
            created_at=row["created_at"],
        )
        for row in cursor.fetchall()
    ]
