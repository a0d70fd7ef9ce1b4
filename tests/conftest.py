"""Shared test fixtures for lucid tests."""

from datetime import datetime, timedelta, timezone

import pytest

from lucid import db
from lucid.config import (
    AgentsConfig,
    Config,
    ResearchConfig,
    SchedulerConfig,
    SearchConfig,
)
from lucid.logging_setup import reset_logging
from lucid.store import JobStore


@pytest.fixture(autouse=True)
def _reset_logging():
    yield
    reset_logging()


@pytest.fixture
def db_path(tmp_path):
    """Initialize a real SQLite database using schema.sql and return its path."""
    path = tmp_path / "test.db"
    db.init_db(path)
    return path


@pytest.fixture
def db_conn(db_path):
    """Yield a database connection with row factory set."""
    with db.get_db(db_path) as conn:
        yield conn


@pytest.fixture
def make_config(db_path):
    """Factory fixture that creates Config instances pointing at the test db.

    Agents and research are enabled and a search key is set, so tests opt out
    of features rather than in.
    """
    def _make_config(**overrides):
        defaults = {
            "db_path": db_path,
            "scheduler": SchedulerConfig(dispatch_interval=1, shutdown_grace_seconds=1),
            "agents": AgentsConfig(enabled=True, llm_timeout=5),
            "research": ResearchConfig(enabled=True),
            "search": SearchConfig(api_key="test-key"),
        }
        defaults.update(overrides)
        return Config(**defaults)
    return _make_config


@pytest.fixture
def make_job():
    """Factory fixture that creates Job dataclass instances with defaults."""
    def _make_job(**overrides):
        defaults = {
            "id": 1,
            "user_id": "alice",
            "job_type": "morning_reflection",
            "status": "pending",
            "scheduled_for": "2026-03-05T13:00:00+00:00",
        }
        defaults.update(overrides)
        return db.Job(**defaults)
    return _make_job


@pytest.fixture
def store(db_path):
    return JobStore(db_path, AgentsConfig().slots, "America/Chicago")


@pytest.fixture
def add_user(db_path):
    """Create an active user. Returns the user id."""
    def _add_user(user_id="alice", timezone_name="America/Chicago", agents_enabled=True,
                  last_active_at=None):
        with db.get_db(db_path) as conn:
            db.upsert_user(conn, user_id, display_name=user_id.title(),
                           timezone_name=timezone_name, agents_enabled=agents_enabled)
            db.touch_user(conn, user_id, last_active_at or datetime.now(timezone.utc))
        return user_id
    return _add_user


@pytest.fixture
def add_due_job(db_path):
    """Create a pending job that is already due. Returns the job id."""
    def _add_due_job(user_id="alice", job_type="morning_reflection", minutes_ago=5):
        scheduled_for = datetime.now(timezone.utc) - timedelta(minutes=minutes_ago)
        with db.get_db(db_path) as conn:
            return db.create_job(conn, user_id, job_type, scheduled_for)
    return _add_due_job
