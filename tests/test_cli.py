"""Tests for the admin CLI."""

import sys
from unittest.mock import AsyncMock, patch

import pytest

from lucid import cli, db
from lucid.scheduler import build_scheduler


@pytest.fixture
def config_file(tmp_path, db_path):
    path = tmp_path / "config.toml"
    path.write_text(f'db_path = "{db_path}"\n[agents]\nenabled = true\n')
    return path


def _run(config_file, *argv):
    with patch.object(sys, "argv", ["lucid", "-c", str(config_file), *argv]):
        cli.main()


class TestInit:
    def test_creates_database(self, tmp_path, capsys):
        new_db = tmp_path / "sub" / "fresh.db"
        path = tmp_path / "fresh.toml"
        path.write_text(f'db_path = "{new_db}"\n')
        _run(path, "init")
        assert new_db.exists()
        assert "Database initialized" in capsys.readouterr().out


class TestUserCommands:
    def test_add_and_list(self, config_file, capsys):
        _run(config_file, "user", "add", "alice", "--timezone", "Europe/Berlin")
        _run(config_file, "user", "list")
        out = capsys.readouterr().out
        assert "alice" in out
        assert "Europe/Berlin" in out

    def test_disable_and_enable(self, config_file, db_path):
        _run(config_file, "user", "add", "alice")
        _run(config_file, "user", "disable", "alice")
        with db.get_db(db_path) as conn:
            assert db.get_user(conn, "alice").agents_enabled is False
        _run(config_file, "user", "enable", "alice")
        with db.get_db(db_path) as conn:
            assert db.get_user(conn, "alice").agents_enabled is True

    def test_unknown_user_exits(self, config_file):
        with pytest.raises(SystemExit):
            _run(config_file, "user", "touch", "ghost")


class TestJobsCommands:
    def test_add_list_show(self, config_file, capsys):
        _run(config_file, "jobs", "add", "alice", "dream_session")
        _run(config_file, "jobs", "list", "--user", "alice")
        out = capsys.readouterr().out
        assert "dream_session" in out
        assert "pending" in out

        _run(config_file, "jobs", "show", "1")
        assert "Type: dream_session" in capsys.readouterr().out

    def test_add_rejects_unknown_type(self, config_file, capsys):
        with pytest.raises(SystemExit):
            _run(config_file, "jobs", "add", "alice", "tea_ceremony")
        assert "Valid types" in capsys.readouterr().err

    def test_show_missing(self, config_file):
        with pytest.raises(SystemExit):
            _run(config_file, "jobs", "show", "42")

    def test_trigger_runs_job(self, config_file, db_path, capsys):
        _run(config_file, "user", "add", "alice")
        _run(config_file, "jobs", "add", "alice", "night_dream")
        llm = AsyncMock(return_value="THOUGHT: drifting")
        with patch(
            "lucid.cli.build_scheduler",
            side_effect=lambda config: build_scheduler(config, llm=llm),
        ):
            _run(config_file, "jobs", "trigger", "1")

        assert "Job 1: completed" in capsys.readouterr().out
        with db.get_db(db_path) as conn:
            assert db.get_job(conn, 1).thoughts_generated == 1

    def test_show_skip_reason(self, config_file, capsys):
        _run(config_file, "user", "add", "alice", "--disabled")
        _run(config_file, "jobs", "add", "alice", "night_dream")
        _run(config_file, "jobs", "trigger", "1")
        assert "Job 1: skipped" in capsys.readouterr().out

        _run(config_file, "jobs", "show", "1")
        out = capsys.readouterr().out
        assert "Skipped: Agents disabled by user" in out
        assert "Error" not in out

    def test_list_rejects_unknown_status(self, config_file):
        with pytest.raises(SystemExit):
            _run(config_file, "jobs", "list", "--status", "stalled")

    def test_schedule(self, config_file, capsys):
        _run(config_file, "user", "add", "alice")
        _run(config_file, "jobs", "schedule", "alice")
        out = capsys.readouterr().out
        assert "morning_reflection" in out


class TestResearchCommands:
    def test_add_and_list(self, config_file, capsys):
        _run(config_file, "research", "add", "alice", "why is the sky blue", "--approach", "analytical")
        _run(config_file, "research", "list")
        out = capsys.readouterr().out
        assert "why is the sky blue" in out
        assert "analytical" in out

    def test_run_without_search_key(self, config_file, capsys, monkeypatch):
        monkeypatch.delenv("TAVILY_API_KEY", raising=False)
        monkeypatch.delenv("LUCID_TAVILY_API_KEY", raising=False)
        _run(config_file, "research", "run")
        assert "Processed 0" in capsys.readouterr().out
