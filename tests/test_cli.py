"""
Tests for the CLI interface.
"""
import os
import tempfile
from unittest.mock import patch

import pytest
import yaml
from typer.testing import CliRunner

from usage_ledger.cli.main import app, EXIT_CODE_PASS, EXIT_CODE_FAIL

runner = CliRunner()


@pytest.fixture
def workspace(make_line, write_jsonl):
    """Temporary database path plus a projects directory with two logs."""
    with tempfile.TemporaryDirectory() as temp_dir:
        projects = os.path.join(temp_dir, "projects")
        write_jsonl(os.path.join(projects, "webapp", "a.jsonl"), [
            make_line(message_id=f"w{i}", request_id=f"rw{i}", cost=0.5) for i in range(4)
        ])
        write_jsonl(os.path.join(projects, "api", "b.jsonl"), [
            make_line(message_id="a1", request_id="ra1", cost=2.0),
            "{not json",
        ])
        yield {
            "dir": temp_dir,
            "db": os.path.join(temp_dir, "ledger.db"),
            "projects": projects,
        }


def _invoke(workspace, *args, **kwargs):
    return runner.invoke(
        app, ["--db", workspace["db"], "--projects-dir", workspace["projects"], *args], **kwargs
    )


class TestCLI:
    """Test CLI commands."""

    def test_init(self, workspace):
        """Test database initialization."""
        result = _invoke(workspace, "init")

        assert result.exit_code == EXIT_CODE_PASS
        assert "Database initialized successfully" in result.output
        assert os.path.exists(workspace["db"])

    def test_sync(self, workspace):
        """Test a full sync reports inserted entries and skipped lines."""
        result = _invoke(workspace, "sync")

        assert result.exit_code == EXIT_CODE_PASS
        assert "Full sync" in result.output
        assert "5 inserted" in result.output
        assert "Skipped lines: 1" in result.output

    def test_incremental_sync(self, workspace):
        _invoke(workspace, "sync")

        result = _invoke(workspace, "sync", "--incremental")

        assert result.exit_code == EXIT_CODE_PASS
        assert "Incremental sync" in result.output
        assert "2 unchanged" in result.output

    def test_sync_missing_projects_dir(self, workspace):
        """Test that a missing log directory fails the command."""
        result = runner.invoke(app, [
            "--db", workspace["db"],
            "--projects-dir", os.path.join(workspace["dir"], "missing"),
            "sync",
        ])

        assert result.exit_code == EXIT_CODE_FAIL
        assert "Projects directory not found" in result.output

    def test_stats_from_store(self, workspace):
        _invoke(workspace, "sync")

        result = _invoke(workspace, "stats")

        assert result.exit_code == EXIT_CODE_PASS
        assert "source: store" in result.output
        assert "Total cost: $4.00" in result.output
        assert "Requests: 5" in result.output

    def test_stats_fall_back_to_logs(self, workspace):
        """Test that an empty database is answered from the log files."""
        result = _invoke(workspace, "stats", "--range", "all")

        assert result.exit_code == EXIT_CODE_PASS
        assert "source: files" in result.output
        assert "Requests: 5" in result.output

    def test_stats_project_filter(self, workspace):
        _invoke(workspace, "sync")

        result = _invoke(workspace, "stats", "--project", "api")

        assert result.exit_code == EXIT_CODE_PASS
        assert "Total cost: $2.00" in result.output

    def test_stats_without_data(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            projects = os.path.join(temp_dir, "projects")
            os.makedirs(projects)
            result = runner.invoke(app, [
                "--db", os.path.join(temp_dir, "ledger.db"), "--projects-dir", projects, "stats",
            ])

        assert result.exit_code == EXIT_CODE_PASS
        assert "No usage data found" in result.output

    def test_sessions(self, workspace):
        _invoke(workspace, "sync")

        result = _invoke(workspace, "sessions", "--sort", "name-asc")

        assert result.exit_code == EXIT_CODE_PASS
        assert result.output.index("api") < result.output.index("webapp")

    def test_status(self, workspace):
        _invoke(workspace, "sync")

        result = _invoke(workspace, "status")

        assert result.exit_code == EXIT_CODE_PASS
        assert "Usage entries: 5" in result.output
        assert "completed: 2" in result.output

    def test_dedupe(self, workspace):
        _invoke(workspace, "sync")

        result = _invoke(workspace, "dedupe")

        assert result.exit_code == EXIT_CODE_PASS
        assert "Removed 0 duplicate records" in result.output

    def test_reset_requires_confirmation(self, workspace):
        _invoke(workspace, "sync")

        result = _invoke(workspace, "reset", input="n\n")

        assert result.exit_code == EXIT_CODE_FAIL
        assert "Aborted" in result.output
        assert "Usage entries: 5" in _invoke(workspace, "status").output

    def test_reset_with_reingest(self, workspace):
        _invoke(workspace, "sync")

        result = _invoke(workspace, "reset", "--yes", "--reingest")

        assert result.exit_code == EXIT_CODE_PASS
        assert "Database reset" in result.output
        assert "5 inserted" in result.output

    def test_cleanup(self, workspace):
        _invoke(workspace, "sync")

        result = _invoke(workspace, "cleanup", "--keep-days", "36500")

        assert result.exit_code == EXIT_CODE_PASS
        assert "Removed 0 records" in result.output

    def test_cleanup_rejects_invalid_window(self, workspace):
        result = _invoke(workspace, "cleanup", "--keep-days", "0")

        assert result.exit_code == EXIT_CODE_FAIL
        assert "keep_days must be > 0" in result.output

    def test_missing_config_file(self, workspace):
        result = runner.invoke(app, ["--config", os.path.join(workspace["dir"], "nope.yaml"), "status"])

        assert result.exit_code == EXIT_CODE_FAIL
        assert "Config file not found" in result.output

    def test_watch_with_sync_disabled(self, workspace):
        """Test that watch refuses to start when auto-sync is disabled."""
        config_path = os.path.join(workspace["dir"], "config.yaml")
        with open(config_path, 'w', encoding='utf-8') as f:
            yaml.dump({"sync": {"enabled": False}}, f)

        result = runner.invoke(app, ["--config", config_path, "--db", workspace["db"], "watch"])

        assert result.exit_code == EXIT_CODE_FAIL
        assert "disabled" in result.output

    def test_watch_stops_on_interrupt(self, workspace):
        with patch('usage_ledger.cli.main.time') as mock_time:
            mock_time.sleep.side_effect = KeyboardInterrupt

            result = _invoke(workspace, "watch", "--interval", "3600")

        assert result.exit_code == EXIT_CODE_PASS
        assert "Stopping auto-sync" in result.output
