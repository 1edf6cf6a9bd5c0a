"""Smoke tests for the recall CLI."""

import json

import pytest
from typer.testing import CliRunner

from recall import __version__
from recall.cli import _format_ranked, app
from recall.job_store import JobStore

from tests.conftest import make_ranked


@pytest.fixture
def runner(monkeypatch, tmp_path):
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    monkeypatch.delenv("RECALL_OPENAI_API_KEY", raising=False)
    monkeypatch.setenv("RECALL_STORE_PATH", str(tmp_path / "store"))
    return CliRunner()


def invoke(runner, tmp_path, *args):
    return runner.invoke(app, ["--store", str(tmp_path / "store"), *args])


class TestCommands:

    def test_version(self, runner):
        result = runner.invoke(app, ["--version"])
        assert result.exit_code == 0
        assert __version__ in result.output

    def test_status_on_new_store(self, runner, tmp_path):
        result = invoke(runner, tmp_path, "status")
        assert result.exit_code == 0, result.output
        assert "pending: 0" in result.output
        assert "total: 0" in result.output
        assert (tmp_path / "store" / "recall.toml").exists()

    def test_status_json(self, runner, tmp_path):
        result = invoke(runner, tmp_path, "--json", "status")
        assert result.exit_code == 0, result.output
        data = json.loads(result.output)
        assert data["is_running"] is False
        assert data["queue_counts"]["total"] == 0

    def test_config_json(self, runner, tmp_path):
        result = invoke(runner, tmp_path, "--json", "config")
        assert result.exit_code == 0, result.output
        data = json.loads(result.output)
        assert data["ai_enabled"] is True
        assert data["scheduler"]["batch_size"] == 50
        assert data["store"].endswith("store")

    def test_retry_and_cleanup_on_empty_store(self, runner, tmp_path):
        result = invoke(runner, tmp_path, "retry")
        assert result.exit_code == 0, result.output
        assert "Reset 0 jobs" in result.output

        result = invoke(runner, tmp_path, "cleanup")
        assert result.exit_code == 0, result.output
        assert "Removed 0 done and 0 error jobs." in result.output


class TestRetry:

    def _failed_job(self, tmp_path):
        store = JobStore(tmp_path / "store" / "jobs.db")
        try:
            job_id = store.create("field", "s1", "sessions", "s1", "text", column_name="plan_goal")
            store.mark_processing(job_id)
            store.mark_error(job_id, "RuntimeError: quota")
        finally:
            store.close()
        return job_id

    def test_dry_run_lists_without_reset(self, runner, tmp_path):
        job_id = self._failed_job(tmp_path)
        result = invoke(runner, tmp_path, "retry", "--dry-run")
        assert result.exit_code == 0, result.output
        assert job_id in result.output
        assert "RuntimeError: quota" in result.output
        assert "1 failed jobs." in result.output

        result = invoke(runner, tmp_path, "--json", "status")
        assert json.loads(result.output)["queue_counts"]["error"] == 1

    def test_retry_lists_and_resets(self, runner, tmp_path):
        job_id = self._failed_job(tmp_path)
        result = invoke(runner, tmp_path, "--json", "retry")
        assert result.exit_code == 0, result.output
        data = json.loads(result.output)
        assert [job["id"] for job in data["failed"]] == [job_id]
        assert data["reset"] == 1


class TestFormatting:

    def test_format_ranked_truncates(self):
        result = make_ranked(score=0.5, text="word " * 40)
        result.rank = 1
        line = _format_ranked([result])
        assert line.startswith("  1. [field  ] 0.500  word")
        assert line.endswith("...")
