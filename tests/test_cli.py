"""Tests for CLI commands"""

from unittest.mock import Mock, patch

import pytest
from typer.testing import CliRunner

from cli.client.base import StreamVibeError
from cli.main import app
from cli.utils.config_manager import ConfigManager


# Test fixtures
@pytest.fixture
def runner():
    """CLI test runner"""
    return CliRunner()


@pytest.fixture
def mock_client():
    """Mock API client"""
    client = Mock()
    client.__enter__ = Mock(return_value=client)
    client.__exit__ = Mock(return_value=None)
    return client


@pytest.fixture
def temp_config(tmp_path):
    """Config manager writing to a temporary directory"""
    manager = ConfigManager(config_dir=tmp_path / ".streamvibe")
    with patch("cli.commands.config.config", manager), patch(
        "cli.main.config_manager", manager
    ), patch("cli.commands.jobs.config", manager):
        yield manager


class TestMainCommands:
    """Test main CLI commands"""

    def test_version(self, runner):
        result = runner.invoke(app, ["--version"])
        assert result.exit_code == 0
        assert "StreamVibe Jobs CLI" in result.stdout

    @patch("cli.main.StreamVibeClient")
    def test_status_success(self, mock_client_class, runner, mock_client, temp_config):
        """Test status command with a healthy API"""
        mock_client.health_check.return_value = {
            "ok": True,
            "version": "1.0.0",
            "environment": "development",
            "queue": {
                "queue_depth": 4,
                "ready_jobs": 2,
                "active_workers": 1,
                "stuck_jobs_count": 0,
            },
        }
        mock_client_class.return_value = mock_client

        result = runner.invoke(app, ["status"])
        assert result.exit_code == 0
        assert "Healthy" in result.stdout
        assert "Queue depth" in result.stdout

    @patch("cli.main.StreamVibeClient")
    def test_status_degraded(self, mock_client_class, runner, mock_client, temp_config):
        mock_client.health_check.return_value = {"ok": False, "version": "1.0.0"}
        mock_client_class.return_value = mock_client

        result = runner.invoke(app, ["status"])
        assert result.exit_code == 1
        assert "Degraded" in result.stdout

    @patch("cli.main.StreamVibeClient")
    def test_status_failure(self, mock_client_class, runner, mock_client, temp_config):
        """Test status command with connection failure"""
        mock_client.health_check.side_effect = StreamVibeError("Connection failed")
        mock_client_class.return_value = mock_client

        result = runner.invoke(app, ["status"])
        assert result.exit_code == 1
        assert "Connection Failed" in result.stdout


class TestJobCommands:
    """Test job commands"""

    @patch("cli.commands.jobs.StreamVibeClient")
    def test_submit_new_job(self, mock_client_class, runner, mock_client):
        mock_client.submit_job.return_value = {
            "job_id": "2b1f0c8e-0000-4000-8000-000000000001",
            "is_new": True,
            "status": "pending",
        }
        mock_client_class.return_value = mock_client

        result = runner.invoke(
            app,
            ["jobs", "submit", "platform_sync", "--params", '{"account": "acc1"}'],
        )

        assert result.exit_code == 0
        assert "Job submitted" in result.stdout
        mock_client.submit_job.assert_called_once_with(
            "platform_sync", {"account": "acc1"}, None, dedupe=True
        )

    @patch("cli.commands.jobs.StreamVibeClient")
    def test_submit_reused_job(self, mock_client_class, runner, mock_client):
        mock_client.submit_job.return_value = {
            "job_id": "2b1f0c8e-0000-4000-8000-000000000001",
            "is_new": False,
            "status": "processing",
        }
        mock_client_class.return_value = mock_client

        result = runner.invoke(app, ["jobs", "submit", "platform_sync"])

        assert result.exit_code == 0
        assert "already processing" in result.stdout

    @patch("cli.commands.jobs.StreamVibeClient")
    def test_submit_without_dedupe(self, mock_client_class, runner, mock_client):
        mock_client.submit_job.return_value = {"job_id": "j1", "is_new": True}
        mock_client_class.return_value = mock_client

        result = runner.invoke(
            app, ["jobs", "submit", "ai_analysis", "--priority", "9", "--no-dedupe"]
        )

        assert result.exit_code == 0
        mock_client.submit_job.assert_called_once_with(
            "ai_analysis", {}, 9, dedupe=False
        )

    @pytest.mark.parametrize("params", ["{not json", "[1, 2]"])
    def test_submit_rejects_bad_params(self, runner, params):
        result = runner.invoke(
            app, ["jobs", "submit", "platform_sync", "--params", params]
        )
        assert result.exit_code == 1

    @patch("cli.commands.jobs.StreamVibeClient")
    def test_submit_quota_error(self, mock_client_class, runner, mock_client):
        mock_client.submit_job.side_effect = StreamVibeError(
            "Maximum 10 concurrent jobs per user", 429, "QUOTA_EXCEEDED"
        )
        mock_client_class.return_value = mock_client

        result = runner.invoke(app, ["jobs", "submit", "platform_sync"])

        assert result.exit_code == 1
        assert "Failed to submit job" in result.stdout
        assert "cancel some" in result.stdout

    @patch("cli.commands.jobs.StreamVibeClient")
    def test_list_jobs(self, mock_client_class, runner, mock_client, temp_config):
        mock_client.list_jobs.return_value = {
            "jobs": [
                {
                    "id": "2b1f0c8e-0000-4000-8000-000000000001",
                    "job_type": "platform_sync",
                    "status": "pending",
                    "priority": 5,
                    "progress_percent": 0,
                    "retry_count": 0,
                    "max_retries": 3,
                    "created_at": "2026-01-01T00:00:00Z",
                }
            ],
            "total": 1,
        }
        mock_client_class.return_value = mock_client

        result = runner.invoke(app, ["jobs", "list", "--status", "pending"])

        assert result.exit_code == 0
        assert "2b1f0c8e" in result.stdout
        mock_client.list_jobs.assert_called_once_with("pending", None, 20, 0)

    @patch("cli.commands.jobs.StreamVibeClient")
    def test_list_jobs_empty(self, mock_client_class, runner, mock_client, temp_config):
        mock_client.list_jobs.return_value = {"jobs": [], "total": 0}
        mock_client_class.return_value = mock_client

        result = runner.invoke(app, ["jobs", "list"])

        assert result.exit_code == 0
        assert "No jobs found" in result.stdout

    @patch("cli.commands.jobs.StreamVibeClient")
    def test_show_job(self, mock_client_class, runner, mock_client):
        mock_client.get_job.return_value = {
            "id": "j1",
            "job_type": "ai_analysis",
            "status": "failed",
            "error_code": "RATE_LIMIT",
            "error_message": "throttled",
            "retry_count": 1,
            "max_retries": 3,
            "params": {},
        }
        mock_client_class.return_value = mock_client

        result = runner.invoke(app, ["jobs", "show", "j1"])

        assert result.exit_code == 0
        assert "RATE_LIMIT" in result.stdout

    @patch("cli.commands.jobs.StreamVibeClient")
    def test_cancel_not_found(self, mock_client_class, runner, mock_client):
        mock_client.cancel_job.side_effect = StreamVibeError("Job not found", 404)
        mock_client_class.return_value = mock_client

        result = runner.invoke(app, ["jobs", "cancel", "j1"])

        assert result.exit_code == 1
        assert "Failed to cancel job" in result.stdout

    @patch("cli.commands.jobs.StreamVibeClient")
    def test_logs(self, mock_client_class, runner, mock_client):
        mock_client.get_job_logs.return_value = {
            "logs": [
                {
                    "created_at": "2026-01-01T00:00:00Z",
                    "level": "warning",
                    "message": "rate limited",
                }
            ]
        }
        mock_client_class.return_value = mock_client

        result = runner.invoke(app, ["jobs", "logs", "j1", "--level", "warning"])

        assert result.exit_code == 0
        assert "rate limited" in result.stdout
        mock_client.get_job_logs.assert_called_once_with("j1", "warning", 50)

    @patch("cli.commands.jobs.StreamVibeClient")
    def test_types(self, mock_client_class, runner, mock_client):
        mock_client.list_job_types.return_value = [
            {
                "job_type": "token_refresh",
                "display_name": "Token Refresh",
                "description": "Refresh OAuth tokens",
            }
        ]
        mock_client_class.return_value = mock_client

        result = runner.invoke(app, ["jobs", "types"])

        assert result.exit_code == 0
        assert "token_refresh" in result.stdout
        assert "Token Refresh" in result.stdout


class TestMaintenanceCommands:
    @patch("cli.commands.maintenance.StreamVibeClient")
    def test_retry_sweep(self, mock_client_class, runner, mock_client):
        mock_client.run_maintenance.return_value = {"operation": "retry", "count": 2}
        mock_client_class.return_value = mock_client

        result = runner.invoke(app, ["maintenance", "retry"])

        assert result.exit_code == 0
        assert "2 affected" in result.stdout
        mock_client.run_maintenance.assert_called_once_with("retry")

    @patch("cli.commands.maintenance.StreamVibeClient")
    def test_purge_cache_uses_cache_operation(
        self, mock_client_class, runner, mock_client
    ):
        mock_client.run_maintenance.return_value = {"operation": "cache", "count": 0}
        mock_client_class.return_value = mock_client

        result = runner.invoke(app, ["maintenance", "purge-cache"])

        assert result.exit_code == 0
        mock_client.run_maintenance.assert_called_once_with("cache")

    @patch("cli.commands.maintenance.StreamVibeClient")
    def test_run_all(self, mock_client_class, runner, mock_client):
        mock_client.run_maintenance.return_value = {
            "stuck": 0,
            "expire": 1,
            "retry": 2,
            "purge": 0,
            "cache": 3,
        }
        mock_client_class.return_value = mock_client

        result = runner.invoke(app, ["maintenance", "run-all"])

        assert result.exit_code == 0
        assert "Maintenance Run" in result.stdout

    @patch("cli.commands.maintenance.StreamVibeClient")
    def test_requires_service_token(self, mock_client_class, runner, mock_client):
        mock_client.run_maintenance.side_effect = StreamVibeError(
            "Service credentials required", 403
        )
        mock_client_class.return_value = mock_client

        result = runner.invoke(app, ["maintenance", "expire"])

        assert result.exit_code == 1
        assert "Expiry sweep failed" in result.stdout


class TestWebhookCommands:
    @patch("cli.commands.webhooks.StreamVibeClient")
    def test_retry(self, mock_client_class, runner, mock_client):
        mock_client.retry_webhooks.return_value = {
            "attempted": 3,
            "succeeded": 2,
            "failed": 1,
            "event_ids": [],
        }
        mock_client_class.return_value = mock_client

        result = runner.invoke(app, ["webhooks", "retry", "--max-retries", "5"])

        assert result.exit_code == 0
        assert "Webhook Retry" in result.stdout
        mock_client.retry_webhooks.assert_called_once_with(5)

    @patch("cli.commands.webhooks.StreamVibeClient")
    def test_purge(self, mock_client_class, runner, mock_client):
        mock_client.purge_webhooks.return_value = {"retention_days": 30, "count": 4}
        mock_client_class.return_value = mock_client

        result = runner.invoke(app, ["webhooks", "purge", "--days", "30"])

        assert result.exit_code == 0
        assert "Purged 4 events" in result.stdout


class TestConfigCommands:
    """Test configuration commands"""

    def test_set_and_get(self, runner, temp_config):
        result = runner.invoke(
            app, ["config", "set", "api.base_url", "http://jobs.internal:8000"]
        )
        assert result.exit_code == 0
        assert temp_config.get("api.base_url") == "http://jobs.internal:8000"

        result = runner.invoke(app, ["config", "get", "api.base_url"])
        assert result.exit_code == 0
        assert "jobs.internal" in result.stdout

    def test_set_rejects_bad_url(self, runner, temp_config):
        result = runner.invoke(app, ["config", "set", "api.base_url", "jobs.internal"])
        assert result.exit_code == 1

    def test_numeric_values_are_stored_as_ints(self, runner, temp_config):
        result = runner.invoke(app, ["config", "set", "api.timeout", "60"])
        assert result.exit_code == 0
        assert temp_config.get("api.timeout") == 60

        result = runner.invoke(app, ["config", "set", "api.timeout", "soon"])
        assert result.exit_code == 1

    def test_get_missing_key(self, runner, temp_config):
        result = runner.invoke(app, ["config", "get", "api.nope"])
        assert result.exit_code == 1

    def test_service_token_is_masked(self, runner, temp_config):
        result = runner.invoke(
            app, ["config", "set", "api.service_token", "supersecrettoken"]
        )
        assert result.exit_code == 0
        assert "supersecrettoken" not in result.stdout
        assert temp_config.get("api.service_token") == "supersecrettoken"

    def test_dev_mode_sets_identity_headers(self, runner, temp_config):
        result = runner.invoke(app, ["config", "dev-mode", "user-alice", "org-test"])
        assert result.exit_code == 0
        assert temp_config.get("api.headers") == {
            "X-User-ID": "user-alice",
            "X-Org-ID": "org-test",
        }

        result = runner.invoke(app, ["config", "clear-headers"])
        assert result.exit_code == 0
        assert temp_config.get("api.headers") == {}

    def test_reset(self, runner, temp_config):
        temp_config.set("display.items_per_page", 50)

        result = runner.invoke(app, ["config", "reset", "--yes"])

        assert result.exit_code == 0
        assert temp_config.get("display.items_per_page") == 20
