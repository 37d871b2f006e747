from unittest.mock import patch

import pytest
from pydantic import ValidationError

from api.config.settings import AuthMode, Settings, get_settings


def test_default_settings():
    """Test default settings values."""
    settings = Settings(_env_file=None)

    assert settings.app_name == "StreamVibe Jobs"
    assert settings.version == "1.0.0"
    assert settings.environment == "development"
    assert settings.auth_mode == AuthMode.NONE
    assert settings.service_token is None


def test_job_queue_defaults():
    settings = Settings(_env_file=None)

    assert settings.job_max_active_per_owner == 10
    assert settings.job_default_priority == 5
    assert settings.job_default_max_retries == 3
    assert settings.job_dedupe_window_s == 300
    assert settings.job_retry_base_delay_s == 300
    assert settings.job_stuck_timeout_s == 1800
    assert settings.job_retention_days == 7


def test_webhook_and_cache_defaults():
    settings = Settings(_env_file=None)

    assert settings.webhook_max_retries == 3
    assert settings.webhook_retry_window_hours == 24
    assert settings.webhook_retention_days == 90
    assert settings.webhook_signing_secret is None
    assert settings.cache_default_ttl_s == 3600


def test_production_validation_blocks_none_auth():
    """Test that production environment blocks AUTH_MODE=none."""
    with pytest.raises(ValueError, match="AUTH_MODE=none is not allowed in production"):
        Settings(_env_file=None, environment="production", auth_mode=AuthMode.NONE)


def test_production_validation_blocks_dev_auth():
    """Test that production environment blocks AUTH_MODE=dev."""
    with pytest.raises(ValueError, match="AUTH_MODE=dev is not allowed in production"):
        Settings(_env_file=None, environment="production", auth_mode=AuthMode.DEV)


def test_production_allows_oidc_auth():
    settings = Settings(
        _env_file=None, environment="production", auth_mode=AuthMode.OIDC
    )
    assert settings.auth_mode == AuthMode.OIDC


def test_invalid_priority_rejected():
    with pytest.raises(ValidationError):
        Settings(_env_file=None, job_default_priority=11)


def test_settings_dependency_injection():
    """Test the get_settings dependency function."""
    settings = get_settings()
    assert isinstance(settings, Settings)


@patch.dict(
    "os.environ",
    {"AUTH_MODE": "oidc", "ENVIRONMENT": "production", "JOB_STUCK_TIMEOUT_S": "60"},
)
def test_env_var_loading():
    """Test that environment variables are loaded correctly."""
    settings = Settings(_env_file=None)
    assert settings.auth_mode == AuthMode.OIDC
    assert settings.environment == "production"
    assert settings.job_stuck_timeout_s == 60
