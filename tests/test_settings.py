import pytest

from taskledger.config.settings import Settings, get_settings


def test_default_settings():
    """Test default settings values."""
    settings = Settings()

    assert settings.app_name == "TaskLedger"
    assert settings.version == "1.0.0"
    assert settings.environment == "development"
    assert settings.job_default_max_retries == 3
    assert settings.job_default_timeout_s == 300
    assert settings.ledger_retry_failed is True
    assert settings.cache_default_ttl_s == 86400


def test_production_validation_blocks_debug():
    """Test that production environment refuses debug mode."""
    with pytest.raises(ValueError, match="DEBUG=true is not allowed in production"):
        Settings(environment="production", debug=True)


def test_production_allows_debug_off():
    settings = Settings(environment="production", debug=False)
    assert settings.environment == "production"


def test_poll_interval_bounds_validated():
    """The idle backoff ceiling cannot be below the base poll interval."""
    with pytest.raises(ValueError, match="JOB_MAX_POLL_INTERVAL_MS"):
        Settings(job_poll_interval_ms=5000, job_max_poll_interval_ms=1000)


def test_settings_from_environment(monkeypatch):
    """Test that settings are read from environment variables."""
    monkeypatch.setenv("JOB_WATCHDOG_INTERVAL_S", "15")
    monkeypatch.setenv("LEDGER_RETRY_FAILED", "false")

    settings = Settings()

    assert settings.job_watchdog_interval_s == 15
    assert settings.ledger_retry_failed is False


def test_is_sqlite():
    assert Settings(database_url="sqlite+aiosqlite:///./local.db").is_sqlite
    assert not Settings(
        database_url="postgresql+asyncpg://postgres@localhost/taskledger"
    ).is_sqlite


def test_settings_dependency_injection():
    """Test the get_settings dependency function."""
    settings = get_settings()
    assert isinstance(settings, Settings)
    assert settings.app_name == "TaskLedger"
