import pytest

from webanalyzer.config.settings import BackoffType, Settings, get_settings


def test_default_settings():
    """Test default settings values."""
    settings = Settings(_env_file=None)

    assert settings.app_name == "Web Page Analyzer"
    assert settings.version == "1.0.0"
    assert settings.port == 3000
    assert settings.job_ttl_hours == 48
    assert settings.queue_name == "web-analysis"
    assert settings.queue_job_timeout_ms == 5000
    assert settings.queue_max_attempts == 3
    assert settings.queue_backoff_type == BackoffType.EXPONENTIAL
    assert settings.queue_backoff_delay_ms == 1000
    assert settings.worker_concurrency == 2
    assert settings.worker_shutdown_grace_s == 25
    assert settings.fetch_max_content_bytes == 10 * 1024 * 1024


def test_cleanup_defaults():
    settings = Settings(_env_file=None, cleanup_enabled=True)

    assert settings.cleanup_enabled is True
    assert settings.cleanup_interval_minutes == 5
    assert settings.cleanup_job_age_minutes == 10
    assert settings.cleanup_max_job_age_minutes == 30
    assert settings.cleanup_completed_grace_hours == 24
    assert settings.cleanup_failed_grace_days == 7


def test_max_job_age_below_stale_threshold_rejected():
    """The hard ceiling must not be lower than the stale threshold."""
    with pytest.raises(ValueError, match="CLEANUP_MAX_JOB_AGE_MINUTES"):
        Settings(cleanup_job_age_minutes=20, cleanup_max_job_age_minutes=10)


def test_settings_read_from_environment(monkeypatch):
    monkeypatch.setenv("QUEUE_BACKOFF_TYPE", "fixed")
    monkeypatch.setenv("WORKER_CONCURRENCY", "8")

    settings = Settings()

    assert settings.queue_backoff_type == BackoffType.FIXED
    assert settings.worker_concurrency == 8


def test_settings_dependency_injection():
    """Test the get_settings dependency function."""
    settings = get_settings()
    assert isinstance(settings, Settings)
    assert settings.app_name == "Web Page Analyzer"
