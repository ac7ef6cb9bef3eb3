"""Settings loading and validation."""

import pytest
from pydantic import ValidationError

import config
from config import Settings, get_settings, reload_settings


def test_reads_aliased_environment():
    settings = get_settings()
    assert settings.supabase_url == "https://project.supabase.co"
    assert settings.hunter_api_key == "hunter-test"


def test_defaults():
    settings = get_settings()
    assert settings.email_search_cost == 20
    assert settings.min_credit_balance == 20
    assert settings.job_max_retries == 3
    assert settings.min_name_score == 20
    assert settings.provider_call_timeout == 30
    assert settings.stuck_job_threshold > settings.job_timeout


def test_settings_are_cached_until_reload(monkeypatch):
    first = get_settings()
    assert get_settings() is first

    monkeypatch.setenv("BATCH_SIZE", "7")
    reloaded = reload_settings()
    assert reloaded.batch_size == 7
    assert config.get_settings() is reloaded


def test_missing_provider_key_is_allowed(monkeypatch):
    monkeypatch.delenv("AEROLEADS_API_KEY")
    assert Settings().aeroleads_api_key is None


def test_log_level_normalized(monkeypatch):
    monkeypatch.setenv("LOG_LEVEL", "debug")
    assert Settings().log_level == "DEBUG"


@pytest.mark.parametrize("key,value", [
    ("LOG_LEVEL", "LOUD"),
    ("BATCH_SIZE", "0"),
    ("JOB_MAX_RETRIES", "11"),
    ("MIN_NAME_SCORE", "99"),
    ("JOB_TIMEOUT", "0"),
    ("PROVIDER_CALL_TIMEOUT", "0"),
    ("STUCK_JOB_THRESHOLD", "600"),
])
def test_invalid_values_rejected(monkeypatch, key, value):
    monkeypatch.setenv(key, value)
    with pytest.raises(ValidationError):
        Settings()
