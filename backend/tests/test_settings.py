"""Tests for environment-driven settings."""

import logging

from utils.settings import DEFAULT_CATEGORIES, TrackerSettings, load_settings

ENV_VARS = (
    "LINE_TRACKER_DATA_DIR",
    "LINE_TRACKER_REPOS_DIR",
    "LINE_TRACKER_POLICY_PATH",
    "LINE_TRACKER_CATEGORIES",
    "LINE_TRACKER_RETRY_INTERVAL_SECONDS",
    "LINE_TRACKER_RETRY_COOLDOWN_SECONDS",
    "LINE_TRACKER_MAX_RETRIES",
    "LINE_TRACKER_MAX_BLOB_BYTES",
    "LINE_TRACKER_LOG_LEVEL",
    "LINE_TRACKER_ENABLE_RETRY_SCHEDULER",
    "GITHUB_PAT",
)


def _clear_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)


def test_defaults(monkeypatch):
    _clear_env(monkeypatch)
    settings = load_settings()

    assert settings == TrackerSettings()
    assert settings.categories == DEFAULT_CATEGORIES
    assert settings.max_retries == 3
    assert settings.retry_interval_seconds == 300
    assert settings.policy_path.exists()
    assert settings.github_token is None


def test_overrides(monkeypatch, tmp_path):
    _clear_env(monkeypatch)
    monkeypatch.setenv("LINE_TRACKER_DATA_DIR", str(tmp_path / "data"))
    monkeypatch.setenv("LINE_TRACKER_CATEGORIES", "cs, .JS,cs")
    monkeypatch.setenv("LINE_TRACKER_MAX_RETRIES", "5")
    monkeypatch.setenv("LINE_TRACKER_LOG_LEVEL", "debug")
    monkeypatch.setenv("LINE_TRACKER_ENABLE_RETRY_SCHEDULER", "false")
    monkeypatch.setenv("GITHUB_PAT", "secret")

    settings = load_settings()

    assert settings.data_dir == (tmp_path / "data").resolve()
    assert settings.categories == (".cs", ".js")
    assert settings.max_retries == 5
    assert settings.log_level == "DEBUG"
    assert settings.enable_retry_scheduler is False
    assert settings.github_token == "secret"
    assert "secret" not in repr(settings)


def test_invalid_values_fall_back(monkeypatch, caplog):
    _clear_env(monkeypatch)
    monkeypatch.setenv("LINE_TRACKER_MAX_RETRIES", "lots")
    monkeypatch.setenv("LINE_TRACKER_RETRY_INTERVAL_SECONDS", "0")
    monkeypatch.setenv("LINE_TRACKER_LOG_LEVEL", "chatty")
    monkeypatch.setenv("LINE_TRACKER_ENABLE_RETRY_SCHEDULER", "maybe")

    with caplog.at_level(logging.WARNING, logger="utils.settings"):
        settings = load_settings()

    assert settings.max_retries == 3
    assert settings.retry_interval_seconds == 300
    assert settings.log_level == "INFO"
    assert settings.enable_retry_scheduler is True
    assert "Invalid LINE_TRACKER_MAX_RETRIES value 'lots'" in caplog.text
    assert "LINE_TRACKER_RETRY_INTERVAL_SECONDS must be >= 1" in caplog.text
