from __future__ import annotations

import pytest

from progress_engine.core.config import load_settings

_ENV_VARS = (
    "APP_ENV",
    "LOG_LEVEL",
    "LOG_JSON",
    "PORT",
    "K_ANONYMITY_MIN",
    "COMPLETION_THRESHOLD",
    "LEDGER_APPEND_TIMEOUT_SECONDS",
    "ANALYTICS_TIMEOUT_SECONDS",
    "CONTENT_SERVICE_URL",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)


# ---- valid values ----


def test_load_settings_defaults() -> None:
    settings = load_settings()
    assert settings.app_env == "dev"
    assert settings.log_level == "info"
    assert settings.log_json is False
    assert settings.k_anonymity_min == 5
    assert settings.completion_threshold == 100.0
    assert settings.ledger_append_timeout_seconds == 2.0
    assert settings.content_service_url is None


def test_load_settings_normalizes_case_and_whitespace(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("APP_ENV", "  PROD ")
    monkeypatch.setenv("LOG_LEVEL", "DEBUG")
    monkeypatch.setenv("LOG_JSON", "True")
    settings = load_settings()
    assert settings.app_env == "prod"
    assert settings.is_prod
    assert settings.log_level == "debug"
    assert settings.log_json is True


def test_load_settings_reads_engine_tuning(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("K_ANONYMITY_MIN", "10")
    monkeypatch.setenv("COMPLETION_THRESHOLD", "90")
    monkeypatch.setenv("LEDGER_APPEND_TIMEOUT_SECONDS", "0.5")
    monkeypatch.setenv("CONTENT_SERVICE_URL", "http://content:8000")
    settings = load_settings()
    assert settings.k_anonymity_min == 10
    assert settings.completion_threshold == 90.0
    assert settings.ledger_append_timeout_seconds == 0.5
    assert settings.content_service_url == "http://content:8000"


# ---- invalid values ----


@pytest.mark.parametrize(
    ("name", "value", "message"),
    [
        ("APP_ENV", "staging", "APP_ENV must be dev|test|prod"),
        ("LOG_LEVEL", "verbose", "LOG_LEVEL must be debug|info|warning|error"),
        ("LOG_JSON", "yes", "LOG_JSON must be true|false"),
        ("PORT", "eighty", "PORT must be an integer"),
        ("K_ANONYMITY_MIN", "five", "K_ANONYMITY_MIN must be an integer"),
        ("K_ANONYMITY_MIN", "1", "K_ANONYMITY_MIN must be >= 2"),
        ("COMPLETION_THRESHOLD", "120", "COMPLETION_THRESHOLD must be between 0 and 100"),
        ("LEDGER_APPEND_TIMEOUT_SECONDS", "0", "LEDGER_APPEND_TIMEOUT_SECONDS must be positive"),
        ("ANALYTICS_TIMEOUT_SECONDS", "-1", "ANALYTICS_TIMEOUT_SECONDS must be positive"),
    ],
)
def test_load_settings_rejects_invalid_values(
    monkeypatch: pytest.MonkeyPatch, name: str, value: str, message: str
) -> None:
    monkeypatch.setenv(name, value)
    with pytest.raises(ValueError, match=message.replace("|", r"\|")):
        load_settings()
