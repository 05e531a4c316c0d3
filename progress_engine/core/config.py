from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Literal

AppEnv = Literal["dev", "test", "prod"]
LogLevel = Literal["debug", "info", "warning", "error"]


def _getenv(name: str, default: str) -> str:
    return os.environ.get(name, default).strip()


def _getfloat(name: str, default: str) -> float:
    raw = _getenv(name, default)
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number (got {raw!r})") from None


@dataclass(frozen=True)
class Settings:
    app_env: AppEnv
    log_level: LogLevel
    log_json: bool
    port: int
    database_url: str | None
    redis_url: str | None
    content_service_url: str | None = None
    token_public_key_pem: str | None = None
    # Smallest cohort (and breakdown bucket) an analytics report may describe.
    k_anonymity_min: int = 5
    # Course percentage a learner needs before a certificate can be issued.
    completion_threshold: float = 100.0
    ledger_append_timeout_seconds: float = 2.0
    analytics_timeout_seconds: float = 30.0

    @property
    def is_dev(self) -> bool:
        return self.app_env == "dev"

    @property
    def is_test(self) -> bool:
        return self.app_env == "test"

    @property
    def is_prod(self) -> bool:
        return self.app_env == "prod"


def load_settings() -> Settings:
    app_env_raw = _getenv("APP_ENV", "dev").lower()
    log_level_raw = _getenv("LOG_LEVEL", "info").lower()
    log_json_raw = _getenv("LOG_JSON", "false").lower()
    port_raw = _getenv("PORT", "8000")
    k_raw = _getenv("K_ANONYMITY_MIN", "5")

    if app_env_raw not in ("dev", "test", "prod"):
        raise ValueError(f"APP_ENV must be dev|test|prod (got {app_env_raw!r})")

    if log_level_raw not in ("debug", "info", "warning", "error"):
        raise ValueError(
            f"LOG_LEVEL must be debug|info|warning|error (got {log_level_raw!r})"
        )

    if log_json_raw not in ("true", "false", "1", "0"):
        raise ValueError(f"LOG_JSON must be true|false (got {log_json_raw!r})")

    try:
        port = int(port_raw)
    except ValueError:
        raise ValueError(f"PORT must be an integer (got {port_raw!r})") from None

    try:
        k_anonymity_min = int(k_raw)
    except ValueError:
        raise ValueError(
            f"K_ANONYMITY_MIN must be an integer (got {k_raw!r})"
        ) from None
    if k_anonymity_min < 2:
        raise ValueError(f"K_ANONYMITY_MIN must be >= 2 (got {k_anonymity_min})")

    completion_threshold = _getfloat("COMPLETION_THRESHOLD", "100")
    if not 0 <= completion_threshold <= 100:
        raise ValueError(
            f"COMPLETION_THRESHOLD must be between 0 and 100 (got {completion_threshold})"
        )

    append_timeout = _getfloat("LEDGER_APPEND_TIMEOUT_SECONDS", "2.0")
    if append_timeout <= 0:
        raise ValueError(
            f"LEDGER_APPEND_TIMEOUT_SECONDS must be positive (got {append_timeout})"
        )

    analytics_timeout = _getfloat("ANALYTICS_TIMEOUT_SECONDS", "30")
    if analytics_timeout <= 0:
        raise ValueError(
            f"ANALYTICS_TIMEOUT_SECONDS must be positive (got {analytics_timeout})"
        )

    return Settings(  # type: ignore[arg-type]
        app_env=app_env_raw,
        log_level=log_level_raw,
        log_json=log_json_raw in ("true", "1"),
        port=port,
        database_url=_getenv("DATABASE_URL", "") or None,
        redis_url=_getenv("REDIS_URL", "") or None,
        content_service_url=_getenv("CONTENT_SERVICE_URL", "") or None,
        token_public_key_pem=_getenv("TOKEN_PUBLIC_KEY_PEM", "") or None,
        k_anonymity_min=k_anonymity_min,
        completion_threshold=completion_threshold,
        ledger_append_timeout_seconds=append_timeout,
        analytics_timeout_seconds=analytics_timeout,
    )


SETTINGS = load_settings()
