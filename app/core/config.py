from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Literal

AppEnv = Literal["dev", "test", "prod"]
LogLevel = Literal["debug", "info", "warning", "error"]


def _getenv(name: str, default: str) -> str:
    # Single place for env access; typed readers below build on it
    return os.environ.get(name, default).strip()


def _getenv_int(name: str, default: int, *, minimum: int = 0) -> int:
    raw = _getenv(name, str(default))
    try:
        value = int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer (got {raw!r})") from None
    if value < minimum:
        raise ValueError(f"{name} must be >= {minimum} (got {value})")
    return value


def _getenv_float(name: str, default: float) -> float:
    raw = _getenv(name, str(default))
    try:
        value = float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number (got {raw!r})") from None
    if value <= 0:
        raise ValueError(f"{name} must be positive (got {value})")
    return value


@dataclass(frozen=True)
class Settings:
    app_env: AppEnv
    log_level: LogLevel
    log_json: bool
    database_url: str | None
    redis_url: str | None
    # Upper bound for one unit of work (transaction) before it is abandoned
    db_timeout_seconds: float = 5.0
    db_retry_attempts: int = 3
    analytics_max_staleness_seconds: int = 900
    certificate_code_attempts: int = 5
    metrics_port: int = 9100
    reconcile_interval_seconds: int = 300

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

    if app_env_raw not in ("dev", "test", "prod"):
        raise ValueError(f"APP_ENV must be dev|test|prod (got {app_env_raw!r})")

    if log_level_raw not in ("debug", "info", "warning", "error"):
        raise ValueError(
            f"LOG_LEVEL must be debug|info|warning|error (got {log_level_raw!r})"
        )

    if log_json_raw not in ("true", "false", "1", "0"):
        raise ValueError(f"LOG_JSON must be true|false (got {log_json_raw!r})")

    database_url = _getenv("DATABASE_URL", "") or None
    redis_url = _getenv("REDIS_URL", "") or None

    return Settings(  # type: ignore[arg-type]
        app_env=app_env_raw,
        log_level=log_level_raw,
        log_json=log_json_raw in ("true", "1"),
        database_url=database_url,
        redis_url=redis_url,
        db_timeout_seconds=_getenv_float("DB_TIMEOUT_SECONDS", 5.0),
        db_retry_attempts=_getenv_int("DB_RETRY_ATTEMPTS", 3, minimum=1),
        analytics_max_staleness_seconds=_getenv_int(
            "ANALYTICS_MAX_STALENESS_SECONDS", 900
        ),
        certificate_code_attempts=_getenv_int(
            "CERTIFICATE_CODE_ATTEMPTS", 5, minimum=1
        ),
        metrics_port=_getenv_int("METRICS_PORT", 9100, minimum=1),
        reconcile_interval_seconds=_getenv_int(
            "RECONCILE_INTERVAL_SECONDS", 300, minimum=1
        ),
    )


# Optional: module-level singleton so imports are cheap
SETTINGS = load_settings()
