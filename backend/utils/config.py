"""Application settings resolved from environment variables."""

from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class Settings:
    app_name: str = "Interpreter Assignment Pool"
    app_version: str = "1.0.0"
    log_level: str = "INFO"

    database_path: Path = Path("data/interpreter_pool.db")
    database_timeout_seconds: float = 5.0

    pool_max_processing_attempts: int = 3
    pool_retry_backoff_minutes: int = 0
    pool_stuck_processing_minutes: int = 60

    daily_processing_interval_hours: float = 24.0
    daily_processor_autostart: bool = False
    statistics_lookback_days: int = 30

    seed_demo_interpreters: bool = True


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Build settings once per process; tests call ``get_settings.cache_clear()``."""
    defaults = Settings()
    return Settings(
        app_name=os.getenv("APP_NAME", defaults.app_name),
        app_version=os.getenv("APP_VERSION", defaults.app_version),
        log_level=os.getenv("LOG_LEVEL", defaults.log_level),
        database_path=Path(os.getenv("DATABASE_PATH", str(defaults.database_path))),
        database_timeout_seconds=float(
            os.getenv("DATABASE_TIMEOUT_SECONDS", defaults.database_timeout_seconds)
        ),
        pool_max_processing_attempts=int(
            os.getenv("POOL_MAX_PROCESSING_ATTEMPTS", defaults.pool_max_processing_attempts)
        ),
        pool_retry_backoff_minutes=int(
            os.getenv("POOL_RETRY_BACKOFF_MINUTES", defaults.pool_retry_backoff_minutes)
        ),
        pool_stuck_processing_minutes=int(
            os.getenv("POOL_STUCK_PROCESSING_MINUTES", defaults.pool_stuck_processing_minutes)
        ),
        daily_processing_interval_hours=float(
            os.getenv("DAILY_PROCESSING_INTERVAL_HOURS", defaults.daily_processing_interval_hours)
        ),
        daily_processor_autostart=_env_bool(
            "DAILY_PROCESSOR_AUTOSTART", defaults.daily_processor_autostart
        ),
        statistics_lookback_days=int(
            os.getenv("STATISTICS_LOOKBACK_DAYS", defaults.statistics_lookback_days)
        ),
        seed_demo_interpreters=_env_bool(
            "SEED_DEMO_INTERPRETERS", defaults.seed_demo_interpreters
        ),
    )
