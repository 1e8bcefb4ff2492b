"""Configuration management using Pydantic settings."""

from functools import lru_cache
from typing import Any, Literal

from pydantic_settings import BaseSettings

# Per-job-type defaults; None fields on Settings fall back to these
JOB_TYPE_DEFAULTS: dict[str, dict[str, Any]] = {
    "log-import": {
        # Log imports can run for a long time on large access.log files
        "ttl_minutes": 120,
    },
    "depot-scan": {
        "ttl_minutes": 30,
    },
}


class Settings(BaseSettings):
    # Application
    app_name: str = "optrack"
    app_version: str = "0.3.0"
    log_level: str = "INFO"
    log_format: str = "json"  # "json" for production, "console" for dev

    # Backend API
    api_base_url: str = "http://localhost:8080"
    api_timeout_seconds: float = 5.0
    api_token: str | None = None

    # Operation persistence
    store_backend: Literal["http", "redis", "memory"] = "http"
    redis_url: str = "redis://localhost:6379"
    redis_connect_timeout_seconds: float = 2.0
    redis_retry_interval_seconds: float = 30.0  # Degraded mode: wait before reconnecting
    store_key_prefix: str = "optrack:operation"
    store_retry_attempts: int = 3
    store_retry_base_delay_seconds: float = 1.0
    log_import_ttl_minutes: int | None = None  # None = use job type default
    depot_scan_ttl_minutes: int | None = None  # None = use job type default
    default_ttl_minutes: int = 30
    store_update_min_interval_seconds: float = 1.0  # Throttle for last-snapshot writes

    # Tracking
    poll_interval_seconds: float = 3.0
    watchdog_timeout_seconds: float = 300.0  # 5 min of silence before a forced probe
    completion_display_seconds: float = 3.0  # Outcome stays visible before reverting to idle
    probe_retry_budget: int = 3  # Consecutive probe failures before surfacing an error

    def model_post_init(self, __context: Any) -> None:
        """Apply job type defaults after Pydantic initialization."""
        for job_type, defaults in JOB_TYPE_DEFAULTS.items():
            field = f"{job_type.replace('-', '_')}_ttl_minutes"
            if getattr(self, field, None) is None:
                object.__setattr__(self, field, defaults["ttl_minutes"])

    def ttl_minutes_for(self, job_type: str) -> int:
        """Retention window of the persisted record for a job type."""
        value = getattr(self, f"{job_type.replace('-', '_')}_ttl_minutes", None)
        return value if value is not None else self.default_ttl_minutes

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        env_prefix = "OPTRACK_"
        extra = "ignore"


@lru_cache
def get_settings() -> Settings:
    return Settings()
