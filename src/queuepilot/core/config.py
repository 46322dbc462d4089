from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in {"1", "true", "yes"}


@dataclass
class Settings:
    log_level: str
    log_dir: str
    data_dir: str
    host: str
    port: int
    max_parallel_tasks: int
    poll_interval_ms: int
    schedule_poll_seconds: int
    default_max_retries: int
    retry_backoff_seconds: float
    retry_backoff_max_seconds: float
    default_timezone: str
    webhook_rate_limit_calls: int
    webhook_rate_limit_seconds: int
    api_token: str | None
    autostart: bool
    clear_logs_on_launch: bool

    @staticmethod
    def from_env() -> "Settings":
        default_home = str(Path(os.path.expanduser("~")) / ".queuepilot")
        default_log_dir = str(Path(default_home) / ".logs")
        default_data_dir = str(Path(default_home) / ".data")
        return Settings(
            log_level=os.getenv("QUEUEPILOT_LOG_LEVEL", "info"),
            log_dir=os.getenv("QUEUEPILOT_LOG_DIR") or default_log_dir,
            data_dir=os.getenv("QUEUEPILOT_DATA_DIR") or default_data_dir,
            host=os.getenv("QUEUEPILOT_HOST", "127.0.0.1"),
            port=int(os.getenv("QUEUEPILOT_PORT", "18800")),
            max_parallel_tasks=int(os.getenv("QUEUEPILOT_MAX_PARALLEL_TASKS", "3")),
            poll_interval_ms=int(os.getenv("QUEUEPILOT_POLL_INTERVAL_MS", "5000")),
            schedule_poll_seconds=int(os.getenv("QUEUEPILOT_SCHEDULE_POLL_SECONDS", "60")),
            default_max_retries=int(os.getenv("QUEUEPILOT_DEFAULT_MAX_RETRIES", "3")),
            retry_backoff_seconds=float(os.getenv("QUEUEPILOT_RETRY_BACKOFF_SECONDS", "5")),
            retry_backoff_max_seconds=float(os.getenv("QUEUEPILOT_RETRY_BACKOFF_MAX_SECONDS", "300")),
            default_timezone=os.getenv("QUEUEPILOT_DEFAULT_TIMEZONE", "UTC"),
            webhook_rate_limit_calls=int(os.getenv("QUEUEPILOT_WEBHOOK_RATE_LIMIT_CALLS", "30")),
            webhook_rate_limit_seconds=int(os.getenv("QUEUEPILOT_WEBHOOK_RATE_LIMIT_SECONDS", "60")),
            api_token=os.getenv("QUEUEPILOT_API_TOKEN") or None,
            autostart=_env_bool("QUEUEPILOT_AUTOSTART", "true"),
            clear_logs_on_launch=_env_bool("QUEUEPILOT_CLEAR_LOGS_ON_LAUNCH", "false"),
        )
