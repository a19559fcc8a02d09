from __future__ import annotations

import logging
from functools import lru_cache
from pathlib import Path
from typing import Literal
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import Field, PositiveFloat, PositiveInt, SecretStr, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="BACKUP_SCHEDULER_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    log_level: str = "INFO"

    state_root: Path = Field(default=Path("/var/lib/backup-scheduler"))
    job_store: Literal["file", "sqlalchemy"] = "file"
    database_url: str | None = None

    scheduler_timezone: str = "UTC"
    scheduler_tick_seconds: PositiveFloat = 1.0

    engine_binary: str = "restic"
    repository_root: Path = Field(default=Path("/var/lib/backup-scheduler/repositories"))
    repository_password: SecretStr | None = None
    engine_timeout_seconds: PositiveFloat = 30 * 60
    engine_kill_grace_seconds: PositiveFloat = 1.5

    mount_root: Path = Field(default=Path("/mnt/backup-sources"))
    connect_timeout_seconds: PositiveFloat = 5.0
    wake_delay_seconds: float = Field(default=30.0, ge=0)

    progress_interval_seconds: PositiveFloat = 1.0
    progress_queue_size: PositiveInt = 1000
    progress_log_interval_seconds: PositiveFloat = 5.0
    max_concurrent_jobs: PositiveInt | None = None

    cache_ttl_seconds: PositiveFloat = 30.0
    stale_backup_days: PositiveInt = 2

    shutdown_drain_seconds: PositiveFloat = 8.0
    shutdown_poll_seconds: PositiveFloat = 1.0
    shutdown_cancel_grace_seconds: PositiveFloat = 2.0

    retry_enabled: bool = False
    retry_delays_minutes: list[PositiveInt] = Field(default_factory=lambda: [5, 15, 45])

    @field_validator("state_root", "repository_root", "mount_root", mode="before")
    @classmethod
    def _normalize_path(cls, value: str | Path) -> Path:
        raw = str(value)
        if "~" in raw:
            raise ValueError("Home expansion syntax is not allowed in paths")
        path = Path(raw)
        if not path.is_absolute():
            raise ValueError("Path settings must be absolute")
        return path

    @model_validator(mode="after")
    def _validate_runtime_constraints(self) -> "Settings":
        normalized_level = self.log_level.upper().strip()
        if normalized_level not in logging.getLevelNamesMapping():
            raise ValueError(f"log_level '{self.log_level}' is not a known logging level")
        self.log_level = normalized_level

        try:
            ZoneInfo(self.scheduler_timezone)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"Unknown scheduler_timezone '{self.scheduler_timezone}'") from exc

        if any(b <= a for a, b in zip(self.retry_delays_minutes, self.retry_delays_minutes[1:])):
            raise ValueError("retry_delays_minutes must be strictly increasing")

        if self.shutdown_poll_seconds > self.shutdown_drain_seconds:
            raise ValueError("shutdown_poll_seconds must not exceed shutdown_drain_seconds")

        if self.engine_kill_grace_seconds >= self.shutdown_cancel_grace_seconds:
            raise ValueError("engine_kill_grace_seconds must be shorter than shutdown_cancel_grace_seconds")

        if self.database_url is not None and not self.database_url.startswith("sqlite+aiosqlite://"):
            raise ValueError("database_url must use the sqlite+aiosqlite driver")

        return self

    @property
    def jobs_root(self) -> Path:
        return self.state_root / "jobs"

    @property
    def effective_database_url(self) -> str:
        if self.database_url:
            return self.database_url
        db_path = self.state_root / "jobs.sqlite3"
        return f"sqlite+aiosqlite:///{db_path.as_posix()}"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
