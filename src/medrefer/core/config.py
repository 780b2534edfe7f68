"""
MedRefer configuration management.

Provides centralized configuration with validation using Pydantic.
"""

from __future__ import annotations

import json
from datetime import datetime, timedelta
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field, field_validator

DEFAULT_HOME = Path.home() / ".medrefer"


class LoggingConfig(BaseModel):
    """Configuration for structured logging."""

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    file_enabled: bool = True
    console_enabled: bool = True
    json_format: bool = False
    log_directory: Path = Field(default_factory=lambda: DEFAULT_HOME / "logs")

    @field_validator("log_directory", mode="before")
    @classmethod
    def expand_path(cls, v: str | Path) -> Path:
        return Path(v).expanduser().resolve()


class DatabaseConfig(BaseModel):
    """Configuration for the local SQLite store."""

    path: Path = Field(default_factory=lambda: DEFAULT_HOME / "medrefer.db")
    busy_timeout_ms: int = Field(default=30000, ge=0)

    @field_validator("path", mode="before")
    @classmethod
    def expand_path(cls, v: str | Path) -> Path:
        if str(v) == ":memory:":
            return Path(":memory:")
        return Path(v).expanduser().resolve()

    @property
    def is_memory(self) -> bool:
        return str(self.path) == ":memory:"


class SyncConfig(BaseModel):
    """Configuration for the offline sync queue."""

    max_retries: int = Field(default=5, ge=1)
    retry_delay_seconds: int = Field(default=30, ge=0)
    sync_interval_seconds: int = Field(default=300, ge=1)
    batch_size: int = Field(default=50, ge=1)
    max_queue_size: int = Field(default=1000, ge=1)
    history_limit: int = Field(default=100, ge=1)
    history_trim: int = Field(default=20, ge=1)
    auto_sync: bool = True

    @property
    def retry_delay(self) -> timedelta:
        return timedelta(seconds=self.retry_delay_seconds)

    @property
    def sync_interval(self) -> timedelta:
        return timedelta(seconds=self.sync_interval_seconds)


class AuditConfig(BaseModel):
    """Configuration for the security audit trail."""

    max_log_entries: int = Field(default=10000, ge=1)
    retention_days: int = Field(default=365, ge=1)
    max_failed_logins: int = Field(default=5, ge=1)
    lockout_minutes: int = Field(default=30, ge=1)

    @property
    def retention_period(self) -> timedelta:
        return timedelta(days=self.retention_days)

    @property
    def lockout_duration(self) -> timedelta:
        return timedelta(minutes=self.lockout_minutes)


class MedReferConfig(BaseModel):
    """Main MedRefer configuration."""

    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    sync: SyncConfig = Field(default_factory=SyncConfig)
    audit: AuditConfig = Field(default_factory=AuditConfig)
    session_directory: Path = Field(default_factory=lambda: DEFAULT_HOME / "sessions")

    @field_validator("session_directory", mode="before")
    @classmethod
    def expand_session_path(cls, v: str | Path) -> Path:
        return Path(v).expanduser().resolve()

    @classmethod
    def load(cls, config_path: Path | None = None) -> MedReferConfig:
        """Load configuration from file or create default."""
        if config_path is None:
            config_path = DEFAULT_HOME / "config.json"

        if config_path.exists():
            with open(config_path) as f:
                data = json.load(f)
            return cls.model_validate(data)

        return cls()

    def save(self, config_path: Path | None = None) -> None:
        """Save configuration to file."""
        if config_path is None:
            config_path = DEFAULT_HOME / "config.json"

        config_path.parent.mkdir(parents=True, exist_ok=True)
        with open(config_path, "w") as f:
            json.dump(self.model_dump(mode="json"), f, indent=2, default=str)

    def ensure_directories(self) -> None:
        """Create all required directories."""
        self.logging.log_directory.mkdir(parents=True, exist_ok=True)
        self.session_directory.mkdir(parents=True, exist_ok=True)
        if not self.database.is_memory:
            self.database.path.parent.mkdir(parents=True, exist_ok=True)

    def get_session_file(self) -> Path:
        """Get path for a new session log file."""
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        return self.session_directory / f"session_{timestamp}.json"


def get_default_config() -> MedReferConfig:
    """Get the default configuration."""
    return MedReferConfig()


def load_config(config_path: Path | None = None) -> MedReferConfig:
    """Load or create configuration."""
    config = MedReferConfig.load(config_path)
    config.ensure_directories()
    return config
