"""
Centralized configuration management for mongotail.

Uses Pydantic Settings for validation and environment variable loading.
Loads from .env file if present, falls back to environment variables, then defaults.
"""
import re
from typing import Literal, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .oplog.tailer import TailerConfig


class MongoSettings(BaseSettings):
    """MongoDB (log source) configuration."""

    model_config = SettingsConfigDict(
        env_prefix="MONGO_",
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    url: str = Field(
        default="mongodb://localhost:27017/?replicaSet=rs0",
        description="Connection URL of the replica set whose oplog is tailed"
    )
    connect_timeout: int = Field(default=10, description="Connection timeout in seconds")
    server_selection_timeout: int = Field(default=10, description="Server selection timeout in seconds")


class TailerSettings(BaseSettings):
    """Tailer binding and loop configuration."""

    model_config = SettingsConfigDict(
        env_prefix="TAILER_",
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    filter_regex: str = Field(default="", description="Regex matched against oplog namespaces (empty = all)")
    label: str = Field(default="default", description="Checkpoint lineage name")

    reconnect_await_seconds: float = Field(default=5.0, description="Bounded await on reconnect cursors")
    retry_backoff_base: float = Field(default=2.0, description="Reconnect backoff base")
    max_retry_delay: float = Field(default=60.0, description="Max seconds between reconnects")
    exhausted_pause_seconds: float = Field(default=1.0, ge=0, description="Pause before reopening a cursor the server closed")
    max_retries: Optional[int] = Field(default=None, description="Reconnect attempts before giving up (unset = forever)")
    worker_count: int = Field(default=1, description="Handler worker threads")
    queue_size: int = Field(default=1000, description="Max entries queued for handlers")
    drain_timeout: float = Field(default=30.0, description="Seconds to wait for handlers on shutdown")

    @field_validator("filter_regex")
    @classmethod
    def validate_filter_regex(cls, v: str) -> str:
        """Reject patterns that do not compile."""
        try:
            re.compile(v)
        except re.error as e:
            raise ValueError(f"Invalid filter_regex: {e}") from e
        return v

    @field_validator("label")
    @classmethod
    def validate_label(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("label must not be empty")
        return v

    @field_validator("reconnect_await_seconds", "worker_count", "queue_size")
    @classmethod
    def validate_positive(cls, v):
        if v <= 0:
            raise ValueError("must be positive")
        return v

    def tailer_config(self) -> TailerConfig:
        """Build the TailerConfig for these settings."""
        return TailerConfig(
            reconnect_await_seconds=self.reconnect_await_seconds,
            retry_backoff_base=self.retry_backoff_base,
            max_retry_delay=self.max_retry_delay,
            exhausted_pause_seconds=self.exhausted_pause_seconds,
            max_retries=self.max_retries,
            worker_count=self.worker_count,
            queue_size=self.queue_size,
            drain_timeout=self.drain_timeout
        )


class CheckpointSettings(BaseSettings):
    """Checkpoint store configuration."""

    model_config = SettingsConfigDict(
        env_prefix="CHECKPOINT_",
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    backend: Literal["mongo", "sql"] = Field(default="mongo", description="Checkpoint store backend")
    database_url: Optional[str] = Field(
        default=None,
        description="SQLAlchemy URL for the sql backend"
    )
    mongo_database: str = Field(default="gooplog", description="Database holding mongo checkpoints")
    mongo_collection: str = Field(default="opLogTailerInfo", description="Collection holding mongo checkpoints")


class LoggingSettings(BaseSettings):
    """Logging configuration."""

    model_config = SettingsConfigDict(
        env_prefix="LOG_",
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    level: str = Field(default="INFO", description="Root log level")
    json_format: bool = Field(default=True, description="Emit JSON log lines")

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        allowed = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if v.upper() not in allowed:
            raise ValueError(f"Log level must be one of: {allowed}")
        return v.upper()


class Settings(BaseSettings):
    """Main application settings combining all sub-settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    metrics_port: Optional[int] = Field(default=None, description="Serve Prometheus metrics on this port")

    mongo: MongoSettings = Field(default_factory=MongoSettings)
    tailer: TailerSettings = Field(default_factory=TailerSettings)
    checkpoint: CheckpointSettings = Field(default_factory=CheckpointSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)


# Global settings instance
_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Get the global settings instance (singleton pattern)."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reload_settings() -> Settings:
    """Reload settings from environment (useful for testing)."""
    global _settings
    _settings = Settings()
    return _settings
