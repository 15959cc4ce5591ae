"""Configuration for vcshub.

Settings are read from a YAML file (``VCSHUB_CONFIG`` or ``vcshub.yaml``) and
then overridden by environment variables. A ``.env`` file in the working
directory is loaded first.
"""

import os
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError, field_validator

from vcshub.constants import (
    CONFIG_ENV_VAR,
    DB_TIMEOUT_SECONDS,
    DEFAULT_CONFIG_FILE,
    DEFAULT_DB_FILE,
    DEFAULT_PART_SIZE,
    GC_DELETE_BATCH_SIZE,
    GC_GRACE_PERIOD_SECONDS,
    GC_LIST_PAGE_SIZE,
    MIN_PART_SIZE,
    PRESIGN_EXPIRES_SECONDS,
    PRESIGN_WORKERS,
    STORAGE_CONNECT_TIMEOUT_SECONDS,
    STORAGE_MAX_ATTEMPTS,
    STORAGE_READ_TIMEOUT_SECONDS,
)
from vcshub.errors import ConfigurationError

# Environment variable -> (section, field)
ENV_OVERRIDES = {
    "VCSHUB_DB_PATH": ("database", "path"),
    "VCSHUB_BUCKET": ("storage", "bucket"),
    "VCSHUB_S3_ENDPOINT": ("storage", "endpoint_url"),
    "VCSHUB_S3_REGION": ("storage", "region"),
    "VCSHUB_LOG_LEVEL": ("logging", "level"),
}


class DatabaseSettings(BaseModel):
    path: str = DEFAULT_DB_FILE
    timeout_seconds: float = Field(DB_TIMEOUT_SECONDS, gt=0.0, le=60.0)


class StorageSettings(BaseModel):
    bucket: str = "vcshub-projects"
    region: Optional[str] = None
    endpoint_url: Optional[str] = None
    part_size: int = DEFAULT_PART_SIZE
    presign_expires_seconds: int = Field(PRESIGN_EXPIRES_SECONDS, ge=1, le=7 * 24 * 3600)
    presign_workers: int = Field(PRESIGN_WORKERS, ge=1, le=64)
    connect_timeout_seconds: float = Field(STORAGE_CONNECT_TIMEOUT_SECONDS, gt=0.0)
    read_timeout_seconds: float = Field(STORAGE_READ_TIMEOUT_SECONDS, gt=0.0)
    max_attempts: int = Field(STORAGE_MAX_ATTEMPTS, ge=1, le=10)

    @field_validator("part_size")
    @classmethod
    def _check_part_size(cls, value: int) -> int:
        if value < MIN_PART_SIZE:
            raise ValueError(f"part_size must be at least {MIN_PART_SIZE} bytes")
        return value

    @field_validator("bucket")
    @classmethod
    def _check_bucket(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("bucket must not be empty")
        return value


class GCSettings(BaseModel):
    grace_period_seconds: int = Field(GC_GRACE_PERIOD_SECONDS, ge=0)
    delete_batch_size: int = Field(GC_DELETE_BATCH_SIZE, ge=1, le=1000)
    list_page_size: int = Field(GC_LIST_PAGE_SIZE, ge=1, le=1000)


class LoggingSettings(BaseModel):
    level: str = "INFO"

    @field_validator("level")
    @classmethod
    def _normalize_level(cls, value: str) -> str:
        value = value.upper()
        if value not in {"TRACE", "DEBUG", "INFO", "SUCCESS", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"unknown log level: {value}")
        return value


class Settings(BaseModel):
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)
    gc: GCSettings = Field(default_factory=GCSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)

    @classmethod
    def load(cls, path: Optional[Path] = None) -> "Settings":
        """Load settings from YAML plus environment overrides.

        Args:
            path: Optional path to a configuration file. If not provided, uses
                the VCSHUB_CONFIG environment variable or ``vcshub.yaml`` when
                it exists, and defaults otherwise.

        Returns:
            Settings instance.

        Raises:
            ConfigurationError: If an explicit file is missing or the
                configuration is invalid.
        """
        load_dotenv(Path.cwd() / ".env")

        payload: Dict[str, Any] = {}
        explicit = path or os.getenv(CONFIG_ENV_VAR)
        config_path = Path(explicit) if explicit else Path(DEFAULT_CONFIG_FILE)
        if config_path.exists():
            with config_path.open("r", encoding="utf-8") as fp:
                payload = yaml.safe_load(fp) or {}
        elif explicit:
            raise ConfigurationError(f"Configuration file not found: {config_path}")

        if not isinstance(payload, dict):
            raise ConfigurationError("Configuration root must be a mapping")

        for env_name, (section, field) in ENV_OVERRIDES.items():
            value = os.getenv(env_name)
            if value:
                payload.setdefault(section, {})[field] = value

        try:
            return cls(**payload)
        except ValidationError as exc:
            raise ConfigurationError(f"Invalid configuration: {exc}") from exc


__all__ = [
    "Settings",
    "DatabaseSettings",
    "StorageSettings",
    "GCSettings",
    "LoggingSettings",
]
