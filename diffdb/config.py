"""
Configuration for diffdb.

Uses pydantic-settings for environment variable loading. Every setting
has a default suitable for local development; override with DIFFDB_*
environment variables.

Invariants:
    - backend is one of the names create_store() understands
    - Secrets are never part of this configuration

How to change safely:
    - Add new settings with defaults that keep existing deployments working
    - Keep the env prefix stable
"""

from __future__ import annotations

import logging

import json_log_formatter
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings

BACKENDS = ("sqlite", "memory")
LOG_FORMATS = ("json", "text")
LOG_LEVELS = ("CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG")
TEXT_LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


class Settings(BaseSettings):
    """diffdb configuration loaded from environment."""

    # Store selection
    backend: str = Field(default="sqlite", description="Store backend: sqlite or memory")
    data_path: str = Field(default="diffdb.sqlite3", description="SQLite database file")

    # SQLite tuning
    wal_mode: bool = Field(default=True, description="Enable SQLite WAL journal mode")
    busy_timeout_ms: int = Field(default=5000, description="SQLite busy timeout")
    cache_size_pages: int = Field(default=-64000, description="SQLite cache size (negative = KB)")
    cursor_page_size: int = Field(default=256, gt=0, description="Rows fetched per cursor page")

    # Logging
    log_level: str = Field(default="INFO", description="Root log level name")
    log_format: str = Field(default="text", description="Log format: json or text")

    model_config = {"env_prefix": "DIFFDB_"}

    @field_validator("backend")
    @classmethod
    def validate_backend(cls, value: str) -> str:
        value = value.lower()
        if value not in BACKENDS:
            raise ValueError(f"Invalid backend '{value}'. Must be one of: {', '.join(BACKENDS)}")
        return value

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, value: str) -> str:
        value = value.lower()
        if value not in LOG_FORMATS:
            raise ValueError(f"Invalid log_format '{value}'. Must be one of: json, text")
        return value

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, value: str) -> str:
        value = value.upper()
        if value not in LOG_LEVELS:
            raise ValueError(f"Invalid log_level '{value}'. Must be one of: {', '.join(LOG_LEVELS)}")
        return value

    @property
    def logging_level(self) -> int:
        """Numeric level for the logging module."""
        return logging.getLevelName(self.log_level)

    def log_formatter(self) -> logging.Formatter:
        """Formatter matching log_format."""
        if self.log_format == "json":
            return json_log_formatter.JSONFormatter()
        return logging.Formatter(TEXT_LOG_FORMAT)
