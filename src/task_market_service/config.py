"""
Configuration management for the task market service.

Loads configuration from YAML with ZERO defaults.
Every value must be explicitly specified or startup fails.
"""

from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field

REDACTION_MARKER = "***REDACTED***"

_SENSITIVE_KEYS = frozenset({"merchant_secret"})


class ServiceConfig(BaseModel):
    """Service identity configuration."""

    model_config = ConfigDict(extra="forbid")
    name: str
    version: str


class ServerConfig(BaseModel):
    """HTTP server configuration."""

    model_config = ConfigDict(extra="forbid")
    host: str
    port: int
    log_level: str


class LoggingConfig(BaseModel):
    """Logging configuration."""

    model_config = ConfigDict(extra="forbid")
    level: str
    directory: str


class DatabaseConfig(BaseModel):
    """Database configuration."""

    model_config = ConfigDict(extra="forbid")
    path: str


class ReputationConfig(BaseModel):
    """Rating/statistics service connection configuration."""

    model_config = ConfigDict(extra="forbid")
    base_url: str
    timeout_seconds: int


class NotificationsConfig(BaseModel):
    """Notification service connection configuration."""

    model_config = ConfigDict(extra="forbid")
    base_url: str
    timeout_seconds: int


class PaymentsConfig(BaseModel):
    """Payment provider configuration for advance payments."""

    model_config = ConfigDict(extra="forbid")
    merchant_id: str
    merchant_secret: str
    currency: str
    advance_ratio: float = Field(gt=0, le=1)
    success_status_code: str
    cancelled_status_code: str
    checkout_url: str
    notify_url: str
    return_url: str
    cancel_url: str


class MatchingConfig(BaseModel):
    """Tasker selection tuning."""

    model_config = ConfigDict(extra="forbid")
    time_tolerance_seconds: int = Field(ge=0)


class Settings(BaseModel):
    """
    Root configuration container.

    All fields are REQUIRED. No defaults exist.
    Missing fields cause immediate startup failure.
    """

    model_config = ConfigDict(extra="forbid")
    service: ServiceConfig
    server: ServerConfig
    logging: LoggingConfig
    database: DatabaseConfig
    reputation: ReputationConfig
    notifications: NotificationsConfig
    payments: PaymentsConfig
    matching: MatchingConfig


def get_config_path() -> Path:
    """Determine configuration file path."""
    configured = os.environ.get("CONFIG_PATH")
    if configured:
        return Path(configured)
    return Path.cwd() / "config.yaml"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Load and cache settings from the YAML configuration file."""
    config_path = get_config_path()
    raw = yaml.safe_load(config_path.read_text())
    if not isinstance(raw, dict):
        msg = f"Invalid config file: {config_path}"
        raise ValueError(msg)
    return Settings(**raw)


def clear_settings_cache() -> None:
    """Drop cached settings so the next call reloads the file."""
    get_settings.cache_clear()


def _redact(value: Any) -> Any:
    if isinstance(value, dict):
        return {
            key: REDACTION_MARKER if key in _SENSITIVE_KEYS else _redact(item)
            for key, item in value.items()
        }
    return value


def get_safe_config() -> dict[str, Any]:
    """Get configuration with sensitive values redacted."""
    redacted: dict[str, Any] = _redact(get_settings().model_dump())
    return redacted
