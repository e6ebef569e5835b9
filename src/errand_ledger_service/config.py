"""
Configuration management for the errand ledger service.

Loads configuration from YAML with ZERO defaults for required sections.
Every required value must be explicitly specified or startup fails.
"""

from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, ConfigDict


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


class RequestConfig(BaseModel):
    """Request handling configuration."""

    model_config = ConfigDict(extra="forbid")
    max_body_size: int


class PlatformSettings(BaseModel):
    """
    Marketplace-wide settings read by the task lifecycle.

    ``commission_percentage`` is deliberately unbounded here; the
    commission policy rejects out-of-range values at use time.
    """

    model_config = ConfigDict(extra="forbid")
    commission_percentage: float
    minimum_task_amount: int
    maximum_task_amount: int
    payment_methods: list[str]
    supported_categories: list[str]
    maintenance_mode: bool
    runner_stake_required: bool
    operator_id: str
    revenue_account_id: str | None = None


class PaymentGatewayConfig(BaseModel):
    """Hosted checkout gateway configuration."""

    model_config = ConfigDict(extra="forbid")
    merchant_code: str
    environment: Literal["sandbox", "production"]
    sandbox_checkout_url: str
    production_checkout_url: str
    currency: str
    country: str
    locale: str
    return_url: str
    pending_timeout_seconds: int


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
    request: RequestConfig
    platform: PlatformSettings
    payment_gateway: PaymentGatewayConfig


def get_config_path() -> Path:
    """Determine configuration file path from CONFIG_PATH or the working directory."""
    env_path = os.environ.get("CONFIG_PATH")
    if env_path:
        return Path(env_path)
    return Path.cwd() / "config.yaml"


def load_settings(config_path: Path) -> Settings:
    """Parse and validate a YAML configuration file."""
    raw = yaml.safe_load(config_path.read_text())
    if not isinstance(raw, dict):
        msg = f"Invalid config file: {config_path}"
        raise ValueError(msg)
    return Settings(**raw)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Load settings once per process."""
    return load_settings(get_config_path())


def clear_settings_cache() -> None:
    """Drop cached settings so the next call reloads from disk."""
    get_settings.cache_clear()
