"""
Configuration management for the Flextasker ledger service.

Loads configuration from YAML with ZERO defaults.
Every value must be explicitly specified or startup fails.
"""

from __future__ import annotations

import os
from decimal import Decimal
from functools import lru_cache
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, ConfigDict

REDACTION_MARKER = "***REDACTED***"

_SENSITIVE_KEY_FRAGMENTS: tuple[str, ...] = ("secret", "password", "token", "api_key")


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


class FeesConfig(BaseModel):
    """Fee schedule applied to every payment and refund."""

    model_config = ConfigDict(extra="forbid")
    platform_rate: Decimal
    processing_rate: Decimal
    processing_fixed: Decimal
    refund_reversal: Literal["stored", "recompute"]


class BiddingConfig(BaseModel):
    """Bid placement and search configuration."""

    model_config = ConfigDict(extra="forbid")
    budget_warning_ratio: Decimal
    default_page_size: int
    max_page_size: int


class GatewayConfig(BaseModel):
    """Payment gateway connection configuration."""

    model_config = ConfigDict(extra="forbid")
    mode: Literal["simulated", "http"]
    timeout_seconds: float
    base_url: str | None
    charge_path: str | None
    refund_path: str | None
    success_rate: float
    seed: int | None


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
    fees: FeesConfig
    bidding: BiddingConfig
    gateway: GatewayConfig


def get_config_path() -> Path:
    """
    Determine configuration file path.

    CONFIG_PATH wins when set; otherwise config.yaml at the project root.
    """
    env_path = os.environ.get("CONFIG_PATH")
    if env_path:
        return Path(env_path)
    return Path(__file__).resolve().parents[2] / "config.yaml"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """
    Load and validate settings from the YAML config file.

    Raises:
        FileNotFoundError: If the config file does not exist
        ValueError: If the file does not contain a YAML mapping
        pydantic.ValidationError: If any field is missing, unknown, or mistyped
    """
    config_path = get_config_path()
    if not config_path.exists():
        msg = f"Configuration file not found: {config_path}"
        raise FileNotFoundError(msg)

    with config_path.open(encoding="utf-8") as handle:
        raw = yaml.safe_load(handle)

    if not isinstance(raw, dict):
        msg = f"Configuration file must contain a mapping: {config_path}"
        raise ValueError(msg)

    return Settings.model_validate(raw)


def clear_settings_cache() -> None:
    """Drop the cached settings so the next call re-reads the file."""
    get_settings.cache_clear()


def _redact(value: Any) -> Any:
    if isinstance(value, dict):
        return {
            key: REDACTION_MARKER
            if any(fragment in key.lower() for fragment in _SENSITIVE_KEY_FRAGMENTS)
            else _redact(item)
            for key, item in value.items()
        }
    if isinstance(value, list):
        return [_redact(item) for item in value]
    return value


def get_safe_config() -> dict[str, Any]:
    """Get configuration with sensitive values redacted."""
    redacted: dict[str, Any] = _redact(get_settings().model_dump(mode="json"))
    return redacted
