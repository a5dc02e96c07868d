"""Unified configuration via pydantic-settings, with an optional YAML file."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import structlog
import yaml
from pydantic import Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from parley.core.permissions import PermissionLevel
from parley.core.ratelimit import RateLimit
from parley.exceptions import ConfigError

logger = structlog.get_logger()

CONFIG_FILE_ENV = "PARLEY_CONFIG_FILE"


class ParleyConfig(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="PARLEY_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Plugins
    plugins: list[str] = []
    plugin_paths: dict[str, str] = {}
    plugins_config: dict[str, dict[str, Any]] = {}

    # Permissions
    admin_ids: set[str] = set()
    trusted_ids: set[str] = set()

    # Global per-user quotas, keyed by permission level name
    rate_limits: dict[str, list[RateLimit]] = {}

    # Dispatch
    command_prefix: str = "/"
    aliases: dict[str, str] = {}
    help_page_size: int = Field(default=1500, gt=0)
    interaction_timeout_seconds: float = 300.0
    max_message_age_seconds: float = 30.0
    debug_errors: bool = False
    notify_admins_on_error: bool = False

    # Storage
    storage_backend: str = "memory"  # "memory" or "sqlite"
    storage_dir: Path = Path("db/plugins")

    # Connector
    telegram_bot_token: str | None = None

    # Logging
    log_level: str = "INFO"
    log_dir: Path | None = None
    log_max_bytes: int = 10_485_760
    log_backup_count: int = 5

    @field_validator("admin_ids", "trusted_ids", mode="before")
    @classmethod
    def parse_ids(cls, v: set[str] | list[str] | str | int) -> set[str]:
        if isinstance(v, int):
            return {str(v)}
        if isinstance(v, str):
            return {s.strip() for s in v.split(",") if s.strip()}
        return {str(s) for s in v}

    @field_validator("plugins", mode="before")
    @classmethod
    def parse_plugins(cls, v: list[str] | str) -> list[str]:
        if isinstance(v, str):
            v = v.split(",")
        seen: list[str] = []
        for p in v:
            p = p.strip().lower()
            if p and p not in seen:
                seen.append(p)
        return seen

    @field_validator("rate_limits")
    @classmethod
    def validate_rate_limit_levels(
        cls, v: dict[str, list[RateLimit]]
    ) -> dict[str, list[RateLimit]]:
        normalized: dict[str, list[RateLimit]] = {}
        for level, quotas in v.items():
            normalized[PermissionLevel.parse(level).name] = quotas
        return normalized

    @field_validator("aliases")
    @classmethod
    def normalize_aliases(cls, v: dict[str, str]) -> dict[str, str]:
        return {
            alias.strip().lstrip("/").lower(): target.strip().lstrip("/")
            for alias, target in v.items()
        }

    @field_validator("command_prefix")
    @classmethod
    def validate_command_prefix(cls, v: str) -> str:
        if not v or v.isspace():
            raise ValueError("command_prefix must not be empty")
        return v

    @field_validator("storage_backend")
    @classmethod
    def validate_storage_backend(cls, v: str) -> str:
        if v not in ("memory", "sqlite"):
            raise ValueError(f"unknown storage backend: {v}")
        return v

    def quotas_for(self, level: PermissionLevel) -> list[RateLimit]:
        return list(self.rate_limits.get(level.name, []))

    def plugin_config(self, plugin_id: str) -> dict[str, Any] | None:
        return self.plugins_config.get(plugin_id)


def load_config(path: Path | str | None = None, **overrides: Any) -> ParleyConfig:
    """Build a ParleyConfig from an optional YAML file plus keyword overrides.

    The file path falls back to ``$PARLEY_CONFIG_FILE``. Values from the file
    win over environment variables; explicit overrides win over both.
    """
    if path is None:
        path = os.environ.get(CONFIG_FILE_ENV) or None

    data: dict[str, Any] = {}
    if path is not None:
        data = read_config_file(Path(path))
    data.update(overrides)

    try:
        config = ParleyConfig(**data)
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration: {e}") from e

    logger.debug(
        "config_loaded",
        path=str(path) if path else None,
        plugin_count=len(config.plugins),
    )
    return config


def read_config_file(path: Path) -> dict[str, Any]:
    try:
        raw = yaml.safe_load(path.read_text())
    except (OSError, yaml.YAMLError) as exc:
        raise ConfigError(f"Cannot read config file {path}: {exc}") from exc

    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ConfigError(f"Config file {path} must contain a mapping")

    # Allow the grouped ``whitelist: {admin: [...], trusted: [...]}`` form.
    whitelist = raw.pop("whitelist", None)
    if isinstance(whitelist, dict):
        raw.setdefault("admin_ids", whitelist.get("admin") or [])
        raw.setdefault("trusted_ids", whitelist.get("trusted") or [])
    elif whitelist is not None:
        raise ConfigError("whitelist must be a mapping with admin/trusted lists")

    return raw
