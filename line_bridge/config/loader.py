"""Configuration loader with Pydantic validation.

Loads the bridge configuration from a YAML file, applies environment
overrides, validates all fields and provides typed access to values.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger(__name__)

MB = 1024 * 1024


class LineConfig(BaseModel):
    """LINE Messaging API credentials and endpoints."""

    channel_access_token: str = Field(..., min_length=10, description="Long-lived channel access token")
    channel_secret: str = Field(..., min_length=8, description="Channel secret used for signature checks")
    api_base_url: str = Field(default="https://api.line.me", description="Messaging API base URL")
    data_api_base_url: str = Field(
        default="https://api-data.line.me",
        description="Content download API base URL",
    )
    request_timeout: float = Field(default=10.0, gt=0, description="Timeout for JSON API calls")

    @field_validator("api_base_url", "data_api_base_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        if not v.startswith(("http://", "https://")):
            raise ValueError(f"API base URL must be http(s), got: {v}")
        return v.rstrip("/")


class DiscordConfig(BaseModel):
    """Discord bot configuration and channel naming rules."""

    bot_token: str = Field(..., min_length=10, description="Discord bot token")
    guild_id: int = Field(..., gt=0, description="Guild that receives bridged channels")
    category_id: Optional[int] = Field(default=None, description="Parent category for new channels")
    channel_name_max_length: int = Field(default=32, ge=8, le=100)
    name_suffix_digits: int = Field(default=2, ge=1, le=4)
    max_name_suffix: int = Field(default=99, ge=1)

    @field_validator("max_name_suffix")
    @classmethod
    def validate_suffix_range(cls, v: int, info) -> int:
        digits = info.data.get("name_suffix_digits", 2)
        if v >= 10 ** digits:
            raise ValueError(f"max_name_suffix {v} does not fit in {digits} digits")
        return v


class WebhookConfig(BaseModel):
    """Identity-spoofed delivery through Discord webhooks."""

    enabled: bool = True
    name: str = Field(default="LINE Bridge", min_length=1, max_length=80)
    avatar_url: Optional[str] = None


class StorageConfig(BaseModel):
    data_dir: str = "./data"
    bindings_file: str = "channel_mappings.json"
    messages_file: str = "message_mappings.json"
    max_message_mappings: int = Field(default=10000, ge=2)
    mapping_retention_days: int = Field(default=7, ge=1)

    @property
    def bindings_path(self) -> Path:
        return Path(self.data_dir) / self.bindings_file

    @property
    def messages_path(self) -> Path:
        return Path(self.data_dir) / self.messages_file


class MediaConfig(BaseModel):
    """Media download and size ceilings, in bytes."""

    download_timeout: float = Field(default=30.0, gt=0)
    image_max_bytes: int = Field(default=25 * MB, gt=0)
    video_max_bytes: int = Field(default=25 * MB, gt=0)
    audio_max_bytes: int = Field(default=25 * MB, gt=0)
    file_max_bytes: int = Field(default=25 * MB, gt=0)
    line_max_bytes: int = Field(default=10 * MB, gt=0)
    default_sticker_package_id: str = "11537"
    default_sticker_id: str = "52002734"

    def category_limits(self) -> dict[str, int]:
        return {
            "image": self.image_max_bytes,
            "video": self.video_max_bytes,
            "audio": self.audio_max_bytes,
            "file": self.file_max_bytes,
        }


class DeliveryConfig(BaseModel):
    send_timeout: float = Field(default=15.0, gt=0, description="Timeout for each outbound platform call")


class SettingsConfig(BaseModel):
    """Runtime settings."""

    log_level: str = Field(default="INFO")
    shutdown_timeout: float = Field(default=10.0, gt=0)
    maintenance_interval_minutes: int = Field(default=60, ge=1)

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        level = v.upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Unknown log level: {v}")
        return level


class AppConfig(BaseModel):
    """Root application configuration combining all sections."""

    line: LineConfig
    discord: DiscordConfig
    webhook: WebhookConfig = Field(default_factory=WebhookConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    media: MediaConfig = Field(default_factory=MediaConfig)
    delivery: DeliveryConfig = Field(default_factory=DeliveryConfig)
    settings: SettingsConfig = Field(default_factory=SettingsConfig)


# Mapping of environment variable names to (yaml_section, yaml_key) paths.
# When an env var is set, it overrides the corresponding YAML value.
_ENV_OVERRIDES: dict[str, tuple[str, str]] = {
    "LINE_CHANNEL_ACCESS_TOKEN": ("line", "channel_access_token"),
    "LINE_CHANNEL_SECRET": ("line", "channel_secret"),
    "DISCORD_BOT_TOKEN": ("discord", "bot_token"),
    "DISCORD_GUILD_ID": ("discord", "guild_id"),
    "DISCORD_CATEGORY_ID": ("discord", "category_id"),
    "WEBHOOK_ENABLED": ("webhook", "enabled"),
    "WEBHOOK_NAME": ("webhook", "name"),
    "WEBHOOK_AVATAR_URL": ("webhook", "avatar_url"),
    "BRIDGE_DATA_DIR": ("storage", "data_dir"),
    "MAX_MAPPINGS": ("storage", "max_message_mappings"),
    "LOG_LEVEL": ("settings", "log_level"),
}


def _apply_env_overrides(raw_config: dict) -> dict:
    """Override YAML config values with environment variables when set."""
    for env_var, (section, key) in _ENV_OVERRIDES.items():
        value = os.environ.get(env_var)
        if value:
            if not isinstance(raw_config.get(section), dict):
                raw_config[section] = {}
            raw_config[section][key] = value
    return raw_config


def load_config(config_path: Optional[str] = None) -> AppConfig:
    """Load and validate configuration from a YAML file.

    Environment variables (loaded via dotenv) override YAML values when set.
    See _ENV_OVERRIDES for the mapping.

    Args:
        config_path: Path to the YAML config file. If None, uses the
            BRIDGE_CONFIG environment variable or defaults to ./config.yaml.

    Returns:
        Validated AppConfig instance.

    Raises:
        FileNotFoundError: If the config file does not exist.
        ValueError: If the config file is invalid or missing required fields.
    """
    if config_path is None:
        config_path = os.environ.get("BRIDGE_CONFIG", "config.yaml")

    path = Path(config_path)
    if not path.exists():
        raise FileNotFoundError(
            f"Configuration file not found: {config_path}. "
            f"Set BRIDGE_CONFIG environment variable or provide a path."
        )

    logger.info("Loading configuration from %s", config_path)

    try:
        with open(path, "r", encoding="utf-8") as f:
            raw_config = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ValueError(f"Invalid YAML in configuration file: {e}") from e

    if not isinstance(raw_config, dict):
        raise ValueError(
            f"Configuration file must contain a YAML mapping, got: {type(raw_config).__name__}"
        )

    raw_config = _apply_env_overrides(raw_config)

    try:
        config = AppConfig(**raw_config)
    except Exception as e:
        raise ValueError(f"Configuration validation failed: {e}") from e

    logger.info(
        "Configuration loaded for guild %s (webhooks %s)",
        config.discord.guild_id,
        "enabled" if config.webhook.enabled else "disabled",
    )

    return config
