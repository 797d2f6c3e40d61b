"""Tests for line_bridge/config/loader.py — configuration loading and validation.

Covers:
- Valid YAML loads successfully into AppConfig
- Missing required fields raise clear errors
- Invalid values (bad URLs, log level, suffix range) raise errors
- Optional sections have correct defaults
- Environment variables override YAML values
"""

from __future__ import annotations

import copy
from pathlib import Path
from typing import Any, Dict

import pytest
import yaml

from line_bridge.config.loader import (
    _ENV_OVERRIDES,
    AppConfig,
    DiscordConfig,
    MediaConfig,
    StorageConfig,
    load_config,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _write_yaml(tmp_path: Path, data: Dict[str, Any], filename: str = "config.yaml") -> str:
    """Write a dict as YAML to tmp_path and return the file path."""
    filepath = tmp_path / filename
    with open(filepath, "w", encoding="utf-8") as f:
        yaml.dump(data, f)
    return str(filepath)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for env_var in _ENV_OVERRIDES:
        monkeypatch.delenv(env_var, raising=False)
    monkeypatch.delenv("BRIDGE_CONFIG", raising=False)


# ---------------------------------------------------------------------------
# Test: Valid YAML loads successfully
# ---------------------------------------------------------------------------


class TestValidConfigLoad:
    """Valid configuration loads and produces the correct AppConfig."""

    def test_load_full_config(self, tmp_yaml_config: str, test_config_dict: Dict[str, Any]):
        config = load_config(tmp_yaml_config)
        assert isinstance(config, AppConfig)
        assert config.discord.guild_id == test_config_dict["discord"]["guild_id"]
        assert config.discord.category_id == test_config_dict["discord"]["category_id"]
        assert config.webhook.name == "LINE Bridge"
        assert config.settings.shutdown_timeout == 5

    def test_config_path_from_environment(self, tmp_yaml_config: str, monkeypatch):
        monkeypatch.setenv("BRIDGE_CONFIG", tmp_yaml_config)
        config = load_config()
        assert config.line.channel_secret == "line_test_secret_abcdef"

    def test_base_urls_lose_trailing_slash(self, tmp_path, test_config_dict):
        data = copy.deepcopy(test_config_dict)
        data["line"]["api_base_url"] = "https://api.line.me/"
        config = load_config(_write_yaml(tmp_path, data))
        assert config.line.api_base_url == "https://api.line.me"

    def test_log_level_uppercased(self, tmp_path, test_config_dict):
        data = copy.deepcopy(test_config_dict)
        data["settings"]["log_level"] = "debug"
        config = load_config(_write_yaml(tmp_path, data))
        assert config.settings.log_level == "DEBUG"


# ---------------------------------------------------------------------------
# Test: Defaults
# ---------------------------------------------------------------------------


class TestDefaults:
    """Optional sections fall back to documented defaults."""

    def test_minimal_config(self, tmp_path, test_config_dict):
        data = {"line": test_config_dict["line"], "discord": test_config_dict["discord"]}
        config = load_config(_write_yaml(tmp_path, data))
        assert config.webhook.enabled is True
        assert config.storage.max_message_mappings == 10000
        assert config.media.download_timeout == 30
        assert config.delivery.send_timeout == 15
        assert config.line.data_api_base_url == "https://api-data.line.me"

    def test_storage_paths(self):
        storage = StorageConfig(data_dir="/var/bridge")
        assert storage.bindings_path == Path("/var/bridge/channel_mappings.json")
        assert storage.messages_path == Path("/var/bridge/message_mappings.json")

    def test_media_category_limits(self):
        limits = MediaConfig(video_max_bytes=1234).category_limits()
        assert limits["video"] == 1234
        assert set(limits) == {"image", "video", "audio", "file"}

    def test_discord_naming_defaults(self):
        discord = DiscordConfig(bot_token="x" * 20, guild_id=1)
        assert discord.channel_name_max_length == 32
        assert discord.name_suffix_digits == 2
        assert discord.max_name_suffix == 99


# ---------------------------------------------------------------------------
# Test: Missing required fields
# ---------------------------------------------------------------------------


class TestMissingRequiredFields:
    """Missing required fields raise ValueError with clear messages."""

    def test_missing_line_section(self, tmp_path, test_config_dict):
        data = copy.deepcopy(test_config_dict)
        del data["line"]
        with pytest.raises(ValueError, match="(?i)line"):
            load_config(_write_yaml(tmp_path, data))

    def test_missing_bot_token(self, tmp_path, test_config_dict):
        data = copy.deepcopy(test_config_dict)
        del data["discord"]["bot_token"]
        with pytest.raises(ValueError, match="(?i)bot_token"):
            load_config(_write_yaml(tmp_path, data))

    def test_file_not_found(self):
        with pytest.raises(FileNotFoundError):
            load_config("/nonexistent/path/config.yaml")

    def test_empty_yaml_file(self, tmp_path):
        filepath = tmp_path / "empty.yaml"
        filepath.write_text("")
        with pytest.raises(ValueError):
            load_config(str(filepath))

    def test_invalid_yaml(self, tmp_path):
        filepath = tmp_path / "broken.yaml"
        filepath.write_text("line: [unclosed\n")
        with pytest.raises(ValueError, match="(?i)yaml"):
            load_config(str(filepath))


# ---------------------------------------------------------------------------
# Test: Invalid values
# ---------------------------------------------------------------------------


class TestInvalidValues:
    """Invalid field values raise clear errors."""

    def test_non_http_base_url(self, tmp_path, test_config_dict):
        data = copy.deepcopy(test_config_dict)
        data["line"]["api_base_url"] = "ftp://api.line.me"
        with pytest.raises(ValueError, match="(?i)http"):
            load_config(_write_yaml(tmp_path, data))

    def test_unknown_log_level(self, tmp_path, test_config_dict):
        data = copy.deepcopy(test_config_dict)
        data["settings"]["log_level"] = "CHATTY"
        with pytest.raises(ValueError, match="(?i)log level"):
            load_config(_write_yaml(tmp_path, data))

    def test_suffix_range_must_fit_digits(self, tmp_path, test_config_dict):
        data = copy.deepcopy(test_config_dict)
        data["discord"]["max_name_suffix"] = 100
        with pytest.raises(ValueError, match="(?i)digits"):
            load_config(_write_yaml(tmp_path, data))

    def test_max_mappings_lower_bound(self, tmp_path, test_config_dict):
        data = copy.deepcopy(test_config_dict)
        data["storage"]["max_message_mappings"] = 1
        with pytest.raises(ValueError):
            load_config(_write_yaml(tmp_path, data))


# ---------------------------------------------------------------------------
# Test: Environment overrides
# ---------------------------------------------------------------------------


class TestEnvOverrides:
    """Environment variables take precedence over YAML values."""

    def test_secrets_from_environment(self, tmp_yaml_config: str, monkeypatch):
        monkeypatch.setenv("LINE_CHANNEL_SECRET", "secret_from_env_123")
        monkeypatch.setenv("DISCORD_GUILD_ID", "333333333333333333")
        config = load_config(tmp_yaml_config)
        assert config.line.channel_secret == "secret_from_env_123"
        assert config.discord.guild_id == 333333333333333333

    def test_override_creates_missing_section(self, tmp_path, test_config_dict, monkeypatch):
        data = copy.deepcopy(test_config_dict)
        del data["webhook"]
        monkeypatch.setenv("WEBHOOK_ENABLED", "false")
        config = load_config(_write_yaml(tmp_path, data))
        assert config.webhook.enabled is False

    def test_data_dir_and_max_mappings(self, tmp_yaml_config: str, monkeypatch):
        monkeypatch.setenv("BRIDGE_DATA_DIR", "/tmp/bridge-data")
        monkeypatch.setenv("MAX_MAPPINGS", "500")
        config = load_config(tmp_yaml_config)
        assert config.storage.data_dir == "/tmp/bridge-data"
        assert config.storage.max_message_mappings == 500

    def test_empty_env_value_is_ignored(self, tmp_yaml_config: str, monkeypatch):
        monkeypatch.setenv("WEBHOOK_NAME", "")
        config = load_config(tmp_yaml_config)
        assert config.webhook.name == "LINE Bridge"
