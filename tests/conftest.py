"""Shared pytest fixtures for the line_bridge test suite.

Provides a valid test configuration, in-memory fakes for both platform
clients, and store fixtures backed by tmp_path.
"""

from __future__ import annotations

import asyncio
import copy
import itertools
from pathlib import Path
from typing import Any, Dict, Optional

import pytest
import yaml

from line_bridge.channels.base import DiscordClient, LineClient
from line_bridge.config.loader import AppConfig
from line_bridge.errors import DestinationNotFoundError, MediaFetchError
from line_bridge.models import (
    ChannelInfo,
    LineProfile,
    MediaPayload,
    OutboundContent,
    ProxyEndpoint,
)
from line_bridge.storage.bindings import ConversationBindingStore
from line_bridge.storage.json_store import JsonDocumentStore
from line_bridge.storage.message_map import MessageIdentityMappingStore

PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00\x00\x00\rIHDR" + b"\x00" * 64
JPEG_BYTES = b"\xff\xd8\xff\xe0\x00\x10JFIF\x00" + b"\x00" * 64


# ---------------------------------------------------------------------------
# Valid test configuration values
# ---------------------------------------------------------------------------
_TEST_CONFIG_DICT: Dict[str, Any] = {
    "line": {
        "channel_access_token": "line_test_access_token_1234567890",
        "channel_secret": "line_test_secret_abcdef",
    },
    "discord": {
        "bot_token": "discord_test_bot_token_1234567890",
        "guild_id": 111111111111111111,
        "category_id": 222222222222222222,
    },
    "webhook": {
        "enabled": True,
        "name": "LINE Bridge",
        "avatar_url": "https://example.com/bridge.png",
    },
    "storage": {
        "data_dir": "./data",
        "max_message_mappings": 10000,
        "mapping_retention_days": 7,
    },
    "media": {
        "download_timeout": 30,
    },
    "delivery": {
        "send_timeout": 15,
    },
    "settings": {
        "log_level": "INFO",
        "shutdown_timeout": 5,
        "maintenance_interval_minutes": 60,
    },
}


# ---------------------------------------------------------------------------
# Fixtures: Configuration
# ---------------------------------------------------------------------------


@pytest.fixture
def test_config_dict() -> Dict[str, Any]:
    """Return a plain dict with valid test config values.

    Useful when you need to manipulate raw config data before validation.
    """
    return copy.deepcopy(_TEST_CONFIG_DICT)


@pytest.fixture
def mock_config(test_config_dict: Dict[str, Any]) -> AppConfig:
    """Return a validated AppConfig with test values."""
    return AppConfig(**test_config_dict)


@pytest.fixture
def tmp_yaml_config(tmp_path: Path, test_config_dict: Dict[str, Any]) -> str:
    """Write the test config to a temporary YAML file and return its path."""
    path = tmp_path / "config.yaml"
    with open(path, "w", encoding="utf-8") as f:
        yaml.dump(test_config_dict, f)
    return str(path)


# ---------------------------------------------------------------------------
# Fake platform clients
# ---------------------------------------------------------------------------


class FakeDiscordClient(DiscordClient):
    """In-memory Discord guild.

    Channels listed in ``deleted`` behave as if removed from the guild.
    Exceptions queued in ``proxy_errors`` / ``channel_errors`` are raised
    by the next proxy / plain send, one per call.
    """

    def __init__(self) -> None:
        self._ids = itertools.count(1000)
        self.channels: dict[str, ChannelInfo] = {}
        self.deleted: set[str] = set()
        self.create_calls: list[tuple[Optional[str], str]] = []
        self.create_error: Optional[Exception] = None
        self.create_delay = 0.0
        self.fetch_error: Optional[Exception] = None
        self.renamed: list[tuple[str, str]] = []
        self.endpoint_calls: list[str] = []
        self.proxy_errors: list[Exception] = []
        self.channel_errors: list[Exception] = []
        self.proxy_sends: list[tuple[str, OutboundContent, str, Optional[str]]] = []
        self.channel_sends: list[tuple[str, OutboundContent]] = []
        self.started = False

    @property
    def is_ready(self) -> bool:
        return self.started

    async def start(self) -> None:
        self.started = True

    async def stop(self) -> None:
        self.started = False

    def _check(self, channel_id: str) -> None:
        if channel_id in self.deleted or channel_id not in self.channels:
            raise DestinationNotFoundError(f"channel {channel_id}", status=404, code=10003)

    async def create_channel(
        self, parent_container_id: Optional[str], name: str, topic: str = ""
    ) -> ChannelInfo:
        self.create_calls.append((parent_container_id, name))
        if self.create_delay:
            await asyncio.sleep(self.create_delay)
        if self.create_error is not None:
            raise self.create_error
        info = ChannelInfo(channel_id=str(next(self._ids)), name=name)
        self.channels[info.channel_id] = info
        return info

    async def fetch_channel(self, channel_id: str) -> Optional[ChannelInfo]:
        if self.fetch_error is not None:
            raise self.fetch_error
        if channel_id in self.deleted:
            return None
        return self.channels.get(channel_id)

    async def rename_channel(self, channel_id: str, name: str) -> None:
        self._check(channel_id)
        self.renamed.append((channel_id, name))
        self.channels[channel_id] = ChannelInfo(channel_id, name)

    async def send_via_channel(self, channel_id: str, content: OutboundContent) -> str:
        self._check(channel_id)
        if self.channel_errors:
            raise self.channel_errors.pop(0)
        self.channel_sends.append((channel_id, content))
        return f"msg-{next(self._ids)}"

    async def get_or_create_proxy_endpoint(self, channel_id: str, proxy_name: str) -> ProxyEndpoint:
        self._check(channel_id)
        self.endpoint_calls.append(channel_id)
        endpoint_id = f"hook-{next(self._ids)}"
        return ProxyEndpoint(endpoint_id, channel_id, f"https://discord.test/{endpoint_id}", proxy_name)

    async def send_via_proxy(
        self,
        endpoint: ProxyEndpoint,
        content: OutboundContent,
        display_name: str,
        avatar_url: Optional[str] = None,
    ) -> str:
        self._check(endpoint.channel_id)
        if self.proxy_errors:
            raise self.proxy_errors.pop(0)
        self.proxy_sends.append((endpoint.channel_id, content, display_name, avatar_url))
        return f"msg-{next(self._ids)}"

    @property
    def all_sends(self) -> list[tuple[str, OutboundContent]]:
        sends = [(c, content) for c, content, _, _ in self.proxy_sends]
        return sends + list(self.channel_sends)


class FakeLineClient(LineClient):
    """In-memory LINE API.

    ``media`` and ``external`` map message ids / URLs to payloads or to an
    exception to raise. Exceptions queued in ``push_errors`` are raised by
    the next push, one per call.
    """

    def __init__(self) -> None:
        self._ids = itertools.count(5000)
        self.profiles: dict[str, LineProfile] = {}
        self.groups: dict[str, LineProfile] = {}
        self.media: dict[str, Any] = {}
        self.external: dict[str, Any] = {}
        self.pushes: list[tuple[str, list[dict[str, Any]]]] = []
        self.push_errors: list[Exception] = []

    async def get_profile(
        self,
        user_id: str,
        group_id: Optional[str] = None,
        room_id: Optional[str] = None,
    ) -> LineProfile:
        profile = self.profiles.get(user_id)
        if profile is None:
            return LineProfile(display_name=f"user-{user_id[:8]}", fallback=True)
        return profile

    async def get_group_summary(self, group_id: str) -> LineProfile:
        summary = self.groups.get(group_id)
        if summary is None:
            return LineProfile(display_name=f"group-{group_id[:8]}", fallback=True)
        return summary

    async def fetch_media_bytes(self, message_id: str) -> MediaPayload:
        return self._lookup(self.media, message_id, message_id)

    async def fetch_external(self, url: str, message_id: str = "") -> MediaPayload:
        return self._lookup(self.external, url, message_id or url)

    @staticmethod
    def _lookup(table: dict[str, Any], key: str, message_id: str) -> MediaPayload:
        value = table.get(key)
        if value is None:
            raise MediaFetchError(message_id, MediaFetchError.UNREACHABLE, "HTTP 404")
        if isinstance(value, Exception):
            raise value
        return value

    async def send_message(self, conversation_id: str, messages: list[dict[str, Any]]) -> list[str]:
        if self.push_errors:
            raise self.push_errors.pop(0)
        self.pushes.append((conversation_id, list(messages)))
        return [str(next(self._ids)) for _ in messages]


# ---------------------------------------------------------------------------
# Fixtures: Clients and stores
# ---------------------------------------------------------------------------


@pytest.fixture
def fake_discord() -> FakeDiscordClient:
    return FakeDiscordClient()


@pytest.fixture
def fake_line() -> FakeLineClient:
    return FakeLineClient()


@pytest.fixture
def bindings_path(tmp_path: Path) -> Path:
    return tmp_path / "data" / "channel_mappings.json"


@pytest.fixture
def messages_path(tmp_path: Path) -> Path:
    return tmp_path / "data" / "message_mappings.json"


@pytest.fixture
def binding_store(
    bindings_path: Path, fake_discord: FakeDiscordClient, mock_config: AppConfig
) -> ConversationBindingStore:
    return ConversationBindingStore(
        JsonDocumentStore(bindings_path), fake_discord, mock_config.discord, call_timeout=1.0
    )


@pytest.fixture
def mapping_store(messages_path: Path) -> MessageIdentityMappingStore:
    return MessageIdentityMappingStore(JsonDocumentStore(messages_path), max_mappings=100)


@pytest.fixture
def png_bytes() -> bytes:
    return PNG_BYTES


@pytest.fixture
def jpeg_bytes() -> bytes:
    return JPEG_BYTES
