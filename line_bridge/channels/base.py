"""Platform client interfaces.

The bridge talks to LINE and Discord only through these ABCs. Concrete
clients translate SDK and HTTP failures into the platform errors from
line_bridge.errors so the delivery pipeline can pick a fallback.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Optional

from line_bridge.models import (
    ChannelInfo,
    LineProfile,
    MediaPayload,
    OutboundContent,
    ProxyEndpoint,
)

LINE_PUSH_BATCH_SIZE = 5


class LineClient(ABC):
    """LINE Messaging API operations used by the bridge."""

    @abstractmethod
    async def get_profile(
        self,
        user_id: str,
        group_id: Optional[str] = None,
        room_id: Optional[str] = None,
    ) -> LineProfile:
        """Return the sender's profile, scoped to the group or room when given.

        Never raises for unknown users; returns a fallback profile instead.
        """

    @abstractmethod
    async def get_group_summary(self, group_id: str) -> LineProfile:
        """Return the group's name and picture, with a fallback name on failure."""

    @abstractmethod
    async def fetch_media_bytes(self, message_id: str) -> MediaPayload:
        """Download the content of an image/video/audio/file message.

        Raises:
            MediaFetchError: If the content cannot be downloaded in time.
        """

    @abstractmethod
    async def fetch_external(self, url: str, message_id: str = "") -> MediaPayload:
        """Download content hosted outside LINE (external providers, stickers).

        Raises:
            MediaFetchError: If the content cannot be downloaded in time.
        """

    @abstractmethod
    async def send_message(self, conversation_id: str, messages: list[dict[str, Any]]) -> list[str]:
        """Push messages to a user, group or room.

        Messages are sent in batches of at most five per call.

        Returns:
            Ids of the sent messages, in order, when LINE reports them.

        Raises:
            PlatformError: If any batch is rejected.
        """

    async def get_display_name(
        self,
        user_id: str,
        group_id: Optional[str] = None,
        room_id: Optional[str] = None,
    ) -> str:
        profile = await self.get_profile(user_id, group_id=group_id, room_id=room_id)
        return profile.display_name

    async def get_group_name(self, group_id: str) -> str:
        summary = await self.get_group_summary(group_id)
        return summary.display_name

    async def close(self) -> None:
        """Release network resources."""


class DiscordClient(ABC):
    """Discord operations used by the bridge."""

    @property
    @abstractmethod
    def is_ready(self) -> bool:
        """True once the gateway session is established."""

    @abstractmethod
    async def start(self) -> None:
        """Connect to Discord. Returns once the connection task is running."""

    @abstractmethod
    async def stop(self) -> None:
        """Disconnect and release resources."""

    @abstractmethod
    async def create_channel(
        self, parent_container_id: Optional[str], name: str, topic: str = ""
    ) -> ChannelInfo:
        """Create a text channel under the parent container.

        Raises:
            ContainerNotFoundError: No guild or category to create it in.
            PlatformPermissionError: The bot may not create channels.
            PlatformError: Any other API failure.
        """

    @abstractmethod
    async def fetch_channel(self, channel_id: str) -> Optional[ChannelInfo]:
        """Return the channel, or None if it no longer exists.

        Raises:
            PlatformError: If existence cannot be determined.
        """

    @abstractmethod
    async def rename_channel(self, channel_id: str, name: str) -> None:
        """Rename a channel."""

    @abstractmethod
    async def send_via_channel(self, channel_id: str, content: OutboundContent) -> str:
        """Send as the bot itself. Returns the Discord message id.

        Raises:
            DestinationNotFoundError: The channel is gone.
            PlatformError: Any other API failure.
        """

    @abstractmethod
    async def get_or_create_proxy_endpoint(self, channel_id: str, proxy_name: str) -> ProxyEndpoint:
        """Return the channel's webhook with the given name, creating it if needed."""

    @abstractmethod
    async def send_via_proxy(
        self,
        endpoint: ProxyEndpoint,
        content: OutboundContent,
        display_name: str,
        avatar_url: Optional[str] = None,
    ) -> str:
        """Send through a webhook with a custom name and avatar.

        Raises:
            ProxyEndpointInvalidError: The webhook was deleted.
            DestinationNotFoundError: The channel is gone.
            PlatformError: Any other API failure.
        """
