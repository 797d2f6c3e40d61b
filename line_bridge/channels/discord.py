"""Discord client built on discord.py.

Owns the gateway connection, turns inbound guild messages into
DiscordInboundMessage objects, and maps discord.py exceptions onto the
bridge's platform errors.
"""

from __future__ import annotations

import asyncio
import io
import logging
from typing import Any, Awaitable, Callable, Optional

import aiohttp
import discord

from line_bridge.bridge.events import DiscordAttachment, DiscordInboundMessage, DiscordSticker
from line_bridge.channels.base import DiscordClient
from line_bridge.config.loader import DiscordConfig
from line_bridge.errors import (
    ContainerNotFoundError,
    DestinationNotFoundError,
    PlatformError,
    PlatformPermissionError,
    ProxyEndpointInvalidError,
)
from line_bridge.models import ChannelInfo, OutboundContent, ProxyEndpoint

logger = logging.getLogger(__name__)

UNKNOWN_WEBHOOK = 10015
WEBHOOK_NAME_MAX = 80

# Raised by the HTTP layer below discord.py when the connection itself fails.
TRANSPORT_ERRORS = (aiohttp.ClientError, OSError)

ReadyCallback = Callable[[], Awaitable[None]]
MessageCallback = Callable[[DiscordInboundMessage], Awaitable[Any]]


def _platform_error(e: discord.HTTPException, action: str) -> PlatformError:
    detail = f"{action}: {e.status} {e.text or e}"
    if isinstance(e, discord.Forbidden):
        return PlatformPermissionError(detail, status=e.status, code=e.code)
    if isinstance(e, discord.NotFound):
        if e.code == UNKNOWN_WEBHOOK:
            return ProxyEndpointInvalidError(detail, status=e.status, code=e.code)
        return DestinationNotFoundError(detail, status=e.status, code=e.code)
    return PlatformError(detail, status=e.status, code=e.code)


def _files(content: OutboundContent) -> list[discord.File]:
    return [
        discord.File(io.BytesIO(attachment.data), filename=attachment.filename)
        for attachment in content.attachments
        if attachment.data is not None
    ]


def to_inbound(message: discord.Message) -> DiscordInboundMessage:
    """Normalize a discord.py message."""
    reference_id = None
    if message.reference is not None and message.reference.message_id:
        reference_id = str(message.reference.message_id)
    return DiscordInboundMessage(
        message_id=str(message.id),
        channel_id=str(message.channel.id),
        author_id=str(message.author.id),
        author_name=message.author.display_name,
        content=message.content or "",
        author_is_bot=message.author.bot,
        webhook_id=str(message.webhook_id) if message.webhook_id else None,
        attachments=[
            DiscordAttachment(
                url=a.url, filename=a.filename, size=a.size, content_type=a.content_type
            )
            for a in message.attachments
        ],
        stickers=[
            DiscordSticker(sticker_id=str(s.id), name=s.name, url=getattr(s, "url", None))
            for s in message.stickers
        ],
        reference_message_id=reference_id,
    )


class _GatewayClient(discord.Client):
    def __init__(self, owner: DiscordGatewayClient, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self._owner = owner

    async def on_ready(self) -> None:
        await self._owner._handle_ready()

    async def on_message(self, message: discord.Message) -> None:
        await self._owner._handle_message(message)


class DiscordGatewayClient(DiscordClient):
    """discord.py-backed client for one guild.

    Args:
        config: Bot token and guild.
        on_ready: Awaited every time discord.py reports ready.
        on_message: Awaited with each message posted in the guild.
    """

    def __init__(
        self,
        config: DiscordConfig,
        on_ready: Optional[ReadyCallback] = None,
        on_message: Optional[MessageCallback] = None,
    ) -> None:
        self._config = config
        self._on_ready = on_ready
        self._on_message = on_message
        intents = discord.Intents.default()
        intents.message_content = True
        self._client = _GatewayClient(self, intents=intents)
        self._session: Optional[aiohttp.ClientSession] = None
        self._task: Optional[asyncio.Task] = None

    def set_callbacks(self, on_ready: ReadyCallback, on_message: MessageCallback) -> None:
        self._on_ready = on_ready
        self._on_message = on_message

    @property
    def is_ready(self) -> bool:
        return self._client.is_ready()

    async def start(self) -> None:
        if self._task is not None:
            return
        self._session = aiohttp.ClientSession()
        self._task = asyncio.create_task(self._client.start(self._config.bot_token))
        self._task.add_done_callback(self._on_connection_done)
        logger.info("Discord client connecting")

    async def stop(self) -> None:
        if not self._client.is_closed():
            await self._client.close()
        if self._task is not None:
            # Errors were already logged by the done callback.
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None
        if self._session is not None:
            await self._session.close()
            self._session = None
        logger.info("Discord client stopped")

    @staticmethod
    def _on_connection_done(task: asyncio.Task) -> None:
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error("Discord connection ended with error: %s", error, exc_info=error)

    async def _handle_ready(self) -> None:
        logger.info("Discord ready as %s", self._client.user)
        if self._on_ready is not None:
            await self._on_ready()

    async def _handle_message(self, message: discord.Message) -> None:
        if message.guild is None or message.guild.id != self._config.guild_id:
            return
        if self._client.user is not None and message.author.id == self._client.user.id:
            return
        if self._on_message is not None:
            await self._on_message(to_inbound(message))

    # ------------------------------------------------------------------
    # Channels
    # ------------------------------------------------------------------

    async def _guild(self) -> discord.Guild:
        guild = self._client.get_guild(self._config.guild_id)
        if guild is not None:
            return guild
        try:
            return await self._client.fetch_guild(self._config.guild_id)
        except (discord.NotFound, discord.Forbidden) as e:
            raise ContainerNotFoundError(
                f"guild {self._config.guild_id} unavailable", status=e.status, code=e.code
            ) from e
        except discord.HTTPException as e:
            raise _platform_error(e, "fetch guild") from e
        except TRANSPORT_ERRORS as e:
            raise PlatformError(f"fetch guild: {e}") from e

    async def _text_channel(self, channel_id: str) -> discord.TextChannel:
        channel = self._client.get_channel(int(channel_id))
        if channel is None:
            try:
                channel = await self._client.fetch_channel(int(channel_id))
            except discord.NotFound as e:
                raise DestinationNotFoundError(f"channel {channel_id}", status=e.status, code=e.code) from e
            except discord.HTTPException as e:
                raise _platform_error(e, f"fetch channel {channel_id}") from e
            except TRANSPORT_ERRORS as e:
                raise PlatformError(f"fetch channel {channel_id}: {e}") from e
        if not isinstance(channel, discord.TextChannel):
            raise DestinationNotFoundError(f"channel {channel_id} is not a text channel")
        return channel

    async def create_channel(
        self, parent_container_id: Optional[str], name: str, topic: str = ""
    ) -> ChannelInfo:
        guild = await self._guild()
        category = None
        if parent_container_id:
            category = guild.get_channel(int(parent_container_id))
            if not isinstance(category, discord.CategoryChannel):
                raise ContainerNotFoundError(f"category {parent_container_id} not found")
        try:
            channel = await guild.create_text_channel(
                name, category=category, topic=topic or None, reason="LINE bridge conversation"
            )
        except discord.NotFound as e:
            raise ContainerNotFoundError(f"create channel {name}: {e.text}", status=e.status, code=e.code) from e
        except discord.HTTPException as e:
            raise _platform_error(e, f"create channel {name}") from e
        except TRANSPORT_ERRORS as e:
            raise PlatformError(f"create channel {name}: {e}") from e
        return ChannelInfo(channel_id=str(channel.id), name=channel.name)

    async def fetch_channel(self, channel_id: str) -> Optional[ChannelInfo]:
        try:
            channel = await self._text_channel(channel_id)
        except DestinationNotFoundError:
            return None
        return ChannelInfo(channel_id=str(channel.id), name=channel.name)

    async def rename_channel(self, channel_id: str, name: str) -> None:
        channel = await self._text_channel(channel_id)
        try:
            await channel.edit(name=name, reason="LINE conversation renamed")
        except discord.HTTPException as e:
            raise _platform_error(e, f"rename channel {channel_id}") from e
        except TRANSPORT_ERRORS as e:
            raise PlatformError(f"rename channel {channel_id}: {e}") from e

    # ------------------------------------------------------------------
    # Sending
    # ------------------------------------------------------------------

    async def send_via_channel(self, channel_id: str, content: OutboundContent) -> str:
        channel = await self._text_channel(channel_id)
        kwargs: dict[str, Any] = {"allowed_mentions": discord.AllowedMentions.none()}
        if content.text:
            kwargs["content"] = content.text
        files = _files(content)
        if files:
            kwargs["files"] = files
        try:
            message = await channel.send(**kwargs)
        except discord.HTTPException as e:
            raise _platform_error(e, f"send to {channel_id}") from e
        except TRANSPORT_ERRORS as e:
            raise PlatformError(f"send to {channel_id}: {e}") from e
        return str(message.id)

    async def get_or_create_proxy_endpoint(self, channel_id: str, proxy_name: str) -> ProxyEndpoint:
        channel = await self._text_channel(channel_id)
        name = proxy_name[:WEBHOOK_NAME_MAX]
        try:
            for webhook in await channel.webhooks():
                if webhook.name == name and webhook.token:
                    return ProxyEndpoint(str(webhook.id), channel_id, webhook.url, webhook.name or name)
            webhook = await channel.create_webhook(name=name, reason="LINE bridge identity relay")
        except discord.HTTPException as e:
            raise _platform_error(e, f"webhook for {channel_id}") from e
        except TRANSPORT_ERRORS as e:
            raise PlatformError(f"webhook for {channel_id}: {e}") from e
        logger.info("Created webhook %s for channel %s", webhook.id, channel_id)
        return ProxyEndpoint(str(webhook.id), channel_id, webhook.url, name)

    async def send_via_proxy(
        self,
        endpoint: ProxyEndpoint,
        content: OutboundContent,
        display_name: str,
        avatar_url: Optional[str] = None,
    ) -> str:
        if self._session is None:
            raise PlatformError("Discord client not started")
        webhook = discord.Webhook.from_url(endpoint.url, session=self._session)
        kwargs: dict[str, Any] = {
            "username": display_name[:WEBHOOK_NAME_MAX],
            "allowed_mentions": discord.AllowedMentions.none(),
            "wait": True,
        }
        if avatar_url:
            kwargs["avatar_url"] = avatar_url
        if content.text:
            kwargs["content"] = content.text
        files = _files(content)
        if files:
            kwargs["files"] = files
        try:
            message = await webhook.send(**kwargs)
        except discord.HTTPException as e:
            raise _platform_error(e, f"webhook send to {endpoint.channel_id}") from e
        except TRANSPORT_ERRORS as e:
            raise PlatformError(f"webhook send to {endpoint.channel_id}: {e}") from e
        return str(message.id)
