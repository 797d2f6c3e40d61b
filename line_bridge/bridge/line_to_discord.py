"""Translates LINE message events into Discord-bound content."""

from __future__ import annotations

import logging
from typing import Awaitable, Callable, Optional

from line_bridge.bridge.events import LineEvent, LineMessage
from line_bridge.bridge.formatting import (
    format_duration,
    format_location,
    human_size,
    normalize_text,
    sanitize_webhook_username,
)
from line_bridge.channels.base import LineClient
from line_bridge.config.loader import WebhookConfig
from line_bridge.errors import MediaFetchError
from line_bridge.media.fetcher import MediaFetcher
from line_bridge.media.resolver import MediaTypeResolver
from line_bridge.models import (
    DeliveryOptions,
    LineProfile,
    MediaCategory,
    MessageKind,
    OutboundAttachment,
    OutboundContent,
)
from line_bridge.storage.message_map import MessageIdentityMappingStore

logger = logging.getLogger(__name__)

Handler = Callable[[LineMessage], Awaitable[OutboundContent]]

_MEDIA_LABELS = {
    MediaCategory.IMAGE: "📷 Image",
    MediaCategory.VIDEO: "🎥 Video",
    MediaCategory.AUDIO: "🎵 Voice message",
    MediaCategory.FILE: "📎 File",
}


class LineToDiscordTranslator:
    """Builds Discord content and sender identity for LINE events.

    Every MessageKind has exactly one handler; construction fails if a
    kind is left without one.
    """

    def __init__(
        self,
        line: LineClient,
        fetcher: MediaFetcher,
        resolver: MediaTypeResolver,
        mappings: MessageIdentityMappingStore,
        webhook: WebhookConfig,
        guild_id: int,
    ) -> None:
        self._line = line
        self._fetcher = fetcher
        self._resolver = resolver
        self._mappings = mappings
        self._webhook = webhook
        self._guild_id = guild_id
        self._handlers: dict[MessageKind, Handler] = {
            MessageKind.TEXT: self._text,
            MessageKind.IMAGE: self._image,
            MessageKind.VIDEO: self._video,
            MessageKind.AUDIO: self._audio,
            MessageKind.FILE: self._file,
            MessageKind.STICKER: self._sticker,
            MessageKind.LOCATION: self._location,
            MessageKind.UNSUPPORTED: self._unsupported,
        }
        missing = set(MessageKind) - set(self._handlers)
        if missing:
            raise RuntimeError(f"No handler for message kinds: {sorted(k.value for k in missing)}")

    async def translate(self, message: LineMessage) -> OutboundContent:
        return await self._handlers[message.kind](message)

    async def identity(self, event: LineEvent) -> DeliveryOptions:
        """Sender name and avatar for identity-spoofed delivery."""
        source = event.source
        if source.user_id:
            profile = await self._line.get_profile(
                source.user_id, group_id=source.group_id, room_id=source.room_id
            )
        else:
            profile = LineProfile(display_name="")

        avatar_url = profile.picture_url
        if avatar_url is None and source.group_id:
            avatar_url = (await self._line.get_group_summary(source.group_id)).picture_url
        return DeliveryOptions(
            display_name=sanitize_webhook_username(profile.display_name),
            avatar_url=avatar_url or self._webhook.avatar_url,
            prefer_identity_spoofed=self._webhook.enabled,
        )

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    async def _text(self, message: LineMessage) -> OutboundContent:
        text = normalize_text(message.text)
        quote = self._quote_link(message.quoted_message_id)
        if quote:
            text = f"{quote}\n{text}"
        return OutboundContent(text=text)

    async def _image(self, message: LineMessage) -> OutboundContent:
        return await self._media(message, MediaCategory.IMAGE)

    async def _video(self, message: LineMessage) -> OutboundContent:
        return await self._media(message, MediaCategory.VIDEO)

    async def _audio(self, message: LineMessage) -> OutboundContent:
        return await self._media(message, MediaCategory.AUDIO)

    async def _file(self, message: LineMessage) -> OutboundContent:
        return await self._media(message, MediaCategory.FILE)

    async def _sticker(self, message: LineMessage) -> OutboundContent:
        fallback = OutboundContent(text=f"[Sticker {message.package_id}/{message.sticker_id}]")
        if not message.sticker_id:
            return fallback
        payload = await self._fetcher.fetch_sticker(message.sticker_id)
        if payload is None:
            return fallback
        descriptor = self._resolver.resolve(
            payload.content_type,
            self._resolver.sniff(payload.data),
            MediaCategory.IMAGE,
            source_message_id=message.id,
            size_bytes=len(payload.data),
        )
        return OutboundContent(attachments=[
            OutboundAttachment(
                filename=descriptor.generated_filename,
                data=payload.data,
                content_type=descriptor.canonical_mime_type,
                size_bytes=descriptor.size_bytes,
                within_limit=descriptor.within_platform_limit,
            )
        ])

    async def _location(self, message: LineMessage) -> OutboundContent:
        return OutboundContent(
            text=format_location(message.latitude, message.longitude, message.title, message.address)
        )

    async def _unsupported(self, message: LineMessage) -> OutboundContent:
        return OutboundContent(text=f"[Unsupported LINE message type: {message.type}]")

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _media(self, message: LineMessage, category: MediaCategory) -> OutboundContent:
        label = _MEDIA_LABELS[category]
        try:
            payload = await self._fetcher.fetch_message_content(message)
        except MediaFetchError as e:
            logger.warning("Media for LINE message %s unavailable: %s", message.id, e)
            return OutboundContent(text=f"{label} could not be downloaded from LINE")

        descriptor = self._resolver.resolve(
            self._fetcher.declared_type(message, payload),
            self._resolver.sniff(payload.data),
            category,
            source_message_id=message.id,
            size_bytes=len(payload.data),
        )
        provider = message.content_provider
        source_url: Optional[str] = None
        if provider is not None and provider.type == "external":
            source_url = provider.original_content_url

        return OutboundContent(
            text=self._caption(message, category, descriptor.size_bytes),
            attachments=[
                OutboundAttachment(
                    filename=descriptor.generated_filename,
                    data=payload.data,
                    content_type=descriptor.canonical_mime_type,
                    size_bytes=descriptor.size_bytes,
                    within_limit=descriptor.within_platform_limit,
                    source_url=source_url,
                )
            ],
        )

    @staticmethod
    def _caption(message: LineMessage, category: MediaCategory, size_bytes: int) -> str:
        if category is MediaCategory.IMAGE:
            return ""
        if category is MediaCategory.FILE:
            name = message.file_name or "file"
            return f"📎 {name} ({human_size(message.file_size or size_bytes)})"
        duration = format_duration(message.duration)
        label = _MEDIA_LABELS[category]
        return f"{label} ({duration})" if duration else label

    def _quote_link(self, quoted_message_id: Optional[str]) -> str:
        if not quoted_message_id:
            return ""
        mapping = self._mappings.by_platform_a(quoted_message_id)
        if mapping is None or not mapping.platform_b_message_id:
            return ""
        return (
            f"> ↪ https://discord.com/channels/{self._guild_id}/"
            f"{mapping.destination_channel_id}/{mapping.platform_b_message_id}"
        )
