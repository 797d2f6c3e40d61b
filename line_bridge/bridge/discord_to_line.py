"""Translates Discord messages into LINE push messages."""

from __future__ import annotations

import logging
import mimetypes
from typing import Optional

from line_bridge.bridge.events import DiscordAttachment, DiscordInboundMessage
from line_bridge.bridge.formatting import (
    LINE_TEXT_MAX,
    find_coordinates,
    human_size,
    maps_url,
    normalize_text,
    truncate,
)
from line_bridge.config.loader import MediaConfig
from line_bridge.delivery.pipeline import LineOutboundItem
from line_bridge.media.resolver import matches_category, normalize_mime
from line_bridge.models import MediaCategory
from line_bridge.storage.message_map import MessageIdentityMappingStore

logger = logging.getLogger(__name__)

DEFAULT_AUDIO_DURATION_MS = 60000
LINE_LOCATION_FIELD_MAX = 100


def _attachment_mime(attachment: DiscordAttachment) -> str:
    mime = normalize_mime(attachment.content_type)
    if mime is None:
        guessed, _ = mimetypes.guess_type(attachment.filename)
        mime = normalize_mime(guessed)
    return mime or "application/octet-stream"


def text_item(text: str, quote_token: Optional[str] = None) -> LineOutboundItem:
    text = truncate(text, LINE_TEXT_MAX)
    message = {"type": "text", "text": text}
    if quote_token:
        message["quoteToken"] = quote_token
    return LineOutboundItem(message=message, fallback_text=text)


class DiscordToLineTranslator:
    """Builds the LINE messages for one Discord message."""

    def __init__(self, media: MediaConfig, mappings: MessageIdentityMappingStore) -> None:
        self._media = media
        self._mappings = mappings

    def translate(self, message: DiscordInboundMessage) -> list[LineOutboundItem]:
        author = message.author_name or "Discord"
        items: list[LineOutboundItem] = []

        content = normalize_text(message.content).strip()
        if content:
            items.append(self._text_or_location(author, content, message.reference_message_id))
        elif message.attachments or message.stickers:
            count = len(message.attachments) + len(message.stickers)
            noun = "attachment" if count == 1 else "attachments"
            items.append(text_item(f"{author} sent {count} {noun}"))

        for attachment in message.attachments:
            items.append(self._attachment(attachment))

        for sticker in message.stickers:
            items.append(LineOutboundItem(
                message={
                    "type": "sticker",
                    "packageId": self._media.default_sticker_package_id,
                    "stickerId": self._media.default_sticker_id,
                },
                fallback_text=f"[Sticker: {sticker.name}]",
            ))
        return items

    def _text_or_location(
        self, author: str, content: str, reference_message_id: Optional[str]
    ) -> LineOutboundItem:
        coordinates = find_coordinates(content)
        if coordinates is not None:
            address = truncate(content, LINE_LOCATION_FIELD_MAX)
            return LineOutboundItem(
                message={
                    "type": "location",
                    "title": truncate(f"{author}'s location", LINE_LOCATION_FIELD_MAX),
                    "address": address,
                    "latitude": coordinates.latitude,
                    "longitude": coordinates.longitude,
                },
                fallback_text=f"{author}: {maps_url(coordinates.latitude, coordinates.longitude)}",
            )
        return text_item(f"{author}: {content}", self._quote_token(reference_message_id))

    def _quote_token(self, reference_message_id: Optional[str]) -> Optional[str]:
        if not reference_message_id:
            return None
        mapping = self._mappings.by_platform_b(reference_message_id)
        if mapping is None:
            return None
        return mapping.quote_token

    def _attachment(self, attachment: DiscordAttachment) -> LineOutboundItem:
        mime = _attachment_mime(attachment)
        link_text = f"📎 {attachment.filename} ({human_size(attachment.size)})\n{attachment.url}"
        if attachment.size > self._media.line_max_bytes:
            logger.info(
                "Attachment %s is %d bytes, over the LINE ceiling; sending link",
                attachment.filename, attachment.size,
            )
            return text_item(link_text)

        # LINE video messages require a separate preview image; videos go as links.
        if matches_category(mime, MediaCategory.IMAGE) and mime in ("image/jpeg", "image/png"):
            message = {
                "type": "image",
                "originalContentUrl": attachment.url,
                "previewImageUrl": attachment.url,
            }
        elif matches_category(mime, MediaCategory.AUDIO) and mime in ("audio/m4a", "audio/mpeg"):
            message = {
                "type": "audio",
                "originalContentUrl": attachment.url,
                "duration": DEFAULT_AUDIO_DURATION_MS,
            }
        else:
            return text_item(link_text)
        return LineOutboundItem(message=message, fallback_text=link_text)
