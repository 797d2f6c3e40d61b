"""Fetches LINE media content and sticker images."""

from __future__ import annotations

import logging
from typing import Optional

from line_bridge.bridge.events import LineMessage
from line_bridge.channels.base import LineClient
from line_bridge.errors import MediaFetchError
from line_bridge.models import MediaPayload

logger = logging.getLogger(__name__)

STICKER_URL_PATTERNS = (
    "https://stickershop.line-scdn.net/stickershop/v1/sticker/{sticker_id}/android/sticker.png",
    "https://stickershop.line-scdn.net/stickershop/v1/sticker/{sticker_id}/iPhone/sticker@2x.png",
    "https://stickershop.line-scdn.net/stickershop/v1/sticker/{sticker_id}/iPhone/sticker.png",
)


def sticker_urls(sticker_id: str) -> list[str]:
    return [pattern.format(sticker_id=sticker_id) for pattern in STICKER_URL_PATTERNS]


class MediaFetcher:
    """Downloads the bytes behind LINE media and sticker messages."""

    def __init__(self, line: LineClient) -> None:
        self._line = line

    async def fetch_message_content(self, message: LineMessage) -> MediaPayload:
        """Download an image, video, audio or file message.

        Content hosted by an external provider is fetched from its
        original URL; everything else comes from the LINE content API.

        Raises:
            MediaFetchError: If the content is unreachable or times out.
        """
        provider = message.content_provider
        if provider is not None and provider.type == "external" and provider.original_content_url:
            return await self._line.fetch_external(provider.original_content_url, message.id)
        return await self._line.fetch_media_bytes(message.id)

    def declared_type(self, message: LineMessage, payload: MediaPayload) -> Optional[str]:
        """The type the provider claims: HTTP Content-Type, else the provider tag."""
        if payload.content_type:
            return payload.content_type
        if message.content_provider is not None:
            return message.content_provider.type
        return None

    async def fetch_sticker(self, sticker_id: str) -> Optional[MediaPayload]:
        """Try each sticker CDN rendition in turn. Returns None if none loads."""
        for url in sticker_urls(sticker_id):
            try:
                payload = await self._line.fetch_external(url, f"sticker-{sticker_id}")
            except MediaFetchError as e:
                logger.debug("Sticker %s not at %s: %s", sticker_id, url, e.reason)
                continue
            if payload.data:
                return payload
        logger.warning("No sticker image available for %s", sticker_id)
        return None
