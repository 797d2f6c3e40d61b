"""LINE Messaging API client built on httpx."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Optional

import httpx

from line_bridge.channels.base import LINE_PUSH_BATCH_SIZE, LineClient
from line_bridge.config.loader import LineConfig, MediaConfig
from line_bridge.errors import MediaFetchError, PlatformError, PlatformPermissionError
from line_bridge.models import LineProfile, MediaPayload

logger = logging.getLogger(__name__)

PROFILE_CACHE_TTL = 600.0
MAX_DOWNLOAD_BYTES = 200 * 1024 * 1024


def fallback_user_name(user_id: str) -> str:
    return f"user-{user_id[:8]}" if user_id else "LINE User"


def fallback_group_name(group_id: str) -> str:
    return f"group-{group_id[:8]}"


class LineMessagingClient(LineClient):
    """Talks to api.line.me and api-data.line.me with a channel access token.

    Args:
        config: LINE credentials and base URLs.
        media: Download timeout settings.
        client: Optional preconfigured httpx client (tests inject a mock
            transport here).
    """

    def __init__(
        self,
        config: LineConfig,
        media: Optional[MediaConfig] = None,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._config = config
        self._download_timeout = (media or MediaConfig()).download_timeout
        self._client = client
        self._owns_client = client is None
        self._profile_cache: dict[tuple[str, str], tuple[float, LineProfile]] = {}

    async def initialize(self) -> None:
        """Initialize the HTTP client."""
        if self._client is None:
            # No default auth header: the same client fetches external URLs.
            self._client = httpx.AsyncClient(
                timeout=self._config.request_timeout, follow_redirects=True
            )
        logger.info("LINE client initialized")

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client and self._owns_client:
            await self._client.aclose()
            logger.debug("LINE client closed")

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            raise RuntimeError("LINE client not initialized. Call initialize() first.")
        return self._client

    @property
    def _auth(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self._config.channel_access_token}"}

    # ------------------------------------------------------------------
    # Profiles
    # ------------------------------------------------------------------

    async def get_profile(
        self,
        user_id: str,
        group_id: Optional[str] = None,
        room_id: Optional[str] = None,
    ) -> LineProfile:
        if group_id:
            scope, path = group_id, f"/v2/bot/group/{group_id}/member/{user_id}"
        elif room_id:
            scope, path = room_id, f"/v2/bot/room/{room_id}/member/{user_id}"
        else:
            scope, path = "", f"/v2/bot/profile/{user_id}"

        cached = self._cached_profile(scope, user_id)
        if cached is not None:
            return cached

        data = await self._get_json(path)
        if data is None and scope:
            # Members who have not added the bot only expose a plain profile.
            data = await self._get_json(f"/v2/bot/profile/{user_id}")
        if data is None:
            return LineProfile(display_name=fallback_user_name(user_id), fallback=True)

        profile = LineProfile(
            display_name=data.get("displayName") or fallback_user_name(user_id),
            picture_url=data.get("pictureUrl"),
        )
        self._profile_cache[(scope, user_id)] = (time.monotonic(), profile)
        return profile

    async def get_group_summary(self, group_id: str) -> LineProfile:
        if not group_id.startswith("C"):
            return LineProfile(display_name=fallback_group_name(group_id), fallback=True)
        data = await self._get_json(f"/v2/bot/group/{group_id}/summary")
        if data is None:
            return LineProfile(display_name=fallback_group_name(group_id), fallback=True)
        return LineProfile(
            display_name=data.get("groupName") or fallback_group_name(group_id),
            picture_url=data.get("pictureUrl"),
        )

    def _cached_profile(self, scope: str, user_id: str) -> Optional[LineProfile]:
        entry = self._profile_cache.get((scope, user_id))
        if entry is None:
            return None
        stored_at, profile = entry
        if time.monotonic() - stored_at > PROFILE_CACHE_TTL:
            del self._profile_cache[(scope, user_id)]
            return None
        return profile

    async def _get_json(self, path: str) -> Optional[dict[str, Any]]:
        client = self._get_client()
        try:
            response = await client.get(f"{self._config.api_base_url}{path}", headers=self._auth)
            response.raise_for_status()
            return response.json()
        except httpx.HTTPStatusError as e:
            logger.warning("LINE API %s returned %s", path, e.response.status_code)
        except httpx.TimeoutException:
            logger.warning("LINE API timeout for %s", path)
        except httpx.HTTPError as e:
            logger.warning("LINE API error for %s: %s", path, e)
        return None

    # ------------------------------------------------------------------
    # Content
    # ------------------------------------------------------------------

    async def fetch_media_bytes(self, message_id: str) -> MediaPayload:
        url = f"{self._config.data_api_base_url}/v2/bot/message/{message_id}/content"
        return await self._download(url, message_id, headers=self._auth)

    async def fetch_external(self, url: str, message_id: str = "") -> MediaPayload:
        return await self._download(url, message_id or url, headers=None)

    async def _download(
        self, url: str, message_id: str, headers: Optional[dict[str, str]]
    ) -> MediaPayload:
        try:
            return await asyncio.wait_for(
                self._stream(url, message_id, headers), timeout=self._download_timeout
            )
        except (asyncio.TimeoutError, httpx.TimeoutException) as e:
            raise MediaFetchError(message_id, MediaFetchError.TIMEOUT) from e
        except httpx.HTTPStatusError as e:
            raise MediaFetchError(
                message_id, MediaFetchError.UNREACHABLE, f"HTTP {e.response.status_code}"
            ) from e
        except httpx.HTTPError as e:
            raise MediaFetchError(message_id, MediaFetchError.UNREACHABLE, str(e)) from e

    async def _stream(
        self, url: str, message_id: str, headers: Optional[dict[str, str]]
    ) -> MediaPayload:
        client = self._get_client()
        chunks: list[bytes] = []
        received = 0
        async with client.stream("GET", url, headers=headers) as response:
            response.raise_for_status()
            async for chunk in response.aiter_bytes():
                received += len(chunk)
                if received > MAX_DOWNLOAD_BYTES:
                    raise MediaFetchError(
                        message_id, MediaFetchError.TOO_LARGE, f"over {MAX_DOWNLOAD_BYTES} bytes"
                    )
                chunks.append(chunk)
            content_type = response.headers.get("content-type")
        logger.debug("Downloaded %d bytes for %s", received, message_id)
        return MediaPayload(data=b"".join(chunks), content_type=content_type)

    # ------------------------------------------------------------------
    # Push
    # ------------------------------------------------------------------

    async def send_message(self, conversation_id: str, messages: list[dict[str, Any]]) -> list[str]:
        client = self._get_client()
        sent_ids: list[str] = []
        for start in range(0, len(messages), LINE_PUSH_BATCH_SIZE):
            batch = messages[start:start + LINE_PUSH_BATCH_SIZE]
            try:
                response = await client.post(
                    f"{self._config.api_base_url}/v2/bot/message/push",
                    json={"to": conversation_id, "messages": batch},
                    headers=self._auth,
                )
                response.raise_for_status()
            except httpx.HTTPStatusError as e:
                status = e.response.status_code
                detail = e.response.text[:200]
                if status == 403:
                    raise PlatformPermissionError(detail, status=status) from e
                raise PlatformError(f"LINE push failed: {detail}", status=status) from e
            except httpx.TimeoutException as e:
                raise PlatformError("LINE push timed out") from e
            except httpx.HTTPError as e:
                raise PlatformError(f"LINE push failed: {e}") from e

            try:
                body = response.json()
            except ValueError:
                body = {}
            for sent in body.get("sentMessages") or []:
                if sent.get("id"):
                    sent_ids.append(str(sent["id"]))
        logger.info("Pushed %d LINE messages to %s", len(messages), conversation_id)
        return sent_ids
