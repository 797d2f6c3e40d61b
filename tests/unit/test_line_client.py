"""Tests for line_bridge/channels/line.py — LINE Messaging API client.

Covers:
- Push batching and sent message ids
- Error mapping for pushes (403, other statuses, transport errors)
- Profile lookup with group member fallback and caching
- Group summaries
- Media downloads and MediaFetchError reasons
"""

from __future__ import annotations

import json

import httpx
import pytest

from line_bridge.channels.line import LineMessagingClient
from line_bridge.errors import MediaFetchError, PlatformError, PlatformPermissionError

USER_ID = "U0123456789abcdef0123456789abcdef"
GROUP_ID = "C0123456789abcdef0123456789abcdef"


class _Recorder:
    """MockTransport handler that records requests and answers from a routing function."""

    def __init__(self, route) -> None:
        self.route = route
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.route(request)


def _make_client(mock_config, route) -> tuple[LineMessagingClient, _Recorder]:
    recorder = _Recorder(route)
    http = httpx.AsyncClient(transport=httpx.MockTransport(recorder))
    return LineMessagingClient(mock_config.line, mock_config.media, client=http), recorder


# ---------------------------------------------------------------------------
# Push
# ---------------------------------------------------------------------------


class TestPush:

    @pytest.mark.asyncio
    async def test_batches_of_five(self, mock_config):
        def route(request):
            batch = json.loads(request.content)["messages"]
            return httpx.Response(200, json={
                "sentMessages": [{"id": f"{m['text']}-id", "quoteToken": "q"} for m in batch]
            })

        client, recorder = _make_client(mock_config, route)
        messages = [{"type": "text", "text": str(i)} for i in range(7)]

        ids = await client.send_message(USER_ID, messages)

        assert ids == [f"{i}-id" for i in range(7)]
        assert len(recorder.requests) == 2
        first = recorder.requests[0]
        assert first.url == "https://api.line.me/v2/bot/message/push"
        assert first.headers["Authorization"] == f"Bearer {mock_config.line.channel_access_token}"
        body = json.loads(first.content)
        assert body["to"] == USER_ID
        assert len(body["messages"]) == 5

    @pytest.mark.asyncio
    async def test_forbidden_maps_to_permission_error(self, mock_config):
        client, _ = _make_client(mock_config, lambda r: httpx.Response(403, text="not a friend"))

        with pytest.raises(PlatformPermissionError) as exc_info:
            await client.send_message(USER_ID, [{"type": "text", "text": "hi"}])
        assert exc_info.value.status == 403

    @pytest.mark.asyncio
    async def test_other_status_maps_to_platform_error(self, mock_config):
        client, _ = _make_client(mock_config, lambda r: httpx.Response(400, text="bad image url"))

        with pytest.raises(PlatformError, match="bad image url") as exc_info:
            await client.send_message(USER_ID, [{"type": "text", "text": "hi"}])
        assert exc_info.value.status == 400
        assert not isinstance(exc_info.value, PlatformPermissionError)

    @pytest.mark.asyncio
    async def test_transport_error(self, mock_config):
        def route(request):
            raise httpx.ConnectError("refused", request=request)

        client, _ = _make_client(mock_config, route)

        with pytest.raises(PlatformError, match="LINE push failed"):
            await client.send_message(USER_ID, [{"type": "text", "text": "hi"}])

    @pytest.mark.asyncio
    async def test_response_without_ids(self, mock_config):
        client, _ = _make_client(mock_config, lambda r: httpx.Response(200, text="{}"))
        assert await client.send_message(USER_ID, [{"type": "text", "text": "hi"}]) == []


# ---------------------------------------------------------------------------
# Profiles
# ---------------------------------------------------------------------------


class TestProfiles:

    @pytest.mark.asyncio
    async def test_direct_profile_cached(self, mock_config):
        def route(request):
            assert request.url.path == f"/v2/bot/profile/{USER_ID}"
            return httpx.Response(200, json={"displayName": "Taro", "pictureUrl": "https://p/taro"})

        client, recorder = _make_client(mock_config, route)

        first = await client.get_profile(USER_ID)
        second = await client.get_profile(USER_ID)

        assert first.display_name == "Taro"
        assert first.picture_url == "https://p/taro"
        assert first.fallback is False
        assert second is first
        assert len(recorder.requests) == 1

    @pytest.mark.asyncio
    async def test_group_member_falls_back_to_plain_profile(self, mock_config):
        def route(request):
            if "/member/" in request.url.path:
                return httpx.Response(404, json={"message": "Not found"})
            return httpx.Response(200, json={"displayName": "Hanako"})

        client, recorder = _make_client(mock_config, route)

        profile = await client.get_profile(USER_ID, group_id=GROUP_ID)

        assert profile.display_name == "Hanako"
        assert [r.url.path for r in recorder.requests] == [
            f"/v2/bot/group/{GROUP_ID}/member/{USER_ID}",
            f"/v2/bot/profile/{USER_ID}",
        ]

    @pytest.mark.asyncio
    async def test_unavailable_profile_is_fallback(self, mock_config):
        client, _ = _make_client(mock_config, lambda r: httpx.Response(404))

        profile = await client.get_profile(USER_ID, group_id=GROUP_ID)

        assert profile.fallback is True
        assert profile.display_name == "user-U0123456"

    @pytest.mark.asyncio
    async def test_group_summary(self, mock_config):
        client, _ = _make_client(
            mock_config,
            lambda r: httpx.Response(200, json={"groupName": "Book Club", "pictureUrl": "https://p/club"}),
        )

        summary = await client.get_group_summary(GROUP_ID)

        assert summary.display_name == "Book Club"
        assert summary.picture_url == "https://p/club"

    @pytest.mark.asyncio
    async def test_name_helpers(self, mock_config):
        def route(request):
            if request.url.path.endswith("/summary"):
                return httpx.Response(200, json={"groupName": "Book Club"})
            return httpx.Response(200, json={"displayName": "Taro"})

        client, _ = _make_client(mock_config, route)

        assert await client.get_display_name(USER_ID, group_id=GROUP_ID) == "Taro"
        assert await client.get_group_name(GROUP_ID) == "Book Club"

    @pytest.mark.asyncio
    async def test_room_has_no_summary(self, mock_config):
        client, recorder = _make_client(mock_config, lambda r: httpx.Response(500))

        summary = await client.get_group_summary("R0123456789")

        assert summary.fallback is True
        assert recorder.requests == []


# ---------------------------------------------------------------------------
# Downloads
# ---------------------------------------------------------------------------


class TestDownloads:

    @pytest.mark.asyncio
    async def test_content_download(self, mock_config, png_bytes):
        def route(request):
            assert request.url == "https://api-data.line.me/v2/bot/message/42/content"
            assert request.headers["Authorization"].startswith("Bearer ")
            return httpx.Response(200, content=png_bytes, headers={"Content-Type": "image/png"})

        client, _ = _make_client(mock_config, route)

        payload = await client.fetch_media_bytes("42")

        assert payload.data == png_bytes
        assert payload.content_type == "image/png"

    @pytest.mark.asyncio
    async def test_external_download_has_no_token(self, mock_config):
        def route(request):
            assert "Authorization" not in request.headers
            return httpx.Response(200, content=b"data")

        client, _ = _make_client(mock_config, route)

        payload = await client.fetch_external("https://cdn.example.com/x", "42")

        assert payload.data == b"data"

    @pytest.mark.asyncio
    async def test_http_error_is_unreachable(self, mock_config):
        client, _ = _make_client(mock_config, lambda r: httpx.Response(404))

        with pytest.raises(MediaFetchError) as exc_info:
            await client.fetch_media_bytes("42")
        assert exc_info.value.reason == MediaFetchError.UNREACHABLE
        assert exc_info.value.detail == "HTTP 404"

    @pytest.mark.asyncio
    async def test_timeout(self, mock_config):
        def route(request):
            raise httpx.ReadTimeout("slow", request=request)

        client, _ = _make_client(mock_config, route)

        with pytest.raises(MediaFetchError) as exc_info:
            await client.fetch_media_bytes("42")
        assert exc_info.value.reason == MediaFetchError.TIMEOUT


@pytest.mark.asyncio
async def test_uninitialized_client_raises(mock_config):
    client = LineMessagingClient(mock_config.line)
    with pytest.raises(RuntimeError, match="initialize"):
        await client.send_message(USER_ID, [{"type": "text", "text": "hi"}])
