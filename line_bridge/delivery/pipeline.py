"""Outbound delivery with ordered fallback strategies.

Each direction has a chain of strategies tried in order until one
succeeds. A success after an earlier strategy failed is reported as
degraded, carrying the reason of the strategy that delivered.

Discord chain:
    IdentityProxyStrategy  webhook send with the LINE sender's name/avatar
    PlainChannelStrategy   bot send, sender name inlined into the text

LINE chain:
    RichPushStrategy       native image/video/audio/location messages
    LinkTextPushStrategy   the same items rendered as text with links

A vanished Discord channel short-circuits the chain: the binding is
re-created once and the chain retried once on the new channel.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from typing import Any, Optional

from line_bridge.bridge.formatting import human_size
from line_bridge.channels.base import LINE_PUSH_BATCH_SIZE, DiscordClient, LineClient
from line_bridge.errors import (
    BindingCreationError,
    DestinationNotFoundError,
    PlatformError,
    ProxyEndpointInvalidError,
)
from line_bridge.models import (
    DeliveryOptions,
    DeliveryResult,
    OutboundAttachment,
    OutboundContent,
    ProxyEndpoint,
)
from line_bridge.storage.bindings import ConversationBindingStore
from line_bridge.utils.locks import KeyedLock

logger = logging.getLogger(__name__)

REASON_IDENTITY_FALLBACK = "identity_fallback"
REASON_LINK_FALLBACK = "link_fallback"
REASON_SIZE_LIMITED = "size_limited_passthrough"
REASON_DESTINATION_UNREACHABLE = "destination_unreachable"
REASON_ALL_FAILED = "all_strategies_failed"
WARNING_SIZE_LIMITED = "size-limited passthrough"

DISCORD_MESSAGE_LIMIT = 2000


def clip(text: str, limit: int = DISCORD_MESSAGE_LIMIT) -> str:
    if len(text) <= limit:
        return text
    return text[: limit - 1] + "…"


# ----------------------------------------------------------------------
# Requests
# ----------------------------------------------------------------------


@dataclass
class DiscordDelivery:
    destination_channel_id: str
    content: OutboundContent
    options: DeliveryOptions = field(default_factory=DeliveryOptions)


@dataclass
class LineOutboundItem:
    """One LINE message plus its plain-text rendition."""

    message: dict[str, Any]
    fallback_text: str

    @property
    def is_rich(self) -> bool:
        return self.message.get("type") != "text"


@dataclass
class LinePushBatch:
    conversation_id: str
    items: list[LineOutboundItem]


# ----------------------------------------------------------------------
# Strategies
# ----------------------------------------------------------------------


class DeliveryStrategy(ABC):
    """One way of getting a message to its destination."""

    name: str = ""
    # Reported when this strategy delivers after an earlier one failed.
    degraded_reason: Optional[str] = None

    @abstractmethod
    def applies(self, request: Any) -> bool:
        """Return True if this strategy can handle the request."""

    @abstractmethod
    async def deliver(self, request: Any) -> list[str]:
        """Send the request and return the remote message ids.

        Raises:
            PlatformError: On any platform failure.
        """


class IdentityProxyStrategy(DeliveryStrategy):
    """Webhook send under the original sender's name and avatar.

    Webhooks are created lazily per channel and cached. A cached webhook
    that was deleted is recreated once.
    """

    name = "identity_proxy"

    def __init__(self, discord: DiscordClient, proxy_name: str) -> None:
        self._discord = discord
        self._proxy_name = proxy_name
        self._endpoints: dict[str, ProxyEndpoint] = {}

    def applies(self, request: DiscordDelivery) -> bool:
        return request.options.prefer_identity_spoofed and bool(request.options.display_name)

    async def deliver(self, request: DiscordDelivery) -> list[str]:
        channel_id = request.destination_channel_id
        content = replace(request.content, text=clip(request.content.text))
        endpoint = await self._endpoint(channel_id)
        try:
            message_id = await self._send(endpoint, content, request.options)
        except ProxyEndpointInvalidError:
            logger.info("Webhook for channel %s is gone, recreating", channel_id)
            self.forget(channel_id)
            endpoint = await self._endpoint(channel_id)
            message_id = await self._send(endpoint, content, request.options)
        return [message_id]

    def forget(self, channel_id: str) -> None:
        self._endpoints.pop(channel_id, None)

    def cached(self, channel_id: str) -> Optional[ProxyEndpoint]:
        return self._endpoints.get(channel_id)

    async def _endpoint(self, channel_id: str) -> ProxyEndpoint:
        endpoint = self._endpoints.get(channel_id)
        if endpoint is None:
            endpoint = await self._discord.get_or_create_proxy_endpoint(channel_id, self._proxy_name)
            self._endpoints[channel_id] = endpoint
        return endpoint

    async def _send(
        self, endpoint: ProxyEndpoint, content: OutboundContent, options: DeliveryOptions
    ) -> str:
        return await self._discord.send_via_proxy(
            endpoint, content, options.display_name or "", options.avatar_url
        )


class PlainChannelStrategy(DeliveryStrategy):
    """Bot send. The sender's name is written into the message text."""

    name = "plain_channel"
    degraded_reason = REASON_IDENTITY_FALLBACK

    def __init__(self, discord: DiscordClient) -> None:
        self._discord = discord

    def applies(self, request: DiscordDelivery) -> bool:
        return True

    async def deliver(self, request: DiscordDelivery) -> list[str]:
        text = request.content.text
        if request.options.display_name:
            text = f"**{request.options.display_name}**: {text}" if text else f"**{request.options.display_name}**"
        content = replace(request.content, text=clip(text))
        message_id = await self._discord.send_via_channel(request.destination_channel_id, content)
        return [message_id]


class RichPushStrategy(DeliveryStrategy):
    name = "rich_push"

    def __init__(self, line: LineClient) -> None:
        self._line = line

    def applies(self, request: LinePushBatch) -> bool:
        return bool(request.items)

    async def deliver(self, request: LinePushBatch) -> list[str]:
        return await self._line.send_message(
            request.conversation_id, [item.message for item in request.items]
        )


class LinkTextPushStrategy(DeliveryStrategy):
    name = "link_text_push"
    degraded_reason = REASON_LINK_FALLBACK

    def __init__(self, line: LineClient) -> None:
        self._line = line

    def applies(self, request: LinePushBatch) -> bool:
        return any(item.is_rich for item in request.items)

    async def deliver(self, request: LinePushBatch) -> list[str]:
        messages = [
            {"type": "text", "text": item.fallback_text} if item.is_rich else item.message
            for item in request.items
        ]
        return await self._line.send_message(request.conversation_id, messages)


# ----------------------------------------------------------------------
# Pipeline
# ----------------------------------------------------------------------


class DeliveryPipeline:
    """Sends bridged content, serialized per destination.

    Args:
        discord: Discord client.
        line: LINE client.
        bindings: Binding store, used to replace vanished channels.
        proxy_name: Name of the webhook used for identity-spoofed sends.
        send_timeout: Upper bound for each strategy attempt, in seconds.
    """

    def __init__(
        self,
        discord: DiscordClient,
        line: LineClient,
        bindings: ConversationBindingStore,
        proxy_name: str = "LINE Bridge",
        send_timeout: float = 15.0,
    ) -> None:
        self._bindings = bindings
        self._send_timeout = send_timeout
        self._proxy = IdentityProxyStrategy(discord, proxy_name)
        self._discord_chain: list[DeliveryStrategy] = [
            self._proxy,
            PlainChannelStrategy(discord),
        ]
        self._line_chain: list[DeliveryStrategy] = [
            RichPushStrategy(line),
            LinkTextPushStrategy(line),
        ]
        self._locks = KeyedLock()

    # -- Discord ----------------------------------------------------------

    async def send(
        self,
        destination_channel_id: str,
        content: OutboundContent,
        options: Optional[DeliveryOptions] = None,
    ) -> DeliveryResult:
        """Deliver content to a Discord channel.

        Returns:
            DeliveryResult; ``success`` is False when every strategy failed,
            including the single retry on a re-created channel.
        """
        options = options or DeliveryOptions()
        prepared, warnings = self._apply_size_limits(content)

        try:
            result = await self._deliver_to(destination_channel_id, prepared, options)
        except DestinationNotFoundError:
            logger.warning("Channel %s vanished, re-creating binding", destination_channel_id)
            fresh_destination = await self._rebind(destination_channel_id)
            if fresh_destination is None:
                return DeliveryResult(
                    success=False,
                    reason=REASON_DESTINATION_UNREACHABLE,
                    destination_channel_id=destination_channel_id,
                    warnings=warnings,
                )
            try:
                result = await self._deliver_to(fresh_destination, prepared, options)
            except DestinationNotFoundError:
                logger.error("Re-created channel %s is unreachable too", fresh_destination)
                return DeliveryResult(
                    success=False,
                    reason=REASON_DESTINATION_UNREACHABLE,
                    destination_channel_id=fresh_destination,
                    warnings=warnings,
                )

        if warnings:
            result.warnings.extend(warnings)
            if result.success:
                result.degraded = True
                result.reason = result.reason or REASON_SIZE_LIMITED
        return result

    async def _deliver_to(
        self, destination_channel_id: str, content: OutboundContent, options: DeliveryOptions
    ) -> DeliveryResult:
        request = DiscordDelivery(destination_channel_id, content, options)
        async with self._locks.hold(f"discord:{destination_channel_id}"):
            result = await self._run_chain(self._discord_chain, request)
        result.destination_channel_id = destination_channel_id
        return result

    async def _rebind(self, destination_channel_id: str) -> Optional[str]:
        self._proxy.forget(destination_channel_id)
        binding = await self._bindings.invalidate(destination_channel_id)
        if binding is None:
            logger.warning("No binding owns channel %s, cannot re-create it", destination_channel_id)
            return None
        try:
            fresh = await self._bindings.resolve_or_create(
                binding.source_conversation_id, binding.display_name
            )
        except BindingCreationError as e:
            logger.error("Re-creating channel for %s failed: %s", binding.source_conversation_id, e)
            return None
        return fresh.destination_channel_id

    def _apply_size_limits(self, content: OutboundContent) -> tuple[OutboundContent, list[str]]:
        """Replace oversized attachments with a reference line."""
        uploadable: list[OutboundAttachment] = []
        references: list[str] = []
        for attachment in content.attachments:
            if attachment.within_limit and attachment.data is not None:
                uploadable.append(attachment)
                continue
            line = f"📎 {attachment.filename} ({human_size(attachment.size_bytes)})"
            if attachment.source_url:
                line = f"{line}\n{attachment.source_url}"
            else:
                line = f"{line} is too large to upload"
            references.append(line)

        if not references:
            return content, []
        text = "\n".join(part for part in (content.text, *references) if part)
        logger.info("Passing %d oversized attachment(s) through as links", len(references))
        return OutboundContent(text=text, attachments=uploadable), [WARNING_SIZE_LIMITED]

    # -- LINE -------------------------------------------------------------

    async def push_to_line(
        self, conversation_id: str, items: list[LineOutboundItem]
    ) -> DeliveryResult:
        """Push items to a LINE conversation in batches of five.

        A batch whose rich rendition is rejected is re-sent as text.
        """
        if not items:
            return DeliveryResult(success=True, destination_channel_id=conversation_id)

        sent_ids: list[str] = []
        degraded = False
        reason: Optional[str] = None
        async with self._locks.hold(f"line:{conversation_id}"):
            for start in range(0, len(items), LINE_PUSH_BATCH_SIZE):
                batch = LinePushBatch(conversation_id, items[start:start + LINE_PUSH_BATCH_SIZE])
                result = await self._run_chain(self._line_chain, batch)
                sent_ids.extend(result.remote_message_ids)
                if not result.success:
                    return DeliveryResult(
                        success=False,
                        remote_message_id=sent_ids[0] if sent_ids else None,
                        degraded=degraded,
                        reason=result.reason,
                        destination_channel_id=conversation_id,
                        remote_message_ids=sent_ids,
                    )
                if result.degraded:
                    degraded = True
                    reason = reason or result.reason

        return DeliveryResult(
            success=True,
            remote_message_id=sent_ids[0] if sent_ids else None,
            degraded=degraded,
            reason=reason,
            destination_channel_id=conversation_id,
            remote_message_ids=sent_ids,
        )

    # -- shared -----------------------------------------------------------

    async def _run_chain(self, chain: list[DeliveryStrategy], request: Any) -> DeliveryResult:
        failures: list[str] = []
        for strategy in chain:
            if not strategy.applies(request):
                continue
            try:
                ids = await asyncio.wait_for(strategy.deliver(request), timeout=self._send_timeout)
            except DestinationNotFoundError:
                raise
            except asyncio.TimeoutError:
                logger.warning("%s timed out after %.1fs", strategy.name, self._send_timeout)
                failures.append(f"{strategy.name}: timeout")
                continue
            except PlatformError as e:
                logger.warning("%s failed: %s", strategy.name, e)
                failures.append(f"{strategy.name}: {e}")
                continue

            degraded = bool(failures)
            return DeliveryResult(
                success=True,
                remote_message_id=ids[0] if ids else None,
                degraded=degraded,
                reason=strategy.degraded_reason if degraded else None,
                remote_message_ids=list(ids),
            )

        logger.error("All delivery strategies failed: %s", "; ".join(failures) or "none applied")
        return DeliveryResult(success=False, reason=REASON_ALL_FAILED)
