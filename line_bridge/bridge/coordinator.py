"""Bridge coordinator: buffers inbound events until Discord is ready,
then drives translation and delivery for each event.

State machine::

    STARTING -> BUFFERING -> DRAINING -> READY
    any state -> STOPPED

Events that arrive before READY are queued in one FIFO shared by both
platforms. The first ready signal loads the stores and drains the queue;
later ready signals are ignored. Events for the same conversation or
channel are processed one at a time, in arrival order.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from collections import deque
from dataclasses import asdict, dataclass
from typing import Any, Iterable, Optional

from line_bridge.bridge.discord_to_line import DiscordToLineTranslator
from line_bridge.bridge.events import DiscordInboundMessage, LineEvent, LineSource
from line_bridge.bridge.line_to_discord import LineToDiscordTranslator
from line_bridge.channels.base import DiscordClient, LineClient
from line_bridge.delivery.pipeline import DeliveryPipeline
from line_bridge.errors import (
    BindingCreationError,
    DeliveryError,
    MappingStoreError,
    MediaFetchError,
    PlatformError,
)
from line_bridge.models import ConversationBinding, EventOrigin, PendingEvent
from line_bridge.storage.bindings import ConversationBindingStore
from line_bridge.storage.message_map import MessageIdentityMappingStore
from line_bridge.utils.locks import KeyedLock

logger = logging.getLogger(__name__)

DEFAULT_SHUTDOWN_TIMEOUT = 10.0


class BridgeState(str, enum.Enum):
    STARTING = "starting"
    BUFFERING = "buffering"
    DRAINING = "draining"
    READY = "ready"
    STOPPED = "stopped"


_ALLOWED_TRANSITIONS: dict[BridgeState, frozenset[BridgeState]] = {
    BridgeState.STARTING: frozenset({BridgeState.BUFFERING, BridgeState.STOPPED}),
    BridgeState.BUFFERING: frozenset({BridgeState.DRAINING, BridgeState.STOPPED}),
    BridgeState.DRAINING: frozenset({BridgeState.READY, BridgeState.STOPPED}),
    BridgeState.READY: frozenset({BridgeState.STOPPED}),
    BridgeState.STOPPED: frozenset(),
}


@dataclass
class BridgeMetrics:
    processed: int = 0
    failed: int = 0
    buffered: int = 0
    duplicates: int = 0
    ignored: int = 0
    degraded: int = 0


class BridgeCoordinator:
    """Receives events from both platforms and relays them."""

    def __init__(
        self,
        line: LineClient,
        discord: DiscordClient,
        bindings: ConversationBindingStore,
        mappings: MessageIdentityMappingStore,
        pipeline: DeliveryPipeline,
        line_translator: LineToDiscordTranslator,
        discord_translator: DiscordToLineTranslator,
        shutdown_timeout: float = DEFAULT_SHUTDOWN_TIMEOUT,
    ) -> None:
        self._line = line
        self._discord = discord
        self._bindings = bindings
        self._mappings = mappings
        self._pipeline = pipeline
        self._line_translator = line_translator
        self._discord_translator = discord_translator
        self._shutdown_timeout = shutdown_timeout

        self._state = BridgeState.STARTING
        self._pending: deque[PendingEvent] = deque()
        self._inflight: set[asyncio.Task] = set()
        self._serial = KeyedLock()
        self._metrics = BridgeMetrics()

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def state(self) -> BridgeState:
        return self._state

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def status(self) -> dict[str, Any]:
        return {
            "state": self._state.value,
            "pending": len(self._pending),
            "inflight": len(self._inflight),
            "bindings": len(self._bindings),
            "mappings": len(self._mappings),
            **asdict(self._metrics),
        }

    def _transition(self, target: BridgeState) -> None:
        if target not in _ALLOWED_TRANSITIONS[self._state]:
            raise RuntimeError(f"Illegal bridge transition {self._state.value} -> {target.value}")
        logger.info("Bridge state %s -> %s", self._state.value, target.value)
        self._state = target

    def start(self) -> None:
        """Begin accepting (and buffering) events."""
        if self._state is BridgeState.STARTING:
            self._transition(BridgeState.BUFFERING)

    async def on_discord_ready(self) -> None:
        """Handle the Discord ready signal.

        Only the first signal initializes the stores and drains the queue;
        repeated signals are logged and ignored.
        """
        if self._state is BridgeState.STARTING:
            self.start()
        if self._state is not BridgeState.BUFFERING:
            logger.info("Ignoring repeated ready signal in state %s", self._state.value)
            return

        self._transition(BridgeState.DRAINING)
        try:
            await self._bindings.load()
            await self._mappings.load()
        except MappingStoreError:
            logger.critical("Cannot load bridge state, stopping", exc_info=True)
            self._transition(BridgeState.STOPPED)
            raise

        drained = 0
        while self._pending and self._state is BridgeState.DRAINING:
            await self._run_tracked(self._pending.popleft())
            drained += 1

        if self._state is BridgeState.DRAINING:
            self._transition(BridgeState.READY)
        logger.info("Bridge ready after draining %d buffered events", drained)

    async def stop(self, timeout: Optional[float] = None) -> None:
        """Stop accepting events and let in-flight sends finish.

        Sends still running after ``timeout`` seconds are cancelled.
        """
        if self._state is BridgeState.STOPPED:
            return
        self._transition(BridgeState.STOPPED)
        if self._pending:
            logger.warning("Discarding %d buffered events at shutdown", len(self._pending))
            self._pending.clear()

        tasks = set(self._inflight)
        if not tasks:
            return
        timeout = self._shutdown_timeout if timeout is None else timeout
        logger.info("Waiting up to %.1fs for %d in-flight events", timeout, len(tasks))
        _, still_running = await asyncio.wait(tasks, timeout=timeout)
        for task in still_running:
            task.cancel()
        if still_running:
            logger.warning("Cancelled %d events that did not finish in time", len(still_running))
            await asyncio.gather(*still_running, return_exceptions=True)

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    async def handle_line_event(self, event: LineEvent) -> bool:
        return await self._submit(PendingEvent(kind=EventOrigin.FROM_LINE, raw_event=event))

    async def handle_line_events(self, events: Iterable[LineEvent]) -> list[bool]:
        """Handle a webhook batch. A failed event never affects its siblings."""
        tasks = [asyncio.create_task(self.handle_line_event(event)) for event in events]
        if not tasks:
            return []
        return list(await asyncio.gather(*tasks))

    async def handle_discord_message(self, message: DiscordInboundMessage) -> bool:
        return await self._submit(PendingEvent(kind=EventOrigin.FROM_DISCORD, raw_event=message))

    async def _submit(self, pending: PendingEvent) -> bool:
        if self._state is BridgeState.STOPPED:
            logger.warning("Rejecting %s event: bridge stopped", pending.kind.value)
            return False
        if self._state is not BridgeState.READY:
            self._pending.append(pending)
            self._metrics.buffered += 1
            logger.debug("Buffered %s event (%d pending)", pending.kind.value, len(self._pending))
            return True
        return await self._run_tracked(pending)

    async def _run_tracked(self, pending: PendingEvent) -> bool:
        task = asyncio.create_task(self._process(pending))
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)
        return await task

    async def _process(self, pending: PendingEvent) -> bool:
        key = self._serial_key(pending)
        async with self._serial.hold(key):
            try:
                if pending.kind is EventOrigin.FROM_LINE:
                    ok = await self._process_line(pending.raw_event)
                else:
                    ok = await self._process_discord(pending.raw_event)
            except BindingCreationError as e:
                logger.error("Dropping event for %s: %s", key, e)
                ok = False
            except (DeliveryError, MediaFetchError, PlatformError) as e:
                logger.error("Event for %s failed: %s", key, e)
                ok = False
            except MappingStoreError as e:
                logger.error("Bookkeeping for %s failed: %s", key, e)
                ok = False
            except Exception:
                logger.exception("Unexpected error processing event for %s", key)
                ok = False
        if ok:
            self._metrics.processed += 1
        else:
            self._metrics.failed += 1
        return ok

    @staticmethod
    def _serial_key(pending: PendingEvent) -> str:
        raw = pending.raw_event
        if pending.kind is EventOrigin.FROM_LINE:
            return f"line:{raw.source.conversation_id}"
        return f"discord:{raw.channel_id}"

    # ------------------------------------------------------------------
    # LINE -> Discord
    # ------------------------------------------------------------------

    async def _process_line(self, event: LineEvent) -> bool:
        if event.type != "message" or event.message is None:
            logger.debug("Ignoring LINE %s event", event.type)
            self._metrics.ignored += 1
            return True

        message = event.message
        if self._mappings.by_platform_a(message.id) is not None:
            logger.info(
                "LINE message %s already bridged (redelivery=%s), skipping",
                message.id, event.delivery_context.is_redelivery,
            )
            self._metrics.duplicates += 1
            return True

        conversation_id = event.source.conversation_id
        if not conversation_id:
            logger.warning("LINE event without a source id: %s", event.webhook_event_id)
            return False

        name, name_is_fallback = await self._conversation_name(event.source)
        binding = await self._bindings.resolve_or_create(conversation_id, name)
        if not name_is_fallback:
            await self._sync_channel_name(binding, name)

        options = await self._line_translator.identity(event)
        content = await self._line_translator.translate(message)
        if content.is_empty():
            logger.debug("Nothing to relay for LINE message %s", message.id)
            return True

        result = await self._pipeline.send(binding.destination_channel_id, content, options)
        if not result.success:
            raise DeliveryError(binding.destination_channel_id, result.reason)
        if result.degraded:
            self._metrics.degraded += 1
            logger.warning(
                "Degraded delivery of LINE message %s to %s: %s",
                message.id, result.destination_channel_id, result.reason,
            )

        try:
            await self._mappings.record(
                destination_channel_id=result.destination_channel_id or binding.destination_channel_id,
                source_conversation_id=conversation_id,
                platform_a_message_id=message.id,
                platform_b_message_id=result.remote_message_id,
                quote_token=message.quote_token,
            )
        except MappingStoreError as e:
            logger.warning("Could not record mapping for LINE message %s: %s", message.id, e)
        return True

    async def _conversation_name(self, source: LineSource) -> tuple[str, bool]:
        if source.is_group:
            summary = await self._line.get_group_summary(source.group_id or source.room_id or "")
            return summary.display_name, summary.fallback
        profile = await self._line.get_profile(source.user_id or "")
        return profile.display_name, profile.fallback

    async def _sync_channel_name(self, binding: ConversationBinding, name: str) -> None:
        try:
            renamed = await self._bindings.rename(binding.source_conversation_id, name)
        except MappingStoreError as e:
            logger.warning("Could not save new name for %s: %s", binding.source_conversation_id, e)
            return
        if not renamed:
            return
        try:
            await self._discord.rename_channel(binding.destination_channel_id, binding.channel_name)
        except PlatformError as e:
            logger.warning("Could not rename channel %s: %s", binding.destination_channel_id, e)

    # ------------------------------------------------------------------
    # Discord -> LINE
    # ------------------------------------------------------------------

    async def _process_discord(self, message: DiscordInboundMessage) -> bool:
        if message.from_automation:
            self._metrics.ignored += 1
            return True
        binding = self._bindings.by_destination(message.channel_id)
        if binding is None:
            logger.debug("Channel %s is not bridged", message.channel_id)
            self._metrics.ignored += 1
            return True

        items = self._discord_translator.translate(message)
        if not items:
            return True

        try:
            await self._mappings.record(
                destination_channel_id=message.channel_id,
                source_conversation_id=binding.source_conversation_id,
                platform_b_message_id=message.message_id,
            )
        except MappingStoreError as e:
            logger.warning("Could not record mapping for Discord message %s: %s", message.message_id, e)

        result = await self._pipeline.push_to_line(binding.source_conversation_id, items)
        if not result.success:
            raise DeliveryError(binding.source_conversation_id, result.reason)
        if result.degraded:
            self._metrics.degraded += 1
            logger.warning(
                "Degraded delivery of Discord message %s to LINE: %s",
                message.message_id, result.reason,
            )

        if result.remote_message_id:
            try:
                await self._mappings.assign_platform_a_id(message.message_id, result.remote_message_id)
            except MappingStoreError as e:
                logger.warning("Could not attach LINE id to %s: %s", message.message_id, e)
        return True
