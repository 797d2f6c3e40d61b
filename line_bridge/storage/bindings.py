"""Conversation binding store.

Maps LINE conversations (users, groups, rooms) to Discord text channels,
creating channels on demand. Every mutation is written through to the
JSON document before the call returns.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import replace
from typing import Callable, Optional

from line_bridge.channels.base import DiscordClient
from line_bridge.config.loader import DiscordConfig
from line_bridge.errors import (
    BindingCreationError,
    ContainerNotFoundError,
    MappingStoreError,
    PlatformError,
    PlatformPermissionError,
)
from line_bridge.models import BindingKind, ConversationBinding, utcnow
from line_bridge.storage.json_store import JsonDocumentStore
from line_bridge.utils.locks import KeyedLock
from line_bridge.utils.naming import (
    fallback_base,
    slugify_channel_name,
    timestamp_name,
    with_suffix,
)

logger = logging.getLogger(__name__)

DOCUMENT_VERSION = 1


class ConversationBindingStore:
    """Owns the LINE conversation → Discord channel bindings.

    Calls for the same source conversation are serialized, so concurrent
    inbound events never create two channels for one conversation.

    Args:
        document: Durable JSON document holding the bindings.
        discord: Client used to create and verify channels.
        config: Discord naming rules and the parent category.
        call_timeout: Upper bound for each Discord call, in seconds.
        clock: Returns the current UTC time.
    """

    def __init__(
        self,
        document: JsonDocumentStore,
        discord: DiscordClient,
        config: DiscordConfig,
        call_timeout: float = 15.0,
        clock: Callable = utcnow,
    ) -> None:
        self._document = document
        self._discord = discord
        self._config = config
        self._call_timeout = call_timeout
        self._clock = clock
        self._bindings: dict[str, ConversationBinding] = {}
        self._by_destination: dict[str, ConversationBinding] = {}
        self._retired: list[ConversationBinding] = []
        self._verified: set[str] = set()
        self._reserved_names: set[str] = set()
        self._locks = KeyedLock()

    # ------------------------------------------------------------------
    # Loading and lookup
    # ------------------------------------------------------------------

    async def load(self) -> None:
        """Rebuild the in-memory index from the durable document."""
        document = await self._document.load()
        self._bindings.clear()
        self._by_destination.clear()
        self._verified.clear()
        for source_id, raw in (document.get("bindings") or {}).items():
            try:
                binding = ConversationBinding.from_dict(raw)
            except (KeyError, ValueError, TypeError) as e:
                logger.warning("Skipping malformed binding for %s: %s", source_id, e)
                continue
            self._bindings[binding.source_conversation_id] = binding
            if not binding.stale:
                self._by_destination[binding.destination_channel_id] = binding
        self._retired = []
        for raw in document.get("retired") or []:
            try:
                self._retired.append(ConversationBinding.from_dict(raw))
            except (KeyError, ValueError, TypeError) as e:
                logger.warning("Skipping malformed retired binding: %s", e)
        logger.info(
            "Loaded %d conversation bindings (%d live) from %s",
            len(self._bindings), len(self._by_destination), self._document.path,
        )

    def get(self, source_conversation_id: str) -> Optional[ConversationBinding]:
        return self._bindings.get(source_conversation_id)

    def by_destination(self, destination_channel_id: str) -> Optional[ConversationBinding]:
        """Return the live binding for a Discord channel, if any."""
        return self._by_destination.get(str(destination_channel_id))

    def live_bindings(self) -> list[ConversationBinding]:
        return list(self._by_destination.values())

    @property
    def retired(self) -> list[ConversationBinding]:
        return list(self._retired)

    def __len__(self) -> int:
        return len(self._by_destination)

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    async def resolve_or_create(
        self, source_conversation_id: str, display_name_hint: str = ""
    ) -> ConversationBinding:
        """Return the live binding for a conversation, creating a channel if needed.

        Args:
            source_conversation_id: LINE user, group or room id.
            display_name_hint: Name used for a new channel.

        Returns:
            The live ConversationBinding.

        Raises:
            BindingCreationError: If the channel cannot be created or the new
                binding cannot be persisted. One attempt only.
        """
        async with self._locks.hold(source_conversation_id):
            existing = self._bindings.get(source_conversation_id)
            if existing is not None and not existing.stale:
                if await self._destination_alive(existing):
                    return existing
                logger.warning(
                    "Channel %s for %s no longer exists, recreating",
                    existing.destination_channel_id, source_conversation_id,
                )
                self._mark_stale(existing)

            hint = display_name_hint or (existing.display_name if existing else "")
            return await self._create(source_conversation_id, hint, previous=existing)

    async def rename(self, source_conversation_id: str, new_display_name: str) -> bool:
        """Record a new display name for a conversation.

        Returns:
            True if the binding changed and the Discord channel should be
            renamed to ``binding.channel_name``.

        Raises:
            MappingStoreError: If the new name cannot be saved. The binding
                keeps its previous name.
        """
        if not new_display_name:
            return False
        async with self._locks.hold(source_conversation_id):
            binding = self._bindings.get(source_conversation_id)
            if binding is None or binding.stale or binding.display_name == new_display_name:
                return False
            previous = (binding.display_name, binding.channel_name, binding.updated_at)
            binding.display_name = new_display_name
            binding.channel_name = self.generate_channel_name(
                new_display_name, binding.kind, source_conversation_id
            )
            binding.updated_at = self._clock()
            try:
                await self._persist()
            except MappingStoreError:
                binding.display_name, binding.channel_name, binding.updated_at = previous
                raise
            logger.info(
                "Renamed binding %s to %s (#%s)",
                source_conversation_id, new_display_name, binding.channel_name,
            )
            return True

    async def invalidate(self, destination_channel_id: str) -> Optional[ConversationBinding]:
        """Mark the binding of a vanished channel stale.

        Returns:
            The binding that was marked, or None if the channel was unbound.
        """
        binding = self._by_destination.get(str(destination_channel_id))
        if binding is None:
            return None
        async with self._locks.hold(binding.source_conversation_id):
            if binding.stale:
                return binding
            self._mark_stale(binding)
            try:
                await self._persist()
            except MappingStoreError as e:
                logger.error("Could not persist stale binding %s: %s", destination_channel_id, e)
        return binding

    # ------------------------------------------------------------------
    # Naming
    # ------------------------------------------------------------------

    def generate_channel_name(
        self, display_name: str, kind: BindingKind, source_conversation_id: str
    ) -> str:
        """Derive a unique channel name for a conversation.

        The normalized name gets a zero-padded suffix when another live
        binding already uses it. Once the suffix range is exhausted a
        timestamp name is used, so naming never blocks creation.
        """
        max_length = self._config.channel_name_max_length
        label = "group" if kind is BindingKind.GROUP else "user"
        base = slugify_channel_name(display_name, max_length)
        if not base:
            base = fallback_base(label, source_conversation_id)[:max_length]

        taken = self._taken_names(exclude=source_conversation_id)
        if base not in taken:
            return base
        for number in range(1, self._config.max_name_suffix + 1):
            candidate = with_suffix(base, number, self._config.name_suffix_digits, max_length)
            if candidate not in taken:
                return candidate

        name = timestamp_name(f"line-{label}", self._clock(), max_length)
        logger.warning("Suffixes exhausted for %s, using %s", base, name)
        return name

    def _taken_names(self, exclude: str) -> set[str]:
        names = {
            b.channel_name
            for b in self._by_destination.values()
            if b.source_conversation_id != exclude
        }
        return names | self._reserved_names

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _destination_alive(self, binding: ConversationBinding) -> bool:
        channel_id = binding.destination_channel_id
        if channel_id in self._verified:
            return True
        try:
            info = await asyncio.wait_for(
                self._discord.fetch_channel(channel_id), timeout=self._call_timeout
            )
        except (PlatformError, asyncio.TimeoutError) as e:
            # Existence unknown: keep the binding rather than fork the conversation.
            logger.warning("Could not verify channel %s: %s", channel_id, e)
            return True
        if info is None:
            return False
        self._verified.add(channel_id)
        return True

    async def _create(
        self,
        source_conversation_id: str,
        display_name: str,
        previous: Optional[ConversationBinding],
    ) -> ConversationBinding:
        kind = BindingKind.from_source_id(source_conversation_id)
        channel_name = self.generate_channel_name(display_name, kind, source_conversation_id)
        parent = str(self._config.category_id) if self._config.category_id else None
        topic = f"LINE {kind.value} {source_conversation_id}"

        self._reserved_names.add(channel_name)
        try:
            info = await asyncio.wait_for(
                self._discord.create_channel(parent, channel_name, topic=topic),
                timeout=self._call_timeout,
            )
        except PlatformPermissionError as e:
            raise BindingCreationError(
                source_conversation_id, BindingCreationError.PERMISSION_DENIED, str(e)
            ) from e
        except ContainerNotFoundError as e:
            raise BindingCreationError(
                source_conversation_id, BindingCreationError.NO_PARENT_CONTAINER, str(e)
            ) from e
        except (PlatformError, asyncio.TimeoutError) as e:
            raise BindingCreationError(
                source_conversation_id, BindingCreationError.REMOTE_ERROR, str(e) or type(e).__name__
            ) from e
        finally:
            self._reserved_names.discard(channel_name)

        now = self._clock()
        binding = ConversationBinding(
            source_conversation_id=source_conversation_id,
            destination_channel_id=str(info.channel_id),
            display_name=display_name,
            channel_name=info.name or channel_name,
            kind=kind,
            created_at=now,
            updated_at=now,
        )

        # Memory is only updated once the document holding the new binding is saved.
        bindings = dict(self._bindings)
        bindings[source_conversation_id] = binding
        squatter = self._by_destination.get(binding.destination_channel_id)
        if squatter is not None and squatter.source_conversation_id != source_conversation_id:
            bindings[squatter.source_conversation_id] = replace(squatter, stale=True, updated_at=now)
        else:
            squatter = None
        retired = list(self._retired)
        if previous is not None:
            retired.append(previous)

        try:
            await self._persist(bindings, retired)
        except MappingStoreError as e:
            raise BindingCreationError(
                source_conversation_id, BindingCreationError.PERSISTENCE_FAILED, str(e)
            ) from e

        if squatter is not None:
            self._mark_stale(squatter)
        self._retired = retired
        self._bindings[source_conversation_id] = binding
        self._by_destination[binding.destination_channel_id] = binding
        self._verified.add(binding.destination_channel_id)

        logger.info(
            "Created channel #%s (%s) for LINE %s %s",
            binding.channel_name, binding.destination_channel_id, kind.value, source_conversation_id,
        )
        return binding

    def _mark_stale(self, binding: ConversationBinding) -> None:
        binding.stale = True
        binding.updated_at = self._clock()
        if self._by_destination.get(binding.destination_channel_id) is binding:
            del self._by_destination[binding.destination_channel_id]
        self._verified.discard(binding.destination_channel_id)

    async def _persist(
        self,
        bindings: Optional[dict[str, ConversationBinding]] = None,
        retired: Optional[list[ConversationBinding]] = None,
    ) -> None:
        bindings = self._bindings if bindings is None else bindings
        retired = self._retired if retired is None else retired
        await self._document.save({
            "version": DOCUMENT_VERSION,
            "bindings": {sid: b.to_dict() for sid, b in bindings.items()},
            "retired": [b.to_dict() for b in retired],
        })
