"""Bounded LINE ↔ Discord message id mapping for reply correlation."""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import Callable, Optional

from line_bridge.models import MessageIdentityMapping, utcnow
from line_bridge.storage.json_store import JsonDocumentStore
from line_bridge.utils.locks import KeyedLock

logger = logging.getLogger(__name__)

DOCUMENT_VERSION = 1
DEFAULT_MAX_MAPPINGS = 10000


class MessageIdentityMappingStore:
    """Records which Discord message corresponds to which LINE message.

    Both lookup directions resolve to the same record object. When the
    store grows past ``max_mappings`` the oldest half is evicted in one
    batch. Writes are persisted on every mutation; a failed write raises
    MappingStoreError after the in-memory state has been updated, so
    callers may log it and carry on.
    """

    def __init__(
        self,
        document: JsonDocumentStore,
        max_mappings: int = DEFAULT_MAX_MAPPINGS,
        clock: Callable = utcnow,
    ) -> None:
        if max_mappings < 2:
            raise ValueError("max_mappings must be at least 2")
        self._document = document
        self._max_mappings = max_mappings
        self._clock = clock
        self._records: dict[str, MessageIdentityMapping] = {}
        self._by_a: dict[str, MessageIdentityMapping] = {}
        self._by_b: dict[str, MessageIdentityMapping] = {}
        self._locks = KeyedLock()

    @property
    def max_mappings(self) -> int:
        return self._max_mappings

    def __len__(self) -> int:
        return len(self._records)

    async def load(self) -> None:
        document = await self._document.load()
        self._records.clear()
        self._by_a.clear()
        self._by_b.clear()
        for raw in document.get("mappings") or []:
            try:
                mapping = MessageIdentityMapping.from_dict(raw)
            except (ValueError, TypeError) as e:
                logger.warning("Skipping malformed message mapping: %s", e)
                continue
            if mapping.platform_a_message_id is None and mapping.platform_b_message_id is None:
                continue
            self._index(mapping)
        self._evict_if_needed()
        logger.info("Loaded %d message mappings from %s", len(self._records), self._document.path)

    def by_platform_a(self, message_id: str) -> Optional[MessageIdentityMapping]:
        return self._by_a.get(str(message_id))

    def by_platform_b(self, message_id: str) -> Optional[MessageIdentityMapping]:
        return self._by_b.get(str(message_id))

    async def record(
        self,
        *,
        destination_channel_id: str,
        source_conversation_id: str,
        platform_a_message_id: Optional[str] = None,
        platform_b_message_id: Optional[str] = None,
        quote_token: Optional[str] = None,
    ) -> MessageIdentityMapping:
        """Store a message id pair. At least one id is required.

        Recording an id that is already known updates that record instead
        of creating a second one.

        Raises:
            ValueError: If neither message id is given.
            MappingStoreError: If persistence fails.
        """
        if not platform_a_message_id and not platform_b_message_id:
            raise ValueError("A mapping needs a LINE or a Discord message id")

        existing = None
        if platform_b_message_id:
            existing = self._by_b.get(str(platform_b_message_id))
        if existing is None and platform_a_message_id:
            existing = self._by_a.get(str(platform_a_message_id))

        if existing is not None:
            key = existing.record_key
            async with self._locks.hold(key):
                if platform_a_message_id and not existing.platform_a_message_id:
                    existing.platform_a_message_id = str(platform_a_message_id)
                    self._by_a[existing.platform_a_message_id] = existing
                if platform_b_message_id and not existing.platform_b_message_id:
                    existing.platform_b_message_id = str(platform_b_message_id)
                    self._by_b[existing.platform_b_message_id] = existing
                if quote_token:
                    existing.quote_token = quote_token
                await self._persist()
            return existing

        mapping = MessageIdentityMapping(
            destination_channel_id=str(destination_channel_id),
            source_conversation_id=source_conversation_id,
            platform_a_message_id=str(platform_a_message_id) if platform_a_message_id else None,
            platform_b_message_id=str(platform_b_message_id) if platform_b_message_id else None,
            quote_token=quote_token,
            created_at=self._clock(),
        )
        async with self._locks.hold(mapping.record_key):
            self._index(mapping)
            self._evict_if_needed()
            await self._persist()
        return mapping

    async def assign_platform_a_id(
        self, platform_b_message_id: str, platform_a_message_id: str
    ) -> Optional[MessageIdentityMapping]:
        """Attach the LINE id to a record created before the LINE send finished."""
        mapping = self._by_b.get(str(platform_b_message_id))
        if mapping is None:
            return None
        async with self._locks.hold(mapping.record_key):
            if mapping.platform_a_message_id and mapping.platform_a_message_id != platform_a_message_id:
                self._by_a.pop(mapping.platform_a_message_id, None)
            mapping.platform_a_message_id = str(platform_a_message_id)
            self._by_a[mapping.platform_a_message_id] = mapping
            await self._persist()
        return mapping

    async def prune_older_than(self, days: int) -> int:
        """Drop mappings created more than ``days`` ago. Returns the count removed."""
        cutoff = self._clock() - timedelta(days=days)
        expired = [m for m in self._records.values() if m.created_at < cutoff]
        if not expired:
            return 0
        for mapping in expired:
            self._unindex(mapping)
        await self._persist()
        logger.info("Pruned %d message mappings older than %d days", len(expired), days)
        return len(expired)

    def _index(self, mapping: MessageIdentityMapping) -> None:
        self._records[mapping.record_key] = mapping
        if mapping.platform_a_message_id:
            self._by_a[mapping.platform_a_message_id] = mapping
        if mapping.platform_b_message_id:
            self._by_b[mapping.platform_b_message_id] = mapping

    def _unindex(self, mapping: MessageIdentityMapping) -> None:
        self._records.pop(mapping.record_key, None)
        if mapping.platform_a_message_id and self._by_a.get(mapping.platform_a_message_id) is mapping:
            del self._by_a[mapping.platform_a_message_id]
        if mapping.platform_b_message_id and self._by_b.get(mapping.platform_b_message_id) is mapping:
            del self._by_b[mapping.platform_b_message_id]

    def _evict_if_needed(self) -> None:
        if len(self._records) <= self._max_mappings:
            return
        # Records are kept in insertion order, oldest first.
        evict_count = len(self._records) // 2
        oldest = list(self._records.values())[:evict_count]
        for mapping in oldest:
            self._unindex(mapping)
        logger.info("Evicted %d oldest message mappings", evict_count)

    async def _persist(self) -> None:
        await self._document.save({
            "version": DOCUMENT_VERSION,
            "mappings": [m.to_dict() for m in self._records.values()],
        })
