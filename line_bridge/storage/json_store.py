"""Whole-document JSON persistence with atomic replacement."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Union

from line_bridge.errors import MappingStoreError

logger = logging.getLogger(__name__)


class JsonDocumentStore:
    """Reads and rewrites a single JSON document on disk.

    Writes go to a sibling ``.tmp`` file which then replaces the target, so
    readers never observe a half-written document. Disk I/O runs in a
    worker thread and concurrent saves are serialized.
    """

    def __init__(self, path: Union[str, Path]) -> None:
        self._path = Path(path)
        self._write_lock = asyncio.Lock()

    @property
    def path(self) -> Path:
        return self._path

    async def load(self) -> dict[str, Any]:
        """Return the stored document, or an empty dict if none exists.

        Raises:
            MappingStoreError: If the file exists but cannot be read or parsed.
        """
        return await asyncio.to_thread(self._read)

    async def save(self, document: dict[str, Any]) -> None:
        """Replace the stored document.

        Raises:
            MappingStoreError: If the document cannot be written.
        """
        payload = json.dumps(document, ensure_ascii=False, indent=2, sort_keys=True)
        async with self._write_lock:
            await asyncio.to_thread(self._write, payload)

    def _read(self) -> dict[str, Any]:
        if not self._path.exists():
            return {}
        try:
            raw = self._path.read_text(encoding="utf-8")
        except OSError as e:
            raise MappingStoreError(str(self._path), f"read failed: {e}") from e
        if not raw.strip():
            return {}
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            raise MappingStoreError(str(self._path), f"invalid JSON: {e}") from e
        if not isinstance(data, dict):
            raise MappingStoreError(
                str(self._path), f"expected a JSON object, got {type(data).__name__}"
            )
        return data

    def _write(self, payload: str) -> None:
        tmp = self._path.with_suffix(self._path.suffix + ".tmp")
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            tmp.write_text(payload, encoding="utf-8")
            tmp.replace(self._path)
        except OSError as e:
            raise MappingStoreError(str(self._path), f"write failed: {e}") from e
        logger.debug("Wrote %d bytes to %s", len(payload), self._path)
