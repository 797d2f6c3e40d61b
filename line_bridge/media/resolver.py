"""Media type resolution: canonical MIME type, extension and filename.

The resolver reconciles three signals for every media item:

1. The sniffed type, read from the content's magic bytes.
2. The declared type, as reported by the provider (HTTP Content-Type or
   LINE's contentProvider tag).
3. The category the message claimed to be (image, video, audio, file).

Sniffing wins because provider-declared types are frequently generic or
wrong. Resolution never raises: unknown input ends at the category
default and the ``bin`` extension.
"""

from __future__ import annotations

import logging
from typing import Optional, Union

import filetype

from line_bridge.models import MediaCategory, ResolvedMediaDescriptor

logger = logging.getLogger(__name__)

GENERIC_BINARY = "application/octet-stream"
FALLBACK_EXTENSION = "bin"

# Values LINE puts in contentProvider.type; they name the host, not a format.
PROVIDER_TAGS = frozenset({"line", "external"})

DEFAULT_MIME_BY_CATEGORY: dict[MediaCategory, str] = {
    MediaCategory.IMAGE: "image/jpeg",
    MediaCategory.VIDEO: "video/mp4",
    MediaCategory.AUDIO: "audio/m4a",
    MediaCategory.FILE: GENERIC_BINARY,
}

EXTENSION_BY_MIME: dict[str, str] = {
    # images
    "image/jpeg": "jpg",
    "image/png": "png",
    "image/gif": "gif",
    "image/webp": "webp",
    "image/bmp": "bmp",
    "image/tiff": "tiff",
    "image/svg+xml": "svg",
    "image/heic": "heic",
    # video
    "video/mp4": "mp4",
    "video/quicktime": "mov",
    "video/x-msvideo": "avi",
    "video/x-ms-wmv": "wmv",
    "video/x-flv": "flv",
    "video/webm": "webm",
    "video/mpeg": "mpg",
    "video/3gpp": "3gp",
    "video/x-matroska": "mkv",
    # audio
    "audio/mpeg": "mp3",
    "audio/wav": "wav",
    "audio/ogg": "ogg",
    "audio/m4a": "m4a",
    "audio/aac": "aac",
    "audio/flac": "flac",
    "audio/webm": "webm",
    "audio/amr": "amr",
    # documents and archives
    "application/pdf": "pdf",
    "application/msword": "doc",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document": "docx",
    "application/vnd.ms-excel": "xls",
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet": "xlsx",
    "application/vnd.ms-powerpoint": "ppt",
    "application/vnd.openxmlformats-officedocument.presentationml.presentation": "pptx",
    "application/zip": "zip",
    "application/x-rar-compressed": "rar",
    "application/x-7z-compressed": "7z",
    "application/gzip": "gz",
    "text/plain": "txt",
    "text/csv": "csv",
    GENERIC_BINARY: FALLBACK_EXTENSION,
}

# Spellings seen in the wild, folded onto the keys above.
MIME_ALIASES: dict[str, str] = {
    "image/jpg": "image/jpeg",
    "image/pjpeg": "image/jpeg",
    "audio/x-wav": "audio/wav",
    "audio/wave": "audio/wav",
    "audio/x-m4a": "audio/m4a",
    "audio/mp4": "audio/m4a",
    "audio/x-flac": "audio/flac",
    "audio/mp3": "audio/mpeg",
    "video/avi": "video/x-msvideo",
    "application/x-gzip": "application/gzip",
    "application/x-zip-compressed": "application/zip",
    "application/vnd.rar": "application/x-rar-compressed",
}

KNOWN_MIME_TYPES = frozenset(EXTENSION_BY_MIME)


def normalize_mime(value: Optional[str]) -> Optional[str]:
    """Strip parameters, lowercase and fold aliases. Returns None for empty input."""
    if not value:
        return None
    mime = value.split(";", 1)[0].strip().lower()
    if not mime:
        return None
    return MIME_ALIASES.get(mime, mime)


def extension_for(mime: Optional[str]) -> str:
    return EXTENSION_BY_MIME.get(normalize_mime(mime) or "", FALLBACK_EXTENSION)


def matches_category(mime: str, category: MediaCategory) -> bool:
    top_level = mime.split("/", 1)[0]
    if category is MediaCategory.FILE:
        return top_level in ("application", "text")
    return top_level == category.value


def _usable(mime: Optional[str]) -> bool:
    return (
        mime is not None
        and mime != GENERIC_BINARY
        and mime not in PROVIDER_TAGS
        and mime in KNOWN_MIME_TYPES
    )


class MediaTypeResolver:
    """Resolves media descriptors and checks per-category size ceilings.

    Args:
        size_limits: Maximum upload size in bytes per category name
            (``image``, ``video``, ``audio``, ``file``).
    """

    def __init__(self, size_limits: Optional[dict[str, int]] = None) -> None:
        self._limits = dict(size_limits or {})

    def sniff(self, content: Union[bytes, bytearray, None]) -> Optional[str]:
        """Return the MIME type recognized from magic bytes, or None."""
        if not content:
            return None
        try:
            guessed = filetype.guess_mime(bytes(content[:8192]))
        except TypeError:
            return None
        return normalize_mime(guessed)

    def resolve(
        self,
        declared_type: Optional[str],
        sniffed_type: Optional[str],
        expected_category: Union[MediaCategory, str],
        source_message_id: str = "",
        size_bytes: int = 0,
    ) -> ResolvedMediaDescriptor:
        """Pick the canonical type for a media item.

        Args:
            declared_type: Type claimed by the provider; may be a provider tag.
            sniffed_type: Type recognized from content, if any.
            expected_category: Category the message announced.
            source_message_id: LINE message id, used in the filename.
            size_bytes: Payload size, checked against the category ceiling.

        Returns:
            ResolvedMediaDescriptor for the item.
        """
        category = self._coerce_category(expected_category)
        sniffed = normalize_mime(sniffed_type)
        declared = normalize_mime(declared_type)

        if _usable(sniffed):
            canonical = sniffed
        elif _usable(declared) and matches_category(declared, category):
            canonical = declared
        else:
            canonical = DEFAULT_MIME_BY_CATEGORY[category]

        if sniffed and declared and _usable(sniffed) and _usable(declared) and sniffed != declared:
            logger.debug(
                "Sniffed type %s overrides declared %s for message %s",
                sniffed, declared, source_message_id,
            )

        extension = extension_for(canonical)
        filename = f"{category.value}_{source_message_id or 'unknown'}.{extension}"
        return ResolvedMediaDescriptor(
            canonical_mime_type=canonical,
            extension=extension,
            generated_filename=filename,
            size_bytes=size_bytes,
            within_platform_limit=self.within_limit(category, size_bytes),
        )

    def within_limit(self, category: Union[MediaCategory, str], size_bytes: int) -> bool:
        category = self._coerce_category(category)
        limit = self._limits.get(category.value)
        if limit is None:
            return True
        return size_bytes <= limit

    @staticmethod
    def _coerce_category(value: Union[MediaCategory, str]) -> MediaCategory:
        if isinstance(value, MediaCategory):
            return value
        try:
            return MediaCategory(str(value).lower())
        except ValueError:
            return MediaCategory.FILE
