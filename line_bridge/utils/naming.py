"""Discord channel name generation from LINE display names.

Discord text channel names are lowercase, without spaces, and limited to
a small character set. Japanese names are romanized with pykakasi before
the ASCII folding so "田中さん" becomes "tanaka-san" instead of "".
"""

from __future__ import annotations

import re
import threading
import unicodedata
from datetime import datetime
from typing import Optional

import pykakasi

_DISALLOWED = re.compile(r"[^a-z0-9_-]+")
_DASH_RUNS = re.compile(r"-{2,}")

_kakasi: Optional[pykakasi.kakasi] = None
_kakasi_lock = threading.Lock()


def _get_kakasi() -> pykakasi.kakasi:
    global _kakasi
    with _kakasi_lock:
        if _kakasi is None:
            _kakasi = pykakasi.kakasi()
    return _kakasi


def romanize(text: str) -> str:
    """Return text with kana and kanji replaced by Hepburn romaji.

    Segments are joined with "-" so word boundaries survive slugging.
    """
    if not text:
        return ""
    parts = []
    for item in _get_kakasi().convert(text):
        reading = (item.get("hepburn") or item.get("orig") or "").strip()
        if reading:
            parts.append(reading)
    return "-".join(parts)


def slugify_channel_name(name: str, max_length: int = 32) -> str:
    """Normalize a display name into a Discord-safe channel name.

    Args:
        name: Raw display name, any script.
        max_length: Maximum length of the result.

    Returns:
        Lowercase ASCII name made of [a-z0-9_-], possibly empty when the
        input has nothing transliterable (emoji-only names).
    """
    text = unicodedata.normalize("NFKC", name or "")
    text = romanize(text)
    text = unicodedata.normalize("NFKD", text).encode("ascii", "ignore").decode("ascii")
    text = _DISALLOWED.sub("-", text.lower())
    text = _DASH_RUNS.sub("-", text).strip("-_")
    return text[:max_length].rstrip("-_")


def with_suffix(base: str, number: int, digits: int, max_length: int) -> str:
    """Append a zero-padded suffix, shortening the base so the result fits."""
    suffix = f"-{number:0{digits}d}"
    head = base[: max(max_length - len(suffix), 0)].rstrip("-_")
    return f"{head}{suffix}" if head else suffix.lstrip("-")


def timestamp_name(prefix: str, now: datetime, max_length: int) -> str:
    """Collision-proof fallback name derived from the current time."""
    stamp = now.strftime("%Y%m%d%H%M%S%f")
    name = f"{prefix}-{stamp}"
    if len(name) > max_length:
        name = f"{prefix[: max(max_length - len(stamp) - 1, 0)]}-{stamp}".lstrip("-")
    return name[-max_length:]


def fallback_base(kind: str, source_id: str) -> str:
    return f"line-{kind}-{source_id[:8].lower()}"
