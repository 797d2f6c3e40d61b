"""Text helpers shared by both translation directions."""

from __future__ import annotations

import re
import unicodedata
from dataclasses import dataclass
from typing import Optional

WEBHOOK_USERNAME_MAX = 80
LINE_TEXT_MAX = 5000
DEFAULT_SENDER_NAME = "LINE User"

_ZERO_WIDTH = re.compile("[\u200b\u200c\u200d\u2060\ufeff]")
_RESERVED_WORDS = (
    (re.compile("discord", re.IGNORECASE), "DC"),
    (re.compile("clyde", re.IGNORECASE), "CL"),
)
_MAPS_URL = re.compile(
    r"https?://(?:www\.|maps\.)?google\.[a-z.]+/maps\S*?(?:[?&]q=|@)"
    r"(-?\d{1,2}(?:\.\d+)?),\s*(-?\d{1,3}(?:\.\d+)?)",
    re.IGNORECASE,
)
_BARE_COORDINATES = re.compile(r"^\s*(-?\d{1,2}\.\d+)\s*,\s*(-?\d{1,3}\.\d+)\s*$")


@dataclass(frozen=True)
class Coordinates:
    latitude: float
    longitude: float


def normalize_text(text: Optional[str]) -> str:
    """NFC-normalize and drop zero-width characters."""
    if not text:
        return ""
    return _ZERO_WIDTH.sub("", unicodedata.normalize("NFC", text))


def sanitize_webhook_username(name: Optional[str]) -> str:
    """Make a display name acceptable as a Discord webhook username.

    Discord rejects names containing "discord" or "clyde" and names
    longer than 80 characters.
    """
    cleaned = normalize_text(name).strip()
    for pattern, replacement in _RESERVED_WORDS:
        cleaned = pattern.sub(replacement, cleaned)
    cleaned = cleaned[:WEBHOOK_USERNAME_MAX].strip()
    return cleaned or DEFAULT_SENDER_NAME


def maps_url(latitude: float, longitude: float) -> str:
    return f"https://www.google.com/maps?q={latitude},{longitude}"


def format_location(
    latitude: Optional[float],
    longitude: Optional[float],
    title: Optional[str] = None,
    address: Optional[str] = None,
) -> str:
    lines = [f"📍 {title or 'Location'}"]
    if address:
        lines.append(address)
    if latitude is not None and longitude is not None:
        lines.append(maps_url(latitude, longitude))
    return "\n".join(lines)


def find_coordinates(text: Optional[str]) -> Optional[Coordinates]:
    """Return coordinates if the text is a bare "lat, lng" pair or holds a Google Maps link."""
    if not text:
        return None
    match = _MAPS_URL.search(text) or _BARE_COORDINATES.match(text)
    if match is None:
        return None
    latitude, longitude = float(match.group(1)), float(match.group(2))
    if not (-90 <= latitude <= 90 and -180 <= longitude <= 180):
        return None
    return Coordinates(latitude, longitude)


def format_duration(duration_ms: Optional[int]) -> str:
    if not duration_ms:
        return ""
    seconds = duration_ms / 1000
    if seconds < 60:
        return f"{seconds:.1f}s"
    minutes, rest = divmod(int(round(seconds)), 60)
    return f"{minutes}:{rest:02d}"


def truncate(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return text[: limit - 1] + "…"


def human_size(size_bytes: int) -> str:
    size = float(size_bytes)
    for unit in ("B", "KB", "MB"):
        if size < 1024:
            return f"{size:.0f} {unit}" if unit == "B" else f"{size:.1f} {unit}"
        size /= 1024
    return f"{size:.1f} GB"
