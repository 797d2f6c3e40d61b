"""Core data types for the LINE ↔ Discord bridge."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_time(value: Optional[str]) -> datetime:
    if not value:
        return utcnow()
    return datetime.fromisoformat(value)


class BindingKind(str, enum.Enum):
    DIRECT = "direct"
    GROUP = "group"

    @classmethod
    def from_source_id(cls, source_id: str) -> BindingKind:
        """LINE group ids start with C, room ids with R, user ids with U."""
        if source_id[:1] in ("C", "R", "G"):
            return cls.GROUP
        return cls.DIRECT


class MessageKind(str, enum.Enum):
    """Closed set of LINE message shapes the bridge understands."""

    TEXT = "text"
    IMAGE = "image"
    VIDEO = "video"
    AUDIO = "audio"
    FILE = "file"
    STICKER = "sticker"
    LOCATION = "location"
    UNSUPPORTED = "unsupported"

    @classmethod
    def from_line_type(cls, message_type: Optional[str]) -> MessageKind:
        try:
            kind = cls(message_type or "")
        except ValueError:
            return cls.UNSUPPORTED
        return kind


class MediaCategory(str, enum.Enum):
    IMAGE = "image"
    VIDEO = "video"
    AUDIO = "audio"
    FILE = "file"


class EventOrigin(str, enum.Enum):
    FROM_LINE = "fromA"
    FROM_DISCORD = "fromB"


@dataclass
class ConversationBinding:
    """Persisted association between a LINE conversation and a Discord channel."""

    source_conversation_id: str
    destination_channel_id: str
    display_name: str
    channel_name: str
    kind: BindingKind
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    stale: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "source_conversation_id": self.source_conversation_id,
            "destination_channel_id": self.destination_channel_id,
            "display_name": self.display_name,
            "channel_name": self.channel_name,
            "kind": self.kind.value,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "stale": self.stale,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ConversationBinding:
        return cls(
            source_conversation_id=data["source_conversation_id"],
            destination_channel_id=str(data["destination_channel_id"]),
            display_name=data.get("display_name", ""),
            channel_name=data.get("channel_name", ""),
            kind=BindingKind(data.get("kind", BindingKind.DIRECT.value)),
            created_at=_parse_time(data.get("created_at")),
            updated_at=_parse_time(data.get("updated_at")),
            stale=bool(data.get("stale", False)),
        )


@dataclass
class MessageIdentityMapping:
    """Cross-platform message id pair used for reply correlation."""

    destination_channel_id: str
    source_conversation_id: str
    platform_a_message_id: Optional[str] = None
    platform_b_message_id: Optional[str] = None
    quote_token: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    record_key: str = ""

    def __post_init__(self) -> None:
        # Keyed by whichever id was known at creation; never re-keyed.
        if not self.record_key:
            if self.platform_b_message_id:
                self.record_key = f"discord:{self.platform_b_message_id}"
            else:
                self.record_key = f"line:{self.platform_a_message_id}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "platform_a_message_id": self.platform_a_message_id,
            "platform_b_message_id": self.platform_b_message_id,
            "destination_channel_id": self.destination_channel_id,
            "source_conversation_id": self.source_conversation_id,
            "quote_token": self.quote_token,
            "created_at": self.created_at.isoformat(),
            "record_key": self.record_key,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> MessageIdentityMapping:
        return cls(
            platform_a_message_id=data.get("platform_a_message_id"),
            platform_b_message_id=data.get("platform_b_message_id"),
            destination_channel_id=str(data.get("destination_channel_id", "")),
            source_conversation_id=data.get("source_conversation_id", ""),
            quote_token=data.get("quote_token"),
            created_at=_parse_time(data.get("created_at")),
            record_key=data.get("record_key", ""),
        )


@dataclass(frozen=True)
class ResolvedMediaDescriptor:
    canonical_mime_type: str
    extension: str
    generated_filename: str
    size_bytes: int
    within_platform_limit: bool


@dataclass
class PendingEvent:
    """Inbound event held until the Discord client is ready."""

    kind: EventOrigin
    raw_event: Any
    enqueued_at: datetime = field(default_factory=utcnow)


@dataclass
class OutboundAttachment:
    filename: str
    data: Optional[bytes]
    content_type: str = "application/octet-stream"
    size_bytes: int = 0
    within_limit: bool = True
    source_url: Optional[str] = None


@dataclass
class OutboundContent:
    """Discord-bound message body."""

    text: str = ""
    attachments: list[OutboundAttachment] = field(default_factory=list)

    def is_empty(self) -> bool:
        return not self.text and not self.attachments


@dataclass
class DeliveryOptions:
    display_name: Optional[str] = None
    avatar_url: Optional[str] = None
    prefer_identity_spoofed: bool = False


@dataclass
class DeliveryResult:
    success: bool
    remote_message_id: Optional[str] = None
    degraded: bool = False
    reason: Optional[str] = None
    destination_channel_id: Optional[str] = None
    remote_message_ids: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


@dataclass
class ChannelInfo:
    channel_id: str
    name: str


@dataclass
class ProxyEndpoint:
    """A Discord webhook usable for identity-spoofed sends."""

    endpoint_id: str
    channel_id: str
    url: str
    name: str = ""


@dataclass
class MediaPayload:
    data: bytes
    content_type: Optional[str] = None


@dataclass
class LineProfile:
    display_name: str
    picture_url: Optional[str] = None
    # True when the name is a placeholder because the API lookup failed.
    fallback: bool = False
