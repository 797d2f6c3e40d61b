"""Inbound event shapes.

LINE webhook payloads are validated with pydantic; Discord messages are
normalized by the Discord client into plain dataclasses so the bridge
never touches discord.py objects.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from line_bridge.models import MessageKind


class _LineModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class LineSource(_LineModel):
    type: str = "user"
    user_id: Optional[str] = Field(default=None, alias="userId")
    group_id: Optional[str] = Field(default=None, alias="groupId")
    room_id: Optional[str] = Field(default=None, alias="roomId")

    @property
    def conversation_id(self) -> str:
        """Id that addresses the conversation: group, room, or user."""
        return self.group_id or self.room_id or self.user_id or ""

    @property
    def is_group(self) -> bool:
        return bool(self.group_id or self.room_id)


class LineContentProvider(_LineModel):
    type: str = "line"
    original_content_url: Optional[str] = Field(default=None, alias="originalContentUrl")
    preview_image_url: Optional[str] = Field(default=None, alias="previewImageUrl")


class LineMessage(_LineModel):
    id: str
    type: str
    text: Optional[str] = None
    quote_token: Optional[str] = Field(default=None, alias="quoteToken")
    quoted_message_id: Optional[str] = Field(default=None, alias="quotedMessageId")
    content_provider: Optional[LineContentProvider] = Field(default=None, alias="contentProvider")
    duration: Optional[int] = None
    file_name: Optional[str] = Field(default=None, alias="fileName")
    file_size: Optional[int] = Field(default=None, alias="fileSize")
    package_id: Optional[str] = Field(default=None, alias="packageId")
    sticker_id: Optional[str] = Field(default=None, alias="stickerId")
    title: Optional[str] = None
    address: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None

    @property
    def kind(self) -> MessageKind:
        return MessageKind.from_line_type(self.type)


class LineDeliveryContext(_LineModel):
    is_redelivery: bool = Field(default=False, alias="isRedelivery")


class LineEvent(_LineModel):
    type: str
    timestamp: int = 0
    mode: str = "active"
    source: LineSource = Field(default_factory=LineSource)
    reply_token: Optional[str] = Field(default=None, alias="replyToken")
    webhook_event_id: Optional[str] = Field(default=None, alias="webhookEventId")
    delivery_context: LineDeliveryContext = Field(
        default_factory=LineDeliveryContext, alias="deliveryContext"
    )
    message: Optional[LineMessage] = None


class LineWebhookBody(_LineModel):
    destination: Optional[str] = None
    events: list[LineEvent] = Field(default_factory=list)


@dataclass
class DiscordAttachment:
    url: str
    filename: str
    size: int = 0
    content_type: Optional[str] = None


@dataclass
class DiscordSticker:
    sticker_id: str
    name: str
    url: Optional[str] = None


@dataclass
class DiscordInboundMessage:
    """A Discord message as seen by the bridge."""

    message_id: str
    channel_id: str
    author_id: str
    author_name: str
    content: str = ""
    author_is_bot: bool = False
    webhook_id: Optional[str] = None
    attachments: list[DiscordAttachment] = field(default_factory=list)
    stickers: list[DiscordSticker] = field(default_factory=list)
    reference_message_id: Optional[str] = None

    @property
    def from_automation(self) -> bool:
        return self.author_is_bot or self.webhook_id is not None
