"""Schemas related to direct messages and conversations."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from .users import UserSummary


class MessageReactionRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    user_id: int
    emoji: str


class MessageRead(BaseModel):
    """Serialized representation of a direct message."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    conversation_id: int
    sender_id: int
    text: str
    media_url: str | None = None
    reply_to_id: int | None = None
    seen: bool = False
    created_at: datetime
    reactions: list[MessageReactionRead] = []


class MessagePage(BaseModel):
    messages: list[MessageRead]
    has_more: bool


class LastMessageSummary(BaseModel):
    id: int | None = None
    text: str | None = None
    sender_id: int | None = None
    seen: bool = False


class ConversationRead(BaseModel):
    id: int
    participant: UserSummary
    last_message: LastMessageSummary
    unread_count: int = Field(0, ge=0)
    created_at: datetime
    updated_at: datetime


class ReactionToggle(BaseModel):
    emoji: str = Field(..., min_length=1, max_length=32)


class ReactionResult(BaseModel):
    message_id: int
    conversation_id: int
    action: str = Field(..., description="added, replaced or removed")
    reactions: list[MessageReactionRead]


class UnreadCount(BaseModel):
    total_unread: int = Field(0, ge=0)


class SeenResult(BaseModel):
    conversation_id: int
    updated: int = Field(0, ge=0)
