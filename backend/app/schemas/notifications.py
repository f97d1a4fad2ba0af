"""Schemas for notifications and the activity feed."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from app.models.enums import ActivityKind, NotificationKind

from .users import UserSummary


class NotificationRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    kind: NotificationKind
    from_user: UserSummary | None = None
    post_id: int | None = None
    comment: str | None = None
    metadata: dict[str, Any] | None = Field(default=None, validation_alias="details")
    read: bool = False
    created_at: datetime


class NotificationList(BaseModel):
    notifications: list[NotificationRead]
    unread_count: int = Field(0, ge=0)


class ActivityRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    user: UserSummary
    kind: ActivityKind
    target_user_id: int | None = None
    post_id: int | None = None
    metadata: dict[str, Any] | None = Field(default=None, validation_alias="details")
    created_at: datetime
