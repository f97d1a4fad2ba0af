"""Schemas describing users as seen by other users."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict


class UserSummary(BaseModel):
    """Public profile fields embedded in messages and notifications."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    username: str
    display_name: str | None = None
    avatar_url: str | None = None


class PresenceRead(BaseModel):
    user_id: int
    online: bool
    in_call: bool = False
