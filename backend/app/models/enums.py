from __future__ import annotations

from enum import Enum


class NotificationKind(str, Enum):
    """Typed discriminator for user notifications."""

    FOLLOW = "follow"
    COMMENT = "comment"
    MENTION = "mention"
    LIKE = "like"
    COLLABORATION = "collaboration"
    POST_EDIT = "post_edit"


class ActivityKind(str, Enum):
    """Kinds of entries shown in the followers' activity feed."""

    LIKE = "like"
    COMMENT = "comment"
    FOLLOW = "follow"
    POST = "post"
    REPLY = "reply"
