"""Database models package."""

from .base import Base, utcnow
from .enums import ActivityKind, NotificationKind
from .social import (
    Activity,
    Conversation,
    Follow,
    Message,
    MessageReaction,
    Notification,
    User,
)

__all__ = [
    "Base",
    "utcnow",
    "User",
    "Follow",
    "Conversation",
    "Message",
    "MessageReaction",
    "Notification",
    "Activity",
    "ActivityKind",
    "NotificationKind",
]
