"""Pydantic schemas exposed by the HTTP API."""

from .calls import CallCancelRead, CallCancelRequest, CallStateRead
from .messages import (
    ConversationRead,
    LastMessageSummary,
    MessagePage,
    MessageReactionRead,
    MessageRead,
    ReactionResult,
    ReactionToggle,
    SeenResult,
    UnreadCount,
)
from .notifications import ActivityRead, NotificationList, NotificationRead
from .users import PresenceRead, UserSummary

__all__ = [
    "ActivityRead",
    "CallCancelRead",
    "CallCancelRequest",
    "CallStateRead",
    "ConversationRead",
    "LastMessageSummary",
    "MessagePage",
    "MessageReactionRead",
    "MessageRead",
    "NotificationList",
    "NotificationRead",
    "PresenceRead",
    "ReactionResult",
    "ReactionToggle",
    "SeenResult",
    "UnreadCount",
    "UserSummary",
]
