"""FastAPI dependencies for the API layer."""

from functools import lru_cache

from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from sqlalchemy.orm import Session

from app.core.security import user_id_from_token
from app.core.storage import MediaStorage
from app.database import get_db
from app.models import User
from app.services.activity import ActivityService
from app.services.conversations import ConversationService
from app.services.notifications import NotificationService
from app.services.reactions import ReactionService
from murmur.calls.manager import CallSignalManager
from murmur.realtime.managers import get_call_manager, get_delivery_router, get_presence_registry
from murmur.realtime.presence import PresenceRegistry

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/login")


def get_current_user(
    token: str = Depends(oauth2_scheme),
    db: Session = Depends(get_db),
) -> User:
    """Retrieve the current user from the JWT token."""

    return get_user_from_token(token, db)


def get_user_from_token(token: str, db: Session) -> User:
    """Resolve a user from a JWT token or raise an HTTP 401 error."""

    user = db.get(User, user_id_from_token(token))
    if user is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
        )
    return user


@lru_cache
def get_media_storage() -> MediaStorage:
    return MediaStorage.from_settings()


@lru_cache
def get_conversation_service() -> ConversationService:
    return ConversationService(
        get_delivery_router(),
        notifier=get_call_manager().notifier,
        storage=get_media_storage(),
    )


@lru_cache
def get_reaction_service() -> ReactionService:
    return ReactionService(get_delivery_router())


@lru_cache
def get_notification_service() -> NotificationService:
    return NotificationService(get_delivery_router(), notifier=get_call_manager().notifier)


@lru_cache
def get_activity_service() -> ActivityService:
    return ActivityService(get_delivery_router())


def get_calls() -> CallSignalManager:
    return get_call_manager()


def get_presence() -> PresenceRegistry:
    return get_presence_registry()
