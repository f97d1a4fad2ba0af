"""User lookups shared by the messaging and call services."""

from __future__ import annotations

import logging
from typing import Sequence

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from app.database import get_db_session
from app.models import Follow, User

from .errors import NotFoundError

logger = logging.getLogger(__name__)


def get_user_or_404(db: Session, user_id: int) -> User:
    user = db.get(User, user_id)
    if user is None:
        raise NotFoundError("User not found")
    return user


def display_name(user: User) -> str:
    return user.display_name or user.username


def follower_ids(db: Session, user_id: int) -> list[int]:
    return list(db.scalars(select(Follow.follower_id).where(Follow.followee_id == user_id)))


def followee_ids(db: Session, user_id: int) -> list[int]:
    return list(db.scalars(select(Follow.followee_id).where(Follow.follower_id == user_id)))


async def set_in_call_flags(user_ids: Sequence[int], value: bool) -> None:
    """Persist ``users.in_call`` for the given users."""

    ids = list(user_ids)
    if not ids:
        return
    with get_db_session() as db:
        db.execute(update(User).where(User.id.in_(ids)).values(in_call=value))
        db.commit()
    logger.debug("Updated in-call flags", extra={"user_ids": ids, "value": value})
