"""Reaction toggling and read-state updates for direct messages."""

from __future__ import annotations

import logging

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.models import Conversation, Message, MessageReaction
from app.schemas import MessageReactionRead, ReactionResult
from murmur.realtime.delivery import DeliveryRouter

from .conversations import get_conversation_for, total_unread_count
from .errors import NotFoundError, NotParticipantError, ValidationFailedError

logger = logging.getLogger(__name__)

_MAX_EMOJI_LENGTH = 32


class ReactionService:
    def __init__(self, router: DeliveryRouter) -> None:
        self._router = router

    async def toggle_reaction(self, db: Session, message_id: int, user_id: int, emoji: str) -> ReactionResult:
        """Add, replace or remove ``user_id``'s reaction on a message.

        Sending the emoji the user already has removes it; a different emoji
        replaces it. The message row is locked for the duration so concurrent
        toggles on one message are applied one after another.
        """

        emoji = (emoji or "").strip()
        if not emoji or len(emoji) > _MAX_EMOJI_LENGTH:
            raise ValidationFailedError("Invalid emoji")

        for attempt in range(2):
            try:
                action, conversation = self._apply_toggle(db, message_id, user_id, emoji)
                db.commit()
                break
            except IntegrityError:
                db.rollback()
                if attempt:
                    raise
                logger.info("Reaction insert conflicted; retrying", extra={"message_id": message_id})
            except Exception:
                db.rollback()
                raise

        reactions = [
            MessageReactionRead.model_validate(row)
            for row in db.scalars(
                select(MessageReaction).where(MessageReaction.message_id == message_id).order_by(MessageReaction.id)
            )
        ]
        await self._router.deliver_many(
            conversation.participant_ids,
            "messageReactionUpdated",
            {"conversationId": conversation.id, "messageId": message_id},
        )
        return ReactionResult(
            message_id=message_id,
            conversation_id=conversation.id,
            action=action,
            reactions=reactions,
        )

    def _apply_toggle(self, db: Session, message_id: int, user_id: int, emoji: str) -> tuple[str, Conversation]:
        message = db.scalar(select(Message).where(Message.id == message_id).with_for_update())
        if message is None:
            raise NotFoundError("Message not found")
        conversation = message.conversation
        if not conversation.has_user(user_id):
            raise NotParticipantError()

        existing = db.scalar(
            select(MessageReaction).where(
                MessageReaction.message_id == message_id,
                MessageReaction.user_id == user_id,
            )
        )
        if existing is not None and existing.emoji == emoji:
            db.delete(existing)
            action = "removed"
        elif existing is not None:
            existing.emoji = emoji
            action = "replaced"
        else:
            db.add(MessageReaction(message_id=message_id, user_id=user_id, emoji=emoji))
            action = "added"
        db.flush()
        return action, conversation

    async def mark_seen(self, db: Session, conversation_id: int, user_id: int) -> int:
        """Mark the other participant's messages as seen; returns rows updated."""

        conversation = get_conversation_for(db, conversation_id, user_id)
        other_id = conversation.other_participant(user_id)
        try:
            result = db.execute(
                update(Message)
                .where(
                    Message.conversation_id == conversation_id,
                    Message.sender_id != user_id,
                    Message.seen.is_(False),
                )
                .values(seen=True)
                .execution_options(synchronize_session=False)
            )
            db.execute(
                update(Conversation)
                .where(
                    Conversation.id == conversation_id,
                    Conversation.last_message_sender_id == other_id,
                )
                .values(last_message_seen=True)
                .execution_options(synchronize_session=False)
            )
            db.commit()
        except Exception:
            db.rollback()
            raise
        updated = int(result.rowcount or 0)

        if updated:
            await self._router.deliver(other_id, "messagesSeen", {"conversationId": conversation_id})
        await self._router.deliver(user_id, "unreadCountUpdate", {"totalUnread": total_unread_count(db, user_id)})
        return updated


__all__ = ["ReactionService"]
