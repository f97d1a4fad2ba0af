"""Direct message pipeline.

Every write follows the same order: validate, upload media, persist in one
transaction, then deliver. Delivery is best effort and never turns a
committed write into an error.
"""

from __future__ import annotations

import logging

from fastapi import UploadFile
from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload

from app.config import get_settings
from app.core.storage import MediaStorage
from app.models import Conversation, Message, utcnow
from app.schemas import ConversationRead, LastMessageSummary, MessagePage, MessageRead, UserSummary
from murmur.realtime.delivery import DeliveryRouter

from .errors import NotFoundError, NotParticipantError, ValidationFailedError
from .notifier import Notifier, NoopNotifier, PushNotification, dispatch_push
from .users import display_name, get_user_or_404

logger = logging.getLogger(__name__)

settings = get_settings()


def normalized_pair(first_user_id: int, second_user_id: int) -> tuple[int, int]:
    low, high = sorted((first_user_id, second_user_id))
    return low, high


def find_conversation(db: Session, first_user_id: int, second_user_id: int) -> Conversation | None:
    low, high = normalized_pair(first_user_id, second_user_id)
    return db.scalar(
        select(Conversation).where(Conversation.user_a_id == low, Conversation.user_b_id == high)
    )


def get_conversation_for(db: Session, conversation_id: int, user_id: int) -> Conversation:
    conversation = db.get(Conversation, conversation_id)
    if conversation is None:
        raise NotFoundError("Conversation not found")
    if not conversation.has_user(user_id):
        raise NotParticipantError()
    return conversation


def _unread_filter(user_id: int):
    return and_(
        or_(Conversation.user_a_id == user_id, Conversation.user_b_id == user_id),
        Message.sender_id != user_id,
        Message.seen.is_(False),
    )


def total_unread_count(db: Session, user_id: int) -> int:
    stmt = (
        select(func.count(Message.id))
        .join(Conversation, Conversation.id == Message.conversation_id)
        .where(_unread_filter(user_id))
    )
    return int(db.scalar(stmt) or 0)


class ConversationService:
    def __init__(
        self,
        router: DeliveryRouter,
        *,
        notifier: Notifier | None = None,
        storage: MediaStorage | None = None,
    ) -> None:
        self._router = router
        self._notifier: Notifier = notifier or NoopNotifier()
        self._storage = storage or MediaStorage.from_settings(settings)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------
    async def send_message(
        self,
        db: Session,
        sender_id: int,
        recipient_id: int,
        text: str | None,
        media: UploadFile | None = None,
        reply_to_id: int | None = None,
    ) -> MessageRead:
        body = (text or "").strip()
        if sender_id == recipient_id:
            raise ValidationFailedError("Cannot send a message to yourself")
        if not body and media is None:
            raise ValidationFailedError("Message must contain text or media")
        if len(body) > settings.chat_message_max_length:
            raise ValidationFailedError("Message is too long")
        sender = get_user_or_404(db, sender_id)
        get_user_or_404(db, recipient_id)

        if reply_to_id is not None:
            existing = find_conversation(db, sender_id, recipient_id)
            reply_to = db.get(Message, reply_to_id)
            if reply_to is None:
                raise NotFoundError("Replied message not found")
            if existing is None or reply_to.conversation_id != existing.id:
                raise ValidationFailedError("Replied message belongs to another conversation")

        media_url = None
        if media is not None:
            media_url = (await self._storage.store(sender_id, media)).url

        try:
            conversation = self._get_or_create_conversation(db, sender_id, recipient_id)
            message = Message(
                conversation_id=conversation.id,
                sender_id=sender_id,
                text=body,
                media_url=media_url,
                reply_to_id=reply_to_id,
            )
            db.add(message)
            db.flush()
            db.execute(
                update(Conversation)
                .where(Conversation.id == conversation.id)
                .values(
                    last_message_id=message.id,
                    last_message_text=body or None,
                    last_message_sender_id=sender_id,
                    last_message_seen=False,
                    updated_at=message.created_at,
                )
            )
            db.commit()
        except Exception:
            db.rollback()
            self._storage.delete(media_url)
            raise
        db.refresh(message)
        db.refresh(conversation)

        result = MessageRead.model_validate(message)
        delivered = await self._router.deliver(
            recipient_id,
            "newMessage",
            {
                "message": result.model_dump(mode="json"),
                "conversationUpdatedAt": conversation.updated_at.isoformat(),
            },
        )
        if not delivered:
            await dispatch_push(
                self._notifier,
                PushNotification(
                    user_id=recipient_id,
                    title=display_name(sender),
                    body=body or "Sent an attachment",
                    data={"type": "newMessage", "conversationId": conversation.id, "messageId": message.id},
                ),
            )
        await self._router.deliver(
            recipient_id, "unreadCountUpdate", {"totalUnread": total_unread_count(db, recipient_id)}
        )
        return result

    def _get_or_create_conversation(self, db: Session, sender_id: int, recipient_id: int) -> Conversation:
        conversation = find_conversation(db, sender_id, recipient_id)
        if conversation is not None:
            return conversation
        low, high = normalized_pair(sender_id, recipient_id)
        conversation = Conversation(user_a_id=low, user_b_id=high)
        db.add(conversation)
        try:
            db.commit()
        except IntegrityError:
            # Another request created the pair first; use its row.
            db.rollback()
            conversation = find_conversation(db, sender_id, recipient_id)
            if conversation is None:
                raise
            logger.info("Conversation insert lost race", extra={"conversation_id": conversation.id})
        return conversation

    async def delete_message(self, db: Session, message_id: int, requester_id: int) -> None:
        message = db.get(Message, message_id)
        if message is None:
            raise NotFoundError("Message not found")
        conversation = message.conversation
        if not conversation.has_user(requester_id):
            raise NotParticipantError("Only conversation participants can delete messages")

        media_url = message.media_url
        conversation_id = conversation.id
        was_summary = conversation.last_message_id == message.id
        try:
            db.execute(update(Message).where(Message.reply_to_id == message.id).values(reply_to_id=None))
            db.delete(message)
            db.flush()
            if was_summary:
                previous = db.scalar(
                    select(Message)
                    .where(Message.conversation_id == conversation_id)
                    .order_by(Message.created_at.desc(), Message.id.desc())
                    .limit(1)
                )
                db.execute(
                    update(Conversation)
                    .where(Conversation.id == conversation_id)
                    .values(
                        last_message_id=previous.id if previous else None,
                        last_message_text=(previous.text or None) if previous else None,
                        last_message_sender_id=previous.sender_id if previous else None,
                        last_message_seen=previous.seen if previous else False,
                    )
                )
            db.commit()
        except Exception:
            db.rollback()
            raise

        self._storage.delete(media_url)
        participants = conversation.participant_ids
        await self._router.deliver_many(
            participants,
            "messageDeleted",
            {"conversationId": conversation_id, "messageId": message_id},
        )
        other_id = conversation.other_participant(requester_id)
        await self._router.deliver(other_id, "unreadCountUpdate", {"totalUnread": total_unread_count(db, other_id)})

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    def get_messages(
        self,
        db: Session,
        user_id: int,
        conversation_id: int,
        limit: int | None = None,
        before_message_id: int | None = None,
    ) -> MessagePage:
        get_conversation_for(db, conversation_id, user_id)
        limit = limit or settings.chat_history_default_limit
        limit = max(1, min(limit, settings.chat_history_max_limit))

        stmt = (
            select(Message)
            .where(Message.conversation_id == conversation_id)
            .options(selectinload(Message.reactions))
        )
        if before_message_id is not None:
            anchor = db.get(Message, before_message_id)
            if anchor is None or anchor.conversation_id != conversation_id:
                raise NotFoundError("Cursor message not found")
            stmt = stmt.where(
                or_(
                    Message.created_at < anchor.created_at,
                    and_(Message.created_at == anchor.created_at, Message.id < anchor.id),
                )
            )
        rows = list(
            db.scalars(stmt.order_by(Message.created_at.desc(), Message.id.desc()).limit(limit + 1))
        )
        has_more = len(rows) > limit
        rows = rows[:limit]
        rows.reverse()
        return MessagePage(messages=[MessageRead.model_validate(row) for row in rows], has_more=has_more)

    def get_conversations(self, db: Session, user_id: int) -> list[ConversationRead]:
        conversations = list(
            db.scalars(
                select(Conversation)
                .where(
                    or_(Conversation.user_a_id == user_id, Conversation.user_b_id == user_id),
                    Conversation.last_message_id.is_not(None),
                )
                .options(selectinload(Conversation.user_a), selectinload(Conversation.user_b))
                .order_by(Conversation.updated_at.desc(), Conversation.id.desc())
            )
        )
        unread_rows = db.execute(
            select(Message.conversation_id, func.count(Message.id))
            .join(Conversation, Conversation.id == Message.conversation_id)
            .where(_unread_filter(user_id))
            .group_by(Message.conversation_id)
        ).all()
        unread = {conversation_id: int(count) for conversation_id, count in unread_rows}

        results: list[ConversationRead] = []
        for conversation in conversations:
            other = conversation.user_b if conversation.user_a_id == user_id else conversation.user_a
            results.append(
                ConversationRead(
                    id=conversation.id,
                    participant=UserSummary.model_validate(other),
                    last_message=LastMessageSummary(
                        id=conversation.last_message_id,
                        text=conversation.last_message_text,
                        sender_id=conversation.last_message_sender_id,
                        seen=conversation.last_message_seen,
                    ),
                    unread_count=unread.get(conversation.id, 0),
                    created_at=conversation.created_at,
                    updated_at=conversation.updated_at,
                )
            )
        return results

    def get_total_unread_count(self, db: Session, user_id: int) -> int:
        return total_unread_count(db, user_id)


__all__ = [
    "ConversationService",
    "find_conversation",
    "get_conversation_for",
    "normalized_pair",
    "total_unread_count",
]
