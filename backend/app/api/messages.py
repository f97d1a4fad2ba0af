"""HTTP endpoints for direct messages."""

from __future__ import annotations

from fastapi import APIRouter, Depends, File, Form, Query, Response, UploadFile, status
from sqlalchemy.orm import Session

from app.api.deps import get_conversation_service, get_current_user, get_reaction_service
from app.database import get_db
from app.models import User
from app.schemas import (
    ConversationRead,
    MessagePage,
    MessageRead,
    ReactionResult,
    ReactionToggle,
    SeenResult,
    UnreadCount,
)
from app.services.conversations import ConversationService
from app.services.reactions import ReactionService

router = APIRouter(prefix="/messages", tags=["messages"])


@router.post("", response_model=MessageRead, status_code=status.HTTP_201_CREATED)
async def send_message(
    *,
    recipient_id: int = Form(...),
    text: str = Form(""),
    reply_to_id: int | None = Form(default=None),
    media: UploadFile | None = File(default=None),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
    service: ConversationService = Depends(get_conversation_service),
) -> MessageRead:
    """Send a direct message, creating the conversation on first contact."""

    return await service.send_message(
        db,
        current_user.id,
        recipient_id,
        text,
        media=media,
        reply_to_id=reply_to_id,
    )


@router.get("/conversations", response_model=list[ConversationRead])
def list_conversations(
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
    service: ConversationService = Depends(get_conversation_service),
) -> list[ConversationRead]:
    return service.get_conversations(db, current_user.id)


@router.get("/conversations/{conversation_id}", response_model=MessagePage)
def get_messages(
    conversation_id: int,
    limit: int | None = Query(default=None, ge=1),
    before: int | None = Query(default=None, ge=1, description="Return messages older than this id"),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
    service: ConversationService = Depends(get_conversation_service),
) -> MessagePage:
    return service.get_messages(db, current_user.id, conversation_id, limit, before)


@router.post("/conversations/{conversation_id}/seen", response_model=SeenResult)
async def mark_seen(
    conversation_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
    service: ReactionService = Depends(get_reaction_service),
) -> SeenResult:
    updated = await service.mark_seen(db, conversation_id, current_user.id)
    return SeenResult(conversation_id=conversation_id, updated=updated)


@router.get("/unread-count", response_model=UnreadCount)
def unread_count(
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
    service: ConversationService = Depends(get_conversation_service),
) -> UnreadCount:
    return UnreadCount(total_unread=service.get_total_unread_count(db, current_user.id))


@router.delete("/{message_id}", status_code=status.HTTP_204_NO_CONTENT, response_class=Response)
async def delete_message(
    message_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
    service: ConversationService = Depends(get_conversation_service),
) -> Response:
    await service.delete_message(db, message_id, current_user.id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/{message_id}/reactions", response_model=ReactionResult)
async def toggle_reaction(
    message_id: int,
    payload: ReactionToggle,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
    service: ReactionService = Depends(get_reaction_service),
) -> ReactionResult:
    return await service.toggle_reaction(db, message_id, current_user.id, payload.emoji)
