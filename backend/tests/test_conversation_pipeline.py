from __future__ import annotations

import io

import pytest
from fastapi import UploadFile
from sqlalchemy import func, select

from app.core.storage import MediaStorage
from app.models import Conversation, Message
from app.services import conversations as conversations_module
from app.services.conversations import ConversationService
from app.services.errors import (
    MediaUploadError,
    NotFoundError,
    NotParticipantError,
    ValidationFailedError,
)
from app.services.notifier import RecordingNotifier


class BrokenStorage:
    def __init__(self) -> None:
        self.deleted: list[str | None] = []

    async def store(self, owner_id: int, upload: UploadFile):
        raise MediaUploadError("Media storage unavailable")

    def delete(self, url: str | None) -> bool:
        self.deleted.append(url)
        return False


class UnreachablePushGateway:
    async def send(self, notification) -> None:
        raise ConnectionError("push gateway unreachable")


@pytest.fixture()
def media_storage(tmp_path) -> MediaStorage:
    return MediaStorage(tmp_path, base_url="/api/media", max_upload_size=1024)


@pytest.fixture()
def service(realtime, media_storage):
    notifier = RecordingNotifier()
    service = ConversationService(realtime.router, notifier=notifier, storage=media_storage)
    service.pushed = notifier.sent
    return service


def _upload(content: bytes, name: str = "photo.png") -> UploadFile:
    return UploadFile(file=io.BytesIO(content), filename=name)


def _count(db, model) -> int:
    return int(db.scalar(select(func.count()).select_from(model)))


@pytest.mark.anyio("asyncio")
async def test_message_to_offline_user_is_persisted_and_pushed(service, db_session, make_user) -> None:
    alice = make_user("alice", "Alice")
    bob = make_user("bob")

    sent = await service.send_message(db_session, alice, bob, "  hi bob  ")

    assert sent.text == "hi bob"
    page = service.get_messages(db_session, bob, sent.conversation_id)
    assert [message.id for message in page.messages] == [sent.id]
    assert page.has_more is False
    assert service.get_total_unread_count(db_session, bob) == 1
    assert [(push.user_id, push.title, push.body) for push in service.pushed] == [(bob, "Alice", "hi bob")]

    conversation = db_session.get(Conversation, sent.conversation_id)
    assert conversation.last_message_id == sent.id
    assert conversation.last_message_seen is False


@pytest.mark.anyio("asyncio")
async def test_online_recipient_receives_message_and_unread_count(service, realtime, db_session, make_user) -> None:
    alice = make_user("alice")
    bob = make_user("bob")
    _, bob_socket = await realtime.connect(bob)

    sent = await service.send_message(db_session, alice, bob, "hello")

    new_message = bob_socket.events("newMessage")
    assert len(new_message) == 1
    assert new_message[0]["data"]["message"]["id"] == sent.id
    assert "conversationUpdatedAt" in new_message[0]["data"]
    assert bob_socket.events("unreadCountUpdate") == [{"type": "unreadCountUpdate", "data": {"totalUnread": 1}}]
    assert service.pushed == []


@pytest.mark.anyio("asyncio")
async def test_both_directions_share_one_conversation(service, db_session, make_user) -> None:
    alice = make_user("alice")
    bob = make_user("bob")

    first = await service.send_message(db_session, alice, bob, "ping")
    second = await service.send_message(db_session, bob, alice, "pong")

    assert first.conversation_id == second.conversation_id
    assert _count(db_session, Conversation) == 1


@pytest.mark.anyio("asyncio")
async def test_history_pages_newest_window_in_chronological_order(service, db_session, make_user) -> None:
    alice = make_user("alice")
    bob = make_user("bob")
    ids = [(await service.send_message(db_session, alice, bob, f"m{index}")).id for index in range(13)]
    conversation_id = db_session.get(Message, ids[0]).conversation_id

    page = service.get_messages(db_session, alice, conversation_id, limit=12)

    assert page.has_more is True
    assert [message.id for message in page.messages] == ids[1:]

    older = service.get_messages(db_session, alice, conversation_id, limit=12, before_message_id=ids[1])
    assert [message.id for message in older.messages] == ids[:1]
    assert older.has_more is False


@pytest.mark.anyio("asyncio")
async def test_concurrent_first_message_reuses_winning_conversation(
    service, db_session, make_user, monkeypatch
) -> None:
    alice = make_user("alice")
    bob = make_user("bob")
    winner = await service.send_message(db_session, bob, alice, "first")

    real_find = conversations_module.find_conversation
    lookups = {"count": 0}

    def racing_find(db, first_user_id, second_user_id):
        lookups["count"] += 1
        if lookups["count"] == 1:
            return None
        return real_find(db, first_user_id, second_user_id)

    monkeypatch.setattr(conversations_module, "find_conversation", racing_find)

    loser = await service.send_message(db_session, alice, bob, "second")

    assert loser.conversation_id == winner.conversation_id
    assert _count(db_session, Conversation) == 1
    assert _count(db_session, Message) == 2


@pytest.mark.anyio("asyncio")
async def test_failed_media_upload_writes_nothing(realtime, db_session, make_user) -> None:
    alice = make_user("alice")
    bob = make_user("bob")
    service = ConversationService(realtime.router, storage=BrokenStorage())

    with pytest.raises(MediaUploadError):
        await service.send_message(db_session, alice, bob, "look", media=_upload(b"png"))

    assert _count(db_session, Conversation) == 0
    assert _count(db_session, Message) == 0


@pytest.mark.anyio("asyncio")
async def test_media_only_message_is_stored(service, media_storage, db_session, make_user) -> None:
    alice = make_user("alice")
    bob = make_user("bob")

    sent = await service.send_message(db_session, alice, bob, "", media=_upload(b"\x89PNG data"))

    assert sent.media_url is not None and sent.media_url.startswith("/api/media/messages/user_")
    relative = media_storage.relative_path_for(sent.media_url)
    assert media_storage.resolve_path(relative).read_bytes() == b"\x89PNG data"


@pytest.mark.anyio("asyncio")
async def test_push_failure_does_not_fail_the_send(realtime, media_storage, db_session, make_user) -> None:
    alice = make_user("alice")
    bob = make_user("bob")
    service = ConversationService(realtime.router, notifier=UnreachablePushGateway(), storage=media_storage)

    sent = await service.send_message(db_session, alice, bob, "are you there?")

    assert sent.text == "are you there?"
    assert db_session.get(Message, sent.id) is not None
    assert service.get_total_unread_count(db_session, bob) == 1

@pytest.mark.anyio("asyncio")
async def test_oversized_media_is_rejected(service, db_session, make_user) -> None:
    alice = make_user("alice")
    bob = make_user("bob")

    with pytest.raises(MediaUploadError) as excinfo:
        await service.send_message(db_session, alice, bob, "", media=_upload(b"x" * 2048))

    assert excinfo.value.status_code == 413
    assert _count(db_session, Message) == 0


@pytest.mark.anyio("asyncio")
@pytest.mark.parametrize(
    ("text", "same_user"),
    [("", False), ("hi", True), ("x" * 5001, False)],
)
async def test_invalid_messages_are_rejected(service, db_session, make_user, text, same_user) -> None:
    alice = make_user("alice")
    bob = make_user("bob")

    with pytest.raises(ValidationFailedError):
        await service.send_message(db_session, alice, alice if same_user else bob, text)


@pytest.mark.anyio("asyncio")
async def test_reply_must_belong_to_the_same_conversation(service, db_session, make_user) -> None:
    alice = make_user("alice")
    bob = make_user("bob")
    carol = make_user("carol")
    other = await service.send_message(db_session, alice, carol, "elsewhere")
    original = await service.send_message(db_session, alice, bob, "question")

    reply = await service.send_message(db_session, bob, alice, "answer", reply_to_id=original.id)
    assert reply.reply_to_id == original.id

    with pytest.raises(ValidationFailedError):
        await service.send_message(db_session, bob, alice, "wrong", reply_to_id=other.id)
    with pytest.raises(NotFoundError):
        await service.send_message(db_session, bob, alice, "missing", reply_to_id=9999)


@pytest.mark.anyio("asyncio")
async def test_non_participant_cannot_delete(service, db_session, make_user) -> None:
    alice = make_user("alice")
    bob = make_user("bob")
    mallory = make_user("mallory")
    sent = await service.send_message(db_session, alice, bob, "private")

    with pytest.raises(NotParticipantError) as excinfo:
        await service.delete_message(db_session, sent.id, mallory)

    assert excinfo.value.status_code == 403
    assert db_session.get(Message, sent.id) is not None


@pytest.mark.anyio("asyncio")
async def test_delete_repoints_summary_and_notifies_participants(
    service, realtime, db_session, make_user
) -> None:
    alice = make_user("alice")
    bob = make_user("bob")
    first = await service.send_message(db_session, alice, bob, "first")
    last = await service.send_message(db_session, alice, bob, "second", reply_to_id=first.id)
    _, alice_socket = await realtime.connect(alice)
    _, bob_socket = await realtime.connect(bob)

    await service.delete_message(db_session, first.id, bob)

    db_session.expire_all()
    assert db_session.get(Message, last.id).reply_to_id is None
    assert db_session.get(Conversation, first.conversation_id).last_message_id == last.id

    await service.delete_message(db_session, last.id, alice)

    db_session.expire_all()
    conversation = db_session.get(Conversation, first.conversation_id)
    assert conversation.last_message_id is None
    assert service.get_conversations(db_session, alice) == []
    expected = {"conversationId": first.conversation_id, "messageId": last.id}
    assert {"type": "messageDeleted", "data": expected} in alice_socket.sent
    assert {"type": "messageDeleted", "data": expected} in bob_socket.sent
    assert bob_socket.events("unreadCountUpdate")[-1]["data"] == {"totalUnread": 0}


@pytest.mark.anyio("asyncio")
async def test_conversation_list_reports_unread_and_last_message(service, db_session, make_user) -> None:
    alice = make_user("alice", "Alice")
    bob = make_user("bob", "Bob")
    carol = make_user("carol", "Carol")
    await service.send_message(db_session, bob, alice, "one")
    await service.send_message(db_session, bob, alice, "two")
    await service.send_message(db_session, alice, carol, "three")

    listed = service.get_conversations(db_session, alice)

    assert [item.participant.id for item in listed] == [carol, bob]
    by_peer = {item.participant.id: item for item in listed}
    assert by_peer[bob].unread_count == 2
    assert by_peer[bob].last_message.text == "two"
    assert by_peer[carol].unread_count == 0
    assert service.get_total_unread_count(db_session, alice) == 2


def test_outsider_cannot_read_history(service, db_session, make_user) -> None:
    alice = make_user("alice")
    bob = make_user("bob")
    mallory = make_user("mallory")
    with db_session.begin():
        db_session.add(Conversation(user_a_id=min(alice, bob), user_b_id=max(alice, bob)))
    conversation_id = db_session.scalar(select(Conversation.id))

    with pytest.raises(NotParticipantError):
        service.get_messages(db_session, mallory, conversation_id)


@pytest.mark.anyio("asyncio")
async def test_delete_survives_missing_media_file(service, media_storage, realtime, db_session, make_user) -> None:
    alice = make_user("alice")
    bob = make_user("bob")
    sent = await service.send_message(db_session, alice, bob, "", media=_upload(b"\x89PNG data"))
    media_storage.resolve_path(media_storage.relative_path_for(sent.media_url)).unlink()
    _, bob_socket = await realtime.connect(bob)

    await service.delete_message(db_session, sent.id, alice)

    db_session.expire_all()
    assert db_session.get(Message, sent.id) is None
    assert bob_socket.events("messageDeleted") == [
        {"type": "messageDeleted", "data": {"conversationId": sent.conversation_id, "messageId": sent.id}}
    ]
