from __future__ import annotations

import pytest

from app.core.storage import MediaStorage
from app.models import Conversation, Message
from app.services.conversations import ConversationService
from app.services.errors import NotFoundError, NotParticipantError, ValidationFailedError
from app.services.reactions import ReactionService


@pytest.fixture()
def services(realtime, tmp_path):
    storage = MediaStorage(tmp_path, base_url="/api/media", max_upload_size=1024)
    return ConversationService(realtime.router, storage=storage), ReactionService(realtime.router)


@pytest.mark.anyio("asyncio")
async def test_toggle_adds_replaces_and_removes(services, realtime, db_session, make_user) -> None:
    conversations, reactions = services
    alice = make_user("alice")
    bob = make_user("bob")
    message = await conversations.send_message(db_session, alice, bob, "hi")
    _, alice_socket = await realtime.connect(alice)

    added = await reactions.toggle_reaction(db_session, message.id, bob, "👍")
    assert added.action == "added"
    assert [(item.user_id, item.emoji) for item in added.reactions] == [(bob, "👍")]

    replaced = await reactions.toggle_reaction(db_session, message.id, bob, "❤️")
    assert replaced.action == "replaced"
    assert [(item.user_id, item.emoji) for item in replaced.reactions] == [(bob, "❤️")]

    removed = await reactions.toggle_reaction(db_session, message.id, bob, "❤️")
    assert removed.action == "removed"
    assert removed.reactions == []

    updates = alice_socket.events("messageReactionUpdated")
    assert len(updates) == 3
    assert updates[0]["data"] == {"conversationId": message.conversation_id, "messageId": message.id}


@pytest.mark.anyio("asyncio")
async def test_each_user_keeps_one_reaction(services, db_session, make_user) -> None:
    conversations, reactions = services
    alice = make_user("alice")
    bob = make_user("bob")
    message = await conversations.send_message(db_session, alice, bob, "hi")

    await reactions.toggle_reaction(db_session, message.id, alice, "😂")
    result = await reactions.toggle_reaction(db_session, message.id, bob, "😂")

    assert sorted(item.user_id for item in result.reactions) == sorted([alice, bob])


@pytest.mark.anyio("asyncio")
async def test_toggle_rejects_outsiders_and_bad_input(services, db_session, make_user) -> None:
    conversations, reactions = services
    alice = make_user("alice")
    bob = make_user("bob")
    mallory = make_user("mallory")
    message = await conversations.send_message(db_session, alice, bob, "hi")

    with pytest.raises(NotParticipantError):
        await reactions.toggle_reaction(db_session, message.id, mallory, "👍")
    with pytest.raises(NotFoundError):
        await reactions.toggle_reaction(db_session, 9999, bob, "👍")
    with pytest.raises(ValidationFailedError):
        await reactions.toggle_reaction(db_session, message.id, bob, "   ")


@pytest.mark.anyio("asyncio")
async def test_mark_seen_updates_messages_summary_and_counters(
    services, realtime, db_session, make_user
) -> None:
    conversations, reactions = services
    alice = make_user("alice")
    bob = make_user("bob")
    await conversations.send_message(db_session, alice, bob, "one")
    sent = await conversations.send_message(db_session, alice, bob, "two")
    await conversations.send_message(db_session, bob, alice, "reply")
    _, alice_socket = await realtime.connect(alice)
    _, bob_socket = await realtime.connect(bob)

    updated = await reactions.mark_seen(db_session, sent.conversation_id, bob)

    assert updated == 2
    db_session.expire_all()
    seen_flags = {
        message.text: message.seen
        for message in db_session.query(Message).filter_by(conversation_id=sent.conversation_id)
    }
    assert seen_flags == {"one": True, "two": True, "reply": False}
    # The summary points at bob's own reply, which stays unseen.
    assert db_session.get(Conversation, sent.conversation_id).last_message_seen is False
    assert alice_socket.events("messagesSeen") == [
        {"type": "messagesSeen", "data": {"conversationId": sent.conversation_id}}
    ]
    assert bob_socket.events("unreadCountUpdate") == [{"type": "unreadCountUpdate", "data": {"totalUnread": 0}}]

    assert await reactions.mark_seen(db_session, sent.conversation_id, bob) == 0
    assert len(alice_socket.events("messagesSeen")) == 1


@pytest.mark.anyio("asyncio")
async def test_mark_seen_requires_participant(services, db_session, make_user) -> None:
    conversations, reactions = services
    alice = make_user("alice")
    bob = make_user("bob")
    mallory = make_user("mallory")
    sent = await conversations.send_message(db_session, alice, bob, "one")

    with pytest.raises(NotParticipantError):
        await reactions.mark_seen(db_session, sent.conversation_id, mallory)
