from __future__ import annotations

from typing import Sequence

import pytest

from app.services.notifier import RecordingNotifier
from murmur.calls.manager import CallOutcome, CallSignalManager, InvalidCallError
from murmur.calls.signaling import (
    CallState,
    InvalidTransitionError,
    active_call_key,
    advance,
    call_id,
    in_call_key,
    normalise_candidate,
    pending_call_key,
)
from murmur.realtime.delivery import DeliveryRouter
from murmur.realtime.managers import RealtimeLifecycle
from murmur.realtime.presence import ConnectionDescriptor
from murmur.realtime.store import InMemoryKeyValueStore


class FlagRecorder:
    def __init__(self) -> None:
        self.calls: list[tuple[tuple[int, ...], bool]] = []

    async def __call__(self, user_ids: Sequence[int], value: bool) -> None:
        self.calls.append((tuple(user_ids), value))


async def failing_flag_writer(user_ids: Sequence[int], value: bool) -> None:
    raise RuntimeError("database is locked")


class SilentRelay:
    """Relay whose owning node has no reader left."""

    def __init__(self) -> None:
        self.published: list[str] = []

    async def publish(self, topic: str, payload: dict) -> int:
        self.published.append(topic)
        return 0


@pytest.fixture()
def calls(realtime):
    notifier = RecordingNotifier()
    flags = FlagRecorder()
    manager = CallSignalManager(realtime.store, realtime.router, notifier=notifier, in_call_writer=flags)
    realtime.lifecycle = RealtimeLifecycle(realtime.hub, realtime.presence, node_id="node-a", calls=manager)
    realtime.notifier = notifier
    realtime.flags = flags
    return manager


def test_call_id_is_order_independent() -> None:
    assert call_id(9, 2) == call_id(2, 9) == "2:9"
    assert active_call_key(9, 2) == "activeCall:2:9"
    assert pending_call_key(4) == "pendingCall:4"
    assert in_call_key(4) == "inCall:4"


def test_transitions_follow_the_state_machine() -> None:
    assert advance(CallState.INITIATED, CallState.ACTIVE) is CallState.ACTIVE
    assert advance(CallState.PENDING, CallState.EXPIRED) is CallState.EXPIRED
    assert advance(CallState.ACTIVE, CallState.ENDED) is CallState.ENDED

    with pytest.raises(InvalidTransitionError):
        advance(CallState.ACTIVE, CallState.PENDING)
    with pytest.raises(InvalidTransitionError):
        advance(CallState.ENDED, CallState.ACTIVE)


def test_normalise_candidate() -> None:
    assert normalise_candidate("candidate:1") == {"candidate": "candidate:1"}
    assert normalise_candidate({"candidate": "c", "sdpMid": "0"}) == {"candidate": "c", "sdpMid": "0"}
    assert normalise_candidate({"candidate": None}) is None
    assert normalise_candidate(42) is None


@pytest.mark.anyio("asyncio")
async def test_calling_yourself_is_rejected(calls) -> None:
    with pytest.raises(InvalidCallError):
        await calls.start_call(1, 1)


@pytest.mark.anyio("asyncio")
async def test_online_callee_rings(realtime, calls) -> None:
    _, callee_socket = await realtime.connect(2)

    outcome = await calls.start_call(1, 2, caller_name="Ann", signal={"sdp": "offer"})

    assert outcome is CallOutcome.RINGING
    assert callee_socket.events("callUser") == [
        {"type": "callUser", "data": {"callId": "1:2", "from": 1, "name": "Ann", "signal": {"sdp": "offer"}}}
    ]
    active = await calls.get_active_call(2, 1)
    assert active is not None and active.state is CallState.INITIATED
    assert realtime.notifier.sent == []


@pytest.mark.anyio("asyncio")
async def test_offline_callee_gets_pending_call_and_push(realtime, calls) -> None:
    outcome = await calls.start_call(1, 2, caller_name="Ann", signal={"sdp": "offer"})

    assert outcome is CallOutcome.PENDING
    pending = await calls.get_pending_call(2)
    assert pending is not None and pending.caller_id == 1
    assert await calls.get_active_call(1, 2) is None
    assert [push.title for push in realtime.notifier.sent] == ["Incoming call"]
    assert (await calls.describe(1, 2))["state"] == "pending"


@pytest.mark.anyio("asyncio")
async def test_pending_call_rings_on_reconnect_and_can_be_answered(realtime, calls) -> None:
    _, caller_socket = await realtime.connect(1)
    await calls.start_call(1, 2, caller_name="Ann", signal={"sdp": "offer"})

    _, callee_socket = await realtime.connect(2)
    assert callee_socket.events("callUser")[0]["data"]["signal"] == {"sdp": "offer"}

    answered = await calls.answer_call(2, 1, signal={"sdp": "answer"})

    assert answered is not None and answered.state is CallState.ACTIVE
    assert await calls.get_pending_call(2) is None
    assert await calls.is_busy(1) and await calls.is_busy(2)
    assert realtime.flags.calls == [((1, 2), True)]
    assert caller_socket.events("callAccepted") == [
        {"type": "callAccepted", "data": {"callId": "1:2", "from": 2, "signal": {"sdp": "answer"}}}
    ]


@pytest.mark.anyio("asyncio")
async def test_busy_callee_rejects_new_caller(realtime, calls) -> None:
    await realtime.connect(2)
    _, third_socket = await realtime.connect(3)
    await calls.start_call(1, 2)
    await calls.answer_call(2, 1)

    outcome = await calls.start_call(3, 2)

    assert outcome is CallOutcome.BUSY
    assert third_socket.events("callBusy") == [{"type": "callBusy", "data": {"to": 2, "callId": "2:3"}}]


@pytest.mark.anyio("asyncio")
async def test_answer_without_call_is_ignored(calls) -> None:
    assert await calls.answer_call(2, 1) is None


@pytest.mark.anyio("asyncio")
async def test_cancel_from_either_side_clears_all_state(realtime, calls) -> None:
    _, caller_socket = await realtime.connect(1)
    _, callee_socket = await realtime.connect(2)
    await calls.start_call(1, 2)
    await calls.answer_call(2, 1)

    result = await calls.cancel_call(2, 1)

    assert result.call_id == "1:2"
    assert result.had_active_call is True
    assert sorted(result.notified) == [1, 2]
    assert await calls.get_active_call(1, 2) is None
    assert not await calls.is_busy(1)
    assert not await calls.is_busy(2)
    assert caller_socket.events("CallCanceled") == [{"type": "CallCanceled", "data": {"callId": "1:2", "from": 2}}]
    assert len(callee_socket.events("CallCanceled")) == 1
    assert realtime.flags.calls[-1] == ((2, 1), False)
    assert [push.title for push in realtime.notifier.sent] == ["Call ended"]


@pytest.mark.anyio("asyncio")
async def test_cancel_clears_pending_call(realtime, calls) -> None:
    await calls.start_call(1, 2)

    result = await calls.cancel_call(1, 2)

    assert result.had_pending_call is True
    assert result.had_active_call is False
    assert await calls.get_pending_call(2) is None
    assert await calls.describe(1, 2) is None


@pytest.mark.anyio("asyncio")
async def test_ice_candidates_are_relayed(realtime, calls) -> None:
    _, peer_socket = await realtime.connect(2)

    assert await calls.relay_ice_candidate(1, 2, {"candidate": "c1", "sdpMLineIndex": 0}) is True
    assert await calls.relay_ice_candidate(1, 2, {"candidate": None}) is False

    assert peer_socket.events("iceCandidate") == [
        {
            "type": "iceCandidate",
            "data": {"callId": "1:2", "from": 1, "candidate": {"candidate": "c1", "sdpMLineIndex": 0}},
        }
    ]


@pytest.mark.anyio("asyncio")
async def test_ring_expires_with_its_ttl(realtime) -> None:
    clock = {"now": 0.0}
    store = InMemoryKeyValueStore(clock=lambda: clock["now"])
    manager = CallSignalManager(store, realtime.router, ring_ttl_seconds=60, pending_ttl_seconds=60)

    await manager.start_call(1, 2)
    clock["now"] += 61

    assert await manager.get_pending_call(2) is None


@pytest.mark.anyio("asyncio")
async def test_cancel_clears_pending_call_from_another_caller(realtime, calls) -> None:
    await calls.start_call(3, 2, caller_name="Cy")

    result = await calls.cancel_call(1, 2)

    assert result.had_pending_call is True
    assert await calls.get_pending_call(2) is None


@pytest.mark.anyio("asyncio")
async def test_cancel_survives_in_call_flag_failure(realtime) -> None:
    manager = CallSignalManager(realtime.store, realtime.router, in_call_writer=failing_flag_writer)
    realtime.lifecycle = RealtimeLifecycle(realtime.hub, realtime.presence, node_id="node-a", calls=manager)
    _, caller_socket = await realtime.connect(1)
    _, callee_socket = await realtime.connect(2)
    await manager.start_call(1, 2)
    assert await manager.answer_call(2, 1) is not None

    result = await manager.cancel_call(1, 2)

    assert result.had_active_call is True
    assert len(caller_socket.events("CallCanceled")) == 1
    assert len(callee_socket.events("CallCanceled")) == 1
    assert not await manager.is_busy(2)


@pytest.mark.anyio("asyncio")
async def test_callee_on_unreachable_node_gets_pending_call(realtime) -> None:
    relay = SilentRelay()
    router = DeliveryRouter(realtime.presence, realtime.hub, node_id="node-a", transport=relay)  # type: ignore[arg-type]
    notifier = RecordingNotifier()
    manager = CallSignalManager(realtime.store, router, notifier=notifier)
    await realtime.presence.register(ConnectionDescriptor.create(7, "conn-b", "node-b"))

    outcome = await manager.start_call(1, 7, caller_name="Ann")

    assert outcome is CallOutcome.PENDING
    assert relay.published == ["deliver.node-b"]
    assert await manager.get_active_call(1, 7) is None
    pending = await manager.get_pending_call(7)
    assert pending is not None and pending.caller_id == 1
    assert [push.title for push in notifier.sent] == ["Incoming call"]
