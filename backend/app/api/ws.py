"""WebSocket endpoint carrying realtime events and call signaling."""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from typing import Any, Dict, TypeVar

from fastapi import APIRouter, WebSocket, status
from fastapi.exceptions import HTTPException
from fastapi.websockets import WebSocketDisconnect, WebSocketState

from app.api.deps import get_reaction_service, get_user_from_token
from app.config import get_settings
from app.database import get_db_session
from app.models import User
from app.services.errors import ServiceError
from app.services.users import display_name
from murmur.calls.manager import InvalidCallError
from murmur.calls.signaling import InvalidTransitionError
from murmur.realtime.connections import safe_send_json
from murmur.realtime.managers import get_call_manager, on_connect, on_disconnect

router = APIRouter(tags=["ws"])

settings = get_settings()

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def iter_keepalive_messages(
    websocket: WebSocket,
    receiver: Callable[[], Awaitable[T]],
    *,
    timeout_seconds: float | int | None,
    ping_interval_seconds: float | int | None,
    ping_payload: Dict[str, Any] | None = None,
) -> AsyncIterator[T]:
    """Yield messages from *receiver* while sending keepalive pings when idle."""

    ping_payload = ping_payload or {"type": "ping"}
    timeout = float(timeout_seconds) if timeout_seconds else 0.0
    interval = float(ping_interval_seconds) if ping_interval_seconds else 0.0
    last_activity = time.monotonic()
    last_ping_sent: float | None = None

    while True:
        try:
            if timeout > 0:
                message = await asyncio.wait_for(receiver(), timeout=timeout)
            else:
                message = await receiver()
        except asyncio.TimeoutError:
            if websocket.application_state != WebSocketState.CONNECTED:
                break

            now = time.monotonic()
            should_ping = interval <= 0 or (
                now - last_activity >= interval
                and (last_ping_sent is None or now - last_ping_sent >= interval)
            )
            if should_ping:
                if not await safe_send_json(websocket, ping_payload):
                    break
                last_ping_sent = now
            continue
        except asyncio.CancelledError:  # pragma: no cover - cooperative cancellation
            raise
        except (RuntimeError, WebSocketDisconnect):
            break
        else:
            last_activity = time.monotonic()
            last_ping_sent = None
            yield message


async def _resolve_user(websocket: WebSocket) -> User | None:
    token = websocket.query_params.get("token")
    if not token:
        auth_header = websocket.headers.get("Authorization")
        if auth_header and auth_header.startswith("Bearer "):
            token = auth_header.removeprefix("Bearer ").strip()
    if not token:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason="Missing token")
        return None

    try:
        with get_db_session() as db:
            user = get_user_from_token(token, db)
            db.expunge(user)
            return user
    except HTTPException:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason="Invalid token")
        return None


async def _send_error(websocket: WebSocket, detail: str) -> None:
    await safe_send_json(websocket, {"type": "error", "data": {"detail": detail}})


def _peer_id(data: dict[str, Any], *keys: str) -> int:
    for key in keys:
        value = data.get(key)
        if value is not None:
            peer = int(value)
            if peer <= 0:
                raise ValueError("peer id must be positive")
            return peer
    raise ValueError(f"missing {keys[0]}")


async def _handle_event(websocket: WebSocket, user_id: int, user_name: str, event: str, data: dict[str, Any]) -> None:
    calls = get_call_manager()

    if event == "ping":
        await safe_send_json(websocket, {"type": "pong"})
    elif event == "pong":
        return
    elif event == "callUser":
        callee_id = _peer_id(data, "userToCall", "to")
        outcome = await calls.start_call(
            user_id,
            callee_id,
            caller_name=str(data.get("name") or user_name),
            signal=data.get("signalData", data.get("signal")),
        )
        await safe_send_json(websocket, {"type": "callStatus", "data": {"to": callee_id, "status": outcome.value}})
    elif event == "answerCall":
        caller_id = _peer_id(data, "to", "callerId")
        accepted = await calls.answer_call(user_id, caller_id, signal=data.get("signal"))
        if accepted is None:
            await _send_error(websocket, "No call to answer")
    elif event == "iceCandidate":
        await calls.relay_ice_candidate(user_id, _peer_id(data, "to"), data.get("candidate"))
    elif event == "cancelCall":
        await calls.cancel_call(user_id, _peer_id(data, "to", "peerId"))
    elif event == "markSeen":
        conversation_id = _peer_id(data, "conversationId")
        with get_db_session() as db:
            await get_reaction_service().mark_seen(db, conversation_id, user_id)
    else:
        await _send_error(websocket, f"Unsupported event '{event}'")


@router.websocket("/ws")
async def websocket_realtime(websocket: WebSocket) -> None:
    """Single realtime channel per user: events out, signaling in."""

    user = await _resolve_user(websocket)
    if user is None:
        return

    await websocket.accept()
    user_id = user.id
    user_name = display_name(user)
    connection_id = await on_connect(user_id, websocket)

    try:
        async for raw in iter_keepalive_messages(
            websocket,
            websocket.receive_text,
            timeout_seconds=settings.websocket_keepalive_timeout_seconds,
            ping_interval_seconds=settings.websocket_keepalive_ping_interval_seconds,
        ):
            try:
                message = json.loads(raw)
            except json.JSONDecodeError:
                await _send_error(websocket, "Invalid JSON payload")
                continue
            if not isinstance(message, dict) or not isinstance(message.get("type"), str):
                await _send_error(websocket, "Invalid message format")
                continue
            data = message.get("data")
            if not isinstance(data, dict):
                data = {}
            try:
                await _handle_event(websocket, user_id, user_name, message["type"], data)
            except (TypeError, ValueError, InvalidCallError, InvalidTransitionError) as exc:
                await _send_error(websocket, str(exc))
            except ServiceError as exc:
                await _send_error(websocket, exc.detail)
    finally:
        await on_disconnect(connection_id)
