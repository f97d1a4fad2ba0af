"""Websocket connections held by this process."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any

from fastapi.websockets import WebSocket, WebSocketDisconnect, WebSocketState

from app.monitoring.metrics import realtime_connections

logger = logging.getLogger(__name__)


async def safe_send_json(websocket: WebSocket, data: dict[str, Any]) -> bool:
    """Send JSON through a websocket, returning ``False`` if it is gone."""

    if websocket.application_state != WebSocketState.CONNECTED:
        return False
    try:
        await websocket.send_json(data)
        return True
    except (WebSocketDisconnect, RuntimeError) as exc:
        logger.debug("Failed to send websocket message: %s", exc)
        return False


def build_frame(event: str, payload: dict[str, Any]) -> dict[str, Any]:
    return {"type": event, "data": payload}


@dataclass(slots=True)
class LocalConnection:
    connection_id: str
    user_id: int
    websocket: WebSocket


class ConnectionHub:
    """Tracks live websockets on this node, keyed by connection id."""

    def __init__(self) -> None:
        self._connections: dict[str, LocalConnection] = {}
        self._lock = asyncio.Lock()

    async def add(self, connection_id: str, user_id: int, websocket: WebSocket) -> None:
        async with self._lock:
            self._connections[connection_id] = LocalConnection(connection_id, user_id, websocket)
            realtime_connections.labels().set(len(self._connections))

    async def remove(self, connection_id: str) -> LocalConnection | None:
        async with self._lock:
            connection = self._connections.pop(connection_id, None)
            realtime_connections.labels().set(len(self._connections))
        return connection

    async def get(self, connection_id: str) -> LocalConnection | None:
        async with self._lock:
            return self._connections.get(connection_id)

    def __len__(self) -> int:
        return len(self._connections)

    async def push(self, connection_id: str, event: str, payload: dict[str, Any]) -> bool:
        connection = await self.get(connection_id)
        if connection is None:
            return False
        return await safe_send_json(connection.websocket, build_frame(event, payload))


__all__ = ["ConnectionHub", "LocalConnection", "build_frame", "safe_send_json"]
