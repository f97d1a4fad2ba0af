"""Pure helpers for one-to-one call signaling.

The call manager keeps its state in the shared store; everything that can be
decided without I/O (key derivation, state transitions, payload shaping)
lives here so it can be unit tested in isolation.
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Mapping


class CallState(str, Enum):
    INITIATED = "initiated"
    PENDING = "pending"
    ACTIVE = "active"
    ENDED = "ended"
    EXPIRED = "expired"


# Allowed transitions; ENDED is reachable from any live state via cancel.
TRANSITIONS: Dict[CallState, frozenset[CallState]] = {
    CallState.INITIATED: frozenset({CallState.ACTIVE, CallState.PENDING, CallState.ENDED}),
    CallState.PENDING: frozenset({CallState.ACTIVE, CallState.EXPIRED, CallState.ENDED}),
    CallState.ACTIVE: frozenset({CallState.ENDED}),
    CallState.ENDED: frozenset(),
    CallState.EXPIRED: frozenset(),
}


class InvalidTransitionError(ValueError):
    """Raised when a call is moved to a state it cannot reach."""


def advance(current: CallState, target: CallState) -> CallState:
    """Validate ``current -> target`` and return the new state."""

    if target not in TRANSITIONS[current]:
        raise InvalidTransitionError(f"Cannot move call from {current.value} to {target.value}")
    return target


def call_id(first_user_id: int, second_user_id: int) -> str:
    """Identifier shared by both participants regardless of who called whom."""

    low, high = sorted((int(first_user_id), int(second_user_id)))
    return f"{low}:{high}"


def active_call_key(first_user_id: int, second_user_id: int) -> str:
    return f"activeCall:{call_id(first_user_id, second_user_id)}"


def pending_call_key(callee_id: int) -> str:
    return f"pendingCall:{callee_id}"


def in_call_key(user_id: int) -> str:
    return f"inCall:{user_id}"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(slots=True)
class ActiveCall:
    caller_id: int
    callee_id: int
    state: CallState = CallState.INITIATED
    caller_name: str = ""
    signal: Any = None
    created_at: str = field(default_factory=_now)

    @property
    def call_id(self) -> str:
        return call_id(self.caller_id, self.callee_id)

    def dumps(self) -> str:
        data = asdict(self)
        data["state"] = self.state.value
        data["call_id"] = self.call_id
        return json.dumps(data)

    @classmethod
    def loads(cls, raw: str | None) -> "ActiveCall | None":
        if not raw:
            return None
        try:
            data = json.loads(raw)
            return cls(
                caller_id=int(data["caller_id"]),
                callee_id=int(data["callee_id"]),
                state=CallState(data.get("state", CallState.INITIATED.value)),
                caller_name=str(data.get("caller_name") or ""),
                signal=data.get("signal"),
                created_at=str(data.get("created_at") or _now()),
            )
        except (json.JSONDecodeError, KeyError, TypeError, ValueError):
            return None


@dataclass(slots=True)
class PendingCall:
    caller_id: int
    callee_id: int
    caller_name: str = ""
    signal: Any = None
    created_at: str = field(default_factory=_now)

    def dumps(self) -> str:
        return json.dumps(asdict(self))

    @classmethod
    def loads(cls, raw: str | None) -> "PendingCall | None":
        if not raw:
            return None
        try:
            data = json.loads(raw)
            return cls(
                caller_id=int(data["caller_id"]),
                callee_id=int(data["callee_id"]),
                caller_name=str(data.get("caller_name") or ""),
                signal=data.get("signal"),
                created_at=str(data.get("created_at") or _now()),
            )
        except (json.JSONDecodeError, KeyError, TypeError, ValueError):
            return None


def ring_payload(call: ActiveCall | PendingCall) -> Dict[str, Any]:
    """Body of the ``callUser`` event sent to the callee."""

    return {
        "callId": call_id(call.caller_id, call.callee_id),
        "from": call.caller_id,
        "name": call.caller_name,
        "signal": call.signal,
    }


def normalise_candidate(candidate: Any) -> Dict[str, Any] | None:
    """Return an ICE candidate dictionary or ``None`` if it is unusable."""

    if isinstance(candidate, Mapping):
        if candidate.get("candidate") is None:
            return None
        return dict(candidate)
    if isinstance(candidate, str):
        return {"candidate": candidate}
    return None


__all__ = [
    "ActiveCall",
    "CallState",
    "InvalidTransitionError",
    "PendingCall",
    "TRANSITIONS",
    "active_call_key",
    "advance",
    "call_id",
    "in_call_key",
    "normalise_candidate",
    "pending_call_key",
    "ring_payload",
]
