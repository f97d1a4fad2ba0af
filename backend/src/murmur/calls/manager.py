"""Call signaling manager.

Ringing, answering and cancelling one-to-one calls. Call state lives in the
shared store under TTL-bounded keys so every process sees the same call and a
crashed client cannot leave a call behind forever.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Sequence

from app.monitoring.metrics import call_transitions_total, presence_store_errors_total
from app.services.notifier import Notifier, NoopNotifier, PushNotification, dispatch_push

from ..realtime.delivery import DeliveryRouter
from ..realtime.store import KeyValueStore, StoreUnavailableError
from .signaling import (
    ActiveCall,
    CallState,
    PendingCall,
    active_call_key,
    advance,
    call_id,
    in_call_key,
    normalise_candidate,
    pending_call_key,
    ring_payload,
)

logger = logging.getLogger(__name__)

InCallWriter = Callable[[Sequence[int], bool], Awaitable[None]]


class CallOutcome(str, Enum):
    RINGING = "ringing"
    PENDING = "pending"
    BUSY = "busy"


class InvalidCallError(ValueError):
    """Raised for calls a user cannot place (e.g. to themselves)."""


@dataclass(slots=True)
class CallCancelResult:
    call_id: str
    had_active_call: bool
    had_pending_call: bool
    notified: list[int] = field(default_factory=list)

    def to_public(self) -> dict[str, Any]:
        return {
            "callId": self.call_id,
            "hadActiveCall": self.had_active_call,
            "hadPendingCall": self.had_pending_call,
            "notified": list(self.notified),
        }


class CallSignalManager:
    def __init__(
        self,
        store: KeyValueStore,
        router: DeliveryRouter,
        *,
        notifier: Notifier | None = None,
        in_call_writer: InCallWriter | None = None,
        ring_ttl_seconds: int = 60,
        active_ttl_seconds: int = 4 * 60 * 60,
        pending_ttl_seconds: int = 60,
    ) -> None:
        self._store = store
        self._router = router
        self._notifier: Notifier = notifier or NoopNotifier()
        self._in_call_writer = in_call_writer
        self._ring_ttl = ring_ttl_seconds
        self._active_ttl = active_ttl_seconds
        self._pending_ttl = pending_ttl_seconds

    @property
    def notifier(self) -> Notifier:
        return self._notifier

    @notifier.setter
    def notifier(self, value: Notifier) -> None:
        self._notifier = value

    # ------------------------------------------------------------------
    # Store helpers; failures degrade to "no call" rather than raising
    # ------------------------------------------------------------------
    async def _read(self, key: str) -> str | None:
        try:
            return await self._store.get(key)
        except StoreUnavailableError:
            presence_store_errors_total.labels("call_read").inc()
            logger.warning("Call state read failed", extra={"key": key}, exc_info=logger.isEnabledFor(logging.DEBUG))
            return None

    async def _write(self, key: str, value: str, ttl: int) -> None:
        try:
            await self._store.set(key, value, ttl_seconds=ttl)
        except StoreUnavailableError:
            presence_store_errors_total.labels("call_write").inc()
            logger.warning("Call state write dropped", extra={"key": key}, exc_info=logger.isEnabledFor(logging.DEBUG))

    async def _delete(self, *keys: str) -> int:
        try:
            return await self._store.delete(*keys)
        except StoreUnavailableError:
            presence_store_errors_total.labels("call_delete").inc()
            logger.warning("Call state delete dropped", extra={"keys": keys}, exc_info=logger.isEnabledFor(logging.DEBUG))
            return 0

    async def _write_in_call_flags(self, user_ids: Sequence[int], value: bool) -> None:
        if self._in_call_writer is None:
            return
        try:
            await self._in_call_writer(user_ids, value)
        except Exception:
            logger.warning(
                "Failed to persist in-call flag",
                extra={"user_ids": list(user_ids), "value": value},
                exc_info=True,
            )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    async def is_busy(self, user_id: int) -> bool:
        return await self._read(in_call_key(user_id)) is not None

    async def get_active_call(self, first_user_id: int, second_user_id: int) -> ActiveCall | None:
        return ActiveCall.loads(await self._read(active_call_key(first_user_id, second_user_id)))

    async def get_pending_call(self, callee_id: int) -> PendingCall | None:
        return PendingCall.loads(await self._read(pending_call_key(callee_id)))

    async def describe(self, user_id: int, peer_id: int) -> dict[str, Any] | None:
        """Current call between two users, from either side."""

        active = await self.get_active_call(user_id, peer_id)
        if active is not None:
            return {
                "callId": active.call_id,
                "callerId": active.caller_id,
                "calleeId": active.callee_id,
                "state": active.state.value,
                "createdAt": active.created_at,
            }
        for callee_id, caller_id in ((user_id, peer_id), (peer_id, user_id)):
            pending = await self.get_pending_call(callee_id)
            if pending is not None and pending.caller_id == caller_id:
                return {
                    "callId": call_id(caller_id, callee_id),
                    "callerId": caller_id,
                    "calleeId": callee_id,
                    "state": CallState.PENDING.value,
                    "createdAt": pending.created_at,
                }
        return None

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------
    async def start_call(
        self,
        caller_id: int,
        callee_id: int,
        *,
        caller_name: str = "",
        signal: Any = None,
    ) -> CallOutcome:
        if caller_id == callee_id:
            raise InvalidCallError("Users cannot call themselves")

        if await self.is_busy(callee_id):
            await self._router.deliver(caller_id, "callBusy", {"to": callee_id, "callId": call_id(caller_id, callee_id)})
            call_transitions_total.labels("busy").inc()
            logger.info("Call rejected; callee busy", extra={"caller_id": caller_id, "callee_id": callee_id})
            return CallOutcome.BUSY

        call = ActiveCall(caller_id=caller_id, callee_id=callee_id, caller_name=caller_name, signal=signal)
        if await self._router.registry.is_online(callee_id):
            await self._write(active_call_key(caller_id, callee_id), call.dumps(), self._ring_ttl)
            if await self._router.deliver(callee_id, "callUser", ring_payload(call)):
                call_transitions_total.labels(CallState.INITIATED.value).inc()
                return CallOutcome.RINGING
            # The descriptor was stale; fall back to a pending call.
            await self._delete(active_call_key(caller_id, callee_id))

        call.state = advance(call.state, CallState.PENDING)
        pending = PendingCall(caller_id=caller_id, callee_id=callee_id, caller_name=caller_name, signal=signal)
        await self._write(pending_call_key(callee_id), pending.dumps(), self._pending_ttl)
        call_transitions_total.labels(CallState.PENDING.value).inc()
        await dispatch_push(
            self._notifier,
            PushNotification(
                user_id=callee_id,
                title="Incoming call",
                body=f"{caller_name or 'Someone'} is calling you",
                data={"type": "incomingCall", "callerId": caller_id, "callId": call.call_id},
            ),
        )
        return CallOutcome.PENDING

    async def resume_pending(self, callee_id: int) -> bool:
        """Ring a reconnecting callee whose call is still pending."""

        pending = await self.get_pending_call(callee_id)
        if pending is None:
            return False
        delivered = await self._router.deliver(callee_id, "callUser", ring_payload(pending))
        if delivered:
            logger.info("Re-rang pending call", extra={"caller_id": pending.caller_id, "callee_id": callee_id})
        return delivered

    async def answer_call(self, callee_id: int, caller_id: int, *, signal: Any = None) -> ActiveCall | None:
        active = await self.get_active_call(caller_id, callee_id)
        pending = await self.get_pending_call(callee_id)
        if active is not None and active.callee_id == callee_id:
            active.state = advance(active.state, CallState.ACTIVE)
        elif pending is not None and pending.caller_id == caller_id:
            advance(CallState.PENDING, CallState.ACTIVE)
            active = ActiveCall(
                caller_id=caller_id,
                callee_id=callee_id,
                state=CallState.ACTIVE,
                caller_name=pending.caller_name,
                signal=pending.signal,
            )
        else:
            logger.info("Answer ignored; no call to accept", extra={"caller_id": caller_id, "callee_id": callee_id})
            return None

        await self._write(active_call_key(caller_id, callee_id), active.dumps(), self._active_ttl)
        await self._delete(pending_call_key(callee_id))
        for user_id in (caller_id, callee_id):
            await self._write(in_call_key(user_id), active.call_id, self._active_ttl)
        await self._write_in_call_flags((caller_id, callee_id), True)
        call_transitions_total.labels(CallState.ACTIVE.value).inc()
        await self._router.deliver(
            caller_id,
            "callAccepted",
            {"callId": active.call_id, "from": callee_id, "signal": signal},
        )
        return active

    async def relay_ice_candidate(self, from_id: int, to_id: int, candidate: Any) -> bool:
        normalised = normalise_candidate(candidate)
        if normalised is None:
            logger.debug("Dropped malformed ICE candidate", extra={"from_id": from_id})
            return False
        return await self._router.deliver(
            to_id,
            "iceCandidate",
            {"callId": call_id(from_id, to_id), "from": from_id, "candidate": normalised},
        )

    async def cancel_call(self, caller_id: int, callee_id: int) -> CallCancelResult:
        """Tear down any call between the two users, in either direction."""

        identifier = call_id(caller_id, callee_id)
        active = await self.get_active_call(caller_id, callee_id)
        had_active = await self._delete(active_call_key(caller_id, callee_id)) > 0
        had_pending = await self._delete(pending_call_key(callee_id), pending_call_key(caller_id)) > 0
        await self._delete(in_call_key(caller_id), in_call_key(callee_id))
        if active is not None:
            advance(active.state, CallState.ENDED)

        payload = {"callId": identifier, "from": caller_id}
        notified = [
            user_id
            for user_id in (caller_id, callee_id)
            if await self._router.deliver(user_id, "CallCanceled", payload)
        ]
        await dispatch_push(
            self._notifier,
            PushNotification(
                user_id=callee_id,
                title="Call ended",
                body="The call has ended",
                data={"type": "callEnded", "callId": identifier, "from": caller_id},
            ),
        )
        await self._write_in_call_flags((caller_id, callee_id), False)
        call_transitions_total.labels(CallState.ENDED.value).inc()
        logger.info(
            "Call cancelled",
            extra={"call_id": identifier, "had_active_call": had_active, "had_pending_call": had_pending},
        )
        return CallCancelResult(
            call_id=identifier,
            had_active_call=had_active,
            had_pending_call=had_pending,
            notified=notified,
        )


__all__ = ["CallCancelResult", "CallOutcome", "CallSignalManager", "InvalidCallError"]
