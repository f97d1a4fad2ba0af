"""HTTP endpoints for call signaling."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, status

from app.api.deps import get_calls, get_current_user
from app.models import User
from app.schemas import CallCancelRead, CallCancelRequest, CallStateRead
from murmur.calls.manager import CallSignalManager

router = APIRouter(prefix="/calls", tags=["calls"])


@router.post("/cancel", response_model=CallCancelRead)
async def cancel_call(
    payload: CallCancelRequest,
    current_user: User = Depends(get_current_user),
    calls: CallSignalManager = Depends(get_calls),
) -> CallCancelRead:
    """Hang up from a client that may no longer hold a websocket."""

    result = await calls.cancel_call(current_user.id, payload.peer_id)
    return CallCancelRead(
        call_id=result.call_id,
        had_active_call=result.had_active_call,
        had_pending_call=result.had_pending_call,
        notified=result.notified,
    )


@router.get("/{peer_id}", response_model=CallStateRead)
async def get_call(
    peer_id: int,
    current_user: User = Depends(get_current_user),
    calls: CallSignalManager = Depends(get_calls),
) -> CallStateRead:
    state = await calls.describe(current_user.id, peer_id)
    if state is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No call in progress")
    return CallStateRead(
        call_id=state["callId"],
        caller_id=state["callerId"],
        callee_id=state["calleeId"],
        state=state["state"],
        created_at=state["createdAt"],
    )
