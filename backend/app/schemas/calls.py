"""Schemas for the call signaling endpoints."""

from __future__ import annotations

from pydantic import BaseModel, Field


class CallCancelRequest(BaseModel):
    peer_id: int = Field(..., ge=1, description="The other participant of the call")


class CallCancelRead(BaseModel):
    call_id: str
    had_active_call: bool
    had_pending_call: bool
    notified: list[int] = []


class CallStateRead(BaseModel):
    call_id: str
    caller_id: int
    callee_id: int
    state: str
    created_at: str
