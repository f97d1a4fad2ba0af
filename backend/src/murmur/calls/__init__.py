"""One-to-one call signaling."""

from .manager import CallCancelResult, CallOutcome, CallSignalManager, InvalidCallError
from .signaling import CallState, InvalidTransitionError, advance, call_id

__all__ = [
    "CallCancelResult",
    "CallOutcome",
    "CallSignalManager",
    "CallState",
    "InvalidCallError",
    "InvalidTransitionError",
    "advance",
    "call_id",
]
