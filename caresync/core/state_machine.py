"""
CareSync — Call State Machine

Enforces the lifecycle: PREVIEW → CONNECTING → IN_CALL → ENDING → CLOSED.
All state transitions go through this module so illegitimate states
are impossible and every transition is logged.

CLOSED is terminal: once there, every transition request is a no-op.
"""

from __future__ import annotations

import logging
import time
from enum import Enum
from typing import Callable, Dict, List, Optional, Set

from .errors import IllegalTransition

logger = logging.getLogger("caresync.state")


class CallState(str, Enum):
    """Strict call lifecycle states."""
    PREVIEW = "preview"          # Device checks, nothing joined yet
    CONNECTING = "connecting"    # Engine initialised, waiting for joined
    IN_CALL = "in_call"          # Conference joined
    ENDING = "ending"            # Call over, collecting feedback
    CLOSED = "closed"            # Terminal


# Legal state transitions
_TRANSITIONS: Dict[CallState, Set[CallState]] = {
    CallState.PREVIEW:    {CallState.CONNECTING},
    CallState.CONNECTING: {CallState.IN_CALL, CallState.ENDING},
    CallState.IN_CALL:    {CallState.ENDING},
    CallState.ENDING:     {CallState.CLOSED},
    CallState.CLOSED:     set(),
}


class CallStateMachine:
    """
    Enforces legal state transitions and notifies listeners.

    Usage:
        sm = CallStateMachine(on_transition=my_callback)
        sm.transition(CallState.CONNECTING)   # OK
        sm.transition(CallState.CLOSED)       # illegal from CONNECTING → raises
    """

    def __init__(
        self,
        session_id: str = "",
        on_transition: Optional[Callable[[CallState, CallState, str], None]] = None,
    ) -> None:
        self._session_id = session_id
        self._state = CallState.PREVIEW
        self._on_transition = on_transition
        self._history: List[Dict] = []
        self._entered_at = time.time()
        self.started_at: Optional[float] = None
        self.ended_at: Optional[float] = None

    @property
    def state(self) -> CallState:
        return self._state

    @property
    def is_closed(self) -> bool:
        return self._state == CallState.CLOSED

    @property
    def history(self) -> List[Dict]:
        return list(self._history)

    def can_transition(self, target: CallState) -> bool:
        return target in _TRANSITIONS[self._state]

    def transition(self, target: CallState, reason: str = "") -> bool:
        """
        Attempt a state transition. Returns True if the state changed.

        Same-state requests and anything after CLOSED are no-ops.
        Raises IllegalTransition on transitions outside the table.
        """
        if target == self._state or self._state == CallState.CLOSED:
            return False

        allowed = _TRANSITIONS[self._state]
        if target not in allowed:
            raise IllegalTransition(
                f"Illegal state transition: {self._state.value} → {target.value}. "
                f"Allowed from {self._state.value}: {[s.value for s in allowed]}. "
                f"Reason: {reason}"
            )

        prev = self._state
        now = time.time()
        self._history.append({
            "from": prev.value,
            "to": target.value,
            "reason": reason,
            "timestamp": now,
            "duration_in_prev_ms": round((now - self._entered_at) * 1000, 1),
        })
        self._state = target
        self._entered_at = now

        if target == CallState.IN_CALL:
            self.started_at = now
        elif target == CallState.ENDING:
            self.ended_at = now

        logger.info(
            f"[{self._session_id}] STATE: {prev.value} → {target.value}"
            + (f" ({reason})" if reason else "")
        )

        if self._on_transition:
            try:
                self._on_transition(prev, target, reason)
            except Exception as e:
                logger.error(f"[{self._session_id}] State transition callback error: {e}")

        return True

    def to_dict(self) -> Dict:
        return {
            "state": self._state.value,
            "started_at": self.started_at,
            "ended_at": self.ended_at,
            "history": self.history,
        }
