"""
Tracker State Machine - lifecycle of one watched order.

States:
- IDLE: nothing in flight, no poller (paid, or polling disabled)
- RESOLVING: a resolution is in flight
- RECONCILING: a repair request is in flight
- POLLING: nothing in flight, poller armed
- CLOSED: tracker closed (terminal)

    IDLE ──> RESOLVING ──> POLLING ──> RESOLVING ...
      │          │            │
      └──> RECONCILING <──────┘

    any live state ──> CLOSED (no way back)

Same-state transitions are accepted silently. Invalid transitions are
blocked and logged, never raised.
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

log = logging.getLogger("payrecon")


class TrackerState(str, Enum):
    IDLE = "idle"
    RESOLVING = "resolving"
    RECONCILING = "reconciling"
    POLLING = "polling"
    CLOSED = "closed"


@dataclass
class StateTransition:
    """Record of a state transition."""
    from_state: TrackerState
    to_state: TrackerState
    timestamp_ms: int
    reason: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


VALID_TRANSITIONS: Dict[TrackerState, List[TrackerState]] = {
    TrackerState.IDLE: [
        TrackerState.RESOLVING,
        TrackerState.POLLING,       # Poller armed after the initial resolution
        TrackerState.RECONCILING,   # Manual repair with no resolution in flight
        TrackerState.CLOSED,
    ],
    TrackerState.RESOLVING: [
        TrackerState.RECONCILING,   # Drift detected
        TrackerState.POLLING,       # Unpaid, poller armed
        TrackerState.IDLE,          # Paid, or polling disabled
        TrackerState.CLOSED,
    ],
    TrackerState.RECONCILING: [
        TrackerState.RESOLVING,     # Re-resolution after repair
        TrackerState.POLLING,
        TrackerState.IDLE,
        TrackerState.CLOSED,
    ],
    TrackerState.POLLING: [
        TrackerState.RESOLVING,     # Tick, realtime event or refresh
        TrackerState.RECONCILING,
        TrackerState.IDLE,          # Teardown
        TrackerState.CLOSED,
    ],
    # Terminal
    TrackerState.CLOSED: [],
}


class TrackerStateMachine:
    """
    Validated state holder with an audit trail.

    Thread-safety: single asyncio loop only.
    """

    MAX_TRANSITIONS = 200

    def __init__(
        self,
        log_event: Optional[Callable[..., None]] = None,
        on_state_change: Optional[Callable[[TrackerState, TrackerState], None]] = None,
    ) -> None:
        self._log_event = log_event or self._default_log
        self._on_state_change = on_state_change
        self.state = TrackerState.IDLE
        self.transitions: List[StateTransition] = []
        self._stats = {
            "total_transitions": 0,
            "invalid_transitions_blocked": 0,
        }

    def _default_log(self, event: str, **kwargs: Any) -> None:
        log.info(json.dumps({"event": event, **kwargs}))

    def can_transition(self, to_state: TrackerState) -> bool:
        return to_state == self.state or to_state in VALID_TRANSITIONS[self.state]

    def transition(self, to_state: TrackerState, reason: Optional[str] = None, **metadata: Any) -> bool:
        """
        Move to to_state if allowed.

        Returns:
            True if the machine is now in to_state
        """
        from_state = self.state
        if to_state == from_state:
            return True

        if to_state not in VALID_TRANSITIONS[from_state]:
            self._stats["invalid_transitions_blocked"] += 1
            self._log_event(
                "invalid_state_transition",
                from_state=from_state.value,
                to_state=to_state.value,
                reason=reason,
            )
            return False

        self.state = to_state
        self.transitions.append(StateTransition(
            from_state=from_state,
            to_state=to_state,
            timestamp_ms=int(time.time() * 1000),
            reason=reason,
            metadata=metadata,
        ))
        if len(self.transitions) > self.MAX_TRANSITIONS:
            self.transitions.pop(0)
        self._stats["total_transitions"] += 1

        self._log_event("state_transition", from_state=from_state.value, to_state=to_state.value, reason=reason)

        if self._on_state_change:
            try:
                self._on_state_change(from_state, to_state)
            except Exception as e:
                self._log_event("state_change_callback_error", error=str(e))
        return True

    def reset(self, reason: str = "reset") -> None:
        if self.state not in (TrackerState.IDLE, TrackerState.CLOSED):
            self.transition(TrackerState.IDLE, reason=reason)

    def get_stats(self) -> Dict[str, Any]:
        return {**self._stats, "state": self.state.value}
