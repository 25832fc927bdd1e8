"""
Orchestrator: keeping a watched order's status current.

- PaymentStatusTracker: per-order composition of resolve, realtime, poll and repair
- PollScheduler: interval re-resolution until paid
- RealtimeListener: per-order change subscriptions
- TrackerStateMachine: validated idle/resolving/reconciling/polling/closed lifecycle
"""

from payrecon.orchestrator.poll_scheduler import PollScheduler, PollSchedulerConfig
from payrecon.orchestrator.realtime_listener import OrderSubscription, RealtimeListener
from payrecon.orchestrator.state_machine import (
    VALID_TRANSITIONS,
    StateTransition,
    TrackerState,
    TrackerStateMachine,
)
from payrecon.orchestrator.status_tracker import PaymentStatusTracker, TrackerOptions

__all__ = [
    "PollScheduler",
    "PollSchedulerConfig",
    "OrderSubscription",
    "RealtimeListener",
    "VALID_TRANSITIONS",
    "StateTransition",
    "TrackerState",
    "TrackerStateMachine",
    "PaymentStatusTracker",
    "TrackerOptions",
]
