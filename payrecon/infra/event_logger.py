"""
EventLogger: structured event logging with per-event levels.

Every component takes an optional ``log_event(event, **data)`` callback;
EventLogger.log is the production one. Event names map onto levels:

- ERROR: a whole operation failed and the caller sees a degraded result
- WARNING: recoverable trouble (fallback taken, repair failed, drift found)
- INFO: lifecycle (order resolved, reconcile done, tracker started)
- DEBUG: high-frequency (poll ticks, realtime events, subscriptions)
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Set

log = logging.getLogger("payrecon")


@dataclass
class EventLoggerConfig:
    throttle_window_sec: float = 60.0
    debug_enabled: bool = False


class EventLogger:

    ERROR_EVENTS: Set[str] = {
        "fallback_failed", "bulk_reconcile_failed", "health_check_failed",
        "manual_reconcile_failed", "batch_aggregate_failed", "resolve_unexpected_error",
    }

    WARNING_EVENTS: Set[str] = {
        "combined_call_failed", "combined_view_failed", "direct_query_failed",
        "auto_reconcile_failed", "ledger_lookup_failed", "batch_ledger_failed",
        "view_drift", "data_error", "circuit_open", "poll_tick_error",
        "followup_still_inconsistent", "followup_error", "invalid_state_transition",
        "listener_error", "state_change_callback_error", "change_feed_handler_error",
    }

    DEBUG_EVENTS: Set[str] = {
        "poll_tick", "realtime_event", "change_feed_subscribe", "change_feed_unsubscribe",
        "combined_call_skipped", "state_transition", "stale_result_discarded",
    }

    # Events to throttle (only logged once per window per order)
    THROTTLE_EVENTS: Set[str] = {
        "combined_call_skipped", "poll_tick_error",
    }

    def __init__(self, config: Optional[EventLoggerConfig] = None) -> None:
        self.config = config or EventLoggerConfig()
        self._throttle_times: Dict[str, float] = {}

    def level_for(self, event: str) -> int:
        if event in self.ERROR_EVENTS:
            return logging.ERROR
        if event in self.WARNING_EVENTS:
            return logging.WARNING
        if event in self.DEBUG_EVENTS:
            return logging.DEBUG
        return logging.INFO

    def log(self, event: str, **data: Any) -> None:
        level = self.level_for(event)

        throttled = event in self.THROTTLE_EVENTS
        if throttled and not self._admit(f"{event}:{data.get('order_id', '')}"):
            return

        if level == logging.DEBUG and not self.config.debug_enabled:
            return

        # Already throttled here; console ThrottledFilter lets it through
        log.log(level, json.dumps({"event": event, **data}, default=str), extra={"throttled": throttled})

    def _admit(self, key: str) -> bool:
        now = time.monotonic()
        window = self.config.throttle_window_sec
        last = self._throttle_times.get(key)
        if last is not None and now - last < window:
            return False
        self._throttle_times = {k: t for k, t in self._throttle_times.items() if now - t < window}
        self._throttle_times[key] = now
        return True

    def get_callback(self) -> Callable[..., None]:
        return self.log
