"""
CircuitBreaker: skip the combined status call while it keeps failing.

When the remote procedure fails error_threshold times in a row, the breaker
trips and the resolver goes straight to the fallback chain until the cooldown
expires. Repeated trips back off exponentially.

Single-threaded asyncio usage only (no internal locks).
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional

log = logging.getLogger("payrecon")


@dataclass
class CircuitBreakerConfig:
    """Configuration for circuit breaker behavior."""
    error_threshold: int = 5  # Consecutive errors to trip
    cooldown_sec: float = 30.0
    backoff_multiplier: float = 2.0  # Cooldown multiplier on repeated trips
    max_backoff: float = 32.0


class CircuitBreaker:
    """
    Circuit breaker for the combined status procedure.

    is_tripped resets automatically once the cooldown has elapsed.
    """

    def __init__(
        self,
        config: Optional[CircuitBreakerConfig] = None,
        log_event: Optional[Callable[..., None]] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config or CircuitBreakerConfig()
        self.error_streak: int = 0
        self._tripped: bool = False
        self._cooldown_until: float = 0.0
        self._trip_count: int = 0
        self._clock = clock
        self._log_event = log_event or self._default_log

    def _default_log(self, event: str, **kwargs: Any) -> None:
        log.info(json.dumps({"event": event, **kwargs}))

    @property
    def is_tripped(self) -> bool:
        if self._tripped and self._clock() >= self._cooldown_until:
            self._reset()
            return False
        return self._tripped

    @property
    def cooldown_remaining(self) -> float:
        if not self._tripped:
            return 0.0
        return max(0.0, self._cooldown_until - self._clock())

    def record_error(self, where: str, error: Exception) -> bool:
        """
        Record a failure. Returns True if this failure tripped the circuit.
        """
        self.error_streak += 1
        if self.config.error_threshold > 0 and self.error_streak >= self.config.error_threshold:
            return self._trip(where, error)
        return False

    def record_success(self) -> None:
        if self.error_streak > 0:
            self._log_event("rpc_error_streak_reset", streak=self.error_streak)
            self.error_streak = 0

    def _trip(self, where: str, error: Exception) -> bool:
        if self._tripped:
            return False

        self._tripped = True
        self._trip_count += 1

        backoff = min(
            self.config.backoff_multiplier ** min(self._trip_count - 1, 5),
            self.config.max_backoff,
        )
        cooldown = self.config.cooldown_sec * backoff
        self._cooldown_until = self._clock() + cooldown

        self._log_event(
            "circuit_open",
            where=where,
            err=str(error),
            streak=self.error_streak,
            trip_count=self._trip_count,
            cooldown_sec=cooldown,
        )
        return True

    def _reset(self) -> None:
        was_tripped = self._tripped
        self._tripped = False
        self.error_streak = 0
        if was_tripped:
            self._log_event("circuit_closed", trip_count=self._trip_count)

    def force_reset(self) -> None:
        self._cooldown_until = 0.0
        self._reset()

    def get_state(self) -> dict:
        return {
            "tripped": self._tripped,
            "error_streak": self.error_streak,
            "trip_count": self._trip_count,
            "cooldown_remaining": self.cooldown_remaining,
        }
