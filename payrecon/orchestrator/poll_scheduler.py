"""
PollScheduler: fixed-interval re-resolution while an order is unpaid.

Safety net for missed change notifications. Once a tick observes a paid
order the scheduler stops for good; a new scheduler is needed for another
order.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from payrecon.core.models import PaymentStatusView

log = logging.getLogger("payrecon")

Tick = Callable[[], Awaitable[Optional[PaymentStatusView]]]


@dataclass
class PollSchedulerConfig:
    """Configuration for PollScheduler."""
    interval_sec: float = 30.0  # <= 0 disables polling


class PollScheduler:
    """
    Periodic re-resolution for one order.

    Usage:
        poller = PollScheduler(order_id, tick=lambda: tracker.refresh())
        poller.start()
        ...
        await poller.cancel()
    """

    def __init__(
        self,
        order_id: str,
        tick: Tick,
        config: Optional[PollSchedulerConfig] = None,
        log_event: Optional[Callable[..., None]] = None,
        metrics=None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.order_id = order_id
        self._tick = tick
        self.config = config or PollSchedulerConfig()
        self.metrics = metrics
        self._sleep = sleep
        self._log_event = log_event or self._default_log

        self._task: Optional[asyncio.Task] = None
        self._stopped_for_paid = False
        self._tick_count = 0

    def _default_log(self, event: str, **kwargs: Any) -> None:
        log.info(json.dumps({"event": event, "order_id": self.order_id, **kwargs}))

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def stopped_for_paid(self) -> bool:
        return self._stopped_for_paid

    @property
    def tick_count(self) -> int:
        return self._tick_count

    def start(self) -> bool:
        """Arm the scheduler. Returns False if it stays off."""
        if self.config.interval_sec <= 0 or self._stopped_for_paid or self.is_running:
            return False
        self._task = asyncio.create_task(self._run(), name=f"poll-{self.order_id}")
        self._log_event("poll_started", order_id=self.order_id, interval_sec=self.config.interval_sec)
        return True

    async def _run(self) -> None:
        while not self._stopped_for_paid:
            await self._sleep(self.config.interval_sec)
            self._tick_count += 1
            if self.metrics is not None:
                self.metrics.poll_ticks.inc()
            self._log_event("poll_tick", order_id=self.order_id, tick=self._tick_count)
            try:
                view = await self._tick()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                self._log_event("poll_tick_error", order_id=self.order_id, error=str(exc))
                continue
            if view is not None and view.is_paid:
                self._stopped_for_paid = True
                self._log_event("poll_stopped", order_id=self.order_id, reason="paid", ticks=self._tick_count)

    def stop(self, paid: bool = True) -> None:
        """
        Stop without waiting. paid=True makes the stop permanent.

        Safe to call from inside a tick.
        """
        if paid:
            self._stopped_for_paid = True
        task, self._task = self._task, None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def cancel(self) -> None:
        """Stop and wait for the loop to unwind."""
        task, self._task = self._task, None
        if task is None or task.done():
            return
        if task is asyncio.current_task():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
