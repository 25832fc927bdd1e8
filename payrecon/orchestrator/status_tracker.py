"""
PaymentStatusTracker: keeps one order's PaymentStatusView current.

Composes the resolver, the realtime listener, the poll scheduler and the
auto-reconciler for a single order id at a time:

- set_order_id() tears down everything belonging to the previous order,
  subscribes to change notifications, resolves once, and arms the poller
  while the order is unpaid.
- Every resolution result is tagged with the generation it was started
  under; results that complete after an order-id change or close() are
  discarded, never applied.
- Listeners are notified only when the view actually changed.

Usage:
    tracker = engine.tracker()
    async with tracker.watch(order_id):
        ...
        if tracker.is_paid:
            ...
"""

from __future__ import annotations

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator, Callable, List, Optional, Set

from payrecon.core.event_bus import ChangeEvent
from payrecon.core.models import PaymentStatusView, StatusSource
from payrecon.orchestrator.poll_scheduler import PollScheduler, PollSchedulerConfig
from payrecon.orchestrator.realtime_listener import OrderSubscription, RealtimeListener
from payrecon.orchestrator.state_machine import TrackerState, TrackerStateMachine
from payrecon.resolution.resolver import StatusResolver

log = logging.getLogger("payrecon")

# Resolutions started by these triggers never request another repair
NO_REPAIR_TRIGGERS = frozenset({"followup", "manual"})


@dataclass
class TrackerOptions:
    auto_reconcile: bool = True
    poll_interval_sec: float = 30.0
    enable_realtime: bool = True


class PaymentStatusTracker:
    def __init__(
        self,
        resolver: StatusResolver,
        listener: Optional[RealtimeListener] = None,
        options: Optional[TrackerOptions] = None,
        metrics=None,
        log_event: Optional[Callable[..., None]] = None,
    ) -> None:
        self.resolver = resolver
        self.listener = listener
        self.options = options or TrackerOptions()
        self.metrics = metrics
        self._log_event = log_event or self._default_log

        self._order_id: Optional[str] = None
        self._generation = 0
        self._closed = False
        self._view = PaymentStatusView.loading()
        self._inflight = 0

        self._poller: Optional[PollScheduler] = None
        self._subscription: Optional[OrderSubscription] = None
        self._tasks: Set[asyncio.Task] = set()
        self._listeners: List[Callable[[PaymentStatusView], Any]] = []

        self.machine = TrackerStateMachine(log_event=self._log_event)

    def _default_log(self, event: str, **kwargs: Any) -> None:
        log.info(json.dumps({"event": event, **kwargs}, default=str))

    # -------------------------------------------------------------------------
    # Projections
    # -------------------------------------------------------------------------

    @property
    def order_id(self) -> Optional[str]:
        return self._order_id

    @property
    def view(self) -> PaymentStatusView:
        return self._view

    @property
    def is_paid(self) -> bool:
        return self._view.is_paid

    @property
    def paid_at(self):
        return self._view.paid_at

    @property
    def payment_method(self) -> Optional[str]:
        return self._view.payment_method

    @property
    def needs_reconciliation(self) -> bool:
        return self._view.needs_reconciliation

    @property
    def order_status(self) -> str:
        return self._view.order_status

    @property
    def error(self) -> Optional[str]:
        return self._view.error

    @property
    def is_loading(self) -> bool:
        return self._inflight > 0 or (self._order_id is not None and self._view.source == StatusSource.LOADING)

    @property
    def state(self) -> TrackerState:
        return self.machine.state

    @property
    def poller(self) -> Optional[PollScheduler]:
        return self._poller

    @property
    def subscription(self) -> Optional[OrderSubscription]:
        return self._subscription

    @property
    def pending_tasks(self) -> int:
        return sum(1 for t in self._tasks if not t.done())

    def add_listener(self, callback: Callable[[PaymentStatusView], Any]) -> Callable[[], None]:
        """Register a view-change callback. Returns a remover."""
        self._listeners.append(callback)

        def remove() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)
        return remove

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def set_order_id(self, order_id: Optional[str]) -> PaymentStatusView:
        if self._closed:
            raise RuntimeError("tracker is closed")
        if order_id == self._order_id:
            return self._view

        await self._teardown()
        self._order_id = order_id
        self._view = PaymentStatusView.loading()
        if order_id is None:
            return self._view

        gen = self._generation
        if self.options.enable_realtime and self.listener is not None:
            self._subscription = self.listener.subscribe(order_id, self._on_change)

        view = await self._resolve_and_apply(gen, "initial")
        if gen == self._generation and view is not None and not view.is_paid:
            self._start_poller(gen, order_id)
        return self._view

    def _start_poller(self, gen: int, order_id: str) -> None:
        if self.options.poll_interval_sec <= 0:
            return
        self._poller = PollScheduler(
            order_id,
            tick=lambda: self._resolve_and_apply(gen, "poll"),
            config=PollSchedulerConfig(interval_sec=self.options.poll_interval_sec),
            log_event=self._log_event,
            metrics=self.metrics,
        )
        if self._poller.start():
            self._settle()

    async def _teardown(self) -> None:
        self._generation += 1

        if self._subscription is not None:
            self._subscription.unsubscribe()
            self._subscription = None

        poller, self._poller = self._poller, None
        if poller is not None:
            await poller.cancel()

        current = asyncio.current_task()
        tasks = [t for t in self._tasks if not t.done() and t is not current]
        for t in tasks:
            t.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()

        self._inflight = 0
        self.machine.reset(reason="teardown")

    async def close(self) -> None:
        if self._closed:
            return
        await self._teardown()
        self._closed = True
        self.machine.transition(TrackerState.CLOSED, reason="close")
        self._order_id = None
        self._listeners.clear()

    @asynccontextmanager
    async def watch(self, order_id: str) -> AsyncIterator["PaymentStatusTracker"]:
        await self.set_order_id(order_id)
        try:
            yield self
        finally:
            if not self._closed:
                await self.set_order_id(None)

    async def __aenter__(self) -> "PaymentStatusTracker":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    # -------------------------------------------------------------------------
    # Triggers
    # -------------------------------------------------------------------------

    async def refresh(self) -> PaymentStatusView:
        """Resolve now, outside the poll schedule."""
        if self._order_id is None or self._closed:
            return self._view
        await self._resolve_and_apply(self._generation, "refresh")
        return self._view

    async def manual_reconcile(self) -> bool:
        """Request a repair for the current order, then re-resolve once."""
        order_id = self._order_id
        reconciler = self.resolver.reconciler
        if order_id is None or self._closed:
            return False

        gen = self._generation
        success = False
        if reconciler is not None:
            self._begin(TrackerState.RECONCILING, "manual")
            try:
                result = await reconciler.repair(order_id, trigger="manual")
            finally:
                self._end(gen)
            success = result.success

        await self._resolve_and_apply(gen, "manual", after_repair=success)
        return success

    async def wait_idle(self, timeout: Optional[float] = None) -> None:
        """Wait for realtime-triggered resolutions and follow-ups to finish."""
        while True:
            tasks = [t for t in self._tasks if not t.done()]
            if not tasks:
                return
            await asyncio.wait(tasks, timeout=timeout)
            if timeout is not None:
                return

    def _on_change(self, event: ChangeEvent) -> None:
        if self._closed or self._order_id is None:
            return
        self._spawn(self._resolve_and_apply(self._generation, "realtime"), name=f"realtime-{self._order_id}")

    def _spawn(self, coro, name: Optional[str] = None) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._track(task)
        return task

    def _track(self, task: asyncio.Task) -> None:
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    # -------------------------------------------------------------------------
    # Resolution
    # -------------------------------------------------------------------------

    async def _resolve_and_apply(
        self,
        gen: int,
        trigger: str,
        after_repair: bool = False,
    ) -> Optional[PaymentStatusView]:
        """
        Resolve the current order and apply the result if still current.

        Returns None when the result was discarded.
        """
        if gen != self._generation or self._closed:
            return None
        order_id = self._order_id

        self._begin(TrackerState.RESOLVING, trigger)
        try:
            view = await self.resolver.resolve_view(order_id, after_repair=after_repair)
        finally:
            self._end(gen)

        if gen != self._generation or self._closed:
            self._log_event("stale_result_discarded", order_id=order_id, trigger=trigger)
            return None

        self._apply(view)

        reconciler = self.resolver.reconciler
        if (
            view.needs_reconciliation
            and self.options.auto_reconcile
            and trigger not in NO_REPAIR_TRIGGERS
            and reconciler is not None
        ):
            self._begin(TrackerState.RECONCILING, trigger)
            try:
                result = await reconciler.handle_drift(
                    order_id,
                    refresh=lambda: self._resolve_and_apply(gen, "followup", after_repair=True),
                )
            finally:
                self._end(gen)
            if result.followup is not None:
                if gen == self._generation:
                    self._track(result.followup)
                else:
                    result.followup.cancel()
        return view

    def _apply(self, view: PaymentStatusView) -> None:
        previous = self._view
        self._view = view

        if view.is_paid and self._poller is not None:
            self._poller.stop(paid=True)
            self._settle()

        if previous.same_state(view) and previous.error == view.error:
            return
        for callback in list(self._listeners):
            try:
                result = callback(view)
                if asyncio.iscoroutine(result):
                    self._spawn(result, name="status-listener")
            except Exception as e:
                self._log_event("listener_error", order_id=self._order_id, error=str(e))

    def _begin(self, state: TrackerState, reason: str) -> None:
        self._inflight += 1
        self.machine.transition(state, reason=reason)

    def _end(self, gen: int) -> None:
        if gen != self._generation:
            return
        self._inflight = max(0, self._inflight - 1)
        self._settle()

    def _settle(self) -> None:
        if self._inflight > 0:
            return
        polling = self._poller is not None and self._poller.is_running
        self.machine.transition(TrackerState.POLLING if polling else TrackerState.IDLE, reason="settled")
