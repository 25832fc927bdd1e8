"""
RealtimeListener: per-order change subscriptions on the ChangeFeed.

For a watched order it subscribes to:
- UPDATE on the order aggregate filtered by id
- INSERT and UPDATE on the payment ledger filtered by order_id

Any matching event invokes on_change. The handle returned by subscribe()
releases both subscriptions; releasing twice is harmless.
"""

from __future__ import annotations

import json
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Callable, List, Optional

from payrecon.core.event_bus import ChangeEvent, ChangeFeed, ChangeKind, Subscription

log = logging.getLogger("payrecon")


class OrderSubscription:
    """Handle for one order's subscriptions."""

    def __init__(self, order_id: str, subscriptions: List[Subscription]) -> None:
        self.order_id = order_id
        self._subscriptions = subscriptions

    @property
    def active(self) -> bool:
        return any(s.active for s in self._subscriptions)

    def unsubscribe(self) -> None:
        for sub in self._subscriptions:
            sub.unsubscribe()


class RealtimeListener:
    def __init__(
        self,
        feed: ChangeFeed,
        orders_table: str = "orders",
        ledger_table: str = "payment_transactions",
        log_event: Optional[Callable[..., None]] = None,
        metrics=None,
    ) -> None:
        self.feed = feed
        self.orders_table = orders_table
        self.ledger_table = ledger_table
        self.metrics = metrics
        self._log_event = log_event or self._default_log

    def _default_log(self, event: str, **kwargs: Any) -> None:
        log.info(json.dumps({"event": event, **kwargs}, default=str))

    def subscribe(self, order_id: str, on_change: Callable[[ChangeEvent], Any]) -> OrderSubscription:
        def handler(event: ChangeEvent):
            if self.metrics is not None:
                self.metrics.realtime_events.labels(table=event.table).inc()
            self._log_event("realtime_event", order_id=order_id, table=event.table, kind=event.kind.value)
            return on_change(event)

        subs = [
            self.feed.subscribe(
                self.orders_table,
                {ChangeKind.UPDATE},
                handler,
                column="id",
                value=order_id,
                name=f"order-{order_id}",
            ),
            self.feed.subscribe(
                self.ledger_table,
                {ChangeKind.INSERT, ChangeKind.UPDATE},
                handler,
                column="order_id",
                value=order_id,
                name=f"ledger-{order_id}",
            ),
        ]
        return OrderSubscription(order_id, subs)

    @asynccontextmanager
    async def watch(self, order_id: str, on_change: Callable[[ChangeEvent], Any]) -> AsyncIterator[OrderSubscription]:
        handle = self.subscribe(order_id, on_change)
        try:
            yield handle
        finally:
            handle.unsubscribe()
