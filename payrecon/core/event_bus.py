"""
ChangeFeed: in-process change-notification channel for the two payment stores.

The order-processing path publishes UPDATE events for the order aggregate and
the payment-callback path publishes INSERT/UPDATE events for ledger rows.
Listeners subscribe with a table, a set of change kinds and an optional
column=value filter (e.g. order_id=<id>), and receive matching events.

Features:
- Async or sync handlers
- Priority-based handler execution
- Error isolation (one handler failure doesn't stop others)
- Event history for debugging
- Subscription handles with idempotent unsubscribe()
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Coroutine, Dict, FrozenSet, List, Optional, Union

log = logging.getLogger("payrecon")


class ChangeKind(str, Enum):
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


@dataclass
class ChangeEvent:
    """
    A row-level change on one table.

    record carries the new row (old row for DELETE).
    """
    table: str
    kind: ChangeKind
    record: Dict[str, Any]
    timestamp_ms: int = field(default_factory=lambda: int(time.time() * 1000))
    source: Optional[str] = None

    def __str__(self) -> str:
        return f"ChangeEvent({self.table}.{self.kind.value}, ts={self.timestamp_ms}, source={self.source})"


Handler = Union[
    Callable[[ChangeEvent], Coroutine[Any, Any, None]],
    Callable[[ChangeEvent], None],
]


@dataclass(eq=False)
class Subscription:
    """Subscription record; also the handle callers release."""
    table: str
    kinds: FrozenSet[ChangeKind]
    handler: Handler
    column: Optional[str] = None
    value: Any = None
    priority: int = 0  # Higher = called first
    name: Optional[str] = None
    _feed: Optional["ChangeFeed"] = field(default=None, repr=False)

    def matches(self, event: ChangeEvent) -> bool:
        if event.table != self.table or event.kind not in self.kinds:
            return False
        if self.column is None:
            return True
        return str(event.record.get(self.column)) == str(self.value)

    @property
    def active(self) -> bool:
        return self._feed is not None

    def unsubscribe(self) -> bool:
        """Detach from the feed. Safe to call more than once."""
        feed, self._feed = self._feed, None
        if feed is None:
            return False
        return feed._remove(self)


class ChangeFeed:
    """
    Central change feed.

    Usage:
        feed = ChangeFeed()

        sub = feed.subscribe(
            "payment_transactions",
            {ChangeKind.INSERT, ChangeKind.UPDATE},
            handle_tx,
            column="order_id",
            value=order_id,
        )

        await feed.publish(ChangeEvent("payment_transactions", ChangeKind.INSERT, row))

        # Start processing (in background task)
        asyncio.create_task(feed.start())

        sub.unsubscribe()
        feed.stop()
    """

    DEFAULT_HISTORY_SIZE = 1000
    DEFAULT_QUEUE_SIZE = 0

    def __init__(
        self,
        history_size: int = DEFAULT_HISTORY_SIZE,
        queue_size: int = DEFAULT_QUEUE_SIZE,
        log_event: Optional[Callable[..., None]] = None,
    ) -> None:
        self._log = log_event or self._default_log
        self._subscribers: Dict[str, List[Subscription]] = {}

        maxsize = queue_size if queue_size > 0 else 0
        self._queue: asyncio.Queue[ChangeEvent] = asyncio.Queue(maxsize=maxsize)

        self._running = False

        self._history_size = history_size
        self._history: List[ChangeEvent] = []

        self._stats = {
            "events_published": 0,
            "events_processed": 0,
            "events_dropped": 0,
            "handler_errors": 0,
            "queue_high_water": 0,
        }

    def _default_log(self, event: str, **kwargs: Any) -> None:
        log.debug(json.dumps({"event": event, **kwargs}, default=str))

    # -------------------------------------------------------------------------
    # Subscription Management
    # -------------------------------------------------------------------------

    def subscribe(
        self,
        table: str,
        kinds,
        handler: Handler,
        column: Optional[str] = None,
        value: Any = None,
        priority: int = 0,
        name: Optional[str] = None,
    ) -> Subscription:
        """
        Subscribe to changes on one table.

        Args:
            table: Table name
            kinds: Iterable of ChangeKind to receive
            handler: Async or sync function to handle events
            column: Optional record column to filter on
            value: Value the column must equal
            priority: Higher priority handlers called first
            name: Optional name for debugging

        Returns:
            Subscription handle (call unsubscribe() to release)
        """
        sub = Subscription(
            table=table,
            kinds=frozenset(ChangeKind(k) for k in kinds),
            handler=handler,
            column=column,
            value=value,
            priority=priority,
            name=name,
            _feed=self,
        )

        subs = self._subscribers.setdefault(table, [])
        insert_idx = len(subs)
        for i, existing in enumerate(subs):
            if existing.priority < priority:
                insert_idx = i
                break
        subs.insert(insert_idx, sub)

        self._log(
            "change_feed_subscribe",
            table=table,
            kinds=sorted(k.value for k in sub.kinds),
            handler_name=name or getattr(handler, "__name__", "handler"),
            total_subscribers=len(subs),
        )
        return sub

    def _remove(self, subscription: Subscription) -> bool:
        subs = self._subscribers.get(subscription.table, [])
        if subscription in subs:
            subs.remove(subscription)
            self._log("change_feed_unsubscribe", table=subscription.table, handler_name=subscription.name)
            return True
        return False

    # -------------------------------------------------------------------------
    # Publishing
    # -------------------------------------------------------------------------

    async def publish(self, event: ChangeEvent) -> bool:
        """
        Queue an event for delivery.

        Returns:
            True if queued, False if queue full
        """
        return self.publish_nowait(event)

    def publish_nowait(self, event: ChangeEvent) -> bool:
        """Publish from sync context (non-blocking)."""
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            self._stats["events_dropped"] += 1
            self._log("change_feed_queue_full", table=event.table, kind=event.kind.value)
            return False
        self._stats["events_published"] += 1
        qsize = self._queue.qsize()
        if qsize > self._stats["queue_high_water"]:
            self._stats["queue_high_water"] = qsize
        return True

    # -------------------------------------------------------------------------
    # Processing
    # -------------------------------------------------------------------------

    async def start(self) -> None:
        """
        Process events until stop() is called.

        Should be run as a background task.
        """
        self._running = True
        self._log("change_feed_started")

        while self._running:
            try:
                try:
                    event = await asyncio.wait_for(self._queue.get(), timeout=1.0)
                except asyncio.TimeoutError:
                    continue
                await self._process_event(event)
            except asyncio.CancelledError:
                self._log("change_feed_cancelled")
                raise
            except Exception as e:
                self._log("change_feed_error", error=str(e), error_type=type(e).__name__)

        self._log("change_feed_stopped")

    async def _process_event(self, event: ChangeEvent) -> None:
        if self._history_size > 0:
            self._history.append(event)
            if len(self._history) > self._history_size:
                self._history.pop(0)

        # Snapshot: handlers may unsubscribe while we iterate
        for sub in list(self._subscribers.get(event.table, [])):
            if not sub.active or not sub.matches(event):
                continue
            try:
                result = sub.handler(event)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                self._stats["handler_errors"] += 1
                self._log(
                    "change_feed_handler_error",
                    table=event.table,
                    kind=event.kind.value,
                    handler_name=sub.name or "unknown",
                    error=str(e),
                    error_type=type(e).__name__,
                )

        self._stats["events_processed"] += 1

    def stop(self) -> None:
        self._running = False

    async def drain(self, timeout: float = 5.0) -> int:
        """
        Process all queued events.

        Returns:
            Number of events processed
        """
        count = 0
        deadline = time.time() + timeout
        while not self._queue.empty() and time.time() < deadline:
            try:
                event = self._queue.get_nowait()
            except asyncio.QueueEmpty:
                break
            await self._process_event(event)
            count += 1
        return count

    # -------------------------------------------------------------------------
    # Query Methods
    # -------------------------------------------------------------------------

    def get_history(self, table: Optional[str] = None, limit: int = 100) -> List[ChangeEvent]:
        events = self._history
        if table:
            events = [e for e in events if e.table == table]
        return events[-limit:]

    def get_stats(self) -> Dict[str, Any]:
        return {
            **self._stats,
            "queue_size": self._queue.qsize(),
            "history_size": len(self._history),
            "subscriber_count": sum(len(s) for s in self._subscribers.values()),
            "running": self._running,
        }

    def get_subscriber_count(self, table: str) -> int:
        return len(self._subscribers.get(table, []))
