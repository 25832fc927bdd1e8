"""
Tests for ChangeFeed and RealtimeListener.
"""
import asyncio

import pytest

from payrecon.core.event_bus import ChangeEvent, ChangeFeed, ChangeKind
from payrecon.orchestrator.realtime_listener import RealtimeListener


def _order_update(order_id, **fields):
    return ChangeEvent("orders", ChangeKind.UPDATE, {"id": order_id, **fields})


def _ledger(kind, order_id, **fields):
    return ChangeEvent("payment_transactions", kind, {"order_id": order_id, **fields})


class TestChangeFeed:
    @pytest.mark.asyncio
    async def test_filters_by_table_kind_and_column(self):
        feed = ChangeFeed()
        seen = []
        feed.subscribe("payment_transactions", {ChangeKind.INSERT}, seen.append, column="order_id", value="o-1")

        await feed.publish(_ledger(ChangeKind.INSERT, "o-1"))
        await feed.publish(_ledger(ChangeKind.INSERT, "o-2"))
        await feed.publish(_ledger(ChangeKind.DELETE, "o-1"))
        await feed.publish(_order_update("o-1"))
        await feed.drain()

        assert len(seen) == 1
        assert seen[0].record["order_id"] == "o-1"

    @pytest.mark.asyncio
    async def test_priority_order(self):
        feed = ChangeFeed()
        calls = []
        feed.subscribe("orders", {ChangeKind.UPDATE}, lambda e: calls.append("low"), priority=0)
        feed.subscribe("orders", {ChangeKind.UPDATE}, lambda e: calls.append("high"), priority=10)

        await feed.publish(_order_update("o-1"))
        await feed.drain()

        assert calls == ["high", "low"]

    @pytest.mark.asyncio
    async def test_handler_error_is_isolated(self, log_events):
        feed = ChangeFeed(log_event=log_events)
        seen = []

        def broken(event):
            raise RuntimeError("boom")

        feed.subscribe("orders", {ChangeKind.UPDATE}, broken, priority=5)
        feed.subscribe("orders", {ChangeKind.UPDATE}, seen.append)

        await feed.publish(_order_update("o-1"))
        await feed.drain()

        assert len(seen) == 1
        assert feed.get_stats()["handler_errors"] == 1
        assert "change_feed_handler_error" in log_events.names()

    @pytest.mark.asyncio
    async def test_async_handlers_are_awaited(self):
        feed = ChangeFeed()
        seen = []

        async def handler(event):
            await asyncio.sleep(0)
            seen.append(event)

        feed.subscribe("orders", {ChangeKind.UPDATE}, handler)
        await feed.publish(_order_update("o-1"))
        await feed.drain()

        assert len(seen) == 1

    @pytest.mark.asyncio
    async def test_unsubscribe_is_idempotent(self):
        feed = ChangeFeed()
        sub = feed.subscribe("orders", {ChangeKind.UPDATE}, lambda e: None)

        assert sub.unsubscribe()
        assert not sub.unsubscribe()
        assert feed.get_subscriber_count("orders") == 0

    @pytest.mark.asyncio
    async def test_bounded_queue_drops(self):
        feed = ChangeFeed(queue_size=1)

        assert await feed.publish(_order_update("o-1"))
        assert not await feed.publish(_order_update("o-2"))
        assert feed.get_stats()["events_dropped"] == 1

    @pytest.mark.asyncio
    async def test_background_processing(self):
        feed = ChangeFeed()
        got = asyncio.Event()
        feed.subscribe("orders", {ChangeKind.UPDATE}, lambda e: got.set())
        task = asyncio.create_task(feed.start())

        await feed.publish(_order_update("o-1"))
        await asyncio.wait_for(got.wait(), timeout=1.0)

        feed.stop()
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        assert len(feed.get_history()) == 1


class TestRealtimeListener:
    @pytest.mark.asyncio
    async def test_order_and_ledger_events_trigger(self):
        feed = ChangeFeed()
        listener = RealtimeListener(feed)
        seen = []

        listener.subscribe("o-1", seen.append)
        await feed.publish(_order_update("o-1", payment_status="paid"))
        await feed.publish(_ledger(ChangeKind.INSERT, "o-1", status="success"))
        await feed.publish(_ledger(ChangeKind.UPDATE, "o-1", status="paid"))
        await feed.drain()

        assert [e.table for e in seen] == ["orders", "payment_transactions", "payment_transactions"]

    @pytest.mark.asyncio
    async def test_other_orders_and_kinds_are_ignored(self):
        feed = ChangeFeed()
        listener = RealtimeListener(feed)
        seen = []

        listener.subscribe("o-1", seen.append)
        await feed.publish(_order_update("o-2"))
        await feed.publish(_ledger(ChangeKind.INSERT, "o-2"))
        await feed.publish(ChangeEvent("orders", ChangeKind.INSERT, {"id": "o-1"}))
        await feed.publish(_ledger(ChangeKind.DELETE, "o-1"))
        await feed.drain()

        assert seen == []

    @pytest.mark.asyncio
    async def test_unsubscribe_releases_both_subscriptions(self):
        feed = ChangeFeed()
        listener = RealtimeListener(feed)
        seen = []

        handle = listener.subscribe("o-1", seen.append)
        assert feed.get_subscriber_count("orders") == 1
        assert feed.get_subscriber_count("payment_transactions") == 1

        handle.unsubscribe()
        handle.unsubscribe()
        await feed.publish(_order_update("o-1"))
        await feed.drain()

        assert not handle.active
        assert seen == []
        assert feed.get_subscriber_count("orders") == 0
        assert feed.get_subscriber_count("payment_transactions") == 0

    @pytest.mark.asyncio
    async def test_watch_context_manager(self):
        feed = ChangeFeed()
        listener = RealtimeListener(feed)

        async with listener.watch("o-1", lambda e: None) as handle:
            assert handle.active
            assert feed.get_subscriber_count("orders") == 1

        assert not handle.active
        assert feed.get_subscriber_count("orders") == 0

    @pytest.mark.asyncio
    async def test_custom_table_names(self):
        feed = ChangeFeed()
        listener = RealtimeListener(feed, orders_table="shop_orders", ledger_table="ledger")
        seen = []

        listener.subscribe("o-1", seen.append)
        await feed.publish(ChangeEvent("shop_orders", ChangeKind.UPDATE, {"id": "o-1"}))
        await feed.publish(ChangeEvent("ledger", ChangeKind.INSERT, {"order_id": "o-1"}))
        await feed.drain()

        assert len(seen) == 2
