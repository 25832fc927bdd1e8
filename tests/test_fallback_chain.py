"""
Tests for FallbackQueryChain.
"""
from datetime import datetime, timezone

import pytest

from payrecon.aggregation.multi_order import MultiOrderAggregator
from payrecon.core.errors import NetworkError
from payrecon.core.models import StatusSource, ViewPrecedence
from payrecon.resolution.accessors import AggregateAccessor, CombinedViewAccessor, LedgerAccessor
from payrecon.resolution.fallback import TOTAL_FAILURE_MESSAGE, FallbackQueryChain

T = datetime(2025, 8, 9, 10, 0, tzinfo=timezone.utc)


def _chain(client, log_event=None, precedence=ViewPrecedence.VIEW_FIRST, with_view=True):
    return FallbackQueryChain(
        AggregateAccessor(client),
        LedgerAccessor(client),
        combined_view=CombinedViewAccessor(client) if with_view else None,
        precedence=precedence,
        log_event=log_event,
    )


class TestStepOrder:
    def test_view_first(self, fake_client):
        names = [n for n, _ in _chain(fake_client).steps()]
        assert names == ["combined_view", "direct"]

    def test_raw_first(self, fake_client):
        names = [n for n, _ in _chain(fake_client, precedence=ViewPrecedence.RAW_FIRST).steps()]
        assert names == ["direct", "combined_view"]

    def test_raw_only(self, fake_client):
        names = [n for n, _ in _chain(fake_client, precedence=ViewPrecedence.RAW_ONLY).steps()]
        assert names == ["direct"]

    def test_no_view_configured(self, fake_client):
        names = [n for n, _ in _chain(fake_client, with_view=False).steps()]
        assert names == ["direct"]


class TestFallbackResolution:
    @pytest.mark.asyncio
    async def test_view_step_answers(self, fake_client, log_events):
        fake_client.add_order("o-1")
        fake_client.add_transaction("o-1", channel="card")

        view = await _chain(fake_client, log_events).run("o-1")

        assert view.is_paid and view.needs_reconciliation
        assert view.payment_method == "card"
        assert fake_client.call_count("select:orders") == 0

    @pytest.mark.asyncio
    async def test_direct_step_when_view_fails(self, fake_client, log_events):
        fake_client.add_order("o-1")
        fake_client.add_transaction("o-1", channel="bank_transfer")
        fake_client.fail("select:orders_with_payment")

        view = await _chain(fake_client, log_events).run("o-1")

        assert view.is_paid
        assert view.needs_reconciliation
        assert view.payment_method == "bank_transfer"
        assert view.paid_at == T
        assert view.source == StatusSource.TRANSACTION
        assert "combined_view_failed" in log_events.names()

    @pytest.mark.asyncio
    async def test_direct_reads_ledger_newest_first(self, fake_client):
        fake_client.add_order("o-1")
        fake_client.add_transaction("o-1", status="failed", channel="card", created_at="2025-08-09T11:00:00Z")
        fake_client.add_transaction("o-1", status="success", channel="bank", created_at="2025-08-09T10:30:00Z")

        view = await _chain(fake_client, with_view=False).run("o-1")

        assert view.is_paid
        assert view.payment_method == "bank"
        _, filters = [c for c in fake_client.calls if c[0] == "select:payment_transactions"][0]
        assert filters == {"order_id": "eq.o-1", "status": 'in.("paid","success")'}

    @pytest.mark.asyncio
    async def test_settled_row_behind_many_failed_attempts(self, fake_client):
        fake_client.add_order("o-1")
        fake_client.add_transaction("o-1", status="success", channel="card", created_at="2025-08-09T09:00:00Z")
        for minute in range(11):
            fake_client.add_transaction(
                "o-1", status="failed", channel="card", paid_at=None, created_at=f"2025-08-09T10:{minute:02d}:00Z"
            )

        view = await _chain(fake_client, with_view=False).run("o-1")
        batch = await MultiOrderAggregator(AggregateAccessor(fake_client), LedgerAccessor(fake_client)).resolve_many(["o-1"])

        assert view.is_paid
        assert view.needs_reconciliation
        assert view.same_state(batch["o-1"])

    @pytest.mark.asyncio
    async def test_ledger_failure_degrades_to_aggregate(self, fake_client, log_events):
        fake_client.add_order("o-1", payment_status="paid", paid_at="2025-08-09T10:00:00Z")
        fake_client.fail("select:payment_transactions")

        view = await _chain(fake_client, log_events, with_view=False).run("o-1")

        assert view.is_paid
        assert view.payment_method == "processed"
        assert view.error == "Payment ledger unavailable"
        assert "ledger_lookup_failed" in log_events.names()

    @pytest.mark.asyncio
    async def test_total_failure_returns_unknown_view(self, fake_client, log_events):
        fake_client.add_order("o-1")
        fake_client.fail("select:orders_with_payment")
        fake_client.fail("select:orders")

        view = await _chain(fake_client, log_events).run("o-1")

        assert not view.is_paid
        assert not view.needs_reconciliation
        assert view.source == StatusSource.ORDER
        assert view.error == TOTAL_FAILURE_MESSAGE
        assert "fallback_failed" in log_events.names()

    @pytest.mark.asyncio
    async def test_missing_order_returns_unknown_view(self, fake_client, log_events):
        view = await _chain(fake_client, log_events).run("nope")

        assert not view.is_paid
        assert view.error == TOTAL_FAILURE_MESSAGE

    @pytest.mark.asyncio
    async def test_unexpected_exception_is_captured(self, fake_client, log_events):
        fake_client.add_order("o-1")
        fake_client.fail("select:orders_with_payment", RuntimeError("boom"))

        view = await _chain(fake_client, log_events).run("o-1")

        assert view.error is None
        assert not view.is_paid


class TestCrossCheck:
    @pytest.mark.asyncio
    async def test_drift_between_view_and_raw_is_logged(self, fake_client, log_events):
        fake_client.add_order("o-1")
        fake_client.add_transaction("o-1")
        # View lags behind the ledger
        original = fake_client.combined_row

        def stale_row(order_id):
            row = original(order_id)
            row.update(final_paid=False, needs_reconciliation=False, payment_method="pending")
            return row

        fake_client.combined_row = stale_row

        view = await _chain(fake_client, log_events, precedence=ViewPrecedence.CROSS_CHECK).run("o-1")

        assert view.is_paid
        assert view.needs_reconciliation
        assert "view_drift" in log_events.names()

    @pytest.mark.asyncio
    async def test_agreeing_sources_log_nothing(self, fake_client, log_events):
        fake_client.add_order("o-1", payment_status="paid", paid_at="2025-08-09T10:00:00Z")

        await _chain(fake_client, log_events, precedence=ViewPrecedence.CROSS_CHECK).run("o-1")

        assert "view_drift" not in log_events.names()

    @pytest.mark.asyncio
    async def test_view_failure_during_cross_check_is_harmless(self, fake_client, log_events):
        fake_client.add_order("o-1")
        fake_client.fail("select:orders_with_payment")

        view = await _chain(fake_client, log_events, precedence=ViewPrecedence.CROSS_CHECK).run("o-1")

        assert not view.is_paid
        assert view.error is None
