"""
Tests for StatusResolver: combined path, fallback, drift repair and manual reconcile.
"""
import asyncio
from datetime import datetime, timezone

import pytest

from payrecon.core.circuit_breaker import CircuitBreaker, CircuitBreakerConfig
from payrecon.core.models import StatusSource
from payrecon.resolution.accessors import (
    AggregateAccessor,
    CombinedStatusAccessor,
    CombinedViewAccessor,
    LedgerAccessor,
)
from payrecon.resolution.fallback import FallbackQueryChain
from payrecon.resolution.reconciler import AutoReconciler, AutoReconcilerConfig, ReconciliationGateway
from payrecon.resolution.resolver import (
    MALFORMED_MESSAGE,
    NOT_FOUND_MESSAGE,
    ResolveOptions,
    StatusResolver,
)

T = datetime(2025, 8, 9, 10, 0, tzinfo=timezone.utc)
T2 = datetime(2025, 8, 9, 12, 30, tzinfo=timezone.utc)

RPC = "rpc:get_order_payment_status"
RECONCILE = "invoke:payment-reconcile"


def _resolver(client, log_event=None, breaker=None, auto_reconcile=True):
    reconciler = AutoReconciler(
        ReconciliationGateway(client),
        AutoReconcilerConfig(followup_delay_sec=0.01),
        log_event=log_event,
    )
    fallback = FallbackQueryChain(
        AggregateAccessor(client),
        LedgerAccessor(client),
        combined_view=CombinedViewAccessor(client),
        log_event=log_event,
    )
    return StatusResolver(
        CombinedStatusAccessor(client),
        fallback,
        reconciler=reconciler,
        breaker=breaker,
        auto_reconcile=auto_reconcile,
        log_event=log_event,
    )


@pytest.fixture
def scenarios(fake_client):
    # A: drifted, B: aggregate paid, C: unpaid
    fake_client.add_order("A", status="confirmed")
    fake_client.add_transaction("A", status="success", channel="card", paid_at="2025-08-09T10:00:00Z")
    fake_client.add_order("B", payment_status="paid", paid_at="2025-08-09T12:30:00Z", status="confirmed")
    fake_client.add_order("C")
    return fake_client


class TestScenarios:
    @pytest.mark.asyncio
    async def test_scenario_a_drift(self, scenarios):
        view = await _resolver(scenarios).resolve("A", ResolveOptions(auto_reconcile=False))

        assert view.is_paid
        assert view.paid_at == T
        assert view.payment_method == "card"
        assert view.source == StatusSource.TRANSACTION
        assert view.needs_reconciliation

    @pytest.mark.asyncio
    async def test_scenario_b_aggregate_paid(self, scenarios):
        view = await _resolver(scenarios).resolve("B")

        assert view.is_paid
        assert view.paid_at == T2
        assert view.payment_method == "processed"
        assert view.source == StatusSource.ORDER
        assert not view.needs_reconciliation

    @pytest.mark.asyncio
    async def test_scenario_c_unpaid(self, scenarios):
        view = await _resolver(scenarios).resolve("C")

        assert not view.is_paid
        assert view.paid_at is None
        assert not view.needs_reconciliation
        assert view.error is None

    @pytest.mark.asyncio
    async def test_scenario_d_combined_call_fails(self, scenarios, log_events):
        scenarios.fail(RPC)

        view = await _resolver(scenarios, log_events).resolve("A", ResolveOptions(auto_reconcile=False))

        assert view.is_paid
        assert view.paid_at == T
        assert view.payment_method == "card"
        assert view.source == StatusSource.TRANSACTION
        assert view.needs_reconciliation
        assert "combined_call_failed" in log_events.names()

    @pytest.mark.asyncio
    async def test_scenario_d_with_view_down_uses_raw_tables(self, scenarios):
        scenarios.fail(RPC)
        scenarios.fail("select:orders_with_payment")

        view = await _resolver(scenarios).resolve("B")

        assert view.is_paid
        assert view.payment_method == "processed"
        assert scenarios.call_count("select:orders") == 1


class TestProperties:
    @pytest.mark.asyncio
    async def test_aggregate_paid_wins_regardless_of_ledger(self, fake_client):
        fake_client.add_order("o-1", payment_status="paid", paid_at="2025-08-09T12:30:00Z")
        fake_client.add_transaction("o-1", status="failed")
        resolver = _resolver(fake_client)

        view = await resolver.resolve("o-1")
        fake_client.fail(RPC)
        fallback_view = await resolver.resolve("o-1")

        assert view.is_paid and not view.needs_reconciliation
        assert fallback_view.is_paid and not fallback_view.needs_reconciliation

    @pytest.mark.asyncio
    async def test_two_resolutions_agree(self, scenarios):
        resolver = _resolver(scenarios, auto_reconcile=False)
        for order_id in ("A", "B", "C"):
            first = await resolver.resolve(order_id)
            second = await resolver.resolve(order_id)
            assert first.same_state(second)

    @pytest.mark.asyncio
    async def test_never_raises_when_everything_fails(self, scenarios):
        for key in (RPC, "select:orders_with_payment", "select:orders", "select:payment_transactions"):
            scenarios.fail(key, RuntimeError("down"))

        view = await _resolver(scenarios).resolve("A")

        assert not view.is_paid
        assert view.error


class TestCombinedPathDegradation:
    @pytest.mark.asyncio
    async def test_order_not_found_does_not_fall_back(self, fake_client, log_events):
        view = await _resolver(fake_client, log_events).resolve("missing")

        assert not view.is_paid
        assert view.error == NOT_FOUND_MESSAGE
        assert fake_client.call_count("select:orders") == 0
        assert "data_error" in log_events.names()

    @pytest.mark.asyncio
    async def test_malformed_row_is_unknown_view(self, fake_client, log_events):
        fake_client.rpc_responses["get_order_payment_status"] = [{"id": "o-1", "payment_method": "card"}]

        view = await _resolver(fake_client, log_events).resolve("o-1")

        assert not view.is_paid
        assert view.error == MALFORMED_MESSAGE

    @pytest.mark.asyncio
    async def test_circuit_breaker_skips_combined_call(self, scenarios, log_events):
        breaker = CircuitBreaker(CircuitBreakerConfig(error_threshold=2, cooldown_sec=60), log_event=log_events)
        resolver = _resolver(scenarios, log_events, breaker=breaker)
        scenarios.fail(RPC)

        await resolver.resolve("B")
        await resolver.resolve("B")
        assert breaker.is_tripped

        view = await resolver.resolve("B")

        assert view.is_paid
        assert scenarios.call_count(RPC) == 2
        assert "combined_call_skipped" in log_events.names()
        assert "circuit_open" in log_events.names()


class TestAutoReconcile:
    @pytest.mark.asyncio
    async def test_drift_triggers_one_repair_and_one_followup(self, scenarios):
        resolver = _resolver(scenarios)
        followups = []
        done = asyncio.Event()

        def on_followup(view):
            followups.append(view)
            done.set()

        view = await resolver.resolve("A", ResolveOptions(on_followup=on_followup))
        await asyncio.wait_for(done.wait(), timeout=1.0)

        assert view.needs_reconciliation
        assert scenarios.call_count(RECONCILE) == 1
        assert len(followups) == 1
        assert followups[0].is_paid
        assert not followups[0].needs_reconciliation
        assert followups[0].source == StatusSource.RECONCILED
        assert scenarios.orders["A"]["payment_status"] == "paid"
        await resolver.reconciler.close()

    @pytest.mark.asyncio
    async def test_repair_failure_is_not_raised(self, scenarios, log_events):
        scenarios.fail(RECONCILE)
        resolver = _resolver(scenarios, log_events)

        view = await resolver.resolve("A")

        assert view.needs_reconciliation
        assert resolver.reconciler.pending_followups == 0
        assert "auto_reconcile_failed" in log_events.names()

    @pytest.mark.asyncio
    async def test_consistent_order_is_not_repaired(self, scenarios):
        await _resolver(scenarios).resolve("B")
        assert scenarios.call_count(RECONCILE) == 0


class TestManualReconcile:
    @pytest.mark.asyncio
    async def test_success_re_resolves_once(self, scenarios):
        resolver = _resolver(scenarios)

        result = await resolver.manual_reconcile("A")

        assert result.success
        assert scenarios.call_count(RPC) == 1
        assert result.view.is_paid
        assert not result.view.needs_reconciliation
        assert result.view.source == StatusSource.RECONCILED

    @pytest.mark.asyncio
    async def test_failure_still_re_resolves_once(self, scenarios):
        scenarios.function_responses["payment-reconcile"] = {"success": False, "error": "locked"}
        resolver = _resolver(scenarios)

        result = await resolver.manual_reconcile("A")

        assert not result.success
        assert result.error
        assert scenarios.call_count(RPC) == 1
        assert scenarios.call_count(RECONCILE) == 1
        assert result.view.needs_reconciliation
        assert result.view.source == StatusSource.TRANSACTION
