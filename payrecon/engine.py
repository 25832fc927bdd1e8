"""
PaymentStatusEngine: the assembled resolution and reconciliation stack.

build_engine() wires one data client into every accessor, the resolver, the
aggregator, the health monitor and a shared change feed, all from Settings.
Nothing is global; two engines never share state.
"""

from __future__ import annotations

import asyncio
from typing import Iterable, Optional

from payrecon.aggregation.multi_order import MultiOrderAggregator, StatusBatch
from payrecon.config.config import Settings
from payrecon.core.circuit_breaker import CircuitBreaker, CircuitBreakerConfig
from payrecon.core.event_bus import ChangeFeed
from payrecon.core.models import PaymentStatusView
from payrecon.infra.event_logger import EventLogger
from payrecon.infra.rest_client import AsyncDataClient
from payrecon.monitoring.health import HealthMonitor, HealthReport
from payrecon.monitoring.metrics_rich import PaymentMetrics
from payrecon.orchestrator.realtime_listener import RealtimeListener
from payrecon.orchestrator.status_tracker import PaymentStatusTracker, TrackerOptions
from payrecon.resolution.accessors import (
    AggregateAccessor,
    CombinedStatusAccessor,
    CombinedViewAccessor,
    LedgerAccessor,
)
from payrecon.resolution.fallback import FallbackQueryChain
from payrecon.resolution.reconciler import AutoReconciler, AutoReconcilerConfig, ReconciliationGateway
from payrecon.resolution.resolver import ResolveOptions, StatusResolver


class PaymentStatusEngine:
    def __init__(
        self,
        settings: Settings,
        client: AsyncDataClient,
        resolver: StatusResolver,
        aggregator: MultiOrderAggregator,
        health: HealthMonitor,
        feed: ChangeFeed,
        metrics: Optional[PaymentMetrics] = None,
        event_logger: Optional[EventLogger] = None,
        owns_client: bool = True,
    ) -> None:
        self.settings = settings
        self.client = client
        self.resolver = resolver
        self.aggregator = aggregator
        self.health = health
        self.feed = feed
        self.metrics = metrics
        self.event_logger = event_logger or EventLogger()
        self.listener = RealtimeListener(
            feed,
            orders_table=settings.orders_table,
            ledger_table=settings.ledger_table,
            log_event=self.event_logger.get_callback(),
            metrics=metrics,
        )
        self._owns_client = owns_client
        self._trackers: list[PaymentStatusTracker] = []
        self._feed_task: Optional[asyncio.Task] = None

    def _ensure_feed(self) -> None:
        """Run the change feed in the background while the engine is open."""
        if self._feed_task is None or self._feed_task.done():
            self._feed_task = asyncio.create_task(self.feed.start(), name="change-feed")

    async def resolve(self, order_id: str, auto_reconcile: Optional[bool] = None) -> PaymentStatusView:
        if auto_reconcile is None:
            auto_reconcile = self.settings.auto_reconcile
        return await self.resolver.resolve(order_id, ResolveOptions(auto_reconcile=auto_reconcile))

    async def resolve_many(self, order_ids: Iterable[str]) -> StatusBatch:
        return await self.aggregator.resolve_many(order_ids)

    async def manual_reconcile(self, order_id: str) -> bool:
        result = await self.resolver.manual_reconcile(order_id)
        return result.success

    async def reconcile_all(self, order_ids: Optional[Iterable[str]] = None) -> bool:
        return await self.aggregator.reconcile_all(order_ids)

    async def check_health(self) -> HealthReport:
        return await self.health.check_health()

    def tracker(self, options: Optional[TrackerOptions] = None) -> PaymentStatusTracker:
        """New per-order tracker bound to this engine; closed with the engine."""
        options = options or TrackerOptions(
            auto_reconcile=self.settings.auto_reconcile,
            poll_interval_sec=self.settings.poll_interval_sec,
            enable_realtime=self.settings.enable_realtime,
        )
        tracker = PaymentStatusTracker(
            self.resolver,
            listener=self.listener,
            options=options,
            metrics=self.metrics,
            log_event=self.event_logger.get_callback(),
        )
        self._trackers.append(tracker)
        if options.enable_realtime:
            self._ensure_feed()
        return tracker

    async def close(self) -> None:
        for tracker in self._trackers:
            await tracker.close()
        self._trackers.clear()
        await self.health.stop()
        if self.resolver.reconciler is not None:
            await self.resolver.reconciler.close()
        self.feed.stop()
        if self._feed_task is not None:
            self._feed_task.cancel()
            await asyncio.gather(self._feed_task, return_exceptions=True)
            self._feed_task = None
        if self._owns_client:
            await self.client.close()

    async def __aenter__(self) -> "PaymentStatusEngine":
        self._ensure_feed()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()


def build_engine(
    settings: Settings,
    client: Optional[AsyncDataClient] = None,
    feed: Optional[ChangeFeed] = None,
    metrics: Optional[PaymentMetrics] = None,
    event_logger: Optional[EventLogger] = None,
) -> PaymentStatusEngine:
    owns_client = client is None
    if client is None:
        client = AsyncDataClient(settings.base_url, api_key=settings.api_key, timeout=settings.http_timeout)
    event_logger = event_logger or EventLogger()
    log_event = event_logger.get_callback()
    feed = feed or ChangeFeed(log_event=log_event)

    aggregates = AggregateAccessor(client, settings.orders_table, log_event=log_event)
    ledger = LedgerAccessor(client, settings.ledger_table, lookback=settings.ledger_lookback)
    combined_view = CombinedViewAccessor(client, settings.combined_view) if settings.combined_view else None
    gateway = ReconciliationGateway(client, settings.reconcile_function)

    reconciler = AutoReconciler(
        gateway,
        AutoReconcilerConfig(
            followup_delay_sec=settings.reconcile_delay_sec,
            followup_attempts=settings.reconcile_followup_attempts,
            backoff_multiplier=settings.reconcile_backoff,
        ),
        metrics=metrics,
        log_event=log_event,
    )
    fallback = FallbackQueryChain(
        aggregates,
        ledger,
        combined_view=combined_view,
        precedence=settings.view_precedence,
        metrics=metrics,
        log_event=log_event,
    )
    breaker = CircuitBreaker(
        CircuitBreakerConfig(error_threshold=settings.rpc_error_threshold, cooldown_sec=settings.rpc_cooldown_sec),
        log_event=log_event,
    )
    resolver = StatusResolver(
        CombinedStatusAccessor(client, settings.status_rpc),
        fallback,
        reconciler=reconciler,
        breaker=breaker,
        auto_reconcile=settings.auto_reconcile,
        metrics=metrics,
        log_event=log_event,
    )
    aggregator = MultiOrderAggregator(aggregates, ledger, reconciler=reconciler, metrics=metrics, log_event=log_event)
    health = HealthMonitor(gateway, interval_sec=settings.health_interval_sec, metrics=metrics, log_event=log_event)

    return PaymentStatusEngine(
        settings,
        client,
        resolver,
        aggregator,
        health,
        feed,
        metrics=metrics,
        event_logger=event_logger,
        owns_client=owns_client,
    )
