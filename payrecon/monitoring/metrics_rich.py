"""
Prometheus metrics for payment status resolution.

Organized into: resolution, reconciliation, refresh, health.
"""

from typing import Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram


class PaymentMetrics:
    """Metrics for the resolution engine."""

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        reg = registry or CollectorRegistry()
        self.registry = reg

        # === Resolution Metrics ===
        self.resolutions = Counter(
            'payment_resolutions_total',
            'Payment status resolutions by path and resulting source',
            labelnames=['path', 'source'],
            registry=reg
        )
        self.fallback_steps = Counter(
            'payment_fallback_steps_total',
            'Fallback chain steps attempted',
            labelnames=['step', 'outcome'],
            registry=reg
        )
        self.resolution_latency_ms = Histogram(
            'payment_resolution_latency_ms',
            'Time to resolve one order (milliseconds)',
            buckets=[5, 10, 25, 50, 100, 250, 500, 1000, 2500, 5000],
            registry=reg
        )
        self.batch_size = Histogram(
            'payment_batch_size',
            'Order ids per resolve_many call',
            buckets=[1, 5, 10, 25, 50, 100, 250, 500],
            registry=reg
        )

        # === Reconciliation Metrics ===
        self.reconciliations = Counter(
            'payment_reconciliations_total',
            'Reconciliation actions by trigger and outcome',
            labelnames=['trigger', 'outcome'],
            registry=reg
        )

        # === Refresh Metrics ===
        self.poll_ticks = Counter(
            'payment_poll_ticks_total',
            'Poll scheduler ticks',
            registry=reg
        )
        self.realtime_events = Counter(
            'payment_realtime_events_total',
            'Change notifications that triggered a resolution',
            labelnames=['table'],
            registry=reg
        )

        # === Health Metrics ===
        self.inconsistent_orders = Gauge(
            'payment_inconsistent_orders',
            'Orders whose ledger shows payment but aggregate is not paid',
            registry=reg
        )
        self.pending_notifications = Gauge(
            'payment_pending_notifications',
            'Queued payment/order notifications',
            registry=reg
        )
        self.needs_attention = Gauge(
            'payment_health_needs_attention',
            '1 when either health counter is above zero',
            registry=reg
        )
        self.health_check_failures = Counter(
            'payment_health_check_failures_total',
            'Failed health checks',
            registry=reg
        )
