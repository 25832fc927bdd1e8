"""
Monitoring and observability package.

This package contains the Prometheus metrics and the payment system health monitor.
"""

from payrecon.monitoring.health import HealthMonitor, HealthReport, parse_health_payload
from payrecon.monitoring.metrics_rich import PaymentMetrics

__all__ = [
    "HealthMonitor",
    "HealthReport",
    "parse_health_payload",
    "PaymentMetrics",
]
