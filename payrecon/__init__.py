"""
payrecon: payment status resolution and reconciliation.

Resolves whether an order has been paid from two independently written
stores (the order aggregate and the append-only payment ledger), detects
drift between them, and requests idempotent repairs.
"""

from payrecon.aggregation.multi_order import MultiOrderAggregator, StatusBatch
from payrecon.config.config import Settings
from payrecon.core.errors import DataError, NetworkError, PaymentStatusError, ReconciliationError
from payrecon.core.models import PaymentStatusView, StatusSource, ViewPrecedence
from payrecon.engine import PaymentStatusEngine, build_engine
from payrecon.monitoring.health import HealthMonitor, HealthReport
from payrecon.orchestrator.status_tracker import PaymentStatusTracker, TrackerOptions
from payrecon.resolution.resolver import ResolveOptions, StatusResolver

__version__ = "0.1.0"

__all__ = [
    "MultiOrderAggregator",
    "StatusBatch",
    "Settings",
    "DataError",
    "NetworkError",
    "PaymentStatusError",
    "ReconciliationError",
    "PaymentStatusView",
    "StatusSource",
    "ViewPrecedence",
    "PaymentStatusEngine",
    "build_engine",
    "HealthMonitor",
    "HealthReport",
    "PaymentStatusTracker",
    "TrackerOptions",
    "ResolveOptions",
    "StatusResolver",
]
