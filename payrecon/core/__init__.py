"""
Core package.

Domain records, error taxonomy, the in-process change feed, the combined-call
circuit breaker and small helpers.
"""

from payrecon.core.circuit_breaker import CircuitBreaker, CircuitBreakerConfig
from payrecon.core.errors import DataError, NetworkError, PaymentStatusError, ReconciliationError
from payrecon.core.event_bus import ChangeEvent, ChangeFeed, ChangeKind, Subscription
from payrecon.core.models import (
    SETTLED_TRANSACTION_STATUSES,
    AggregatePaymentStatus,
    OrderAggregate,
    PaymentStatusView,
    StatusSource,
    TransactionRecord,
    TransactionStatus,
    ViewPrecedence,
)
from payrecon.core.utils import parse_timestamp, utc_now

__all__ = [
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "DataError",
    "NetworkError",
    "PaymentStatusError",
    "ReconciliationError",
    "ChangeEvent",
    "ChangeFeed",
    "ChangeKind",
    "Subscription",
    "SETTLED_TRANSACTION_STATUSES",
    "AggregatePaymentStatus",
    "OrderAggregate",
    "PaymentStatusView",
    "StatusSource",
    "TransactionRecord",
    "TransactionStatus",
    "ViewPrecedence",
    "parse_timestamp",
    "utc_now",
]
