"""
Payment domain records and the resolved status view.

OrderAggregate and TransactionRecord mirror the two stores the engine reads.
PaymentStatusView is the ephemeral projection handed back to callers; it is
recomputed on every resolution and never written anywhere.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Mapping, Optional

from payrecon.core.errors import DataError
from payrecon.core.utils import parse_timestamp, utc_now


class AggregatePaymentStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"


class TransactionStatus(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"
    PAID = "paid"


# Ledger statuses that count as money received
SETTLED_TRANSACTION_STATUSES = frozenset({TransactionStatus.SUCCESS.value, TransactionStatus.PAID.value})


class StatusSource(str, Enum):
    """Where the current view's paid/unpaid answer came from."""
    ORDER = "order"
    TRANSACTION = "transaction"
    RECONCILED = "reconciled"
    LOADING = "loading"


@dataclass(frozen=True)
class OrderAggregate:
    """Order record as held by the order-processing path."""
    id: str
    payment_status: str = AggregatePaymentStatus.PENDING.value
    paid_at: Optional[datetime] = None
    status: str = "pending"

    # Denormalized columns, present only on schemas that carry them
    computed_paid: Optional[bool] = None
    computed_paid_at: Optional[datetime] = None
    payment_channel: Optional[str] = None
    payment_method: Optional[str] = None
    needs_reconciliation: Optional[bool] = None

    @property
    def is_paid(self) -> bool:
        return self.payment_status == AggregatePaymentStatus.PAID.value

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "OrderAggregate":
        if not isinstance(row, Mapping) or not row.get("id"):
            raise DataError(f"order row missing id: {row!r}")
        computed_paid = row.get("computed_paid")
        needs = row.get("needs_reconciliation")
        return cls(
            id=str(row["id"]),
            payment_status=str(row.get("payment_status") or AggregatePaymentStatus.PENDING.value),
            paid_at=parse_timestamp(row.get("paid_at")),
            status=str(row.get("status") or "pending"),
            computed_paid=None if computed_paid is None else bool(computed_paid),
            computed_paid_at=parse_timestamp(row.get("computed_paid_at")),
            payment_channel=row.get("payment_channel"),
            payment_method=row.get("payment_method"),
            needs_reconciliation=None if needs is None else bool(needs),
        )


@dataclass(frozen=True)
class TransactionRecord:
    """One append-only ledger row written by the payment-callback path."""
    order_id: str
    status: str
    paid_at: Optional[datetime] = None
    channel: Optional[str] = None
    provider_reference: Optional[str] = None
    created_at: Optional[datetime] = None

    @property
    def is_settled(self) -> bool:
        return self.status in SETTLED_TRANSACTION_STATUSES

    @classmethod
    def from_row(cls, row: Mapping[str, Any], order_id: Optional[str] = None) -> "TransactionRecord":
        if not isinstance(row, Mapping) or "status" not in row:
            raise DataError(f"transaction row missing status: {row!r}")
        oid = row.get("order_id") or order_id
        if not oid:
            raise DataError(f"transaction row missing order_id: {row!r}")
        return cls(
            order_id=str(oid),
            status=str(row["status"]),
            paid_at=parse_timestamp(row.get("paid_at")),
            channel=row.get("channel"),
            provider_reference=row.get("provider_reference"),
            created_at=parse_timestamp(row.get("created_at")),
        )


@dataclass(frozen=True)
class PaymentStatusView:
    """
    Resolved payment truth for one order.

    Two views describe the same state when every field except
    last_updated (and the display-only error) matches; see same_state().
    """
    is_paid: bool = False
    paid_at: Optional[datetime] = None
    payment_method: Optional[str] = None
    source: StatusSource = StatusSource.LOADING
    last_updated: datetime = field(default_factory=utc_now)
    needs_reconciliation: bool = False
    order_status: str = "pending"
    error: Optional[str] = None

    @classmethod
    def loading(cls) -> "PaymentStatusView":
        return cls(source=StatusSource.LOADING)

    @classmethod
    def unknown(cls, error: Optional[str] = None) -> "PaymentStatusView":
        """Safe unpaid view used whenever nothing could be established."""
        return cls(source=StatusSource.ORDER, error=error)

    def state_key(self) -> tuple:
        return (
            self.is_paid,
            self.paid_at,
            self.payment_method,
            self.source,
            self.needs_reconciliation,
            self.order_status,
        )

    def same_state(self, other: "PaymentStatusView") -> bool:
        return self.state_key() == other.state_key()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "is_paid": self.is_paid,
            "paid_at": self.paid_at.isoformat() if self.paid_at else None,
            "payment_method": self.payment_method,
            "source": self.source.value,
            "last_updated": self.last_updated.isoformat(),
            "needs_reconciliation": self.needs_reconciliation,
            "order_status": self.order_status,
            "error": self.error,
        }


class ViewPrecedence(str, Enum):
    """
    How the fallback chain treats the denormalized combined view.

    VIEW_FIRST: use the view when it answers, raw tables otherwise.
    RAW_FIRST: query raw tables, consult the view only if they fail.
    RAW_ONLY: never read the view.
    CROSS_CHECK: read both, log any disagreement, raw tables win.
    """
    VIEW_FIRST = "view_first"
    RAW_FIRST = "raw_first"
    RAW_ONLY = "raw_only"
    CROSS_CHECK = "cross_check"
