"""
The precedence rule that turns source records into a PaymentStatusView.

The same rule is applied to raw records (fallback chain, batch aggregator)
and mirrored when mapping rows already combined server-side.
"""

from __future__ import annotations

from typing import Any, Mapping, Optional

from payrecon.core.errors import DataError
from payrecon.core.models import OrderAggregate, PaymentStatusView, StatusSource, TransactionRecord
from payrecon.core.utils import parse_timestamp

AGGREGATE_PAID_METHOD = "processed"


def pick_source(is_paid: bool, needs_reconciliation: bool, after_repair: bool) -> StatusSource:
    if needs_reconciliation:
        return StatusSource.TRANSACTION
    if after_repair and is_paid:
        return StatusSource.RECONCILED
    return StatusSource.ORDER


def apply_precedence(
    order: Optional[OrderAggregate],
    settled_tx: Optional[TransactionRecord],
    after_repair: bool = False,
    error: Optional[str] = None,
) -> PaymentStatusView:
    """
    Args:
        order: Aggregate record (None if it could not be read)
        settled_tx: Most recent success/paid ledger row, if any
        after_repair: Resolution directly follows a successful repair
        error: Display-only error carried on the view
    """
    aggregate_paid = order is not None and order.is_paid
    is_paid = aggregate_paid or settled_tx is not None
    needs_reconciliation = not aggregate_paid and settled_tx is not None

    paid_at = order.paid_at if order is not None else None
    if paid_at is None and settled_tx is not None:
        paid_at = settled_tx.paid_at

    if settled_tx is not None and settled_tx.channel:
        method: Optional[str] = settled_tx.channel
    elif aggregate_paid:
        method = AGGREGATE_PAID_METHOD
    else:
        method = None

    return PaymentStatusView(
        is_paid=is_paid,
        paid_at=paid_at,
        payment_method=method,
        source=pick_source(is_paid, needs_reconciliation, after_repair),
        needs_reconciliation=needs_reconciliation,
        order_status=order.status if order is not None else "pending",
        error=error,
    )


def view_from_combined_row(row: Mapping[str, Any], after_repair: bool = False) -> PaymentStatusView:
    """
    Map a server-side combined row (remote procedure or denormalized view).

    Accepts final_* columns or the aggregate's computed_* columns.
    """
    if "final_paid" in row:
        paid_raw, paid_at_raw = row.get("final_paid"), row.get("final_paid_at")
    elif "computed_paid" in row:
        paid_raw, paid_at_raw = row.get("computed_paid"), row.get("computed_paid_at")
    else:
        raise DataError(f"combined row has no paid flag: {sorted(row)}")

    is_paid = bool(paid_raw)
    needs_reconciliation = bool(row.get("needs_reconciliation") or False)
    method = row.get("payment_method") or row.get("payment_channel")
    if not is_paid and method == "pending":
        # server-side views label unpaid orders with a placeholder method
        method = None
    if is_paid and not method:
        method = AGGREGATE_PAID_METHOD

    return PaymentStatusView(
        is_paid=is_paid,
        paid_at=parse_timestamp(paid_at_raw),
        payment_method=method,
        source=pick_source(is_paid, needs_reconciliation, after_repair),
        needs_reconciliation=needs_reconciliation,
        order_status=str(row.get("order_status") or row.get("status") or "pending"),
    )
