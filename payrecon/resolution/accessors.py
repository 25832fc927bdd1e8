"""
Read-only accessors for the order aggregate, the transaction ledger and the
two combined sources (remote procedure and denormalized view).

Nothing here writes. Failures propagate as NetworkError / DataError so the
resolver and aggregator can pick the degradation path.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional

from payrecon.core.errors import DataError
from payrecon.core.models import SETTLED_TRANSACTION_STATUSES, OrderAggregate, TransactionRecord
from payrecon.infra.rest_client import AsyncDataClient, eq, in_

AGGREGATE_COLUMNS = "id,payment_status,paid_at,status"
LEDGER_COLUMNS = "order_id,status,paid_at,channel,provider_reference,created_at"

log = logging.getLogger("payrecon")


def latest_settled(transactions: Iterable[TransactionRecord]) -> Optional[TransactionRecord]:
    """Most recent success/paid row, newest by created_at (rows without one sort last)."""
    settled = [tx for tx in transactions if tx.is_settled]
    if not settled:
        return None
    dated = [tx for tx in settled if tx.created_at is not None]
    if dated:
        return max(dated, key=lambda tx: tx.created_at)
    return settled[0]


class AggregateAccessor:
    def __init__(
        self,
        client: AsyncDataClient,
        table: str = "orders",
        log_event: Optional[Callable[..., None]] = None,
    ) -> None:
        self._client = client
        self.table = table
        self._log_event = log_event or self._default_log

    def _default_log(self, event: str, **kwargs: Any) -> None:
        log.warning(json.dumps({"event": event, **kwargs}, default=str))

    async def get(self, order_id: str) -> Optional[OrderAggregate]:
        rows = await self._client.select(self.table, AGGREGATE_COLUMNS, {"id": eq(order_id)}, limit=1)
        if not rows:
            return None
        return OrderAggregate.from_row(rows[0])

    async def get_many(self, order_ids: List[str]) -> Dict[str, Optional[OrderAggregate]]:
        """
        One query for many aggregates.

        Ids without a row are absent. A row that cannot be decoded maps to None
        and is logged; it does not fail the rest of the batch.
        """
        if not order_ids:
            return {}
        rows = await self._client.select(self.table, AGGREGATE_COLUMNS, {"id": in_(order_ids)})
        found: Dict[str, Optional[OrderAggregate]] = {}
        for row in rows:
            try:
                order = OrderAggregate.from_row(row)
            except DataError as exc:
                order_id = row.get("id") if isinstance(row, Mapping) else None
                self._log_event("data_error", order_id=order_id, error=str(exc))
                if order_id:
                    found[str(order_id)] = None
                continue
            found[order.id] = order
        return found


class LedgerAccessor:
    def __init__(self, client: AsyncDataClient, table: str = "payment_transactions", lookback: int = 10) -> None:
        self._client = client
        self.table = table
        self.lookback = lookback

    async def latest_settled(self, order_id: str) -> Optional[TransactionRecord]:
        """Newest success/paid row for one order, however many other rows follow it."""
        rows = await self._client.select(
            self.table,
            LEDGER_COLUMNS,
            {"order_id": eq(order_id), "status": in_(sorted(SETTLED_TRANSACTION_STATUSES))},
            order="created_at.desc",
            limit=self.lookback,
        )
        return latest_settled(TransactionRecord.from_row(row, order_id=order_id) for row in rows)

    async def latest_settled_many(self, order_ids: List[str]) -> Dict[str, Optional[TransactionRecord]]:
        """
        One query for settled rows across many orders.

        Every requested id appears in the result, None where no settled row exists.
        """
        result: Dict[str, Optional[TransactionRecord]] = {oid: None for oid in order_ids}
        if not order_ids:
            return result
        rows = await self._client.select(
            self.table,
            LEDGER_COLUMNS,
            {"order_id": in_(order_ids), "status": in_(sorted(SETTLED_TRANSACTION_STATUSES))},
            order="created_at.desc",
        )
        by_order: Dict[str, List[TransactionRecord]] = {}
        for row in rows:
            tx = TransactionRecord.from_row(row)
            by_order.setdefault(tx.order_id, []).append(tx)
        for oid, txs in by_order.items():
            if oid in result:
                result[oid] = latest_settled(txs)
        return result


def _first_row(data: Any) -> Optional[Mapping[str, Any]]:
    if data is None:
        return None
    if isinstance(data, list):
        if not data:
            return None
        data = data[0]
    if not isinstance(data, Mapping):
        raise DataError(f"expected a status row, got {type(data).__name__}")
    return data


class CombinedStatusAccessor:
    """The single-round-trip remote procedure."""

    def __init__(self, client: AsyncDataClient, rpc_name: str = "get_order_payment_status") -> None:
        self._client = client
        self.rpc_name = rpc_name

    async def fetch(self, order_id: str) -> Optional[Mapping[str, Any]]:
        return _first_row(await self._client.rpc(self.rpc_name, {"p_order_id": order_id}))


class CombinedViewAccessor:
    """The denormalized orders-with-payment view."""

    COLUMNS = "id,status,payment_status,paid_at,final_paid,final_paid_at,payment_method,needs_reconciliation"

    def __init__(self, client: AsyncDataClient, view: str = "orders_with_payment") -> None:
        self._client = client
        self.view = view

    async def fetch(self, order_id: str) -> Optional[Mapping[str, Any]]:
        rows = await self._client.select(self.view, self.COLUMNS, {"id": eq(order_id)}, limit=1)
        return _first_row(rows)
