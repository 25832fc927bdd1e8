"""
MultiOrderAggregator: payment status for many orders with batched reads.

One aggregate query covers every requested id. Orders the aggregate does not
already show as paid get a ledger lookup to complete the precedence rule:
a single batched query first, per-order lookups if that fails. A ledger
failure for one order degrades only that order to aggregate-only status.

Every requested id gets an entry; ids the aggregate does not know resolve
to the safe unpaid view.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import Any, Callable, Dict, Iterable, Iterator, List, Mapping, Optional, Set, Tuple

from payrecon.core.models import OrderAggregate, PaymentStatusView, TransactionRecord
from payrecon.resolution.accessors import AggregateAccessor, LedgerAccessor
from payrecon.resolution.precedence import apply_precedence
from payrecon.resolution.reconciler import AutoReconciler
from payrecon.resolution.resolver import MALFORMED_MESSAGE

log = logging.getLogger("payrecon")

BATCH_FAILURE_MESSAGE = "Unable to load orders"
NOT_FOUND_MESSAGE = "Order not found"
LEDGER_UNAVAILABLE_MESSAGE = "Payment ledger unavailable"


class StatusBatch(Mapping[str, PaymentStatusView]):
    """Read-only order_id -> PaymentStatusView mapping with derived projections."""

    def __init__(self, statuses: Dict[str, PaymentStatusView], error: Optional[str] = None) -> None:
        self._statuses = dict(statuses)
        self.error = error

    def __getitem__(self, order_id: str) -> PaymentStatusView:
        return self._statuses[order_id]

    def __iter__(self) -> Iterator[str]:
        return iter(self._statuses)

    def __len__(self) -> int:
        return len(self._statuses)

    def __repr__(self) -> str:
        return f"StatusBatch({len(self)} orders, error={self.error!r})"

    def paid_orders(self) -> Dict[str, PaymentStatusView]:
        return {k: v for k, v in self._statuses.items() if v.is_paid}

    def unpaid_orders(self) -> Dict[str, PaymentStatusView]:
        return {k: v for k, v in self._statuses.items() if not v.is_paid}

    def needing_reconciliation(self) -> Dict[str, PaymentStatusView]:
        return {k: v for k, v in self._statuses.items() if v.needs_reconciliation}

    def to_dict(self) -> Dict[str, Any]:
        return {k: v.to_dict() for k, v in self._statuses.items()}


class MultiOrderAggregator:
    def __init__(
        self,
        aggregates: AggregateAccessor,
        ledger: LedgerAccessor,
        reconciler: Optional[AutoReconciler] = None,
        batch_ledger: bool = True,
        metrics=None,
        log_event: Optional[Callable[..., None]] = None,
    ) -> None:
        self.aggregates = aggregates
        self.ledger = ledger
        self.reconciler = reconciler
        self.batch_ledger = batch_ledger
        self.metrics = metrics
        self._log_event = log_event or self._default_log

        self.statuses = StatusBatch({})
        self._last_ids: List[str] = []

    def _default_log(self, event: str, **kwargs: Any) -> None:
        log.info(json.dumps({"event": event, **kwargs}, default=str))

    @property
    def error(self) -> Optional[str]:
        return self.statuses.error

    def status_for(self, order_id: str) -> Optional[PaymentStatusView]:
        return self.statuses.get(order_id)

    async def resolve_many(self, order_ids: Iterable[str]) -> StatusBatch:
        """Never raises; every requested id gets an entry."""
        ids = list(dict.fromkeys(str(i) for i in order_ids))
        self._last_ids = ids
        if not ids:
            self.statuses = StatusBatch({})
            return self.statuses

        start = time.time()
        if self.metrics is not None:
            self.metrics.batch_size.observe(len(ids))

        try:
            orders = await self.aggregates.get_many(ids)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self._log_event("batch_aggregate_failed", count=len(ids), error=str(exc), error_type=type(exc).__name__)
            self.statuses = StatusBatch(
                {oid: PaymentStatusView.unknown(error=BATCH_FAILURE_MESSAGE) for oid in ids},
                error=BATCH_FAILURE_MESSAGE,
            )
            return self.statuses

        unpaid = [oid for oid in ids if orders.get(oid) is not None and not orders[oid].is_paid]
        settled, failed = await self._ledger_lookup(unpaid)

        statuses = {
            oid: self._view_for(oid, orders.get(oid), settled.get(oid), oid in failed, malformed=oid in orders)
            for oid in ids
        }
        self.statuses = StatusBatch(statuses)
        self._log_event(
            "batch_resolved",
            count=len(ids),
            paid=len(self.statuses.paid_orders()),
            needs_reconciliation=len(self.statuses.needing_reconciliation()),
            ledger_failures=len(failed),
            duration_ms=round((time.time() - start) * 1000, 1),
        )
        return self.statuses

    @staticmethod
    def _view_for(
        order_id: str,
        order: Optional[OrderAggregate],
        settled_tx: Optional[TransactionRecord],
        ledger_failed: bool,
        malformed: bool = False,
    ) -> PaymentStatusView:
        if order is None:
            return PaymentStatusView.unknown(error=MALFORMED_MESSAGE if malformed else NOT_FOUND_MESSAGE)
        if ledger_failed:
            return apply_precedence(order, None, error=LEDGER_UNAVAILABLE_MESSAGE)
        return apply_precedence(order, settled_tx)

    async def _ledger_lookup(
        self,
        order_ids: List[str],
    ) -> Tuple[Dict[str, Optional[TransactionRecord]], Set[str]]:
        """Returns (latest settled row per id, ids whose lookup failed)."""
        if not order_ids:
            return {}, set()

        if self.batch_ledger:
            try:
                return await self.ledger.latest_settled_many(order_ids), set()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                self._log_event("batch_ledger_failed", count=len(order_ids), error=str(exc))

        results = await asyncio.gather(
            *(self.ledger.latest_settled(oid) for oid in order_ids),
            return_exceptions=True,
        )
        settled: Dict[str, Optional[TransactionRecord]] = {}
        failed: Set[str] = set()
        for oid, result in zip(order_ids, results):
            if isinstance(result, asyncio.CancelledError):
                raise result
            if isinstance(result, BaseException):
                failed.add(oid)
                self._log_event("ledger_lookup_failed", order_id=oid, error=str(result))
                continue
            settled[oid] = result
        return settled, failed

    async def refresh_all(self) -> StatusBatch:
        return await self.resolve_many(self._last_ids)

    async def reconcile_all(self, order_ids: Optional[Iterable[str]] = None) -> bool:
        """
        Bulk repair, then re-resolve the same ids on success.

        Returns:
            True if the repair action succeeded
        """
        if self.reconciler is None:
            return False
        ids = list(order_ids) if order_ids is not None else list(self._last_ids)
        result = await self.reconciler.repair_all()
        if result.success:
            await self.resolve_many(ids)
        return result.success
