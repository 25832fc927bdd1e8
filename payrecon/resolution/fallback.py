"""
FallbackQueryChain: resolve an order when the combined remote call is unavailable.

Steps, ordered by ViewPrecedence:
- "combined_view": read the denormalized orders-with-payment view
- "direct": read the aggregate, then the newest ledger rows, and apply precedence

Each step captures its own errors. run() never raises; when every step fails
it returns the safe unpaid view and logs the failure.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import Any, Awaitable, Callable, List, Optional, Tuple

from payrecon.core.errors import DataError, PaymentStatusError
from payrecon.core.models import PaymentStatusView, ViewPrecedence
from payrecon.resolution.accessors import AggregateAccessor, CombinedViewAccessor, LedgerAccessor
from payrecon.resolution.precedence import apply_precedence, view_from_combined_row

log = logging.getLogger("payrecon")

TOTAL_FAILURE_MESSAGE = "Unable to determine payment status"


class FallbackQueryChain:
    def __init__(
        self,
        aggregates: AggregateAccessor,
        ledger: LedgerAccessor,
        combined_view: Optional[CombinedViewAccessor] = None,
        precedence: ViewPrecedence = ViewPrecedence.VIEW_FIRST,
        metrics=None,
        log_event: Optional[Callable[..., None]] = None,
    ) -> None:
        self.aggregates = aggregates
        self.ledger = ledger
        self.combined_view = combined_view
        self.precedence = precedence
        self.metrics = metrics
        self._log_event = log_event or self._default_log

    def _default_log(self, event: str, **kwargs: Any) -> None:
        log.info(json.dumps({"event": event, **kwargs}, default=str))

    def steps(self) -> List[Tuple[str, Callable[[str, bool], Awaitable[Optional[PaymentStatusView]]]]]:
        direct = ("direct", self._direct_step)
        if self.combined_view is None or self.precedence == ViewPrecedence.RAW_ONLY:
            return [direct]
        view = ("combined_view", self._combined_view_step)
        if self.precedence in (ViewPrecedence.RAW_FIRST, ViewPrecedence.CROSS_CHECK):
            return [direct, view]
        return [view, direct]

    async def run(self, order_id: str, after_repair: bool = False) -> PaymentStatusView:
        view, answered_by = await self._run_steps(order_id, after_repair)
        cross_check = self.precedence == ViewPrecedence.CROSS_CHECK and self.combined_view is not None
        if cross_check and answered_by == "direct" and view.error is None:
            await self._cross_check(order_id, view, after_repair)
        return view

    async def _run_steps(self, order_id: str, after_repair: bool) -> Tuple[PaymentStatusView, Optional[str]]:
        errors = []
        for name, step in self.steps():
            start = time.time()
            try:
                view = await step(order_id, after_repair)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                errors.append(f"{name}: {exc}")
                self._record(name, "error")
                self._log_event(
                    "combined_view_failed" if name == "combined_view" else "direct_query_failed",
                    order_id=order_id,
                    error=str(exc),
                    error_type=type(exc).__name__,
                )
                continue
            if view is None:
                self._record(name, "empty")
                errors.append(f"{name}: no row")
                continue
            self._record(name, "ok")
            self._log_event(
                "fallback_resolved",
                order_id=order_id,
                step=name,
                is_paid=view.is_paid,
                needs_reconciliation=view.needs_reconciliation,
                duration_ms=round((time.time() - start) * 1000, 1),
            )
            return view, name

        self._log_event("fallback_failed", order_id=order_id, errors=errors)
        return PaymentStatusView.unknown(error=TOTAL_FAILURE_MESSAGE), None

    async def _cross_check(self, order_id: str, raw: PaymentStatusView, after_repair: bool) -> None:
        """Compare the view against the raw-table answer; the raw answer stands."""
        try:
            other = await self._combined_view_step(order_id, after_repair)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self._record("combined_view", "error")
            self._log_event("combined_view_failed", order_id=order_id, error=str(exc))
            return
        if other is not None and not other.same_state(raw):
            self._record("combined_view", "drift")
            self._log_event(
                "view_drift",
                order_id=order_id,
                raw=raw.to_dict(),
                view=other.to_dict(),
            )

    async def _combined_view_step(self, order_id: str, after_repair: bool) -> Optional[PaymentStatusView]:
        row = await self.combined_view.fetch(order_id)
        if row is None:
            return None
        return view_from_combined_row(row, after_repair=after_repair)

    async def _direct_step(self, order_id: str, after_repair: bool) -> Optional[PaymentStatusView]:
        order = await self.aggregates.get(order_id)
        if order is None:
            raise DataError(f"order {order_id} not found")

        try:
            settled_tx = await self.ledger.latest_settled(order_id)
        except PaymentStatusError as exc:
            # Aggregate alone still gives a well-formed, if possibly stale, answer
            self._log_event("ledger_lookup_failed", order_id=order_id, error=str(exc))
            return apply_precedence(order, None, after_repair=after_repair, error="Payment ledger unavailable")

        return apply_precedence(order, settled_tx, after_repair=after_repair)

    def _record(self, step: str, outcome: str) -> None:
        if self.metrics is not None:
            self.metrics.fallback_steps.labels(step=step, outcome=outcome).inc()
