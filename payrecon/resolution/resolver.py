"""
StatusResolver: one order, one PaymentStatusView.

Primary path is the combined remote procedure, which applies the precedence
rule server-side in a single round trip. When that call fails with a network
error (or the circuit breaker has it parked) the fallback chain takes over.
A well-formed "order not found" or a malformed row resolves to the safe
unpaid view without falling back.

resolve_view() never raises. resolve() additionally triggers the automatic
repair when drift is detected.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional

from payrecon.core.circuit_breaker import CircuitBreaker
from payrecon.core.errors import DataError, NetworkError
from payrecon.core.models import PaymentStatusView
from payrecon.resolution.accessors import CombinedStatusAccessor
from payrecon.resolution.fallback import FallbackQueryChain
from payrecon.resolution.precedence import view_from_combined_row
from payrecon.resolution.reconciler import AutoReconciler, RepairResult

log = logging.getLogger("payrecon")

NOT_FOUND_MESSAGE = "Order not found"
MALFORMED_MESSAGE = "Malformed payment status record"


@dataclass
class ResolveOptions:
    auto_reconcile: bool = True
    # Called with the re-resolved view once the post-repair follow-up lands
    on_followup: Optional[Callable[[PaymentStatusView], Any]] = None


@dataclass
class ManualReconcileResult:
    success: bool
    view: Optional[PaymentStatusView] = None
    error: Optional[str] = None


class StatusResolver:
    def __init__(
        self,
        combined: CombinedStatusAccessor,
        fallback: FallbackQueryChain,
        reconciler: Optional[AutoReconciler] = None,
        breaker: Optional[CircuitBreaker] = None,
        auto_reconcile: bool = True,
        metrics=None,
        log_event: Optional[Callable[..., None]] = None,
    ) -> None:
        self.combined = combined
        self.fallback = fallback
        self.reconciler = reconciler
        self.breaker = breaker
        self.auto_reconcile = auto_reconcile
        self.metrics = metrics
        self._log_event = log_event or self._default_log

    def _default_log(self, event: str, **kwargs: Any) -> None:
        log.info(json.dumps({"event": event, **kwargs}, default=str))

    async def resolve_view(self, order_id: str, after_repair: bool = False) -> PaymentStatusView:
        """Resolve without any side effects."""
        start = time.time()
        try:
            view, path = await self._resolve(order_id, after_repair)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self._log_event("resolve_unexpected_error", order_id=order_id, error=str(exc), error_type=type(exc).__name__)
            view, path = await self.fallback.run(order_id, after_repair), "fallback"

        if self.metrics is not None:
            self.metrics.resolutions.labels(path=path, source=view.source.value).inc()
            self.metrics.resolution_latency_ms.observe((time.time() - start) * 1000)
        return view

    async def _resolve(self, order_id: str, after_repair: bool):
        if self.breaker is not None and self.breaker.is_tripped:
            self._log_event(
                "combined_call_skipped",
                order_id=order_id,
                cooldown_remaining=round(self.breaker.cooldown_remaining, 1),
            )
            return await self.fallback.run(order_id, after_repair), "fallback"

        try:
            row = await self.combined.fetch(order_id)
        except NetworkError as exc:
            if self.breaker is not None:
                self.breaker.record_error("combined_status", exc)
            self._log_event("combined_call_failed", order_id=order_id, error=str(exc), status_code=exc.status_code)
            return await self.fallback.run(order_id, after_repair), "fallback"
        except DataError as exc:
            self._log_event("data_error", order_id=order_id, error=str(exc))
            return PaymentStatusView.unknown(error=MALFORMED_MESSAGE), "combined"

        if self.breaker is not None:
            self.breaker.record_success()

        if row is None:
            self._log_event("data_error", order_id=order_id, error="order not found")
            return PaymentStatusView.unknown(error=NOT_FOUND_MESSAGE), "combined"

        try:
            return view_from_combined_row(row, after_repair=after_repair), "combined"
        except DataError as exc:
            self._log_event("data_error", order_id=order_id, error=str(exc))
            return PaymentStatusView.unknown(error=MALFORMED_MESSAGE), "combined"

    async def resolve(self, order_id: str, options: Optional[ResolveOptions] = None) -> PaymentStatusView:
        """
        Resolve one order; on drift, request a repair and schedule one follow-up.

        The returned view is the pre-repair view. The follow-up result is
        delivered through options.on_followup.
        """
        options = options or ResolveOptions(auto_reconcile=self.auto_reconcile)
        view = await self.resolve_view(order_id)
        if view.needs_reconciliation and options.auto_reconcile and self.reconciler is not None:
            await self.reconciler.handle_drift(order_id, self._followup(order_id, options.on_followup))
        return view

    def _followup(self, order_id: str, on_followup):
        async def refresh() -> PaymentStatusView:
            view = await self.resolve_view(order_id, after_repair=True)
            if on_followup is not None:
                result = on_followup(view)
                if asyncio.iscoroutine(result):
                    await result
            return view
        return refresh

    async def manual_reconcile(self, order_id: str) -> ManualReconcileResult:
        """
        Explicit repair request. Re-resolves exactly once afterwards,
        whether or not the repair succeeded, without triggering another
        automatic repair.
        """
        if self.reconciler is None:
            view = await self.resolve_view(order_id)
            return ManualReconcileResult(success=False, view=view, error="Reconciliation unavailable")

        result: RepairResult = await self.reconciler.repair(order_id, trigger="manual")
        view = await self.resolve_view(order_id, after_repair=result.success)
        return ManualReconcileResult(success=result.success, view=view, error=result.error)
