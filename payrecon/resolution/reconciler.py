"""
Reconciliation: the one privileged write path, and the auto-repair policy around it.

ReconciliationGateway calls the remote reconciliation action
({action: reconcile_order | reconcile_all | check_health}). The action is
idempotent: repairing an already-consistent order is a no-op.

AutoReconciler decides when to call it. On drift it asks for a repair of that
single order and, on success, schedules one re-resolution after a short delay.
It does not retry in a loop: if the repair silently failed, the next poll tick
or realtime event detects the drift again and triggers another repair.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Optional, Set

from payrecon.core.errors import PaymentStatusError, ReconciliationError
from payrecon.core.models import PaymentStatusView
from payrecon.infra.rest_client import AsyncDataClient

log = logging.getLogger("payrecon")

Refresh = Callable[[], Awaitable[Optional[PaymentStatusView]]]


class ReconciliationGateway:
    def __init__(self, client: AsyncDataClient, function_name: str = "payment-reconcile") -> None:
        self._client = client
        self.function_name = function_name

    async def reconcile_order(self, order_id: str) -> Any:
        return await self._invoke({"action": "reconcile_order", "order_id": order_id})

    async def reconcile_all(self) -> Any:
        return await self._invoke({"action": "reconcile_all"})

    async def check_health(self) -> Any:
        return await self._invoke({"action": "check_health"})

    async def _invoke(self, body: Dict[str, Any]) -> Any:
        try:
            payload = await self._client.invoke(self.function_name, body)
        except ReconciliationError:
            raise
        except PaymentStatusError as exc:
            raise ReconciliationError(f"{body['action']} failed: {exc}") from exc

        if isinstance(payload, dict):
            if payload.get("error"):
                raise ReconciliationError(f"{body['action']} failed: {payload['error']}", payload)
            if payload.get("success") is False:
                raise ReconciliationError(f"{body['action']} reported failure", payload)
        return payload


@dataclass
class AutoReconcilerConfig:
    """Configuration for AutoReconciler."""
    followup_delay_sec: float = 2.0
    # 1 = single re-resolution; >1 retries with backoff while still inconsistent
    followup_attempts: int = 1
    backoff_multiplier: float = 2.0


@dataclass
class RepairResult:
    """Result of one repair request."""
    success: bool
    order_id: Optional[str] = None
    error: Optional[str] = None
    payload: Any = None
    followup: Optional[asyncio.Task] = field(default=None, repr=False)


class AutoReconciler:
    """
    Usage:
        reconciler = AutoReconciler(gateway)

        view = await resolver.resolve_view(order_id)
        if view.needs_reconciliation:
            await reconciler.handle_drift(order_id, refresh=lambda: resolver.resolve_view(order_id, after_repair=True))

        await reconciler.close()
    """

    def __init__(
        self,
        gateway: ReconciliationGateway,
        config: Optional[AutoReconcilerConfig] = None,
        metrics=None,
        log_event: Optional[Callable[..., None]] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.gateway = gateway
        self.config = config or AutoReconcilerConfig()
        self.metrics = metrics
        self._sleep = sleep
        self._log_event = log_event or self._default_log
        self._followups: Set[asyncio.Task] = set()

    def _default_log(self, event: str, **kwargs: Any) -> None:
        log.info(json.dumps({"event": event, **kwargs}, default=str))

    @property
    def pending_followups(self) -> int:
        return sum(1 for t in self._followups if not t.done())

    async def repair(self, order_id: str, trigger: str = "auto") -> RepairResult:
        """Ask for a single-order repair. Never raises."""
        try:
            payload = await self.gateway.reconcile_order(order_id)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self._count(trigger, "failure")
            event = "auto_reconcile_failed" if trigger == "auto" else "manual_reconcile_failed"
            self._log_event(event, order_id=order_id, error=str(exc), error_type=type(exc).__name__)
            return RepairResult(success=False, order_id=order_id, error=str(exc) or "Reconciliation failed")

        self._count(trigger, "success")
        self._log_event("order_reconciled", order_id=order_id, trigger=trigger)
        return RepairResult(success=True, order_id=order_id, payload=payload)

    async def repair_all(self) -> RepairResult:
        """Bulk repair across all inconsistent orders. Never raises."""
        try:
            payload = await self.gateway.reconcile_all()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self._count("bulk", "failure")
            self._log_event("bulk_reconcile_failed", error=str(exc), error_type=type(exc).__name__)
            return RepairResult(success=False, error=str(exc) or "Bulk reconciliation failed")

        self._count("bulk", "success")
        self._log_event("bulk_reconciled", result=payload)
        return RepairResult(success=True, payload=payload)

    async def handle_drift(self, order_id: str, refresh: Refresh) -> RepairResult:
        """
        Repair one drifted order; on success schedule the follow-up re-resolution.

        The follow-up task is returned on the result so the caller can cancel it.
        """
        result = await self.repair(order_id, trigger="auto")
        if result.success:
            result.followup = self.schedule_followup(order_id, refresh)
        return result

    def schedule_followup(self, order_id: str, refresh: Refresh) -> asyncio.Task:
        task = asyncio.create_task(self._run_followup(order_id, refresh), name=f"reconcile-followup-{order_id}")
        self._followups.add(task)
        task.add_done_callback(self._followups.discard)
        return task

    async def _run_followup(self, order_id: str, refresh: Refresh) -> None:
        attempts = max(1, self.config.followup_attempts)
        for attempt in range(attempts):
            delay = self.config.followup_delay_sec * (self.config.backoff_multiplier ** attempt)
            await self._sleep(delay)
            try:
                view = await refresh()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                self._log_event("followup_error", order_id=order_id, attempt=attempt + 1, error=str(exc))
                return
            if view is None or not view.needs_reconciliation:
                return
            self._log_event("followup_still_inconsistent", order_id=order_id, attempt=attempt + 1, of=attempts)

    async def close(self) -> None:
        """Cancel outstanding follow-ups."""
        tasks = [t for t in self._followups if not t.done()]
        for t in tasks:
            t.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._followups.clear()

    def _count(self, trigger: str, outcome: str) -> None:
        if self.metrics is not None:
            self.metrics.reconciliations.labels(trigger=trigger, outcome=outcome).inc()
