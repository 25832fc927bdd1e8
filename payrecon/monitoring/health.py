"""
HealthMonitor: system-wide payment consistency counters.

Independent of per-order resolution. The reconciliation action answers
check_health with either a list of {metric, value, description} rows or a
mapping {metric: {value, ...}}, optionally wrapped in {"data": ...} and
optionally carrying a {"summary": {...}} block.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from payrecon.core.errors import DataError
from payrecon.core.utils import to_int_safe, utc_now
from payrecon.resolution.reconciler import ReconciliationGateway

log = logging.getLogger("payrecon")

# Wire names of the two counters the report always exposes
INCONSISTENT_METRIC = "inconsistent_orders"
PENDING_METRIC = "pending_emails"


@dataclass
class HealthReport:
    inconsistent_orders: int = 0
    pending_notifications: int = 0
    metrics: Dict[str, int] = field(default_factory=dict)
    checked_at: datetime = field(default_factory=utc_now)
    error: Optional[str] = None

    @property
    def needs_attention(self) -> bool:
        return self.inconsistent_orders > 0 or self.pending_notifications > 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "inconsistent_orders": self.inconsistent_orders,
            "pending_notifications": self.pending_notifications,
            "needs_attention": self.needs_attention,
            "metrics": dict(self.metrics),
            "checked_at": self.checked_at.isoformat(),
            "error": self.error,
        }


def parse_health_payload(payload: Any) -> HealthReport:
    """Normalize either payload shape into a HealthReport."""
    if isinstance(payload, dict) and "data" in payload:
        payload = payload["data"]

    values: Dict[str, int] = {}
    if isinstance(payload, list):
        for row in payload:
            if not isinstance(row, dict) or "metric" not in row:
                raise DataError(f"malformed health row: {row!r}")
            values[str(row["metric"])] = to_int_safe(row.get("value"))
    elif isinstance(payload, dict):
        for name, entry in payload.items():
            if name == "summary":
                continue
            if isinstance(entry, dict):
                values[name] = to_int_safe(entry.get("value"))
            else:
                values[name] = to_int_safe(entry)
    else:
        raise DataError(f"unexpected health payload: {type(payload).__name__}")

    return HealthReport(
        inconsistent_orders=values.get(INCONSISTENT_METRIC, 0),
        pending_notifications=values.get(PENDING_METRIC, 0),
        metrics=values,
    )


class HealthMonitor:
    """
    On-demand or periodic health checks.

    Usage:
        monitor = HealthMonitor(gateway, interval_sec=60)
        report = await monitor.check_health()
        monitor.start()
        ...
        await monitor.stop()
    """

    def __init__(
        self,
        gateway: ReconciliationGateway,
        interval_sec: float = 60.0,
        metrics=None,
        log_event: Optional[Callable[..., None]] = None,
    ) -> None:
        self.gateway = gateway
        self.interval_sec = interval_sec
        self.metrics = metrics
        self._log_event = log_event or self._default_log
        self.last_report: Optional[HealthReport] = None
        self._task: Optional[asyncio.Task] = None

    def _default_log(self, event: str, **kwargs: Any) -> None:
        log.info(json.dumps({"event": event, **kwargs}, default=str))

    @property
    def needs_attention(self) -> bool:
        return self.last_report is not None and self.last_report.needs_attention

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def check_health(self) -> HealthReport:
        """Never raises; a failed check returns a zeroed report with error set."""
        try:
            report = parse_health_payload(await self.gateway.check_health())
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            if self.metrics is not None:
                self.metrics.health_check_failures.inc()
            self._log_event("health_check_failed", error=str(exc), error_type=type(exc).__name__)
            report = HealthReport(error=str(exc) or "Health check failed")
            self.last_report = report
            return report

        if self.metrics is not None:
            self.metrics.inconsistent_orders.set(report.inconsistent_orders)
            self.metrics.pending_notifications.set(report.pending_notifications)
            self.metrics.needs_attention.set(1 if report.needs_attention else 0)
        self._log_event(
            "health_checked",
            inconsistent_orders=report.inconsistent_orders,
            pending_notifications=report.pending_notifications,
            needs_attention=report.needs_attention,
        )
        self.last_report = report
        return report

    def start(self) -> bool:
        if self.interval_sec <= 0 or self.is_running:
            return False
        self._task = asyncio.create_task(self._run(), name="health-monitor")
        return True

    async def _run(self) -> None:
        while True:
            await self.check_health()
            await asyncio.sleep(self.interval_sec)

    async def stop(self) -> None:
        if self._task:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None
