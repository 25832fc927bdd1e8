"""
Pytest configuration and fixtures.
Adds the repo root to Python path so tests can import payrecon without installing it.

FakeDataClient stands in for AsyncDataClient: orders and ledger rows live in
memory, the combined procedure and view are computed from them the way the
database does, and the reconciliation function repairs drifted orders.
Failures are injected per call key ("rpc:<name>", "select:<table>",
"invoke:<function>").
"""

import sys
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import pytest

repo_root = Path(__file__).parent.parent
if str(repo_root) not in sys.path:
    sys.path.insert(0, str(repo_root))

from payrecon.config.config import Settings  # noqa: E402
from payrecon.core.errors import NetworkError  # noqa: E402
from payrecon.core.models import ViewPrecedence  # noqa: E402

SETTLED = ("success", "paid")


def _parse_filter(expr: str):
    op, _, arg = expr.partition(".")
    if op == "eq":
        return lambda v: str(v) == arg
    if op == "in":
        values = {p.strip().strip('"') for p in arg.strip("()").split(",") if p.strip()}
        return lambda v: str(v) in values
    raise ValueError(f"unsupported filter {expr}")


class FakeDataClient:
    def __init__(self) -> None:
        self.orders: Dict[str, Dict[str, Any]] = {}
        self.transactions: List[Dict[str, Any]] = []
        self.pending_emails = 0
        # Explicit answers override the computed ones: value, callable(params) or exception
        self.rpc_responses: Dict[str, Any] = {}
        self.function_responses: Dict[str, Any] = {}
        self._failures: Dict[str, List[Any]] = {}
        self.calls: List[tuple] = []
        self.closed = False

    # -- seeding ----------------------------------------------------------------

    def add_order(self, order_id: str, payment_status: str = "pending", paid_at: Optional[str] = None,
                  status: str = "pending") -> Dict[str, Any]:
        row = {"id": order_id, "payment_status": payment_status, "paid_at": paid_at, "status": status}
        self.orders[order_id] = row
        return row

    def add_transaction(self, order_id: str, status: str = "success", channel: Optional[str] = "card",
                        paid_at: Optional[str] = "2025-08-09T10:00:00Z",
                        created_at: Optional[str] = None) -> Dict[str, Any]:
        row = {
            "order_id": order_id,
            "status": status,
            "paid_at": paid_at,
            "channel": channel,
            "provider_reference": f"ref-{len(self.transactions) + 1}",
            "created_at": created_at or f"2025-08-09T10:{len(self.transactions):02d}:00Z",
        }
        self.transactions.append(row)
        return row

    def fail(self, key: str, exc: Optional[Exception] = None, times: Optional[int] = None) -> None:
        """Make calls matching key raise exc (NetworkError by default), times=None for always."""
        exc = exc or NetworkError(f"{key} unavailable", status_code=503)
        self._failures[key] = [exc, times]

    def heal(self, key: str) -> None:
        self._failures.pop(key, None)

    def call_count(self, key: str) -> int:
        return sum(1 for c in self.calls if c[0] == key)

    def _maybe_fail(self, key: str) -> None:
        entry = self._failures.get(key)
        if entry is None:
            return
        exc, times = entry
        if times is not None:
            if times <= 0:
                return
            entry[1] = times - 1
        raise exc

    # -- computed server-side state -----------------------------------------------

    def settled_for(self, order_id: str) -> List[Dict[str, Any]]:
        rows = [t for t in self.transactions if t["order_id"] == order_id and t["status"] in SETTLED]
        return sorted(rows, key=lambda t: t["created_at"] or "", reverse=True)

    def combined_row(self, order_id: str) -> Optional[Dict[str, Any]]:
        order = self.orders.get(order_id)
        if order is None:
            return None
        settled = self.settled_for(order_id)
        aggregate_paid = order["payment_status"] == "paid"
        final_paid = aggregate_paid or bool(settled)
        if settled and settled[0]["channel"]:
            method = settled[0]["channel"]
        elif aggregate_paid:
            method = "processed"
        else:
            method = "pending"
        return {
            "id": order_id,
            "status": order["status"],
            "order_status": order["status"],
            "payment_status": order["payment_status"],
            "paid_at": order["paid_at"],
            "final_paid": final_paid,
            "final_paid_at": order["paid_at"] or (settled[0]["paid_at"] if settled else None),
            "payment_method": method,
            "needs_reconciliation": (not aggregate_paid) and bool(settled),
        }

    def inconsistent_ids(self) -> List[str]:
        return [oid for oid in self.orders if self.combined_row(oid)["needs_reconciliation"]]

    def repair(self, order_id: str) -> bool:
        order = self.orders.get(order_id)
        settled = self.settled_for(order_id)
        if order is None or not settled or order["payment_status"] == "paid":
            return False
        order["payment_status"] = "paid"
        order["paid_at"] = order["paid_at"] or settled[0]["paid_at"]
        return True

    # -- AsyncDataClient interface ------------------------------------------------

    async def close(self) -> None:
        self.closed = True

    async def rpc(self, name: str, params: Dict[str, Any]) -> Any:
        key = f"rpc:{name}"
        self.calls.append((key, dict(params)))
        self._maybe_fail(key)
        if name in self.rpc_responses:
            return self._answer(self.rpc_responses[name], params)
        row = self.combined_row(params["p_order_id"])
        return [row] if row else []

    async def select(self, table: str, columns: str = "*", filters: Optional[Dict[str, str]] = None,
                     order: Optional[str] = None, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        key = f"select:{table}"
        self.calls.append((key, dict(filters or {})))
        self._maybe_fail(key)

        if table == "orders":
            rows = [dict(r) for r in self.orders.values()]
        elif table == "payment_transactions":
            rows = [dict(r) for r in self.transactions]
        elif table == "orders_with_payment":
            rows = [self.combined_row(oid) for oid in self.orders]
        else:
            raise NetworkError(f"relation {table} does not exist", status_code=404)

        for column, expr in (filters or {}).items():
            match = _parse_filter(expr)
            rows = [r for r in rows if match(r.get(column))]
        if order:
            column, _, direction = order.partition(".")
            rows.sort(key=lambda r: r.get(column) or "", reverse=direction == "desc")
        if limit is not None:
            rows = rows[:limit]
        return rows

    async def invoke(self, function: str, body: Dict[str, Any]) -> Any:
        key = f"invoke:{function}"
        self.calls.append((key, dict(body)))
        self._maybe_fail(key)
        if function in self.function_responses:
            return self._answer(self.function_responses[function], body)

        action = body.get("action")
        if action == "reconcile_order":
            repaired = self.repair(body["order_id"])
            return {"success": True, "reconciled": 1 if repaired else 0}
        if action == "reconcile_all":
            repaired = [oid for oid in self.inconsistent_ids() if self.repair(oid)]
            return {"success": True, "reconciled": len(repaired)}
        if action == "check_health":
            inconsistent = len(self.inconsistent_ids())
            return {
                "success": True,
                "data": {
                    "inconsistent_orders": {"value": inconsistent},
                    "pending_emails": {"value": self.pending_emails},
                    "summary": {"needs_attention": inconsistent > 0 or self.pending_emails > 0},
                },
            }
        return {"error": f"unknown action {action}"}

    @staticmethod
    def _answer(response: Any, params: Dict[str, Any]) -> Any:
        if isinstance(response, Exception):
            raise response
        if callable(response):
            return response(params)
        return response


def build_settings(**overrides: Any) -> Settings:
    values: Dict[str, Any] = dict(
        base_url="http://data.test",
        api_key="test-key",
        http_timeout=5.0,
        status_rpc="get_order_payment_status",
        combined_view="orders_with_payment",
        view_precedence=ViewPrecedence.VIEW_FIRST,
        orders_table="orders",
        ledger_table="payment_transactions",
        reconcile_function="payment-reconcile",
        ledger_lookback=10,
        auto_reconcile=True,
        reconcile_delay_sec=0.01,
        reconcile_followup_attempts=1,
        reconcile_backoff=2.0,
        poll_interval_sec=0.02,
        enable_realtime=True,
        health_interval_sec=60.0,
        rpc_error_threshold=5,
        rpc_cooldown_sec=30.0,
        log_level="INFO",
        log_file=None,
        metrics_port=0,
    )
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def fake_client() -> FakeDataClient:
    return FakeDataClient()


@pytest.fixture
def make_settings() -> Callable[..., Settings]:
    return build_settings


@pytest.fixture
def log_events():
    """Collects (event, fields) pairs from any log_event callback."""
    events: List[tuple] = []

    def log_event(event: str, **kwargs: Any) -> None:
        events.append((event, kwargs))

    log_event.events = events
    log_event.names = lambda: [e for e, _ in events]
    return log_event
