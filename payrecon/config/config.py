"""
Environment-driven configuration with validation.
"""

from __future__ import annotations

import os
from dataclasses import dataclass

from dotenv import load_dotenv

from payrecon.core.models import ViewPrecedence

load_dotenv()


def env_bool(key: str, default: bool) -> bool:
    val = os.getenv(key)
    if val is None or val == "":
        return default
    return val.lower() in {"1", "true", "yes", "y"}


@dataclass(frozen=True)
class Settings:
    base_url: str
    api_key: str | None
    http_timeout: float
    # Remote names
    status_rpc: str
    combined_view: str | None  # None disables the denormalized-view step
    view_precedence: ViewPrecedence
    orders_table: str
    ledger_table: str
    reconcile_function: str
    ledger_lookback: int
    # Reconciliation
    auto_reconcile: bool
    reconcile_delay_sec: float
    reconcile_followup_attempts: int
    reconcile_backoff: float
    # Refresh
    poll_interval_sec: float  # 0 disables polling
    enable_realtime: bool
    health_interval_sec: float
    # Combined-call circuit breaker
    rpc_error_threshold: int
    rpc_cooldown_sec: float
    # Observability
    log_level: str
    log_file: str | None
    metrics_port: int  # 0 disables the exporter

    def dump(self) -> dict:
        """Return a dict of settings for logging, with the API key masked."""
        data = self.__dict__.copy()
        if data.get("api_key"):
            data["api_key"] = "***"
        data["view_precedence"] = self.view_precedence.value
        return data

    @classmethod
    def load(cls) -> "Settings":
        def _int_env(key: str, default: int) -> int:
            raw = os.getenv(key)
            if raw is None or raw == "":
                return default
            return int(raw)

        def _float_env(key: str, default: float) -> float:
            raw = os.getenv(key)
            if raw is None or raw == "":
                return default
            return float(raw)

        combined_view = os.getenv("PAYRECON_COMBINED_VIEW", "orders_with_payment")

        cfg = cls(
            base_url=os.getenv("PAYRECON_BASE_URL", "http://localhost:54321"),
            api_key=os.getenv("PAYRECON_API_KEY"),
            http_timeout=_float_env("PAYRECON_HTTP_TIMEOUT", 10.0),
            status_rpc=os.getenv("PAYRECON_STATUS_RPC", "get_order_payment_status"),
            combined_view=combined_view.strip() or None,
            view_precedence=ViewPrecedence(os.getenv("PAYRECON_VIEW_PRECEDENCE", "view_first").lower()),
            orders_table=os.getenv("PAYRECON_ORDERS_TABLE", "orders"),
            ledger_table=os.getenv("PAYRECON_LEDGER_TABLE", "payment_transactions"),
            reconcile_function=os.getenv("PAYRECON_RECONCILE_FUNCTION", "payment-reconcile"),
            ledger_lookback=_int_env("PAYRECON_LEDGER_LOOKBACK", 10),
            auto_reconcile=env_bool("PAYRECON_AUTO_RECONCILE", True),
            reconcile_delay_sec=_float_env("PAYRECON_RECONCILE_DELAY_SEC", 2.0),
            reconcile_followup_attempts=_int_env("PAYRECON_RECONCILE_FOLLOWUP_ATTEMPTS", 1),
            reconcile_backoff=_float_env("PAYRECON_RECONCILE_BACKOFF", 2.0),
            poll_interval_sec=_float_env("PAYRECON_POLL_INTERVAL_SEC", 30.0),
            enable_realtime=env_bool("PAYRECON_ENABLE_REALTIME", True),
            health_interval_sec=_float_env("PAYRECON_HEALTH_INTERVAL_SEC", 60.0),
            rpc_error_threshold=_int_env("PAYRECON_RPC_ERROR_THRESHOLD", 5),
            rpc_cooldown_sec=_float_env("PAYRECON_RPC_COOLDOWN_SEC", 30.0),
            log_level=os.getenv("PAYRECON_LOG_LEVEL", "INFO").upper(),
            log_file=os.getenv("PAYRECON_LOG_FILE") or None,
            metrics_port=_int_env("PAYRECON_METRICS_PORT", 0),
        )
        cfg._validate()
        return cfg

    def _validate(self) -> None:
        if self.http_timeout <= 0:
            raise ValueError("PAYRECON_HTTP_TIMEOUT must be > 0")
        if self.ledger_lookback <= 0:
            raise ValueError("PAYRECON_LEDGER_LOOKBACK must be > 0")
        if self.reconcile_delay_sec < 0:
            raise ValueError("PAYRECON_RECONCILE_DELAY_SEC must be >= 0")
        if self.reconcile_followup_attempts < 1:
            raise ValueError("PAYRECON_RECONCILE_FOLLOWUP_ATTEMPTS must be >= 1")
        if self.poll_interval_sec < 0:
            raise ValueError("PAYRECON_POLL_INTERVAL_SEC must be >= 0")
