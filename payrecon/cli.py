"""
Operations CLI.

    payrecon resolve ORDER_ID [--no-reconcile]
    payrecon resolve-many ORDER_ID...
    payrecon reconcile ORDER_ID
    payrecon reconcile-all ORDER_ID...
    payrecon health
    payrecon watch ORDER_ID [--seconds N]

Settings come from PAYRECON_* environment variables (and .env).
Results are printed to stdout as JSON; logs go to stderr.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from typing import Any, List, Optional

from prometheus_client import start_http_server

from payrecon.aggregation.multi_order import StatusBatch
from payrecon.config.config import Settings
from payrecon.config.config_validator import validate_and_log
from payrecon.core.models import PaymentStatusView
from payrecon.engine import PaymentStatusEngine, build_engine
from payrecon.infra.event_logger import EventLogger, EventLoggerConfig
from payrecon.infra.logging_cfg import build_logger
from payrecon.monitoring.metrics_rich import PaymentMetrics

EXIT_OK = 0
EXIT_CONFIG = 1
EXIT_ATTENTION = 2


def _emit(data: Any) -> None:
    print(json.dumps(data, indent=2, default=str))


def _batch_output(batch: StatusBatch) -> dict:
    return {
        "statuses": batch.to_dict(),
        "paid": sorted(batch.paid_orders()),
        "unpaid": sorted(batch.unpaid_orders()),
        "needs_reconciliation": sorted(batch.needing_reconciliation()),
        "error": batch.error,
    }


async def _cmd_resolve(engine: PaymentStatusEngine, args: argparse.Namespace) -> int:
    view = await engine.resolve(args.order_id, auto_reconcile=False if args.no_reconcile else None)
    _emit({"order_id": args.order_id, **view.to_dict()})
    return EXIT_OK


async def _cmd_resolve_many(engine: PaymentStatusEngine, args: argparse.Namespace) -> int:
    _emit(_batch_output(await engine.resolve_many(args.order_ids)))
    return EXIT_OK


async def _cmd_reconcile(engine: PaymentStatusEngine, args: argparse.Namespace) -> int:
    result = await engine.resolver.manual_reconcile(args.order_id)
    _emit({
        "order_id": args.order_id,
        "reconciled": result.success,
        "error": result.error,
        "status": result.view.to_dict() if result.view else None,
    })
    return EXIT_OK


async def _cmd_reconcile_all(engine: PaymentStatusEngine, args: argparse.Namespace) -> int:
    ok = await engine.reconcile_all(args.order_ids)
    _emit({"reconciled": ok, **_batch_output(engine.aggregator.statuses)})
    return EXIT_OK


async def _cmd_health(engine: PaymentStatusEngine, args: argparse.Namespace) -> int:
    report = await engine.check_health()
    _emit(report.to_dict())
    return EXIT_ATTENTION if report.needs_attention else EXIT_OK


async def _cmd_watch(engine: PaymentStatusEngine, args: argparse.Namespace) -> int:
    paid = asyncio.Event()

    def on_change(view: PaymentStatusView) -> None:
        _emit({"order_id": args.order_id, **view.to_dict()})
        if view.is_paid:
            paid.set()

    tracker = engine.tracker()
    tracker.add_listener(on_change)
    async with tracker.watch(args.order_id):
        if tracker.is_paid:
            return EXIT_OK
        try:
            await asyncio.wait_for(paid.wait(), timeout=args.seconds)
        except asyncio.TimeoutError:
            _emit({"order_id": args.order_id, "timeout": True, **tracker.view.to_dict()})
    return EXIT_OK


COMMANDS = {
    "resolve": _cmd_resolve,
    "resolve-many": _cmd_resolve_many,
    "reconcile": _cmd_reconcile,
    "reconcile-all": _cmd_reconcile_all,
    "health": _cmd_health,
    "watch": _cmd_watch,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="payrecon", description="Payment status resolution and reconciliation")
    parser.add_argument("--debug", action="store_true", help="Log debug-level events")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("resolve", help="Resolve one order")
    p.add_argument("order_id")
    p.add_argument("--no-reconcile", action="store_true", help="Do not request a repair on drift")

    p = sub.add_parser("resolve-many", help="Resolve many orders with batched reads")
    p.add_argument("order_ids", nargs="+")

    p = sub.add_parser("reconcile", help="Repair one order, then re-resolve it")
    p.add_argument("order_id")

    p = sub.add_parser("reconcile-all", help="Repair all inconsistent orders, then resolve the given ids")
    p.add_argument("order_ids", nargs="*")

    sub.add_parser("health", help="Payment system health (exit code 2 when attention is needed)")

    p = sub.add_parser("watch", help="Track one order until paid or timeout")
    p.add_argument("order_id")
    p.add_argument("--seconds", type=float, default=300.0)

    return parser


async def run(args: argparse.Namespace, settings: Settings) -> int:
    metrics = PaymentMetrics()
    if settings.metrics_port > 0:
        start_http_server(settings.metrics_port, registry=metrics.registry)

    event_logger = EventLogger(EventLoggerConfig(debug_enabled=args.debug))
    engine = build_engine(settings, metrics=metrics, event_logger=event_logger)
    async with engine:
        return await COMMANDS[args.command](engine, args)


def main(argv: Optional[List[str]] = None) -> None:
    args = build_parser().parse_args(argv)

    try:
        settings = Settings.load()
    except ValueError as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        sys.exit(EXIT_CONFIG)

    log = build_logger(
        "payrecon",
        level="DEBUG" if args.debug else settings.log_level,
        file_path=settings.log_file,
    )
    if not validate_and_log(settings, log):
        log.error("Configuration validation failed, exiting")
        sys.exit(EXIT_CONFIG)

    try:
        code = asyncio.run(run(args, settings))
    except KeyboardInterrupt:
        code = EXIT_OK
    sys.exit(code)


if __name__ == "__main__":
    main()
