"""
Structured logging setup for the payment status engine.

Console output goes to stderr (Rich when installed, JSON lines otherwise);
stdout is left to the CLI. The optional log file receives one flat JSON
object per record, written from a background listener thread.
"""

from __future__ import annotations

import atexit
import json
import logging
import logging.handlers
import queue
import sys
import time
from datetime import datetime
from typing import Dict, Optional, Set

try:  # rich is optional; fallback to plain stream if unavailable
    from rich.console import Console
    from rich.logging import RichHandler
except ImportError:  # pragma: no cover - optional import
    Console = None
    RichHandler = None

NOISY_EVENTS: Set[str] = {"combined_call_failed", "combined_call_skipped", "poll_tick_error"}


def _event_payload(record: logging.LogRecord) -> Optional[dict]:
    try:
        data = json.loads(record.getMessage())
    except (json.JSONDecodeError, TypeError):
        return None
    return data if isinstance(data, dict) and "event" in data else None


class JsonFormatter(logging.Formatter):
    """
    One JSON object per line.

    Event records (messages that are themselves a JSON object with an
    "event" key) are merged into the line instead of nested under "msg".
    """

    def format(self, record: logging.LogRecord) -> str:
        line = {
            "ts": datetime.fromtimestamp(record.created).isoformat(timespec="milliseconds"),
            "level": record.levelname,
            "logger": record.name,
        }
        event = _event_payload(record)
        if event is not None:
            line.update(event)
        else:
            line["msg"] = record.getMessage()
        if record.exc_info:
            line["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(line, separators=(",", ":"), default=str)


class ThrottledFilter(logging.Filter):
    """Drop repeats of a noisy event for the same order within cooldown_sec."""

    def __init__(self, cooldown_sec: float = 30.0, throttled_events: Optional[Set[str]] = None):
        super().__init__()
        self._cooldown = cooldown_sec
        self._last_seen: Dict[str, float] = {}
        self._throttled_events = throttled_events or NOISY_EVENTS

    def filter(self, record: logging.LogRecord) -> bool:
        if getattr(record, "throttled", False):
            return True
        event = _event_payload(record)
        if event is None or event["event"] not in self._throttled_events:
            return True

        now = time.monotonic()
        key = f"{event['event']}:{event.get('order_id', '')}"
        last = self._last_seen.get(key)
        if last is not None and now - last < self._cooldown:
            return False
        self._last_seen = {k: t for k, t in self._last_seen.items() if now - t < self._cooldown}
        self._last_seen[key] = now
        return True


def _queued_file_handler(file_path: str, level: int) -> logging.Handler:
    """File handler fed through a queue so the event loop never waits on disk."""
    file_handler = logging.FileHandler(file_path)
    file_handler.setFormatter(JsonFormatter())
    file_handler.setLevel(level)

    records: queue.Queue = queue.Queue(maxsize=10000)
    listener = logging.handlers.QueueListener(records, file_handler, respect_handler_level=True)
    listener.start()
    atexit.register(listener.stop)

    handler = logging.handlers.QueueHandler(records)
    handler.setLevel(level)
    return handler


def _console_handler(level: int, throttle: bool) -> logging.Handler:
    if RichHandler:
        handler: logging.Handler = RichHandler(
            console=Console(stderr=True),
            rich_tracebacks=False,
            show_path=False,
            markup=False,
        )
        handler.setFormatter(logging.Formatter("%(message)s"))
    else:
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(JsonFormatter())
    handler.setLevel(level)
    if throttle:
        handler.addFilter(ThrottledFilter())
    return handler


def build_logger(
    name: str = "payrecon",
    level: int | str = logging.INFO,
    file_path: Optional[str] = None,
    async_file: bool = True,
    throttle_warnings: bool = True,
) -> logging.Logger:
    """
    Configure and return the engine logger.

    Calling it again only adjusts levels; handlers are attached once.

    Args:
        name: Logger name
        level: Minimum level, as a number or a name such as "DEBUG"
        file_path: JSON log file (None to disable file logging)
        async_file: Write the file from a background thread
        throttle_warnings: Drop repeated noisy events on the console
    """
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO

    logger = logging.getLogger(name)
    logger.setLevel(level)

    if logger.handlers:
        for h in logger.handlers:
            h.setLevel(level)
        return logger

    logger.addHandler(_console_handler(level, throttle_warnings))

    if file_path:
        if async_file:
            logger.addHandler(_queued_file_handler(file_path, level))
        else:
            file_handler = logging.FileHandler(file_path)
            file_handler.setFormatter(JsonFormatter())
            file_handler.setLevel(level)
            logger.addHandler(file_handler)

    logger.propagate = False
    return logger


def log_event(logger: logging.Logger, event: str, level: int = logging.INFO, **data) -> None:
    """
    Log a structured event.

    Usage:
        log_event(log, "order_resolved", order_id="o-1", is_paid=True)
    """
    logger.log(level, json.dumps({"event": event, **data}, default=str))
