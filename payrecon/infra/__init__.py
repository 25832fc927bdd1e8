"""
Infrastructure package.

Data-access client and logging configuration.
"""

from payrecon.infra.event_logger import EventLogger, EventLoggerConfig
from payrecon.infra.logging_cfg import build_logger, log_event
from payrecon.infra.rest_client import AsyncDataClient

__all__ = [
    "AsyncDataClient",
    "EventLogger",
    "EventLoggerConfig",
    "build_logger",
    "log_event",
]
