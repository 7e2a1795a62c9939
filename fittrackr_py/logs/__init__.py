"""Event journal for fittrackr-py."""

from .ndjson import (
    NDJSONLogger,
    EventType,
    LogEvent,
    LogSummary,
    create_logger,
)

__all__ = [
    "NDJSONLogger",
    "EventType",
    "LogEvent",
    "LogSummary",
    "create_logger",
]
