"""NDJSON event journal for the resilience layer.

Provides structured NDJSON event logging with:
- One log file per device
- Event type tracking and counts
- Stream and file output modes

Diagnostic text still goes through the ``logging`` module; the journal
records what happened to queued data so a stalled sync can be explained
after the fact.
"""

import json
from datetime import datetime, timezone
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional, TextIO


class EventType(str, Enum):
    """Standard event types for the journal."""
    CONNECTIVITY_CHANGE = "connectivity.change"
    QUEUE_ENQUEUE = "queue.enqueue"
    QUEUE_ACK = "queue.ack"
    SYNC_START = "sync.start"
    SYNC_END = "sync.end"
    MUTATION_SENT = "mutation.sent"
    MUTATION_FAILED = "mutation.failed"
    MUTATION_TERMINAL = "mutation.terminal"
    RETRY_SCHEDULED = "retry.scheduled"
    CHECKPOINT_WRITE = "checkpoint.write"
    CHECKPOINT_CLEAR = "checkpoint.clear"
    CHECKPOINT_OVERWRITE = "checkpoint.overwrite"
    SESSION_FINISH = "session.finish"
    STORAGE_FAILURE = "storage.failure"
    ERROR = "error"
    WARNING = "warning"
    INFO = "info"


@dataclass
class LogEvent:
    """A single journal event."""
    timestamp: str
    event_type: str
    device_id: str
    payload: Dict[str, Any]
    mutation_id: Optional[str] = None
    routine_id: Optional[str] = None

    def to_ndjson(self) -> str:
        """Serialize to NDJSON line."""
        data = {
            "ts": self.timestamp,
            "type": self.event_type,
            "device": self.device_id,
            "payload": self.payload,
        }
        if self.mutation_id:
            data["mutation"] = self.mutation_id
        if self.routine_id:
            data["routine"] = self.routine_id
        return json.dumps(data, separators=(',', ':'), default=str)


@dataclass
class LogSummary:
    """Summary statistics for a journal."""
    device_id: str
    total_events: int = 0
    event_counts: Dict[str, int] = field(default_factory=dict)
    first_timestamp: Optional[str] = None
    last_timestamp: Optional[str] = None
    drain_cycles: int = 0
    errors: int = 0
    warnings: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "device_id": self.device_id,
            "total_events": self.total_events,
            "event_counts": self.event_counts,
            "first_timestamp": self.first_timestamp,
            "last_timestamp": self.last_timestamp,
            "drain_cycles": self.drain_cycles,
            "errors": self.errors,
            "warnings": self.warnings,
        }


class NDJSONLogger:
    """NDJSON event journal for one device.

    Writes events to:
    - {base_dir}/devices/{device_id}/stream.ndjson
    - {base_dir}/devices/{device_id}/stream.summary.json
    """

    def __init__(
        self,
        device_id: str,
        base_dir: str = ".fittrackr",
        stream: Optional[TextIO] = None,
    ):
        self.device_id = device_id
        self.base_dir = Path(base_dir)
        self.stream = stream

        self.summary = LogSummary(device_id=device_id)
        self._file: Optional[TextIO] = None

        self._init_log_dir()

    def _init_log_dir(self) -> None:
        """Create log directory structure."""
        log_dir = self.base_dir / "devices" / self.device_id
        log_dir.mkdir(parents=True, exist_ok=True)
        self._log_path = log_dir / "stream.ndjson"
        self._summary_path = log_dir / "stream.summary.json"

    @property
    def log_path(self) -> Path:
        return self._log_path

    def _open_file(self) -> TextIO:
        """Open log file for appending."""
        if self._file is None:
            self._file = open(self._log_path, 'a', encoding='utf-8')
        return self._file

    def log(
        self,
        event_type: str,
        payload: Dict[str, Any],
        mutation_id: Optional[str] = None,
        routine_id: Optional[str] = None,
    ) -> None:
        """Log an event."""
        event = LogEvent(
            timestamp=datetime.now(timezone.utc).isoformat(),
            event_type=event_type.value if isinstance(event_type, EventType) else event_type,
            device_id=self.device_id,
            payload=payload,
            mutation_id=mutation_id,
            routine_id=routine_id,
        )
        self._update_summary(event)

        line = event.to_ndjson() + "\n"

        if self.stream:
            self.stream.write(line)
            self.stream.flush()

        f = self._open_file()
        f.write(line)
        f.flush()

    def _update_summary(self, event: LogEvent) -> None:
        """Update summary statistics."""
        self.summary.total_events += 1
        self.summary.event_counts[event.event_type] = (
            self.summary.event_counts.get(event.event_type, 0) + 1
        )

        if self.summary.first_timestamp is None:
            self.summary.first_timestamp = event.timestamp
        self.summary.last_timestamp = event.timestamp

        if event.event_type == EventType.SYNC_END:
            self.summary.drain_cycles += 1
        if event.event_type == EventType.ERROR:
            self.summary.errors += 1
        elif event.event_type == EventType.WARNING:
            self.summary.warnings += 1

    def mutation_failed(self, mutation_id: str, error: str, attempts: int, terminal: bool) -> None:
        """Log a failed delivery."""
        self.log(
            EventType.MUTATION_TERMINAL if terminal else EventType.MUTATION_FAILED,
            {"error": error, "attempts": attempts},
            mutation_id=mutation_id,
        )

    def error(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        """Log error."""
        payload = {"message": message}
        if details:
            payload["details"] = details
        self.log(EventType.ERROR, payload)

    def warning(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        """Log warning."""
        payload = {"message": message}
        if details:
            payload["details"] = details
        self.log(EventType.WARNING, payload)

    def get_summary(self) -> LogSummary:
        """Get current summary."""
        return self.summary

    def write_summary(self) -> None:
        """Write summary file."""
        with open(self._summary_path, 'w', encoding='utf-8') as f:
            json.dump(self.summary.to_dict(), f, indent=2)

    def close(self) -> None:
        """Close logger and write final summary."""
        self.write_summary()
        if self._file:
            self._file.close()
            self._file = None


def create_logger(
    device_id: str,
    base_dir: str = ".fittrackr",
    stream: Optional[TextIO] = None,
) -> NDJSONLogger:
    """Create a journal for a device."""
    return NDJSONLogger(device_id, base_dir, stream=stream)
