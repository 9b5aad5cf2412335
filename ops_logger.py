#!/usr/bin/env python3
"""
Operations Logger for Kritiq Reviewer

Keeps a machine-readable trail of review runs next to the console log:
one JSON object per line in .reviewer-log/ops.jsonl, appended as the run
goes. `python ops_logger.py summary` totals a log file.
"""

import datetime
import json
import logging
from collections import Counter
from dataclasses import dataclass, field, asdict
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    RUN_START = "run_start"
    RUN_END = "run_end"
    RUN_CANCELLED = "run_cancelled"
    FILE_FIXED = "file_fixed"
    FILE_CLEAN = "file_clean"
    FILE_SKIPPED = "file_skipped"
    FILE_ERROR = "file_error"
    AI_TIMEOUT = "ai_timeout"
    QUOTA_EXCEEDED = "quota_exceeded"


# Review outcome kind -> event recorded for the file
OUTCOME_EVENTS = {
    "fixed": EventType.FILE_FIXED,
    "clean": EventType.FILE_CLEAN,
    "skipped": EventType.FILE_SKIPPED,
    "error": EventType.FILE_ERROR,
    "timeout": EventType.AI_TIMEOUT,
    "quota_exceeded": EventType.QUOTA_EXCEEDED,
}

# Event -> key in get_summary()
SUMMARY_KEYS = {
    EventType.RUN_START: "runs",
    EventType.RUN_CANCELLED: "runs_cancelled",
    EventType.FILE_FIXED: "files_fixed",
    EventType.FILE_CLEAN: "files_clean",
    EventType.FILE_SKIPPED: "files_skipped",
    EventType.FILE_ERROR: "file_errors",
    EventType.AI_TIMEOUT: "ai_timeouts",
    EventType.QUOTA_EXCEEDED: "quota_stops",
}


@dataclass
class LogEvent:
    """A single log event."""
    event_type: EventType
    timestamp: str = field(default_factory=lambda: datetime.datetime.now().isoformat())
    session_id: Optional[str] = None
    folder: Optional[str] = None
    file_path: Optional[str] = None
    message: Optional[str] = None
    duration_seconds: Optional[float] = None
    details: Optional[Dict[str, Any]] = None

    def to_json(self) -> str:
        d = asdict(self)
        d['event_type'] = self.event_type.value
        return json.dumps({k: v for k, v in d.items() if v is not None}, separators=(',', ':'))


class OpsLogger:
    """
    Append-only JSONL event log.

    Events written between run_start() and run_end() carry the run's
    folder, and run_end() records how long the run took.
    """

    def __init__(self, log_dir: Optional[Path] = None, session_id: Optional[str] = None):
        self.log_dir = Path(log_dir or ".reviewer-log")
        self.log_dir.mkdir(parents=True, exist_ok=True)
        self.log_file = self.log_dir / "ops.jsonl"
        self.session_id = session_id or datetime.datetime.now().strftime("%Y%m%d_%H%M%S")

        self._folder: Optional[str] = None
        self._started: Optional[datetime.datetime] = None

    def _emit(self, event_type: EventType, **fields: Any) -> None:
        event = LogEvent(event_type, session_id=self.session_id, folder=self._folder, **fields)
        try:
            with open(self.log_file, 'a', encoding='utf-8') as f:
                f.write(event.to_json() + '\n')
        except OSError as e:
            # The review goes on without its trail
            logger.warning(f"Cannot write {event_type.value} to {self.log_file}: {e}")

    def run_start(self, folder: str, file_count: int, mode: str) -> None:
        self._folder = folder
        self._started = datetime.datetime.now()
        self._emit(
            EventType.RUN_START,
            message="Review run started",
            details={"files": file_count, "mode": mode},
        )

    def run_end(self, fixed: int, clean: int, errors: int, stop_reason: str) -> None:
        elapsed = None
        if self._started is not None:
            elapsed = (datetime.datetime.now() - self._started).total_seconds()
        self._emit(
            EventType.RUN_END,
            message=f"Review run ended ({stop_reason})",
            duration_seconds=elapsed,
            details={"fixed": fixed, "clean": clean, "errors": errors},
        )
        self._folder = None
        self._started = None

    def run_cancelled(self, processed: int) -> None:
        self._emit(
            EventType.RUN_CANCELLED,
            message="Operation cancelled by user",
            details={"processed": processed},
        )

    def file_outcome(
        self,
        file_path: str,
        kind: str,
        message: Optional[str] = None,
        duration_seconds: Optional[float] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        """
        Record what happened to one file.

        Args:
            file_path: File the outcome belongs to
            kind: A key of OUTCOME_EVENTS ("fixed", "clean", "timeout", ...)
            message: Skip reason or error text
            duration_seconds: Deadline that was missed, for "timeout"
            details: Extra fields, e.g. the backup path of a fix
        """
        self._emit(
            OUTCOME_EVENTS[kind],
            file_path=file_path,
            message=message,
            duration_seconds=duration_seconds,
            details=details,
        )

    @classmethod
    def read_log(cls, log_file: Path) -> List[Dict[str, Any]]:
        """Read and parse a log file. Unparseable lines are ignored."""
        if not log_file.exists():
            return []
        events = []
        for line in log_file.read_text(encoding='utf-8').splitlines():
            if not line.strip():
                continue
            try:
                events.append(json.loads(line))
            except json.JSONDecodeError:
                continue
        return events

    @classmethod
    def get_summary(cls, log_file: Path) -> Dict[str, Any]:
        """Count events per type across every run in a log file."""
        events = cls.read_log(log_file)
        seen = Counter(e.get("event_type", "") for e in events)

        summary: Dict[str, Any] = {"total_events": len(events)}
        for event_type, key in SUMMARY_KEYS.items():
            summary[key] = seen[event_type.value]
        return summary


def create_logger_from_config(config: Dict[str, Any], session_id: Optional[str] = None) -> OpsLogger:
    """Create an OpsLogger from the 'ops_logging' section."""
    ops_config = config.get('ops_logging') or {}
    log_dir = Path(ops_config.get('log_dir') or '.reviewer-log')
    if not log_dir.is_absolute():
        log_dir = Path.cwd() / log_dir
    return OpsLogger(log_dir=log_dir, session_id=session_id)


if __name__ == "__main__":
    import sys

    if len(sys.argv) > 1 and sys.argv[1] == "summary":
        path = Path(sys.argv[2]) if len(sys.argv) > 2 else Path(".reviewer-log/ops.jsonl")
        print(json.dumps(OpsLogger.get_summary(path), indent=2))
    else:
        print("Usage: python ops_logger.py summary [log_file]")
