"""
Structured JSONL logging for the Agent Orchestrator.

This module provides:
- JSONL event logging for operator debugging and audit trails
- Log files organized by date under <data_dir>/logs/
- Log levels (debug, info, warn, error)
- Context manager for session-scoped logging
"""

from __future__ import annotations

import json
import logging
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator, Optional

from agent_orchestrator.events.types import SessionEvent
from agent_orchestrator.utils.fs import append_line, ensure_dir


class LogLevel:
    """Log level constants."""
    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


_STDLIB_LEVELS = {
    LogLevel.DEBUG: logging.DEBUG,
    LogLevel.INFO: logging.INFO,
    LogLevel.WARN: logging.WARNING,
    "warning": logging.WARNING,
    LogLevel.ERROR: logging.ERROR,
}

_stdlib_logger = logging.getLogger("agent_orchestrator")


class OrchestratorLogger:
    """
    JSONL event logger for the orchestrator process.

    Writes structured log entries to <logs_dir>/orchestrator-YYYY-MM-DD.jsonl

    Each log entry is a JSON object with:
    - timestamp: ISO format timestamp
    - level: Log level (debug, info, warn, error)
    - event_type: Type of event being logged
    - data: Additional event data (dict)
    - session_id: Present inside session_context()

    Entries are mirrored to the standard "agent_orchestrator" logger.
    """

    def __init__(self, logs_dir: Path, name: str = "orchestrator") -> None:
        """
        Initialize the logger.

        Args:
            logs_dir: Directory for JSONL log files.
            name: File name prefix.
        """
        self.logs_dir = Path(logs_dir)
        self.name = name
        self._context = threading.local()

    @property
    def _current_session_id(self) -> Optional[str]:
        return getattr(self._context, "session_id", None)

    def _get_log_path(self, date: Optional[str] = None) -> Path:
        """Get the log file path for a date (today by default)."""
        ensure_dir(self.logs_dir)
        if date is None:
            date = datetime.now(timezone.utc).strftime("%Y-%m-%d")
        return self.logs_dir / f"{self.name}-{date}.jsonl"

    def log(
        self,
        event_type: str,
        data: Optional[dict[str, Any]] = None,
        level: str = LogLevel.INFO,
    ) -> None:
        """
        Log an event.

        Args:
            event_type: Type of event (e.g., "session_spawned", "poll_failed").
            data: Additional data to include in the log entry.
            level: Log level (debug, info, warn, error).
        """
        entry: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": level,
            "event_type": event_type,
            "data": data or {},
        }
        session_id = (data or {}).get("session_id") or self._current_session_id
        if session_id:
            entry["session_id"] = session_id

        append_line(self._get_log_path(), json.dumps(entry, default=str))
        _stdlib_logger.log(
            _STDLIB_LEVELS.get(level, logging.INFO),
            "%s %s",
            event_type,
            json.dumps(data or {}, default=str),
        )

    def debug(self, event_type: str, data: Optional[dict[str, Any]] = None) -> None:
        """Log a debug event."""
        self.log(event_type, data, LogLevel.DEBUG)

    def info(self, event_type: str, data: Optional[dict[str, Any]] = None) -> None:
        """Log an info event."""
        self.log(event_type, data, LogLevel.INFO)

    def warn(self, event_type: str, data: Optional[dict[str, Any]] = None) -> None:
        """Log a warning event."""
        self.log(event_type, data, LogLevel.WARN)

    def error(self, event_type: str, data: Optional[dict[str, Any]] = None) -> None:
        """Log an error event."""
        self.log(event_type, data, LogLevel.ERROR)

    def log_session_event(self, event: SessionEvent) -> None:
        """EventBus subscriber that mirrors session events into the log."""
        self.info(event.event_type.value, {
            "session_id": event.session_id,
            "seq": event.seq,
            **event.payload,
        })

    @contextmanager
    def session_context(self, session_id: str) -> Iterator[OrchestratorLogger]:
        """
        Context manager for session-scoped logging.

        All logs written by this thread within the context include the
        session_id.

        Example:
            with logger.session_context("app-42-1f3a9c") as log:
                log.info("poll_started")
        """
        old_session_id = self._current_session_id
        self._context.session_id = session_id
        try:
            yield self
        finally:
            self._context.session_id = old_session_id

    def read_logs(
        self,
        date: Optional[str] = None,
        level: Optional[str] = None,
        event_type: Optional[str] = None,
        session_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> list[dict[str, Any]]:
        """
        Read log entries with optional filtering.

        Args:
            date: Date string (YYYY-MM-DD) to read. If None, reads today's logs.
            level: Filter by log level.
            event_type: Filter by event type.
            session_id: Filter by session ID.
            limit: Maximum number of entries to return.
        """
        log_path = self._get_log_path(date)
        if not log_path.exists():
            return []

        entries = []
        with open(log_path, "r") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    entry = json.loads(line)
                except json.JSONDecodeError:
                    continue

                if level and entry.get("level") != level:
                    continue
                if event_type and entry.get("event_type") != event_type:
                    continue
                if session_id and entry.get("session_id") != session_id:
                    continue

                entries.append(entry)

                if limit and len(entries) >= limit:
                    break

        return entries
