"""
Event persistence for the session event log.

Events are appended to one JSONL file per session:
<data_dir>/events/<session_id>.jsonl

Sequence numbers start at 1 and increase by one per append. The next
number is read from the file under a file lock, so processes sharing a
data directory never hand out the same seq. Lines are never rewritten, so
the files stay readable with plain text tools.
"""

import json
import logging
from pathlib import Path
from typing import Optional

from filelock import FileLock, Timeout

from agent_orchestrator.events.types import EventType, SessionEvent
from agent_orchestrator.utils.fs import append_line, ensure_dir, list_files, read_lines

logger = logging.getLogger(__name__)

APPEND_LOCK_TIMEOUT_SECONDS = 10


class EventLogError(Exception):
    """Raised when an event cannot be appended."""
    pass


class EventLog:
    """Append-only, per-session ordered event log."""

    def __init__(self, data_dir: Path) -> None:
        """
        Initialize the event log.

        Args:
            data_dir: Orchestrator data directory (events/ is created inside).
        """
        self._events_dir = ensure_dir(Path(data_dir) / "events")

    def _get_log_path(self, session_id: str) -> Path:
        return self._events_dir / f"{session_id}.jsonl"

    def _get_lock_path(self, session_id: str) -> Path:
        return self._events_dir / f".{session_id}.jsonl.lock"

    def last_seq(self, session_id: str) -> int:
        """Return the highest sequence number written for a session (0 if none)."""
        events = self.read(session_id)
        return events[-1].seq if events else 0

    def append(
        self,
        session_id: str,
        event_type: EventType,
        payload: Optional[dict] = None,
    ) -> SessionEvent:
        """
        Append an event and return it with its assigned sequence number.

        The line is flushed to disk before this returns.

        Raises:
            EventLogError: If the append lock cannot be acquired.
        """
        lock = FileLock(self._get_lock_path(session_id), timeout=APPEND_LOCK_TIMEOUT_SECONDS)
        try:
            with lock:
                event = SessionEvent(
                    session_id=session_id,
                    seq=self.last_seq(session_id) + 1,
                    event_type=event_type,
                    payload=payload or {},
                )
                append_line(
                    self._get_log_path(session_id), json.dumps(event.to_dict(), default=str)
                )
                return event
        except Timeout:
            raise EventLogError(f"Timeout acquiring event log lock for session {session_id}")

    def read(self, session_id: str, since_seq: int = 0) -> list[SessionEvent]:
        """
        Read a session's events in sequence order.

        Args:
            session_id: The session identifier.
            since_seq: Only return events with seq greater than this.

        Returns:
            List of events. Corrupt lines are skipped with a warning.
        """
        events: list[SessionEvent] = []
        for line in read_lines(self._get_log_path(session_id)):
            try:
                event = SessionEvent.from_dict(json.loads(line))
            except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
                logger.warning("Skipping corrupt event line for %s: %s", session_id, e)
                continue
            if event.seq > since_seq:
                events.append(event)
        events.sort(key=lambda e: e.seq)
        return events

    def query(
        self,
        event_types: Optional[list[EventType]] = None,
        limit: int = 100,
    ) -> list[SessionEvent]:
        """
        Query events across all sessions, newest first.

        Args:
            event_types: Filter by event types.
            limit: Maximum number of events to return.
        """
        events: list[SessionEvent] = []
        for log_file in list_files(self._events_dir, "*.jsonl"):
            for event in self.read(log_file.stem):
                if event_types and event.event_type not in event_types:
                    continue
                events.append(event)
        events.sort(key=lambda e: e.timestamp, reverse=True)
        return events[:limit]
