"""
State persistence for the Agent Orchestrator.

This module handles:
- Saving and loading session records to <data_dir>/sessions/<session_id>
- Atomic writes to prevent corruption
- Graceful handling of missing or corrupted records
- Archiving records of torn-down sessions
- The reaction ledger at <data_dir>/reactions/<session_id>.jsonl

Session records are flat key=value files so an operator can read and
grep them without tooling. The reaction ledger is append-only; the latest
line for a (seq, kind) pair is the current outcome.
"""

from __future__ import annotations

import json
import threading
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Optional

from agent_orchestrator.models import Session, now_iso
from agent_orchestrator.utils.fs import (
    FileSystemError,
    append_line,
    ensure_dir,
    file_exists,
    list_files,
    move_file,
    read_file,
    read_lines,
    safe_write,
)

if TYPE_CHECKING:
    from agent_orchestrator.logger import OrchestratorLogger


class StateStoreError(Exception):
    """Raised when state store operations fail."""
    pass


def _escape(value: str) -> str:
    return value.replace("\\", "\\\\").replace("\n", "\\n").replace("\r", "\\r")


def _unescape(value: str) -> str:
    out = []
    chars = iter(value)
    for ch in chars:
        if ch != "\\":
            out.append(ch)
            continue
        nxt = next(chars, "")
        out.append({"n": "\n", "r": "\r", "\\": "\\"}.get(nxt, nxt))
    return "".join(out)


def format_record(record: dict[str, str]) -> str:
    """Render a flat mapping as key=value lines."""
    return "".join(f"{key}={_escape(value)}\n" for key, value in record.items())


def parse_record(content: str) -> dict[str, str]:
    """Parse key=value lines. Lines without '=' and comments are ignored."""
    record: dict[str, str] = {}
    for line in content.splitlines():
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, _, value = line.partition("=")
        record[key.strip()] = _unescape(value)
    return record


class MetadataStore:
    """
    Persistent session records.

    The Session Manager creates and archives records; the Lifecycle Manager
    updates them. Callers serialize writes per session.
    """

    def __init__(
        self,
        sessions_dir: Path,
        logger: Optional[OrchestratorLogger] = None,
    ) -> None:
        """
        Initialize the metadata store.

        Args:
            sessions_dir: Directory holding one record file per session.
            logger: Optional logger for recording operations.
        """
        self._sessions_dir = Path(sessions_dir)
        self._archive_dir = self._sessions_dir / "archive"
        self._logger = logger
        ensure_dir(self._sessions_dir)

    def _get_session_path(self, session_id: str) -> Path:
        return self._sessions_dir / session_id

    def _log(
        self,
        event_type: str,
        data: Optional[dict] = None,
        level: str = "info"
    ) -> None:
        """Log an event if logger is configured."""
        if self._logger:
            self._logger.log(event_type, data, level=level)

    def _read(self, path: Path) -> Optional[Session]:
        try:
            return Session.from_record(parse_record(read_file(path)))
        except (KeyError, ValueError, TypeError) as e:
            self._log("session_record_invalid", {
                "path": str(path),
                "error": str(e),
            }, level="error")
            return None
        except FileSystemError as e:
            self._log("session_record_read_error", {
                "path": str(path),
                "error": str(e),
            }, level="error")
            return None

    def exists(self, session_id: str) -> bool:
        return file_exists(self._get_session_path(session_id))

    def load(self, session_id: str) -> Optional[Session]:
        """
        Load an active session record.

        Returns:
            Session if the record exists and is valid, None otherwise.
        """
        path = self._get_session_path(session_id)
        if not file_exists(path):
            return None
        return self._read(path)

    def load_archived(self, session_id: str) -> Optional[Session]:
        """Load the most recently archived record of a session."""
        matches = list_files(self._archive_dir, f"{session_id}_*")
        if not matches:
            return None
        return self._read(matches[-1])

    def save(self, session: Session) -> None:
        """
        Save a session record atomically.

        Raises:
            StateStoreError: If the write fails.
        """
        session.updated_at = now_iso()
        try:
            safe_write(self._get_session_path(session.session_id), format_record(session.to_record()))
        except FileSystemError as e:
            self._log("session_save_error", {
                "session_id": session.session_id,
                "error": str(e),
            }, level="error")
            raise StateStoreError(f"Failed to save session {session.session_id}: {e}")

        self._log("session_saved", {
            "session_id": session.session_id,
            "status": session.status.value,
        }, level="debug")

    def list_sessions(self, include_archived: bool = False) -> list[Session]:
        """List session records sorted by creation time."""
        # Dotfiles are temp files of in-progress atomic writes
        paths = [p for p in list_files(self._sessions_dir) if not p.name.startswith(".")]
        sessions = [s for s in (self._read(p) for p in paths) if s is not None]
        if include_archived:
            latest: dict[str, Session] = {}
            for path in list_files(self._archive_dir):
                session = self._read(path)
                if session is not None:
                    latest[session.session_id] = session
            active_ids = {s.session_id for s in sessions}
            sessions.extend(s for sid, s in latest.items() if sid not in active_ids)
        return sorted(sessions, key=lambda s: s.created_at)

    def archive(self, session_id: str) -> Optional[Path]:
        """
        Move a session record into the archive.

        Returns:
            Path of the archived record, or None if there was nothing to archive.
        """
        path = self._get_session_path(session_id)
        if not file_exists(path):
            return None
        stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%f")
        try:
            archived = move_file(path, self._archive_dir / f"{session_id}_{stamp}")
        except FileSystemError as e:
            raise StateStoreError(f"Failed to archive session {session_id}: {e}")
        self._log("session_archived", {"session_id": session_id, "path": str(archived)})
        return archived


class ReactionStatus(Enum):
    """Outcome of a reaction execution in the ledger."""
    STARTED = "started"              # Recorded before the side effect begins
    FAILED = "failed"                # Attempt failed, may be retried
    SUCCEEDED = "succeeded"
    SKIPPED = "skipped"              # Filtered out or gated off
    DEAD_LETTERED = "dead_lettered"  # Permanently failed, no more retries


FINAL_STATUSES = frozenset(
    {ReactionStatus.SUCCEEDED, ReactionStatus.SKIPPED, ReactionStatus.DEAD_LETTERED}
)


@dataclass
class ReactionRecord:
    """One line of the reaction ledger."""
    session_id: str
    seq: int
    kind: str
    status: ReactionStatus
    attempt: int = 0
    error: str = ""
    timestamp: str = field(default_factory=now_iso)

    @property
    def key(self) -> tuple[str, int, str]:
        """Idempotency key (session id, event seq, reaction kind)."""
        return (self.session_id, self.seq, self.kind)

    @property
    def is_final(self) -> bool:
        return self.status in FINAL_STATUSES

    def to_dict(self) -> dict:
        d = asdict(self)
        d["status"] = self.status.value
        return d

    @classmethod
    def from_dict(cls, data: dict) -> ReactionRecord:
        data = data.copy()
        data["status"] = ReactionStatus(data["status"])
        return cls(**data)


class ReactionLedger:
    """
    Durable record of reaction executions.

    A STARTED line is written before any side effect, so a reaction is never
    executed twice for the same (session, seq, kind) key. Reads go to the
    file every time, so outcomes written by another process are seen.
    """

    def __init__(self, data_dir: Path) -> None:
        self._dir = ensure_dir(Path(data_dir) / "reactions")
        self._lock = threading.Lock()

    def _get_path(self, session_id: str) -> Path:
        return self._dir / f"{session_id}.jsonl"

    def _load(self, session_id: str) -> dict[tuple[int, str], ReactionRecord]:
        records: dict[tuple[int, str], ReactionRecord] = {}
        for line in read_lines(self._get_path(session_id)):
            try:
                record = ReactionRecord.from_dict(json.loads(line))
            except (json.JSONDecodeError, KeyError, TypeError, ValueError):
                continue
            records[(record.seq, record.kind)] = record
        return records

    def get(self, session_id: str, seq: int, kind: str) -> Optional[ReactionRecord]:
        """Latest record for a key, or None if the reaction never started."""
        with self._lock:
            return self._load(session_id).get((seq, kind))

    def records(self, session_id: str) -> list[ReactionRecord]:
        """Latest record of every key for a session, in seq order."""
        with self._lock:
            return sorted(self._load(session_id).values(), key=lambda r: (r.seq, r.kind))

    def record(
        self,
        session_id: str,
        seq: int,
        kind: str,
        status: ReactionStatus,
        attempt: int = 0,
        error: str = "",
    ) -> ReactionRecord:
        """Append a ledger line and flush it to disk."""
        entry = ReactionRecord(
            session_id=session_id,
            seq=seq,
            kind=kind,
            status=status,
            attempt=attempt,
            error=error[:500],
        )
        with self._lock:
            append_line(self._get_path(session_id), json.dumps(entry.to_dict()))
        return entry
