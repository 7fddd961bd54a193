"""
Per-session coordination shared by the Session and Lifecycle Managers.

Provides:
- One lock per session, held for every write to that session. Inside a
  process it is a re-entrant thread lock; across processes (the `run` loop
  and one-shot CLI commands) it is a file lock under <data_dir>/locks/
- One cancellation token per session, set by terminate(). Cancelling also
  drops a <session_id>.cancelled marker next to the lock file so pollers in
  other processes observe it at their next checkpoint
"""

from __future__ import annotations

import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

from filelock import FileLock, Timeout

from agent_orchestrator.utils.fs import ensure_dir

# How often a backoff sleep re-checks the on-disk cancellation marker
MARKER_POLL_SECONDS = 0.5


class CancelledError(Exception):
    """Raised when a session's cycle observes its cancellation token."""

    def __init__(self, session_id: str) -> None:
        super().__init__(f"Session {session_id} was cancelled")
        self.session_id = session_id


class CancellationToken:
    """
    Cooperative cancellation signal for one session.

    With a marker path the signal is durable: cancel() creates the file and
    any token for the same session, in any process, reports cancelled once
    the file exists.
    """

    def __init__(self, session_id: str, marker: Optional[Path] = None) -> None:
        self.session_id = session_id
        self._marker = marker
        self._event = threading.Event()

    @property
    def cancelled(self) -> bool:
        if not self._event.is_set() and self._marker is not None and self._marker.exists():
            self._event.set()
        return self._event.is_set()

    def cancel(self) -> None:
        if self._marker is not None:
            self._marker.touch(exist_ok=True)
        self._event.set()

    def raise_if_cancelled(self) -> None:
        """Checkpoint before a side-effecting step."""
        if self.cancelled:
            raise CancelledError(self.session_id)

    def sleep(self, seconds: float) -> bool:
        """
        Sleep unless cancelled first.

        Returns:
            True if the sleep was interrupted by cancellation.
        """
        if seconds <= 0:
            return self.cancelled
        if self._marker is None:
            return self._event.wait(timeout=seconds)

        deadline = time.monotonic() + seconds
        while not self.cancelled:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return False
            self._event.wait(timeout=min(remaining, MARKER_POLL_SECONDS))
        return True


class SessionCoordinator:
    """
    Registry of per-session locks and cancellation tokens.

    Usage:
        coordinator = SessionCoordinator(data_dir / "locks")
        with coordinator.hold(session_id, timeout=0) as acquired:
            if acquired:
                ...
        coordinator.retire(session_id)   # after archiving
    """

    def __init__(self, locks_dir: Optional[Path] = None) -> None:
        """
        Initialize the coordinator.

        Args:
            locks_dir: Directory for lock files and cancellation markers.
                Without it, locking and cancellation are process-local.
        """
        self._locks_dir = ensure_dir(locks_dir) if locks_dir is not None else None
        self._guard = threading.Lock()
        self._locks: dict[str, threading.RLock] = {}
        self._file_locks: dict[str, FileLock] = {}
        self._tokens: dict[str, CancellationToken] = {}
        self._holders: dict[str, int] = {}
        self._retired: set[str] = set()

    def _path(self, session_id: str, suffix: str) -> Optional[Path]:
        if self._locks_dir is None:
            return None
        return self._locks_dir / f"{session_id}{suffix}"

    def _locks_locked(self, session_id: str) -> tuple[threading.RLock, Optional[FileLock]]:
        """Get or create both locks of a session. Caller holds _guard."""
        if session_id not in self._locks:
            self._locks[session_id] = threading.RLock()
        path = self._path(session_id, ".lock")
        if path is not None and session_id not in self._file_locks:
            # Threads are serialized by the RLock, so one shared counter
            # gives re-entrancy to nested holds on the same thread.
            self._file_locks[session_id] = FileLock(path, thread_local=False)
        return self._locks[session_id], self._file_locks.get(session_id)

    def lock_for(self, session_id: str) -> threading.RLock:
        with self._guard:
            return self._locks_locked(session_id)[0]

    def token(self, session_id: str) -> CancellationToken:
        with self._guard:
            if session_id not in self._tokens:
                self._tokens[session_id] = CancellationToken(
                    session_id, marker=self._path(session_id, ".cancelled")
                )
            return self._tokens[session_id]

    def cancel(self, session_id: str) -> None:
        self.token(session_id).cancel()

    def is_cancelled(self, session_id: str) -> bool:
        return self.token(session_id).cancelled

    def retire(self, session_id: str) -> None:
        """
        Forget a torn-down session's lock and token.

        The cancellation marker stays on disk, so a late poller still sees
        the session as cancelled. Entries held right now are dropped when
        the last hold() exits.
        """
        with self._guard:
            if self._holders.get(session_id):
                self._retired.add(session_id)
            else:
                self._drop(session_id)

    def _drop(self, session_id: str) -> None:
        self._locks.pop(session_id, None)
        self._file_locks.pop(session_id, None)
        self._tokens.pop(session_id, None)
        self._holders.pop(session_id, None)
        self._retired.discard(session_id)

    def _acquire(
        self,
        lock: threading.RLock,
        file_lock: Optional[FileLock],
        timeout: Optional[float],
    ) -> bool:
        if timeout is None:
            acquired = lock.acquire()
        elif timeout <= 0:
            acquired = lock.acquire(blocking=False)
        else:
            acquired = lock.acquire(timeout=timeout)
        if not acquired or file_lock is None:
            return acquired

        try:
            file_lock.acquire(timeout=-1 if timeout is None else max(timeout, 0))
        except Timeout:
            lock.release()
            return False
        return True

    @contextmanager
    def hold(self, session_id: str, timeout: Optional[float] = None) -> Iterator[bool]:
        """
        Hold a session's lock.

        Yields:
            True if the lock was acquired. With timeout=0 the call does not
            block and yields False when another worker, in this process or
            another one, holds the lock.
        """
        with self._guard:
            lock, file_lock = self._locks_locked(session_id)
            self._holders[session_id] = self._holders.get(session_id, 0) + 1

        acquired = self._acquire(lock, file_lock, timeout)
        try:
            yield acquired
        finally:
            if acquired:
                if file_lock is not None:
                    file_lock.release()
                lock.release()
            with self._guard:
                self._holders[session_id] -= 1
                if not self._holders[session_id] and session_id in self._retired:
                    self._drop(session_id)
