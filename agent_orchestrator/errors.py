"""
Error taxonomy for the Agent Orchestrator.

This module provides:
- ErrorKind enum for categorizing failures
- Exception classes the managers raise and handle
- classify_exception() for converting plugin errors into the taxonomy
"""

from __future__ import annotations

import json
import subprocess
from enum import Enum, auto
from typing import Optional

import requests


class ErrorKind(Enum):
    """
    Classification of orchestrator failures.

    Used to decide whether a failure is retried, surfaced, or fatal.
    """

    CONFIGURATION = auto()      # Missing plugin or credential
    TRANSIENT = auto()          # Network errors, 429, 5xx, timeouts
    PERMANENT = auto()          # Other 4xx, bad signature, bad payload
    STATE_CONFLICT = auto()     # Observed facts fit no valid transition
    RESOURCE_LEAK = auto()      # Teardown of runtime/workspace failed
    WORKSPACE = auto()          # Workspace isolation failed
    RUNTIME_START = auto()      # Runtime failed to start
    NOT_FOUND = auto()          # Unknown session


class OrchestratorError(Exception):
    """Base exception for orchestrator errors."""

    kind: ErrorKind = ErrorKind.PERMANENT

    def __init__(self, message: str, session_id: Optional[str] = None) -> None:
        super().__init__(message)
        self.session_id = session_id

    @property
    def should_retry(self) -> bool:
        """Check if this error is worth retrying."""
        return self.kind == ErrorKind.TRANSIENT


class ConfigurationError(OrchestratorError):
    """Raised when a required plugin or credential is missing."""

    kind = ErrorKind.CONFIGURATION


# Name used by the config loader.
ConfigError = ConfigurationError


class TransientExternalError(OrchestratorError):
    """Raised for failures that may succeed on retry."""

    kind = ErrorKind.TRANSIENT

    def __init__(
        self,
        message: str,
        session_id: Optional[str] = None,
        status_code: Optional[int] = None,
        retry_after: Optional[float] = None,
    ) -> None:
        super().__init__(message, session_id=session_id)
        self.status_code = status_code
        self.retry_after = retry_after


class PermanentExternalError(OrchestratorError):
    """Raised for failures that will not succeed on retry."""

    kind = ErrorKind.PERMANENT

    def __init__(
        self,
        message: str,
        session_id: Optional[str] = None,
        status_code: Optional[int] = None,
    ) -> None:
        super().__init__(message, session_id=session_id)
        self.status_code = status_code


class StateConflictError(OrchestratorError):
    """Raised when observed facts match no valid transition."""

    kind = ErrorKind.STATE_CONFLICT

    def __init__(self, message: str, session_id: Optional[str] = None, reason: str = "") -> None:
        super().__init__(message, session_id=session_id)
        self.reason = reason or message


class ResourceLeakError(OrchestratorError):
    """Raised when a runtime or workspace could not be torn down."""

    kind = ErrorKind.RESOURCE_LEAK

    def __init__(
        self,
        message: str,
        session_id: Optional[str] = None,
        resource: str = "",
    ) -> None:
        super().__init__(message, session_id=session_id)
        self.resource = resource


class WorkspaceError(OrchestratorError):
    """Raised when workspace isolation fails during spawn."""

    kind = ErrorKind.WORKSPACE


class RuntimeStartError(OrchestratorError):
    """Raised when the runtime fails to start after the workspace exists."""

    kind = ErrorKind.RUNTIME_START


class SessionNotFoundError(OrchestratorError):
    """Raised when a session cannot be found."""

    kind = ErrorKind.NOT_FOUND


# HTTP statuses worth retrying
RETRYABLE_STATUS_CODES = frozenset({408, 425, 429, 500, 502, 503, 504, 529})


def is_retryable_status(status_code: int) -> bool:
    """Return True for 429 and 5xx responses."""
    return status_code in RETRYABLE_STATUS_CODES or status_code >= 500


def classify_exception(exc: BaseException, context: str = "") -> OrchestratorError:
    """
    Convert an arbitrary plugin exception into the orchestrator taxonomy.

    Args:
        exc: The exception raised by a plugin call.
        context: Short description of the call, used in the message.

    Returns:
        An OrchestratorError subclass instance. Errors already in the taxonomy
        are returned unchanged.
    """
    if isinstance(exc, OrchestratorError):
        return exc

    prefix = f"{context}: " if context else ""

    if isinstance(exc, requests.HTTPError) and exc.response is not None:
        status = exc.response.status_code
        if is_retryable_status(status):
            return TransientExternalError(
                f"{prefix}HTTP {status}", status_code=status
            )
        return PermanentExternalError(f"{prefix}HTTP {status}", status_code=status)

    if isinstance(exc, (requests.ConnectionError, requests.Timeout)):
        return TransientExternalError(f"{prefix}{exc}")

    if isinstance(exc, (subprocess.TimeoutExpired, TimeoutError, ConnectionError)):
        return TransientExternalError(f"{prefix}{exc}")

    if isinstance(exc, (json.JSONDecodeError, ValueError, KeyError, TypeError)):
        return PermanentExternalError(f"{prefix}unparseable response: {exc}")

    if isinstance(exc, subprocess.CalledProcessError):
        return PermanentExternalError(
            f"{prefix}command failed with exit code {exc.returncode}"
        )

    if isinstance(exc, OSError):
        return TransientExternalError(f"{prefix}{exc}")

    return PermanentExternalError(f"{prefix}{type(exc).__name__}: {exc}")
