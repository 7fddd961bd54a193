"""
Thin wrapper around the GitHub CLI shared by the github tracker and SCM.

Failures are raised in the orchestrator taxonomy: a missing binary is a
ConfigurationError, rate limits and server errors are transient, anything
else is permanent.
"""

from __future__ import annotations

import json
import subprocess
from typing import Any, Optional

from agent_orchestrator.errors import (
    ConfigurationError,
    PermanentExternalError,
    TransientExternalError,
)

# Fragments of gh stderr that indicate a retryable failure
_TRANSIENT_MARKERS = (
    "rate limit",
    "timeout",
    "timed out",
    "502",
    "503",
    "504",
    "connection reset",
    "could not resolve host",
)


def run_gh(
    args: list[str],
    cwd: Optional[str] = None,
    timeout: int = 30,
) -> str:
    """
    Run a gh command and return its stdout.

    Args:
        args: Arguments passed to gh.
        cwd: Working directory, usually the project checkout.
        timeout: Command timeout in seconds.

    Raises:
        ConfigurationError: gh is not installed.
        TransientExternalError: Timeout, rate limit or server error.
        PermanentExternalError: Any other non-zero exit.
    """
    try:
        result = subprocess.run(
            ["gh"] + args,
            cwd=cwd,
            capture_output=True,
            text=True,
            timeout=timeout,
        )
    except FileNotFoundError:
        raise ConfigurationError("gh CLI not found on PATH")
    except subprocess.TimeoutExpired:
        raise TransientExternalError(f"gh {' '.join(args[:2])} timed out after {timeout}s")

    if result.returncode != 0:
        stderr = (result.stderr or "").strip()
        message = f"gh {' '.join(args[:2])} failed: {stderr[:300]}"
        if any(marker in stderr.lower() for marker in _TRANSIENT_MARKERS):
            raise TransientExternalError(message)
        raise PermanentExternalError(message)

    return result.stdout


def run_gh_json(
    args: list[str],
    cwd: Optional[str] = None,
    timeout: int = 30,
) -> Any:
    """Run a gh command with --json output and parse it."""
    output = run_gh(args, cwd=cwd, timeout=timeout)
    try:
        return json.loads(output or "null")
    except json.JSONDecodeError as e:
        raise PermanentExternalError(f"gh {' '.join(args[:2])}: unparseable output: {e}")
