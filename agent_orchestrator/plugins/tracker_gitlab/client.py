"""
Minimal GitLab REST client.

Retries 429/5xx responses and network errors with exponential backoff plus
jitter, then raises in the orchestrator error taxonomy.
"""

from __future__ import annotations

import logging
import random
import time
from typing import Any, Callable, Optional

import requests

from agent_orchestrator.errors import (
    PermanentExternalError,
    TransientExternalError,
    is_retryable_status,
)

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://gitlab.com/api/v4"


def normalize_base_url(url: Optional[str]) -> str:
    """Accept a bare instance URL and append /api/v4 when missing."""
    if not url:
        return DEFAULT_BASE_URL
    url = url.rstrip("/")
    if url.endswith("/api/v4"):
        return url
    return f"{url}/api/v4"


class GitLabClient:
    """
    GitLab API v4 client authenticated with a Private-Token header.

    Usage:
        client = GitLabClient(token="glpat-...")
        issue = client.get("/projects/group%2Fapp/issues/42")
    """

    def __init__(
        self,
        token: str,
        base_url: Optional[str] = None,
        timeout_ms: int = 15_000,
        max_retries: int = 3,
        session: Optional[requests.Session] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.base_url = normalize_base_url(base_url)
        self.token = token
        self.timeout_ms = timeout_ms
        self.max_retries = max_retries
        self._session = session or requests.Session()
        self._sleep = sleep

    def _backoff(self, attempt: int) -> float:
        """Seconds to wait after a failed attempt (1-indexed)."""
        backoff_ms = 100 * 2 ** (attempt - 1)
        jitter_ms = random.random() * 100
        return (backoff_ms + jitter_ms) / 1000.0

    def request(
        self,
        method: str,
        path: str,
        body: Any = None,
        query: Optional[dict[str, Any]] = None,
    ) -> Any:
        """
        Send a request and return the decoded JSON body.

        Args:
            method: HTTP method.
            path: API path starting with "/".
            body: JSON body for POST/PUT.
            query: Query parameters; None values are dropped.

        Returns:
            Decoded JSON, or None for an empty body.

        Raises:
            TransientExternalError: Retries exhausted on 429/5xx or network errors.
            PermanentExternalError: Any other non-2xx status or an unparseable body.
        """
        url = f"{self.base_url}{path}"
        params = {k: v for k, v in (query or {}).items() if v is not None}
        headers = {
            "Content-Type": "application/json",
            "Private-Token": self.token,
        }

        attempt = 0
        while True:
            attempt += 1
            try:
                response = self._session.request(
                    method,
                    url,
                    headers=headers,
                    params=params or None,
                    json=body,
                    timeout=self.timeout_ms / 1000.0,
                )
            except (requests.ConnectionError, requests.Timeout) as e:
                if attempt < self.max_retries:
                    self._sleep(self._backoff(attempt))
                    continue
                raise TransientExternalError(f"GitLab {method} {path}: {e}")

            status = response.status_code
            if 200 <= status < 300:
                if not response.text:
                    return None
                try:
                    return response.json()
                except ValueError as e:
                    raise PermanentExternalError(
                        f"GitLab {method} {path}: unparseable response: {e}",
                        status_code=status,
                    )

            message = f"GitLab API {status} {response.reason}: {response.text[:1000]}"
            if is_retryable_status(status):
                if attempt < self.max_retries:
                    logger.debug("GitLab %s %s returned %d, retrying", method, path, status)
                    self._sleep(self._backoff(attempt))
                    continue
                retry_after = response.headers.get("Retry-After")
                raise TransientExternalError(
                    message,
                    status_code=status,
                    retry_after=float(retry_after) if retry_after and retry_after.isdigit() else None,
                )
            raise PermanentExternalError(message, status_code=status)

    def get(self, path: str, query: Optional[dict[str, Any]] = None) -> Any:
        return self.request("GET", path, query=query)

    def post(self, path: str, data: Any = None) -> Any:
        return self.request("POST", path, body=data)

    def put(self, path: str, data: Any = None) -> Any:
        return self.request("PUT", path, body=data)
