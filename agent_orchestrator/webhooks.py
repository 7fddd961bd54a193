"""
Webhook validation and normalization.

Tracker and SCM plugins call into this module to:
- verify a shared-secret token or an HMAC signature in constant time
- normalize provider payloads into IssueWebhookEvent,
  MergeRequestWebhookEvent or UnknownWebhookEvent

Both checks hash the presented value and the expected value to fixed-length
SHA-256 digests and compare the digests with hmac.compare_digest. A missing
header is treated as an empty string, so the work done does not depend on
whether the header was sent or how long it is.
"""

from __future__ import annotations

import hashlib
import hmac
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional, Union

from agent_orchestrator.errors import PermanentExternalError


def _digest(value: Union[str, bytes]) -> bytes:
    if isinstance(value, str):
        value = value.encode("utf-8")
    return hashlib.sha256(value).digest()


def get_header(headers: Mapping[str, Any], name: str) -> str:
    """Case-insensitive header lookup; absent headers become ""."""
    wanted = name.lower()
    for key, value in headers.items():
        if key.lower() == wanted:
            return "" if value is None else str(value)
    return ""


def verify_token(presented: Optional[str], secret: str) -> bool:
    """
    Compare a presented shared-secret token with the configured secret.

    Args:
        presented: Header value, None when the header is absent.
        secret: Configured webhook secret.

    Returns:
        True only if both are equal and the secret is non-empty.
    """
    presented_digest = _digest(presented or "")
    expected_digest = _digest(secret or "")
    matches = hmac.compare_digest(presented_digest, expected_digest)
    return matches and bool(secret)


def verify_hmac_signature(body: bytes, signature_header: Optional[str], secret: str) -> bool:
    """
    Verify a "sha256=<hex>" HMAC signature over the raw request body.

    The expected and presented signatures are both reduced to SHA-256
    digests before the constant-time comparison.
    """
    expected = "sha256=" + hmac.new(
        (secret or "").encode("utf-8"),
        body,
        hashlib.sha256,
    ).hexdigest()
    matches = hmac.compare_digest(_digest(signature_header or ""), _digest(expected))
    return matches and bool(secret)


@dataclass(frozen=True)
class IssueWebhookEvent:
    """An issue was opened, closed, updated or reopened."""
    action: str
    issue_id: str
    state: str = ""
    project: str = ""
    type: str = field(default="issue", init=False)


@dataclass(frozen=True)
class MergeRequestWebhookEvent:
    """A merge/pull request changed (opened, updated, merged, approved...)."""
    action: str
    number: int
    source_branch: str = ""
    state: str = ""
    project: str = ""
    type: str = field(default="merge_request", init=False)


@dataclass(frozen=True)
class UnknownWebhookEvent:
    """An authenticated event of a kind the orchestrator does not act on."""
    event_name: str = ""
    type: str = field(default="unknown", init=False)


WebhookEvent = Union[IssueWebhookEvent, MergeRequestWebhookEvent, UnknownWebhookEvent]


def require_mapping(payload: Any, what: str) -> dict[str, Any]:
    """Reject payload parts that are not JSON objects."""
    if not isinstance(payload, dict):
        raise PermanentExternalError(f"Unparseable webhook payload: {what} is not an object")
    return payload
