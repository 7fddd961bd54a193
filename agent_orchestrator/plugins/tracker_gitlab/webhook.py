"""
GitLab webhook validation and normalization.

Usage:
    event = handle_webhook(request.headers, request.json(), secret)
    lifecycle.handle_webhook(event)
"""

from __future__ import annotations

from typing import Any, Mapping

from agent_orchestrator.errors import PermanentExternalError
from agent_orchestrator.webhooks import (
    IssueWebhookEvent,
    MergeRequestWebhookEvent,
    UnknownWebhookEvent,
    WebhookEvent,
    get_header,
    require_mapping,
    verify_token,
)

TOKEN_HEADER = "X-Gitlab-Token"
EVENT_HEADER = "X-Gitlab-Event"


def _project_path(payload: dict[str, Any]) -> str:
    project = payload.get("project") or {}
    if not isinstance(project, dict):
        return ""
    return str(project.get("path_with_namespace") or "")


def handle_webhook(
    headers: Mapping[str, Any],
    payload: Any,
    secret: str,
) -> WebhookEvent:
    """
    Validate a GitLab webhook and normalize it.

    Args:
        headers: Request headers (any case).
        payload: Decoded JSON body.
        secret: Configured webhook secret.

    Returns:
        IssueWebhookEvent, MergeRequestWebhookEvent or UnknownWebhookEvent.

    Raises:
        PermanentExternalError: Missing or mismatched token, or a malformed payload.
    """
    if not verify_token(get_header(headers, TOKEN_HEADER), secret):
        raise PermanentExternalError("Invalid webhook token")

    event_name = get_header(headers, EVENT_HEADER)
    if event_name not in ("Issue Hook", "Merge Request Hook"):
        return UnknownWebhookEvent(event_name=event_name)

    body = require_mapping(payload, "body")
    attributes = require_mapping(body.get("object_attributes"), "object_attributes")
    action = str(attributes.get("action") or "unknown")

    try:
        if event_name == "Issue Hook":
            return IssueWebhookEvent(
                action=action,
                issue_id=str(attributes["iid"]),
                state=map_webhook_state(attributes.get("state")),
                project=_project_path(body),
            )
        return MergeRequestWebhookEvent(
            action=action,
            number=int(attributes["iid"]),
            source_branch=str(attributes.get("source_branch") or ""),
            state=str(attributes.get("state") or ""),
            project=_project_path(body),
        )
    except (KeyError, TypeError, ValueError) as e:
        raise PermanentExternalError(f"Unparseable {event_name} payload: {e}")


def map_webhook_state(state: Any) -> str:
    return "closed" if str(state or "").lower() == "closed" else "open"
