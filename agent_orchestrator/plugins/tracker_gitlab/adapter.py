"""GitLab Issues implementation of the Tracker contract."""

from __future__ import annotations

import logging
import os
from typing import Any, Mapping, Optional
from urllib.parse import quote, urlsplit

from agent_orchestrator.config import ProjectConfig
from agent_orchestrator.errors import (
    ConfigurationError,
    OrchestratorError,
    PermanentExternalError,
)
from agent_orchestrator.plugins.base import CreateIssueInput, Issue, IssueFilters, IssueUpdate
from agent_orchestrator.plugins.tracker_gitlab.client import GitLabClient
from agent_orchestrator.plugins.tracker_gitlab.webhook import handle_webhook
from agent_orchestrator.webhooks import WebhookEvent

logger = logging.getLogger(__name__)


def parse_iid(identifier: str) -> int:
    """Parse "42" or "#42" into an issue iid."""
    value = str(identifier).strip().lstrip("#").strip()
    try:
        return int(value)
    except ValueError:
        raise PermanentExternalError(f"Invalid issue identifier: {identifier}")


def map_state(state: Optional[str]) -> str:
    """GitLab "opened"/"reopened"/"closed" to the normalized open/closed."""
    return "closed" if (state or "").lower() == "closed" else "open"


def _project_path(project: ProjectConfig) -> str:
    if not project.repo:
        raise ConfigurationError("project.repo is required for the GitLab tracker")
    return quote(str(project.repo), safe="")


def _to_issue(data: dict[str, Any]) -> Issue:
    assignees = data.get("assignees") or []
    return Issue(
        id=str(data["iid"]),
        title=data.get("title", ""),
        description=data.get("description") or "",
        url=data.get("web_url") or "",
        state=map_state(data.get("state")),
        labels=list(data.get("labels") or []),
        assignee=assignees[0].get("username") if assignees else None,
    )


class GitLabTracker:
    """Tracker backed by the GitLab REST API."""

    name = "gitlab"

    def __init__(self, client: GitLabClient, webhook_secret: str = "") -> None:
        self.client = client
        self.webhook_secret = webhook_secret

    def _issue_path(self, identifier: str, project: ProjectConfig) -> str:
        return f"/projects/{_project_path(project)}/issues/{parse_iid(identifier)}"

    def _fetch(self, identifier: str, project: ProjectConfig) -> dict[str, Any]:
        path = self._issue_path(identifier, project)
        data = self.client.get(path)
        if data is None:
            raise PermanentExternalError(f"GitLab API returned empty body for GET {path}")
        return data

    def _lookup_user_id(self, username: str) -> Optional[int]:
        """Best-effort username to user id lookup."""
        try:
            users = self.client.get("/users", {"username": username})
        except OrchestratorError as e:
            logger.debug("GitLab user lookup for %s failed: %s", username, e)
            return None
        if users and isinstance(users, list):
            return users[0].get("id")
        return None

    def get_issue(self, identifier: str, project: ProjectConfig) -> Issue:
        return _to_issue(self._fetch(identifier, project))

    def is_completed(self, identifier: str, project: ProjectConfig) -> bool:
        return str(self._fetch(identifier, project).get("state", "")).lower() == "closed"

    def issue_url(self, identifier: str, project: ProjectConfig) -> str:
        number = quote(str(identifier).strip().lstrip("#").strip(), safe="")
        parts = urlsplit(self.client.base_url)
        origin = f"{parts.scheme}://{parts.netloc}"
        repo = str(project.repo or "").strip()
        if not repo:
            return f"{origin}/-/issues/{number}"
        repo_path = "/".join(quote(segment, safe="") for segment in repo.split("/"))
        return f"{origin}/{repo_path}/-/issues/{number}"

    def branch_name(self, identifier: str, project: ProjectConfig) -> str:
        return f"feat/issue-{str(identifier).strip().lstrip('#').strip()}"

    def generate_prompt(self, identifier: str, project: ProjectConfig) -> str:
        issue = self.get_issue(identifier, project)
        lines = [
            f"You are working on GitLab issue #{issue.id}: {issue.title}",
            f"Issue URL: {issue.url}",
            "",
        ]
        if issue.labels:
            lines.append(f"Labels: {', '.join(issue.labels)}")
        if issue.description:
            lines.extend(["## Description", "", issue.description])
        lines.extend([
            "",
            "Please implement the changes described in this issue. "
            "When done, commit and push your changes.",
        ])
        return "\n".join(lines)

    def list_issues(self, filters: IssueFilters, project: ProjectConfig) -> list[Issue]:
        query: dict[str, Any] = {"per_page": filters.limit or 30}
        if filters.state == "closed":
            query["state"] = "closed"
        elif filters.state != "all":
            query["state"] = "opened"
        if filters.assignee:
            query["assignee_username"] = filters.assignee
        if filters.labels:
            query["labels"] = ",".join(filters.labels)

        data = self.client.get(f"/projects/{_project_path(project)}/issues", query)
        return [_to_issue(item) for item in data or []]

    def update_issue(self, identifier: str, update: IssueUpdate, project: ProjectConfig) -> None:
        path = self._issue_path(identifier, project)
        payload: dict[str, Any] = {}

        # "in_progress" has no GitLab equivalent
        if update.state == "closed":
            payload["state_event"] = "close"
        elif update.state == "open":
            payload["state_event"] = "reopen"

        if update.labels:
            try:
                existing = self.client.get(path) or {}
                current = list(existing.get("labels") or [])
            except OrchestratorError as e:
                logger.debug("Could not read labels of %s, sending requested only: %s", path, e)
                current = []
            merged = list(dict.fromkeys(current + list(update.labels)))
            payload["labels"] = ",".join(merged)

        if update.assignee:
            user_id = self._lookup_user_id(update.assignee)
            if user_id:
                payload["assignee_ids"] = [user_id]

        if update.comment:
            self.client.post(f"{path}/notes", {"body": update.comment})

        if payload:
            self.client.put(path, payload)

    def create_issue(self, data: CreateIssueInput, project: ProjectConfig) -> Issue:
        path = f"/projects/{_project_path(project)}/issues"
        payload: dict[str, Any] = {
            "title": data.title,
            "description": data.description or "",
        }
        if data.labels:
            payload["labels"] = ",".join(data.labels)
        if data.assignee:
            user_id = self._lookup_user_id(data.assignee)
            if user_id:
                payload["assignee_ids"] = [user_id]

        created = self.client.post(path, payload)
        if created is None:
            raise PermanentExternalError(f"GitLab API returned empty body for POST {path}")
        return _to_issue(created)

    def handle_webhook(self, headers: Mapping[str, Any], payload: Any) -> WebhookEvent:
        """Verify and normalize a webhook with this tracker's secret."""
        return handle_webhook(headers, payload, self.webhook_secret)


def create_gitlab_tracker(config: dict[str, Any]) -> GitLabTracker:
    """
    Build a tracker from plugin config.

    Raises:
        ConfigurationError: If no token is configured or in GITLAB_TOKEN.
    """
    token = config.get("token") or os.environ.get("GITLAB_TOKEN")
    if not token:
        raise ConfigurationError("GITLAB_TOKEN (or plugin config token) is required for tracker-gitlab")

    # One attempt per request: the orchestrator's ExternalCaller owns retries.
    client = GitLabClient(
        token=token,
        base_url=config.get("base_url"),
        timeout_ms=int(config.get("timeout_ms", 15_000)),
        max_retries=int(config.get("max_retries", 1)),
    )
    return GitLabTracker(client, webhook_secret=config.get("webhook_secret", ""))
