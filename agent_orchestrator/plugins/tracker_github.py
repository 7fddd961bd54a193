"""
Tracker plugin: GitHub Issues via the gh CLI.

Authentication is whatever `gh auth login` configured; the plugin only
needs the project's repo ("owner/name").
"""

from __future__ import annotations

from typing import Any

from agent_orchestrator.config import ProjectConfig
from agent_orchestrator.errors import PermanentExternalError
from agent_orchestrator.plugins.base import (
    CreateIssueInput,
    Issue,
    IssueFilters,
    IssueUpdate,
    PluginManifest,
    PluginSlot,
)
from agent_orchestrator.plugins.gh_cli import run_gh, run_gh_json

MANIFEST = PluginManifest(
    slot=PluginSlot.TRACKER,
    name="github",
    description="Tracker plugin: GitHub Issues (gh CLI)",
)

_ISSUE_FIELDS = "number,title,body,url,state,labels,assignees"


def _number(identifier: str) -> str:
    value = str(identifier).strip().lstrip("#").strip()
    if not value.isdigit():
        raise PermanentExternalError(f"Invalid issue identifier: {identifier}")
    return value


def _to_issue(data: dict[str, Any]) -> Issue:
    assignees = data.get("assignees") or []
    return Issue(
        id=str(data["number"]),
        title=data.get("title", ""),
        description=data.get("body") or "",
        url=data.get("url") or "",
        state="closed" if str(data.get("state", "")).upper() == "CLOSED" else "open",
        labels=[label["name"] for label in data.get("labels") or []],
        assignee=assignees[0].get("login") if assignees else None,
    )


class GitHubTracker:
    name = "github"

    def __init__(self, timeout: int = 30) -> None:
        self.timeout = timeout

    def _gh(self, args: list[str], project: ProjectConfig) -> str:
        return run_gh(args + ["--repo", project.repo], timeout=self.timeout)

    def _gh_json(self, args: list[str], project: ProjectConfig) -> Any:
        return run_gh_json(args + ["--repo", project.repo], timeout=self.timeout)

    def get_issue(self, identifier: str, project: ProjectConfig) -> Issue:
        data = self._gh_json(
            ["issue", "view", _number(identifier), "--json", _ISSUE_FIELDS], project
        )
        if not isinstance(data, dict):
            raise PermanentExternalError(f"gh issue view {identifier}: empty response")
        return _to_issue(data)

    def is_completed(self, identifier: str, project: ProjectConfig) -> bool:
        return self.get_issue(identifier, project).state == "closed"

    def issue_url(self, identifier: str, project: ProjectConfig) -> str:
        return f"https://github.com/{project.repo}/issues/{_number(identifier)}"

    def branch_name(self, identifier: str, project: ProjectConfig) -> str:
        return f"feat/issue-{_number(identifier)}"

    def generate_prompt(self, identifier: str, project: ProjectConfig) -> str:
        issue = self.get_issue(identifier, project)
        lines = [
            f"You are working on GitHub issue #{issue.id}: {issue.title}",
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
            "When done, commit, push your branch and open a pull request.",
        ])
        return "\n".join(lines)

    def list_issues(self, filters: IssueFilters, project: ProjectConfig) -> list[Issue]:
        args = [
            "issue", "list",
            "--state", filters.state if filters.state in ("open", "closed", "all") else "open",
            "--limit", str(filters.limit or 30),
            "--json", _ISSUE_FIELDS,
        ]
        for label in filters.labels:
            args += ["--label", label]
        if filters.assignee:
            args += ["--assignee", filters.assignee]
        return [_to_issue(item) for item in self._gh_json(args, project) or []]

    def update_issue(self, identifier: str, update: IssueUpdate, project: ProjectConfig) -> None:
        number = _number(identifier)
        if update.state == "closed":
            self._gh(["issue", "close", number], project)
        elif update.state == "open":
            self._gh(["issue", "reopen", number], project)

        edit: list[str] = []
        for label in update.labels:
            edit += ["--add-label", label]
        if update.assignee:
            edit += ["--add-assignee", update.assignee]
        if edit:
            self._gh(["issue", "edit", number] + edit, project)

        if update.comment:
            self._gh(["issue", "comment", number, "--body", update.comment], project)

    def create_issue(self, data: CreateIssueInput, project: ProjectConfig) -> Issue:
        args = ["issue", "create", "--title", data.title, "--body", data.description or ""]
        for label in data.labels:
            args += ["--label", label]
        if data.assignee:
            args += ["--assignee", data.assignee]
        # gh issue create prints the new issue URL
        url = self._gh(args, project).strip().splitlines()[-1]
        return self.get_issue(url.rstrip("/").rsplit("/", 1)[-1], project)


def create(config: dict[str, Any]) -> GitHubTracker:
    return GitHubTracker(timeout=int(config.get("timeout", 30)))

