"""
SCM plugin: GitHub pull requests via the gh CLI.

PR status, CI rollup, review decision and mergeability are read with
`gh pr view --json`. A changes-requested review left on an older commit is
reported as pending so a pushed fix is re-evaluated instead of looping back
to changes_requested.
"""

from __future__ import annotations

from typing import Any, Optional

from agent_orchestrator.config import ProjectConfig
from agent_orchestrator.errors import PermanentExternalError
from agent_orchestrator.models import (
    CIStatus,
    PRState,
    PullRequestRef,
    ReviewDecision,
    Session,
)
from agent_orchestrator.plugins.base import PluginManifest, PluginSlot
from agent_orchestrator.plugins.gh_cli import run_gh, run_gh_json

MANIFEST = PluginManifest(
    slot=PluginSlot.SCM,
    name="github",
    description="SCM plugin: GitHub pull requests (gh CLI)",
)

MERGE_METHODS = ("squash", "merge", "rebase")

_PR_FIELDS = "number,url,headRefName,headRefOid"

_FAILING_CONCLUSIONS = {"FAILURE", "TIMED_OUT", "CANCELLED", "ACTION_REQUIRED", "STARTUP_FAILURE"}
_FAILING_STATES = {"FAILURE", "ERROR"}
_PENDING_STATES = {"PENDING", "EXPECTED", "QUEUED", "IN_PROGRESS", "WAITING", "REQUESTED"}

_BLOCKED_MERGE_STATES = {"BLOCKED", "BEHIND", "DIRTY", "DRAFT", "UNKNOWN"}


def _to_ref(data: dict[str, Any]) -> PullRequestRef:
    return PullRequestRef(
        number=int(data["number"]),
        url=data.get("url", ""),
        branch=data.get("headRefName", ""),
        head_sha=data.get("headRefOid", ""),
    )


def aggregate_checks(rollup: list[dict[str, Any]]) -> CIStatus:
    """
    Reduce a statusCheckRollup to one CIStatus.

    Check runs carry status/conclusion, commit statuses carry state.
    Any failure wins over pending, pending wins over passing.
    """
    if not rollup:
        return CIStatus.NONE

    pending = False
    for check in rollup:
        conclusion = str(check.get("conclusion") or "").upper()
        state = str(check.get("state") or "").upper()
        status = str(check.get("status") or "").upper()
        if conclusion in _FAILING_CONCLUSIONS or state in _FAILING_STATES:
            return CIStatus.FAILING
        if state in _PENDING_STATES or (status and status != "COMPLETED"):
            pending = True
    return CIStatus.PENDING if pending else CIStatus.PASSING


def review_decision(data: dict[str, Any]) -> ReviewDecision:
    """
    Map gh reviewDecision to ReviewDecision.

    CHANGES_REQUESTED only counts while the latest such review is on the
    current head commit.
    """
    decision = str(data.get("reviewDecision") or "").upper()
    if decision == "APPROVED":
        return ReviewDecision.APPROVED
    if decision == "REVIEW_REQUIRED":
        return ReviewDecision.PENDING
    if decision != "CHANGES_REQUESTED":
        return ReviewDecision.NONE

    head = data.get("headRefOid", "")
    requested = [
        r for r in data.get("reviews") or []
        if str(r.get("state", "")).upper() == "CHANGES_REQUESTED"
    ]
    if requested and head:
        latest = requested[-1]
        commit = (latest.get("commit") or {}).get("oid", "")
        if commit and commit != head:
            return ReviewDecision.PENDING
    return ReviewDecision.CHANGES_REQUESTED


class GitHubSCM:
    name = "github"

    def __init__(self, timeout: int = 30) -> None:
        self.timeout = timeout

    def _view(self, pr: PullRequestRef, project: ProjectConfig, fields: str) -> dict[str, Any]:
        data = run_gh_json(
            ["pr", "view", str(pr.number), "--repo", project.repo, "--json", fields],
            timeout=self.timeout,
        )
        if not isinstance(data, dict):
            raise PermanentExternalError(f"gh pr view {pr.number}: empty response")
        return data

    def find_pr(self, session: Session, project: ProjectConfig) -> Optional[PullRequestRef]:
        if session.pr is not None:
            return _to_ref(self._view(session.pr, project, _PR_FIELDS))
        if not session.branch:
            return None
        items = run_gh_json(
            [
                "pr", "list",
                "--repo", project.repo,
                "--head", session.branch,
                "--state", "all",
                "--limit", "1",
                "--json", _PR_FIELDS,
            ],
            timeout=self.timeout,
        )
        return _to_ref(items[0]) if items else None

    def get_pr_state(self, pr: PullRequestRef, project: ProjectConfig) -> PRState:
        state = str(self._view(pr, project, "state").get("state", "")).upper()
        if state == "MERGED":
            return PRState.MERGED
        if state == "CLOSED":
            return PRState.CLOSED
        return PRState.OPEN

    def get_ci_status(self, pr: PullRequestRef, project: ProjectConfig) -> CIStatus:
        data = self._view(pr, project, "statusCheckRollup")
        return aggregate_checks(data.get("statusCheckRollup") or [])

    def get_review_decision(self, pr: PullRequestRef, project: ProjectConfig) -> ReviewDecision:
        return review_decision(self._view(pr, project, "reviewDecision,reviews,headRefOid"))

    def is_mergeable(self, pr: PullRequestRef, project: ProjectConfig) -> bool:
        data = self._view(pr, project, "mergeable,mergeStateStatus")
        if str(data.get("mergeable", "")).upper() != "MERGEABLE":
            return False
        return str(data.get("mergeStateStatus", "")).upper() not in _BLOCKED_MERGE_STATES

    def merge(self, pr: PullRequestRef, project: ProjectConfig, method: str = "squash") -> None:
        if method not in MERGE_METHODS:
            raise PermanentExternalError(f"Unsupported merge method: {method}")
        run_gh(
            ["pr", "merge", str(pr.number), "--repo", project.repo, f"--{method}"],
            timeout=self.timeout,
        )


def create(config: dict[str, Any]) -> GitHubSCM:
    return GitHubSCM(timeout=int(config.get("timeout", 30)))
