"""
Core data models for the Agent Orchestrator.

This module defines the foundational data structures used throughout the system:
- Enums for session status, CI status and review decisions
- Session and PullRequestRef dataclasses with flat record serialization
- ObservedFacts, the input of the state machine
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional


def now_iso() -> str:
    """Get current timestamp in ISO format."""
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class SessionStatus(Enum):
    """
    States in the session lifecycle.

    A session progresses from spawning through PR review to merge.
    ci_failed and changes_requested loop back to pr_open once fixed.
    """
    # Startup
    SPAWNING = "spawning"                    # Runtime started, agent booting
    WORKING = "working"                      # Agent working, no PR yet

    # Pull request
    PR_OPEN = "pr_open"                      # PR exists, nothing decided yet
    CI_FAILED = "ci_failed"                  # CI checks failing
    REVIEW_PENDING = "review_pending"        # CI green, awaiting review
    CHANGES_REQUESTED = "changes_requested"  # Reviewer asked for changes
    APPROVED = "approved"                    # Approved, not yet mergeable
    MERGEABLE = "mergeable"                  # Approved, green, mergeable

    # Completion
    MERGED = "merged"                        # PR merged, awaiting cleanup
    TERMINATED = "terminated"                # Torn down

    # Error states
    ABANDONED = "abandoned"                  # PR closed or issue closed without PR
    FAILED = "failed"                        # Agent died or spawn failed


class PRState(Enum):
    """State of a pull request on the SCM."""
    OPEN = "open"
    MERGED = "merged"
    CLOSED = "closed"


class CIStatus(Enum):
    """Aggregated CI status of a pull request."""
    NONE = "none"
    PENDING = "pending"
    PASSING = "passing"
    FAILING = "failing"


class ReviewDecision(Enum):
    """Aggregated review decision of a pull request."""
    NONE = "none"
    PENDING = "pending"
    APPROVED = "approved"
    CHANGES_REQUESTED = "changes_requested"


@dataclass(frozen=True)
class PullRequestRef:
    """Reference to a pull request tracked for a session."""
    number: int
    url: str = ""
    branch: str = ""
    head_sha: str = ""


@dataclass(frozen=True)
class ObservedFacts:
    """
    Externally observed facts about a session, gathered on one poll.

    None for runtime_alive means the runtime could not be asked.
    """
    runtime_alive: Optional[bool] = True
    issue_closed: bool = False
    pr: Optional[PullRequestRef] = None
    pr_state: Optional[PRState] = None
    ci: CIStatus = CIStatus.NONE
    review: ReviewDecision = ReviewDecision.NONE
    mergeable: bool = False

    def summary(self) -> dict[str, Any]:
        """Compact dict for event payloads and logs."""
        return {
            "pr": self.pr.number if self.pr else None,
            "pr_state": self.pr_state.value if self.pr_state else None,
            "ci": self.ci.value,
            "review": self.review.value,
            "mergeable": self.mergeable,
            "runtime_alive": self.runtime_alive,
            "issue_closed": self.issue_closed,
        }


@dataclass
class Session:
    """
    One tracked agent instance tied to an issue and eventually a PR.

    Persisted as a flat key/value record, see to_record().
    """
    session_id: str
    project: str
    issue_id: str
    status: SessionStatus = SessionStatus.SPAWNING
    runtime_handle: Optional[str] = None
    workspace_path: Optional[str] = None
    branch: str = ""
    agent: str = ""
    runtime: str = ""
    pr: Optional[PullRequestRef] = None
    ci_status: Optional[CIStatus] = None
    review_status: Optional[ReviewDecision] = None
    issue_labels: list[str] = field(default_factory=list)
    reaction_attempts: dict[str, int] = field(default_factory=dict)
    conflict: Optional[str] = None
    last_error: Optional[str] = None
    halted: bool = False
    reacted_seq: int = 0                     # Highest event seq whose reactions are settled
    created_at: str = field(default_factory=now_iso)
    updated_at: str = field(default_factory=now_iso)

    @property
    def is_terminal(self) -> bool:
        from agent_orchestrator.state_machine import is_terminal
        return is_terminal(self.status)

    def to_record(self) -> dict[str, str]:
        """Convert to a flat string mapping for the metadata store."""
        record = {
            "session_id": self.session_id,
            "project": self.project,
            "issue_id": self.issue_id,
            "status": self.status.value,
            "runtime_handle": self.runtime_handle or "",
            "workspace_path": self.workspace_path or "",
            "branch": self.branch,
            "agent": self.agent,
            "runtime": self.runtime,
            "pr_number": str(self.pr.number) if self.pr else "",
            "pr_url": self.pr.url if self.pr else "",
            "pr_branch": self.pr.branch if self.pr else "",
            "pr_head_sha": self.pr.head_sha if self.pr else "",
            "ci_status": self.ci_status.value if self.ci_status else "",
            "review_status": self.review_status.value if self.review_status else "",
            "issue_labels": json.dumps(self.issue_labels) if self.issue_labels else "",
            "reaction_attempts": (
                json.dumps(self.reaction_attempts, sort_keys=True)
                if self.reaction_attempts else ""
            ),
            "conflict": self.conflict or "",
            "last_error": self.last_error or "",
            "halted": "true" if self.halted else "false",
            "reacted_seq": str(self.reacted_seq),
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }
        return record

    @classmethod
    def from_record(cls, data: dict[str, str]) -> Session:
        """Create from a flat string mapping."""
        pr = None
        if data.get("pr_number"):
            pr = PullRequestRef(
                number=int(data["pr_number"]),
                url=data.get("pr_url", ""),
                branch=data.get("pr_branch", ""),
                head_sha=data.get("pr_head_sha", ""),
            )

        return cls(
            session_id=data["session_id"],
            project=data["project"],
            issue_id=data["issue_id"],
            status=SessionStatus(data["status"]),
            runtime_handle=data.get("runtime_handle") or None,
            workspace_path=data.get("workspace_path") or None,
            branch=data.get("branch", ""),
            agent=data.get("agent", ""),
            runtime=data.get("runtime", ""),
            pr=pr,
            ci_status=CIStatus(data["ci_status"]) if data.get("ci_status") else None,
            review_status=(
                ReviewDecision(data["review_status"]) if data.get("review_status") else None
            ),
            issue_labels=list(json.loads(data.get("issue_labels") or "[]")),
            reaction_attempts={
                kind: int(count)
                for kind, count in json.loads(data.get("reaction_attempts") or "{}").items()
            },
            conflict=data.get("conflict") or None,
            last_error=data.get("last_error") or None,
            halted=data.get("halted", "false") == "true",
            reacted_seq=int(data.get("reacted_seq") or 0),
            created_at=data.get("created_at", now_iso()),
            updated_at=data.get("updated_at", now_iso()),
        )
