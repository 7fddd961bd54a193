"""
Plugin contracts consumed by the Session and Lifecycle Managers.

Each slot has a fixed Protocol. A plugin module exposes:
- MANIFEST: PluginManifest describing its (slot, name)
- create(config): factory returning an object satisfying the slot Protocol
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional, Protocol

from agent_orchestrator.config import ProjectConfig
from agent_orchestrator.models import (
    CIStatus,
    PRState,
    PullRequestRef,
    ReviewDecision,
    Session,
)


class PluginSlot(Enum):
    """Named extension points."""
    RUNTIME = "runtime"
    AGENT = "agent"
    WORKSPACE = "workspace"
    TRACKER = "tracker"
    SCM = "scm"
    NOTIFIER = "notifier"
    REACTION = "reaction"


@dataclass(frozen=True)
class PluginManifest:
    """Identity of a plugin implementation."""
    slot: PluginSlot
    name: str
    description: str = ""
    version: str = "0.1.0"

    @property
    def key(self) -> str:
        return f"{self.slot.value}:{self.name}"


# ============================================================================
# Tracker
# ============================================================================


@dataclass
class Issue:
    """Normalized issue shape shared by all trackers."""
    id: str
    title: str
    description: str = ""
    url: str = ""
    state: str = "open"              # "open" | "closed"
    labels: list[str] = field(default_factory=list)
    assignee: Optional[str] = None


@dataclass
class IssueFilters:
    state: str = "open"              # "open" | "closed" | "all"
    labels: list[str] = field(default_factory=list)
    assignee: Optional[str] = None
    limit: int = 30


@dataclass
class IssueUpdate:
    state: Optional[str] = None      # "open" | "closed" | "in_progress"
    labels: list[str] = field(default_factory=list)
    assignee: Optional[str] = None
    comment: Optional[str] = None


@dataclass
class CreateIssueInput:
    title: str
    description: str = ""
    labels: list[str] = field(default_factory=list)
    assignee: Optional[str] = None


class Tracker(Protocol):
    """Issue tracker contract."""

    name: str

    def get_issue(self, identifier: str, project: ProjectConfig) -> Issue: ...

    def is_completed(self, identifier: str, project: ProjectConfig) -> bool: ...

    def issue_url(self, identifier: str, project: ProjectConfig) -> str: ...

    def branch_name(self, identifier: str, project: ProjectConfig) -> str: ...

    def generate_prompt(self, identifier: str, project: ProjectConfig) -> str: ...

    def list_issues(self, filters: IssueFilters, project: ProjectConfig) -> list[Issue]: ...

    def update_issue(self, identifier: str, update: IssueUpdate, project: ProjectConfig) -> None: ...

    def create_issue(self, data: CreateIssueInput, project: ProjectConfig) -> Issue: ...


# ============================================================================
# SCM
# ============================================================================


class SCM(Protocol):
    """Source-control platform contract, scoped to one session's PR."""

    name: str

    def find_pr(self, session: Session, project: ProjectConfig) -> Optional[PullRequestRef]: ...

    def get_pr_state(self, pr: PullRequestRef, project: ProjectConfig) -> PRState: ...

    def get_ci_status(self, pr: PullRequestRef, project: ProjectConfig) -> CIStatus: ...

    def get_review_decision(self, pr: PullRequestRef, project: ProjectConfig) -> ReviewDecision: ...

    def is_mergeable(self, pr: PullRequestRef, project: ProjectConfig) -> bool: ...

    def merge(self, pr: PullRequestRef, project: ProjectConfig, method: str = "squash") -> None: ...


# ============================================================================
# Runtime, Agent, Workspace
# ============================================================================


@dataclass(frozen=True)
class LaunchSpec:
    """Command and environment an agent runs with."""
    command: list[str]
    env: dict[str, str] = field(default_factory=dict)


class Runtime(Protocol):
    """Execution environment contract, addressed by an opaque handle."""

    name: str

    def create(self, session_id: str, workspace_path: str, launch: LaunchSpec) -> str: ...

    def destroy(self, handle: str) -> None: ...

    def send_message(self, handle: str, message: str) -> None: ...

    def get_output(self, handle: str, lines: int = 50) -> str: ...

    def is_alive(self, handle: str) -> bool: ...


class Agent(Protocol):
    """Coding agent adapter contract."""

    name: str

    def get_launch(self, prompt: str, workspace_path: str, session_id: str) -> LaunchSpec: ...


class Workspace(Protocol):
    """Code isolation contract."""

    name: str

    def create(self, project: ProjectConfig, session_id: str, branch: str) -> str: ...

    def destroy(self, workspace_path: str, project: ProjectConfig) -> None: ...


# ============================================================================
# Notifier and custom reactions
# ============================================================================


class Notifier(Protocol):
    """Human notification contract."""

    name: str

    def notify(self, message: str, session_id: Optional[str] = None, priority: str = "info") -> None: ...


class ReactionPlugin(Protocol):
    """Custom reaction action, registered in the reaction slot."""

    name: str

    def run(self, session: Session, event: Any, reaction: Any) -> None: ...
