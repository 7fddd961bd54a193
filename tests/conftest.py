# tests/conftest.py

import threading
from pathlib import Path
from types import SimpleNamespace
from typing import Optional

import pytest
from typer.testing import CliRunner

from agent_orchestrator.config import (
    ExternalCallConfig,
    LifecycleConfig,
    OrchestratorConfig,
    ProjectConfig,
    ReactionConfig,
)
from agent_orchestrator.external import ExternalCaller
from agent_orchestrator.models import (
    CIStatus,
    PRState,
    PullRequestRef,
    ReviewDecision,
    Session,
)
from agent_orchestrator.orchestrator import Orchestrator
from agent_orchestrator.plugins.base import Issue, LaunchSpec, PluginManifest, PluginSlot
from agent_orchestrator.plugins.registry import PluginRegistry


# =============================================================================
# Fake plugins
# =============================================================================


class FakeTracker:
    name = "fake"

    def __init__(self):
        self.labels: dict[str, list[str]] = {}
        self.closed: set[str] = set()
        self.error: Optional[Exception] = None

    def get_issue(self, identifier, project):
        if self.error:
            raise self.error
        issue_id = identifier.lstrip("#")
        return Issue(
            id=issue_id,
            title=f"Issue {issue_id}",
            description="Fix the bug",
            labels=self.labels.get(issue_id, []),
        )

    def is_completed(self, identifier, project):
        return identifier.lstrip("#") in self.closed

    def issue_url(self, identifier, project):
        return f"https://tracker.test/{project.repo}/issues/{identifier}"

    def branch_name(self, identifier, project):
        return f"feat/issue-{identifier.lstrip('#')}"

    def generate_prompt(self, identifier, project):
        return f"Work on issue {identifier}"

    def list_issues(self, filters, project):
        return []

    def update_issue(self, identifier, update, project):
        pass

    def create_issue(self, data, project):
        return Issue(id="1", title=data.title)


class FakeSCM:
    name = "fake"

    def __init__(self):
        self.pr: Optional[PullRequestRef] = None
        self.pr_state = PRState.OPEN
        self.ci = CIStatus.NONE
        self.review = ReviewDecision.NONE
        self.mergeable = False
        self.merged: list[int] = []
        self.find_error: Optional[Exception] = None
        self.find_calls = 0

    def open_pr(self, number=7, ci=CIStatus.PENDING, review=ReviewDecision.NONE, mergeable=False):
        self.pr = PullRequestRef(number=number, url=f"https://scm.test/pull/{number}",
                                 branch="feat/issue-42")
        self.pr_state = PRState.OPEN
        self.ci = ci
        self.review = review
        self.mergeable = mergeable

    def find_pr(self, session, project):
        self.find_calls += 1
        if self.find_error:
            raise self.find_error
        return self.pr

    def get_pr_state(self, pr, project):
        return self.pr_state

    def get_ci_status(self, pr, project):
        return self.ci

    def get_review_decision(self, pr, project):
        return self.review

    def is_mergeable(self, pr, project):
        return self.mergeable

    def merge(self, pr, project, method="squash"):
        self.merged.append(pr.number)
        self.pr_state = PRState.MERGED


class FakeRuntime:
    name = "fake"

    def __init__(self):
        self.alive: dict[str, bool] = {}
        self.launches: dict[str, LaunchSpec] = {}
        self.messages: list[tuple[str, str]] = []
        self.destroyed: list[str] = []
        self.create_error: Optional[Exception] = None
        self.destroy_error: Optional[Exception] = None
        # Exceptions raised by successive send_message calls
        self.send_errors: list[Exception] = []
        self.send_attempted = threading.Event()

    def create(self, session_id, workspace_path, launch):
        if self.create_error:
            raise self.create_error
        handle = f"rt-{session_id}"
        self.alive[handle] = True
        self.launches[handle] = launch
        return handle

    def destroy(self, handle):
        if self.destroy_error:
            raise self.destroy_error
        self.alive[handle] = False
        self.destroyed.append(handle)

    def send_message(self, handle, message):
        self.send_attempted.set()
        if self.send_errors:
            raise self.send_errors.pop(0)
        self.messages.append((handle, message))

    def get_output(self, handle, lines=50):
        return "agent output"

    def is_alive(self, handle):
        return self.alive.get(handle, False)


class FakeAgent:
    name = "fake"

    def get_launch(self, prompt, workspace_path, session_id):
        return LaunchSpec(command=["fake-agent", prompt], env={"AGENT": "fake"})


class FakeWorkspace:
    name = "fake"

    def __init__(self, root: Path):
        self.root = root
        self.created: list[str] = []
        self.destroyed: list[str] = []
        self.create_error: Optional[Exception] = None
        self.destroy_error: Optional[Exception] = None

    def create(self, project, session_id, branch):
        if self.create_error:
            raise self.create_error
        path = self.root / session_id
        path.mkdir(parents=True)
        self.created.append(str(path))
        return str(path)

    def destroy(self, workspace_path, project):
        if self.destroy_error:
            raise self.destroy_error
        self.destroyed.append(workspace_path)


class FakeNotifier:
    name = "fake"

    def __init__(self):
        self.notifications: list[tuple[str, Optional[str], str]] = []
        self.error: Optional[Exception] = None

    def notify(self, message, session_id=None, priority="info"):
        if self.error:
            raise self.error
        self.notifications.append((message, session_id, priority))


def plugin_module(slot: PluginSlot, name: str, instance):
    """Wrap an instance as a plugin module (MANIFEST + create)."""
    return SimpleNamespace(
        MANIFEST=PluginManifest(slot=slot, name=name),
        create=lambda config: instance,
    )


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def fakes(tmp_path):
    """One instance of every fake plugin."""
    return SimpleNamespace(
        tracker=FakeTracker(),
        scm=FakeSCM(),
        runtime=FakeRuntime(),
        agent=FakeAgent(),
        workspace=FakeWorkspace(tmp_path / "workspaces"),
        notifier=FakeNotifier(),
    )


@pytest.fixture
def registry(fakes):
    """Registry with the fake plugins bound to the name "fake"."""
    registry = PluginRegistry()
    registry.register(plugin_module(PluginSlot.TRACKER, "fake", fakes.tracker))
    registry.register(plugin_module(PluginSlot.SCM, "fake", fakes.scm))
    registry.register(plugin_module(PluginSlot.RUNTIME, "fake", fakes.runtime))
    registry.register(plugin_module(PluginSlot.AGENT, "fake", fakes.agent))
    registry.register(plugin_module(PluginSlot.WORKSPACE, "fake", fakes.workspace))
    registry.register(plugin_module(PluginSlot.NOTIFIER, "fake", fakes.notifier))
    return registry


def _make_config(tmp_path: Path, **overrides) -> OrchestratorConfig:
    """Config using the fake plugins, no backoff delays."""
    reactions = overrides.pop("reactions", [
        ReactionConfig(event="ci_failed", action="send-to-agent", max_attempts=3,
                       backoff_base_seconds=0),
        ReactionConfig(event="changes_requested", action="send-to-agent", max_attempts=3,
                       backoff_base_seconds=0),
        ReactionConfig(event="mergeable", action="notify", priority="action",
                       backoff_base_seconds=0),
    ])
    project = overrides.pop("project", ProjectConfig(name="app", repo="acme/app"))
    return OrchestratorConfig(
        data_dir=str(tmp_path / "data"),
        defaults={slot: "fake" for slot in
                  ("runtime", "agent", "workspace", "tracker", "scm", "notifier")},
        lifecycle=overrides.pop("lifecycle", LifecycleConfig(max_workers=4)),
        external=ExternalCallConfig(
            timeout_seconds=0,
            max_retries=3,
            base_delay_seconds=0,
            jitter_seconds=0,
        ),
        projects={project.name: project},
        reactions=reactions,
        **overrides,
    )


@pytest.fixture
def make_config(tmp_path):
    """Factory for configs using the fake plugins; keyword overrides apply."""
    def _factory(**overrides) -> OrchestratorConfig:
        return _make_config(tmp_path, **overrides)
    return _factory


@pytest.fixture
def config(make_config):
    return make_config()


@pytest.fixture
def build(registry, tmp_path):
    """Factory building a wired Orchestrator; all are shut down afterwards."""
    built: list[Orchestrator] = []

    def _build(config: Optional[OrchestratorConfig] = None) -> Orchestrator:
        config = config or _make_config(tmp_path)
        caller = ExternalCaller(config.external, sleep=lambda seconds: None, rng=lambda: 0.0)
        orchestrator = Orchestrator(config, registry=registry, caller=caller)
        built.append(orchestrator)
        return orchestrator

    yield _build
    for orchestrator in built:
        orchestrator.shutdown()


@pytest.fixture
def orchestrator(build):
    return build()


@pytest.fixture
def event_types():
    """Event type values of a session's log, in order."""
    def _event_types(orchestrator: Orchestrator, session_id: str) -> list[str]:
        return [e.event_type.value for e in orchestrator.event_log.read(session_id)]
    return _event_types


@pytest.fixture
def spawn_working():
    """Spawn a session and poll it once into working."""
    def _spawn_working(orchestrator: Orchestrator, issue_id: str = "42") -> Session:
        session = orchestrator.sessions.spawn("app", issue_id)
        orchestrator.lifecycle.poll_session(session.session_id)
        return orchestrator.store.load(session.session_id)
    return _spawn_working


@pytest.fixture
def cli_runner():
    """Typer CLI test runner."""
    return CliRunner()
