"""
Session Manager for the Agent Orchestrator.

The single writer of a session's existence. This module handles:
- Spawning: prompt, workspace, launch command, runtime, initial record
- Rolling back a spawn whose runtime failed to start
- Termination and post-terminal cleanup (runtime and workspace teardown,
  metadata archival)
- Operator messages to a running agent

Session Lifecycle:
1. spawn() - record created in state spawning, session.spawned emitted
2. LifecycleManager advances the state from then on
3. cleanup() - after merged/abandoned/failed, tears down and archives
   terminate() - operator stop at any point, same teardown

Teardown failures never block termination. They are recorded as
session.resource_leak events and the residual workspace path stays in the
archived record for operator cleanup.
"""

from __future__ import annotations

import re
import uuid
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Optional

from agent_orchestrator.config import OrchestratorConfig, ProjectConfig
from agent_orchestrator.coordination import SessionCoordinator
from agent_orchestrator.errors import (
    OrchestratorError,
    PermanentExternalError,
    ResourceLeakError,
    RuntimeStartError,
    SessionNotFoundError,
    WorkspaceError,
)
from agent_orchestrator.events.bus import EventBus
from agent_orchestrator.events.types import EventType
from agent_orchestrator.external import ExternalCaller
from agent_orchestrator.models import Session, SessionStatus
from agent_orchestrator.plugins.base import LaunchSpec, PluginSlot
from agent_orchestrator.plugins.registry import PluginRegistry
from agent_orchestrator.state_machine import is_terminal
from agent_orchestrator.state_store import MetadataStore

if TYPE_CHECKING:
    from agent_orchestrator.logger import OrchestratorLogger


@dataclass
class SpawnOptions:
    """Per-spawn overrides of the project configuration."""
    agent: Optional[str] = None
    runtime: Optional[str] = None
    branch: Optional[str] = None
    prompt: Optional[str] = None
    env: dict[str, str] = field(default_factory=dict)


class SessionManager:
    """
    Creates and destroys agent sessions.

    Usage:
        sessions = SessionManager(config, registry, store, bus, coordinator, caller)
        session = sessions.spawn("app", "42")
        sessions.terminate(session.session_id)
    """

    def __init__(
        self,
        config: OrchestratorConfig,
        registry: PluginRegistry,
        store: MetadataStore,
        bus: EventBus,
        coordinator: SessionCoordinator,
        caller: ExternalCaller,
        logger: Optional[OrchestratorLogger] = None,
    ) -> None:
        """
        Initialize the SessionManager.

        Args:
            config: Orchestrator configuration.
            registry: Plugin registry.
            store: Session metadata store.
            bus: Event bus backed by the event log.
            coordinator: Per-session locks and cancellation tokens.
            caller: Guarded plugin caller.
            logger: Optional logger for recording operations.
        """
        self.config = config
        self.registry = registry
        self.store = store
        self.bus = bus
        self.coordinator = coordinator
        self.caller = caller
        self.logger = logger

    def _log(
        self,
        event_type: str,
        data: Optional[dict] = None,
        level: str = "info"
    ) -> None:
        """Log an event if logger is configured."""
        if self.logger:
            self.logger.log(event_type, data, level=level)

    def _generate_session_id(self, project: ProjectConfig, issue_id: str) -> str:
        """Generate a unique, human-readable session ID."""
        issue = re.sub(r"[^A-Za-z0-9]+", "-", issue_id).strip("-").lower() or "issue"
        return f"{project.session_prefix}-{issue}-{uuid.uuid4().hex[:6]}"

    # =========================================================================
    # Spawn
    # =========================================================================

    def spawn(
        self,
        project_name: str,
        issue_id: str,
        options: Optional[SpawnOptions] = None,
    ) -> Session:
        """
        Start an agent session for an issue.

        Args:
            project_name: Configured project name.
            issue_id: Tracker issue identifier ("42" or "#42").
            options: Optional overrides.

        Returns:
            The persisted session in state spawning.

        Raises:
            ConfigurationError: A required plugin or credential is missing.
                Nothing was created.
            TransientExternalError, PermanentExternalError: The tracker could
                not be read. Nothing was created.
            WorkspaceError: The workspace could not be created. No runtime
                was started.
            RuntimeStartError: The runtime failed after the workspace was
                created. The session is recorded as failed.
        """
        options = options or SpawnOptions()
        project = self.config.get_project(project_name)
        self.registry.validate_project(project, self.config.reactions_for(project.name))

        agent_name = options.agent or project.plugin_name("agent")
        runtime_name = options.runtime or project.plugin_name("runtime")
        tracker = self.registry.require(PluginSlot.TRACKER, project.plugin_name("tracker"))
        workspace = self.registry.require(PluginSlot.WORKSPACE, project.plugin_name("workspace"))
        agent = self.registry.require(PluginSlot.AGENT, agent_name)
        runtime = self.registry.require(PluginSlot.RUNTIME, runtime_name)

        session_id = self._generate_session_id(project, issue_id)
        self._log("spawn_started", {
            "session_id": session_id,
            "project": project.name,
            "issue_id": issue_id,
        })

        issue = self.caller.call("tracker.get_issue", tracker.get_issue, issue_id, project)
        prompt = options.prompt or self.caller.call(
            "tracker.generate_prompt", tracker.generate_prompt, issue_id, project
        )
        branch = options.branch or self.caller.call(
            "tracker.branch_name", tracker.branch_name, issue_id, project
        )

        try:
            workspace_path = self.caller.call(
                "workspace.create", workspace.create, project, session_id, branch, retry=False
            )
        except OrchestratorError as e:
            self._log("spawn_workspace_failed", {
                "session_id": session_id,
                "error": str(e),
            }, level="error")
            raise WorkspaceError(f"Workspace creation failed: {e}", session_id=session_id) from e

        session = Session(
            session_id=session_id,
            project=project.name,
            issue_id=issue_id,
            status=SessionStatus.SPAWNING,
            workspace_path=workspace_path,
            branch=branch,
            agent=agent_name,
            runtime=runtime_name,
            issue_labels=list(issue.labels),
        )

        stage = "agent"
        try:
            launch = self.caller.call(
                "agent.get_launch", agent.get_launch, prompt, workspace_path, session_id
            )
            launch = LaunchSpec(
                command=list(launch.command),
                env={
                    **launch.env,
                    **options.env,
                    "AO_SESSION_ID": session_id,
                    "AO_PROJECT": project.name,
                    "AO_ISSUE_ID": issue_id,
                    "AO_DATA_DIR": self.config.data_dir,
                },
            )
            stage = "runtime"
            handle = self.caller.call(
                "runtime.create", runtime.create, session_id, workspace_path, launch, retry=False
            )
        except OrchestratorError as e:
            self._fail_spawn(session, project, e, stage)
            raise RuntimeStartError(
                f"Session {session_id} failed to start: {e}", session_id=session_id
            ) from e

        session.runtime_handle = str(handle)
        with self.coordinator.hold(session_id):
            self.store.save(session)
            self.bus.emit(session_id, EventType.SESSION_SPAWNED, {
                "project": project.name,
                "issue_id": issue_id,
                "branch": branch,
                "agent": agent_name,
                "runtime": runtime_name,
                "workspace_path": workspace_path,
            })

        self._log("session_spawned", {
            "session_id": session_id,
            "runtime_handle": session.runtime_handle,
            "workspace_path": workspace_path,
        })
        return session

    def _fail_spawn(
        self,
        session: Session,
        project: ProjectConfig,
        error: OrchestratorError,
        stage: str,
    ) -> None:
        """Best-effort workspace teardown, then record the session as failed."""
        leak = self._destroy_workspace(session, project)
        session.status = SessionStatus.FAILED
        session.last_error = str(error)

        with self.coordinator.hold(session.session_id):
            self.store.save(session)
            self.bus.emit(session.session_id, EventType.SESSION_FAILED, {
                "error_type": type(error).__name__,
                "message": str(error),
                "stage": stage,
                "residual_workspace": session.workspace_path or "",
            })
            if leak is not None:
                self._record_leak(session, leak)

        self._log("spawn_failed", {
            "session_id": session.session_id,
            "stage": stage,
            "error": str(error),
            "residual_workspace": session.workspace_path,
        }, level="error")

    # =========================================================================
    # Reads
    # =========================================================================

    def list(self, project: Optional[str] = None, include_archived: bool = False) -> list[Session]:
        """List sessions, optionally for one project."""
        sessions = self.store.list_sessions(include_archived=include_archived)
        if project is not None:
            sessions = [s for s in sessions if s.project == project]
        return sessions

    def get(self, session_id: str) -> Optional[Session]:
        """Active record of a session, falling back to its archived record."""
        return self.store.load(session_id) or self.store.load_archived(session_id)

    # =========================================================================
    # Teardown
    # =========================================================================

    def terminate(self, session_id: str, destroy_workspace: bool = True) -> Session:
        """
        Stop a session at any point of its lifecycle.

        Sets the cancellation token first so an in-flight poll stops at its
        next checkpoint, then waits for the session lock. The token leaves a
        marker under <data_dir>/locks/, so a poll running in another process
        stops as well. Terminating a terminated session is a no-op.

        Raises:
            SessionNotFoundError: If the session does not exist.
        """
        if self.get(session_id) is None:
            raise SessionNotFoundError(f"Session {session_id} not found", session_id=session_id)

        self.coordinator.cancel(session_id)
        with self.coordinator.hold(session_id):
            session = self.store.load(session_id)
            if session is None:
                # Archived: already torn down
                return self.get(session_id)
            if session.status == SessionStatus.TERMINATED:
                self._archive(session_id)
                return session
            return self._teardown(session, reason="operator", destroy_workspace=destroy_workspace)

    def cleanup(self, session_id: str) -> Optional[Session]:
        """
        Tear down a session that reached merged, abandoned or failed.

        Returns:
            The terminated session, or None if it was not terminal.
        """
        with self.coordinator.hold(session_id):
            session = self.store.load(session_id)
            if session is None or not is_terminal(session.status):
                return None
            self.coordinator.cancel(session_id)
            if session.status == SessionStatus.TERMINATED:
                self._archive(session_id)
                return session
            return self._teardown(session, reason=session.status.value, destroy_workspace=True)

    def _teardown(self, session: Session, reason: str, destroy_workspace: bool) -> Session:
        """Destroy runtime and workspace, mark terminated, archive. Caller holds the lock."""
        project = self.config.get_project(session.project)
        leaks: list[ResourceLeakError] = []

        if session.runtime_handle:
            try:
                runtime = self.registry.require(
                    PluginSlot.RUNTIME, session.runtime or project.plugin_name("runtime")
                )
                self.caller.call("runtime.destroy", runtime.destroy, session.runtime_handle)
            except OrchestratorError as e:
                leaks.append(ResourceLeakError(
                    f"Runtime {session.runtime_handle} was not destroyed: {e}",
                    session_id=session.session_id,
                    resource=f"runtime:{session.runtime_handle}",
                ))
            session.runtime_handle = None

        if destroy_workspace:
            leak = self._destroy_workspace(session, project)
            if leak is not None:
                leaks.append(leak)

        previous = session.status
        session.status = SessionStatus.TERMINATED
        self.store.save(session)
        for leak in leaks:
            self._record_leak(session, leak)
        self.bus.emit(session.session_id, EventType.SESSION_TERMINATED, {
            "from": previous.value,
            "reason": reason,
            "leaks": [leak.resource for leak in leaks],
        })
        self._archive(session.session_id)

        self._log("session_terminated", {
            "session_id": session.session_id,
            "from": previous.value,
            "reason": reason,
            "leaks": len(leaks),
        })
        return session

    def _archive(self, session_id: str) -> None:
        """Archive the record and drop the session's coordination entries."""
        self.store.archive(session_id)
        self.coordinator.retire(session_id)

    def _destroy_workspace(
        self,
        session: Session,
        project: ProjectConfig,
    ) -> Optional[ResourceLeakError]:
        """Remove the workspace; on failure keep its path on the record."""
        if not session.workspace_path:
            return None
        try:
            workspace = self.registry.require(PluginSlot.WORKSPACE, project.plugin_name("workspace"))
            self.caller.call("workspace.destroy", workspace.destroy, session.workspace_path, project)
        except OrchestratorError as e:
            return ResourceLeakError(
                f"Workspace {session.workspace_path} was not removed: {e}",
                session_id=session.session_id,
                resource=f"workspace:{session.workspace_path}",
            )
        session.workspace_path = None
        return None

    def _record_leak(self, session: Session, leak: ResourceLeakError) -> None:
        self.bus.emit(session.session_id, EventType.SESSION_RESOURCE_LEAK, {
            "resource": leak.resource,
            "message": str(leak),
        })
        self._log("resource_leak", {
            "session_id": session.session_id,
            "resource": leak.resource,
            "error": str(leak),
        }, level="error")

    # =========================================================================
    # Operator messages
    # =========================================================================

    def send(self, session_id: str, message: str) -> None:
        """
        Send a message to a running agent.

        Raises:
            SessionNotFoundError: No active session with that id.
            PermanentExternalError: The session has no runtime.
        """
        session = self.store.load(session_id)
        if session is None:
            raise SessionNotFoundError(f"Session {session_id} not found", session_id=session_id)
        if not session.runtime_handle or is_terminal(session.status):
            raise PermanentExternalError(
                f"Session {session_id} has no running agent", session_id=session_id
            )
        project = self.config.get_project(session.project)
        runtime = self.registry.require(
            PluginSlot.RUNTIME, session.runtime or project.plugin_name("runtime")
        )
        self.caller.call(
            "runtime.send_message", runtime.send_message, session.runtime_handle, message,
            retry=False,
        )
        self._log("message_sent", {"session_id": session_id, "length": len(message)})

    def get_output(self, session_id: str, lines: int = 50) -> str:
        """Recent output of a running agent."""
        session = self.store.load(session_id)
        if session is None or not session.runtime_handle:
            raise SessionNotFoundError(f"No running session {session_id}", session_id=session_id)
        project = self.config.get_project(session.project)
        runtime = self.registry.require(
            PluginSlot.RUNTIME, session.runtime or project.plugin_name("runtime")
        )
        return self.caller.call(
            "runtime.get_output", runtime.get_output, session.runtime_handle, lines
        )
