"""
Lifecycle Manager for the Agent Orchestrator.

The single writer of a session's state. Each poll cycle, under the session
lock:
1. settles reactions for events not yet reacted to (crash recovery)
2. gathers observed facts from the Runtime, SCM and Tracker plugins
3. computes the next state with state_machine.compute_next_state()
4. on a change, appends a transition event, persists the record, then
   runs the matching reactions

Sessions are polled concurrently by a bounded thread pool, each on its own
cadence. A failure in one session is logged and never stops the scan.
"""

from __future__ import annotations

import threading
import time
from contextlib import nullcontext
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Callable, Optional

from agent_orchestrator.config import OrchestratorConfig, ProjectConfig
from agent_orchestrator.coordination import CancellationToken, CancelledError, SessionCoordinator
from agent_orchestrator.errors import OrchestratorError, SessionNotFoundError, StateConflictError
from agent_orchestrator.events.bus import EventBus
from agent_orchestrator.events.types import EventType, SessionEvent
from agent_orchestrator.external import ExternalCaller
from agent_orchestrator.models import (
    CIStatus,
    ObservedFacts,
    PRState,
    ReviewDecision,
    Session,
    SessionStatus,
)
from agent_orchestrator.plugins.base import PluginSlot
from agent_orchestrator.plugins.registry import PluginRegistry
from agent_orchestrator.reactions import ReactionEngine
from agent_orchestrator.state_machine import compute_next_state, is_terminal
from agent_orchestrator.state_store import MetadataStore, ReactionRecord, ReactionStatus
from agent_orchestrator.webhooks import (
    IssueWebhookEvent,
    MergeRequestWebhookEvent,
    WebhookEvent,
)

if TYPE_CHECKING:
    from agent_orchestrator.logger import OrchestratorLogger


@dataclass
class PollResult:
    """Outcome of one poll cycle."""
    session_id: str
    status: Optional[str] = None
    previous: Optional[str] = None
    event: Optional[SessionEvent] = None
    reactions: list[ReactionRecord] = field(default_factory=list)
    skipped: Optional[str] = None            # Why nothing was done
    error: Optional[str] = None

    @property
    def transitioned(self) -> bool:
        return self.event is not None and self.event.event_type == EventType.SESSION_TRANSITION


class LifecycleManager:
    """
    Polls active sessions and advances their state machines.

    Usage:
        lifecycle = LifecycleManager(config, registry, store, bus, engine,
                                     coordinator, caller, on_terminal=sessions.cleanup)
        lifecycle.run(stop_event)
    """

    def __init__(
        self,
        config: OrchestratorConfig,
        registry: PluginRegistry,
        store: MetadataStore,
        bus: EventBus,
        engine: ReactionEngine,
        coordinator: SessionCoordinator,
        caller: ExternalCaller,
        logger: Optional[OrchestratorLogger] = None,
        on_terminal: Optional[Callable[[str], object]] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """
        Initialize the lifecycle manager.

        Args:
            config: Orchestrator configuration.
            registry: Plugin registry.
            store: Session metadata store.
            bus: Event bus backed by the event log.
            engine: Reaction engine.
            coordinator: Per-session locks and cancellation tokens.
            caller: Guarded plugin caller.
            logger: Optional structured logger.
            on_terminal: Called with the session id once a session reaches a
                terminal state, usually SessionManager.cleanup.
            clock: Monotonic clock used for poll scheduling.
        """
        self.config = config
        self.registry = registry
        self.store = store
        self.bus = bus
        self.engine = engine
        self.coordinator = coordinator
        self.caller = caller
        self._logger = logger
        self._on_terminal = on_terminal
        self._clock = clock

        self._executor = ThreadPoolExecutor(
            max_workers=config.lifecycle.max_workers,
            thread_name_prefix="ao-poll",
        )
        self._guard = threading.Lock()
        self._in_flight: dict[str, Future] = {}
        self._next_poll_at: dict[str, float] = {}

    def _log(
        self,
        event_type: str,
        data: Optional[dict] = None,
        level: str = "info",
    ) -> None:
        """Log an event if logger is configured."""
        if self._logger:
            log_data = {"component": "lifecycle"}
            if data:
                log_data.update(data)
            self._logger.log(event_type, log_data, level=level)

    # =========================================================================
    # Poll cycle
    # =========================================================================

    def poll_session(self, session_id: str) -> PollResult:
        """
        Run one poll cycle for a session.

        Never blocks on the session lock: a session already being processed
        by another worker is skipped.
        """
        token = self.coordinator.token(session_id)
        with self.coordinator.hold(session_id, timeout=0) as acquired:
            if not acquired:
                return PollResult(session_id, skipped="busy")
            try:
                result = self._poll_locked(session_id, token)
            except CancelledError:
                self._log("poll_cancelled", {"session_id": session_id})
                result = PollResult(session_id, skipped="cancelled")

        if not self.store.exists(session_id):
            self.coordinator.retire(session_id)
        return result

    def _poll_locked(self, session_id: str, token: CancellationToken) -> PollResult:
        session = self.store.load(session_id)
        if session is None:
            return PollResult(session_id, skipped="cancelled" if token.cancelled else "not_found")
        if is_terminal(session.status):
            return self._finish_terminal(session, token)
        if token.cancelled:
            return PollResult(session_id, status=session.status.value, skipped="cancelled")
        if session.halted:
            return PollResult(session_id, status=session.status.value, skipped="halted")

        project = self.config.get_project(session.project)
        result = PollResult(session_id, status=session.status.value)

        # Events persisted before a crash, or the spawn event
        result.reactions += self._settle_pending(session, token)
        result.status = session.status.value
        if is_terminal(session.status):
            return self._finish_terminal(session, token, result)
        if session.halted:
            result.skipped = "halted"
            return result

        try:
            facts = self._gather_facts(session, project, token)
        except CancelledError:
            raise
        except OrchestratorError as e:
            return self._record_poll_error(session, token, result, e)

        if session.last_error:
            session.last_error = None
            self._save(session, token)

        try:
            candidate = compute_next_state(session.status, facts)
        except StateConflictError as e:
            return self._record_conflict(session, facts, token, result, e)

        changed = self._observe(session, facts)
        if candidate == session.status:
            if changed:
                self._save(session, token)
            return result

        previous = session.status
        token.raise_if_cancelled()
        event = self.bus.emit(session_id, EventType.SESSION_TRANSITION, {
            "from": previous.value,
            "to": candidate.value,
            "facts": facts.summary(),
        })
        session.status = candidate
        self._save(session, token)

        result.previous = previous.value
        result.status = candidate.value
        result.event = event
        result.reactions += self._settle_pending(session, token)

        if is_terminal(session.status) and self._on_terminal is not None:
            self._finish(session)
        return result

    def _save(self, session: Session, token: CancellationToken) -> None:
        """
        Persist unless the session was cancelled meanwhile.

        Raises:
            CancelledError: If the token is set, or the record was archived
                or terminated by another writer.
        """
        token.raise_if_cancelled()
        stored = self.store.load(session.session_id)
        if stored is None or stored.status == SessionStatus.TERMINATED:
            raise CancelledError(session.session_id)
        self.store.save(session)

    def _observe(self, session: Session, facts: ObservedFacts) -> bool:
        """Copy last-known PR, CI and review facts onto the session."""
        changed = False
        if session.conflict is not None:
            session.conflict = None
            changed = True
        if facts.pr is not None and facts.pr != session.pr:
            session.pr = facts.pr
            changed = True
        if facts.pr is not None:
            if facts.ci != session.ci_status:
                session.ci_status = facts.ci
                changed = True
            if facts.review != session.review_status:
                session.review_status = facts.review
                changed = True
        return changed

    def _gather_facts(
        self,
        session: Session,
        project: ProjectConfig,
        token: CancellationToken,
    ) -> ObservedFacts:
        """Ask the plugins about the session, each call guarded."""
        def call(describe, fn, *args):
            return self.caller.call(describe, fn, *args, token=token)

        runtime_alive: Optional[bool] = False
        if session.runtime_handle:
            runtime = self.registry.require(
                PluginSlot.RUNTIME, session.runtime or project.plugin_name("runtime")
            )
            runtime_alive = bool(call("runtime.is_alive", runtime.is_alive, session.runtime_handle))

        scm = self.registry.require(PluginSlot.SCM, project.plugin_name("scm"))
        pr = call("scm.find_pr", scm.find_pr, session, project)

        if pr is None:
            tracker = self.registry.require(PluginSlot.TRACKER, project.plugin_name("tracker"))
            issue_closed = bool(call("tracker.is_completed", tracker.is_completed,
                                     session.issue_id, project))
            return ObservedFacts(runtime_alive=runtime_alive, issue_closed=issue_closed)

        pr_state = call("scm.get_pr_state", scm.get_pr_state, pr, project)
        if pr_state != PRState.OPEN:
            return ObservedFacts(runtime_alive=runtime_alive, pr=pr, pr_state=pr_state)

        return ObservedFacts(
            runtime_alive=runtime_alive,
            pr=pr,
            pr_state=pr_state,
            ci=call("scm.get_ci_status", scm.get_ci_status, pr, project) or CIStatus.NONE,
            review=(
                call("scm.get_review_decision", scm.get_review_decision, pr, project)
                or ReviewDecision.NONE
            ),
            mergeable=bool(call("scm.is_mergeable", scm.is_mergeable, pr, project)),
        )

    def _record_poll_error(
        self,
        session: Session,
        token: CancellationToken,
        result: PollResult,
        error: OrchestratorError,
    ) -> PollResult:
        """
        Surface a failed fact-gathering pass.

        Transient errors are logged and retried on the next poll. Other
        errors append one session.failed event per distinct message; the
        state is held.
        """
        result.error = str(error)
        self._log("poll_failed", {
            "session_id": session.session_id,
            "error_type": type(error).__name__,
            "error": str(error),
        }, level="warn")
        if error.should_retry or session.last_error == str(error):
            return result

        token.raise_if_cancelled()
        result.event = self.bus.emit(session.session_id, EventType.SESSION_FAILED, {
            "error_type": type(error).__name__,
            "message": str(error),
            "stage": "poll",
        })
        session.last_error = str(error)
        self._save(session, token)
        result.reactions += self._settle_pending(session, token)
        return result

    def _record_conflict(
        self,
        session: Session,
        facts: ObservedFacts,
        token: CancellationToken,
        result: PollResult,
        error: StateConflictError,
    ) -> PollResult:
        """Hold the state and flag a conflict, once per distinct reason."""
        result.error = str(error)
        if session.conflict == error.reason:
            return result

        token.raise_if_cancelled()
        result.event = self.bus.emit(session.session_id, EventType.SESSION_STATE_CONFLICT, {
            "state": session.status.value,
            "reason": error.reason,
            "message": str(error),
            "facts": facts.summary(),
        })
        session.conflict = error.reason
        self._save(session, token)
        self._log("state_conflict", {
            "session_id": session.session_id,
            "state": session.status.value,
            "reason": error.reason,
        }, level="warn")
        result.reactions += self._settle_pending(session, token)
        return result

    def _settle_pending(self, session: Session, token: CancellationToken) -> list[ReactionRecord]:
        """
        Run reactions for every event after session.reacted_seq, in order.

        reacted_seq advances, and is persisted, once all reactions of an
        event have a final ledger record.
        """
        pending = self.bus.log.read(session.session_id, since_seq=session.reacted_seq)
        self._adopt_logged_state(session, pending, token)

        records: list[ReactionRecord] = []
        for event in pending:
            if session.halted:
                break
            token.raise_if_cancelled()
            outcome = self.engine.process_event(session, event, token)
            records += outcome
            session.reacted_seq = event.seq

            dead = [r for r in outcome if r.status == ReactionStatus.DEAD_LETTERED]
            if dead and self.config.lifecycle.halt_on_dead_letter:
                session.halted = True
                self._save(session, token)
                self.bus.emit(session.session_id, EventType.SESSION_HALTED, {
                    "reason": "dead_letter",
                    "seq": event.seq,
                    "kind": dead[0].kind,
                })
                self._log("session_halted", {
                    "session_id": session.session_id,
                    "seq": event.seq,
                    "kind": dead[0].kind,
                }, level="warn")
            else:
                self._save(session, token)
        return records

    def _adopt_logged_state(
        self,
        session: Session,
        pending: list[SessionEvent],
        token: CancellationToken,
    ) -> None:
        """
        Take the state of the last unsettled transition.

        A transition event is appended before the record is saved. If the
        process died in between, the log is ahead of the record and the
        logged state wins, so the transition is not derived a second time.
        """
        transitions = [e for e in pending if e.event_type == EventType.SESSION_TRANSITION]
        if not transitions:
            return
        logged = transitions[-1].payload.get("to")
        try:
            status = SessionStatus(logged)
        except ValueError:
            self._log("unknown_logged_state", {
                "session_id": session.session_id,
                "seq": transitions[-1].seq,
                "to": logged,
            }, level="warn")
            return
        if status == session.status:
            return

        self._log("state_adopted", {
            "session_id": session.session_id,
            "from": session.status.value,
            "to": status.value,
            "seq": transitions[-1].seq,
        }, level="warn")
        session.status = status
        self._save(session, token)

    def _finish_terminal(
        self,
        session: Session,
        token: CancellationToken,
        result: Optional[PollResult] = None,
    ) -> PollResult:
        """
        Settle and tear down a session already in a terminal state.

        Covers a process that died after persisting the terminal state but
        before its reactions ran or cleanup archived the record.
        """
        if result is None:
            result = PollResult(session.session_id, status=session.status.value,
                                skipped="terminal")
        if not token.cancelled:
            result.reactions += self._settle_pending(session, token)
        if self._on_terminal is not None:
            self._finish(session)
        return result

    def _finish(self, session: Session) -> None:
        """Hand a terminal session to the teardown callback."""
        try:
            self._on_terminal(session.session_id)
        except OrchestratorError as e:
            self._log("cleanup_failed", {
                "session_id": session.session_id,
                "error": str(e),
            }, level="error")

    # =========================================================================
    # Recovery and operator controls
    # =========================================================================

    def recover(self) -> list[ReactionRecord]:
        """
        Resume reactions left unsettled by a previous process.

        Terminal records the previous process never archived are settled and
        handed to cleanup. Called once at startup, before the first scan.
        """
        records: list[ReactionRecord] = []
        for session in self.store.list_sessions():
            token = self.coordinator.token(session.session_id)
            with self.coordinator.hold(session.session_id):
                current = self.store.load(session.session_id)
                if current is None:
                    continue
                try:
                    if is_terminal(current.status):
                        settled = self._finish_terminal(current, token).reactions
                    elif current.halted or token.cancelled:
                        continue
                    else:
                        settled = self._settle_pending(current, token)
                        if is_terminal(current.status):
                            settled += self._finish_terminal(current, token).reactions
                except CancelledError:
                    continue
                except OrchestratorError as e:
                    self._log("recovery_failed", {
                        "session_id": session.session_id,
                        "error": str(e),
                    }, level="error")
                    continue
                if settled:
                    self._log("session_recovered", {
                        "session_id": session.session_id,
                        "reactions": len(settled),
                    })
                records += settled
        return records

    def resume(self, session_id: str, by: str = "operator") -> Session:
        """
        Clear the halted flag of a session.

        Raises:
            SessionNotFoundError: If there is no active record.
        """
        with self.coordinator.hold(session_id):
            session = self.store.load(session_id)
            if session is None:
                raise SessionNotFoundError(f"Session {session_id} not found", session_id=session_id)
            if not session.halted:
                return session
            session.halted = False
            self.store.save(session)
            self.bus.emit(session_id, EventType.SESSION_RESUMED, {"by": by})
        self.poll_soon(session_id)
        return session

    # =========================================================================
    # Scheduling
    # =========================================================================

    def active_sessions(self) -> list[Session]:
        """
        Sessions the scan loop is responsible for.

        With a cleanup callback this includes terminal records still waiting
        to be archived.
        """
        return [
            s for s in self.store.list_sessions()
            if (is_terminal(s.status) and self._on_terminal is not None)
            or (not is_terminal(s.status) and not s.halted)
        ]

    def _run_poll(self, session_id: str) -> Optional[PollResult]:
        """Worker entry point; never raises."""
        try:
            with self._logger.session_context(session_id) if self._logger else nullcontext():
                return self.poll_session(session_id)
        except Exception as e:
            self._log("poll_crashed", {
                "session_id": session_id,
                "error_type": type(e).__name__,
                "error": str(e),
            }, level="error")
            return None
        finally:
            with self._guard:
                self._in_flight.pop(session_id, None)

    def _submit(self, session_id: str) -> Optional[Future]:
        with self._guard:
            future = self._in_flight.get(session_id)
            if future is not None and not future.done():
                return None
            future = self._executor.submit(self._run_poll, session_id)
            self._in_flight[session_id] = future
            self._next_poll_at[session_id] = (
                self._clock() + self.config.lifecycle.poll_interval_seconds
            )
            return future

    def tick(self) -> list[str]:
        """
        Submit every session whose poll is due.

        Returns:
            Ids of the sessions submitted.
        """
        now = self._clock()
        submitted = []
        active = self.active_sessions()
        active_ids = {s.session_id for s in active}
        with self._guard:
            for stale in set(self._next_poll_at) - active_ids:
                del self._next_poll_at[stale]
        for session in active:
            if self._next_poll_at.get(session.session_id, 0.0) > now:
                continue
            if self._submit(session.session_id) is not None:
                submitted.append(session.session_id)
        return submitted

    def scan_once(self, timeout: Optional[float] = None) -> list[PollResult]:
        """Poll every active session once and wait for the results."""
        futures = [
            f for f in (self._submit(s.session_id) for s in self.active_sessions())
            if f is not None
        ]
        results = []
        for future in futures:
            result = future.result(timeout=timeout)
            if result is not None:
                results.append(result)
        return results

    def poll_soon(self, session_id: str) -> None:
        """Make a session due on the next tick."""
        with self._guard:
            self._next_poll_at[session_id] = 0.0

    def handle_webhook(self, event: WebhookEvent) -> list[str]:
        """
        Push path: schedule an immediate poll for sessions an event concerns.

        Returns:
            Ids of the matching sessions.
        """
        matched = []
        for session in self.active_sessions():
            project = self.config.projects.get(session.project)
            if project is None:
                continue
            if getattr(event, "project", "") and event.project != project.repo:
                continue
            if isinstance(event, IssueWebhookEvent):
                if session.issue_id.lstrip("#") == event.issue_id.lstrip("#"):
                    matched.append(session.session_id)
            elif isinstance(event, MergeRequestWebhookEvent):
                if (session.pr is not None and session.pr.number == event.number) or (
                    event.source_branch and session.branch == event.source_branch
                ):
                    matched.append(session.session_id)

        for session_id in matched:
            self.poll_soon(session_id)
            self._submit(session_id)
        self._log("webhook_received", {
            "type": event.type,
            "sessions": matched,
        }, level="debug")
        return matched

    def run(self, stop_event: threading.Event) -> None:
        """Recover, then tick until stop_event is set."""
        self._log("lifecycle_started", {
            "poll_interval_seconds": self.config.lifecycle.poll_interval_seconds,
            "max_workers": self.config.lifecycle.max_workers,
        })
        try:
            self.recover()
            while not stop_event.is_set():
                try:
                    self.tick()
                except OrchestratorError as e:
                    self._log("tick_failed", {"error": str(e)}, level="error")
                stop_event.wait(self.config.lifecycle.tick_seconds)
        finally:
            self.shutdown()
            self._log("lifecycle_stopped")

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait, cancel_futures=True)

