"""
Reaction engine for the Agent Orchestrator.

Runs the automated actions configured for session events:
- send-to-agent: Runtime.send_message with a remediation prompt
- notify: Notifier.notify
- auto-merge: SCM.merge, only for projects with auto_merge enabled
- custom: a plugin registered in the reaction slot

Each (session id, event seq, reaction kind) runs at most once. The ledger
gets a STARTED line before the side effect begins; a key whose latest line
is final is never run again, and a key left STARTED by a crash is in doubt
and is dead-lettered instead of re-run.
"""

from __future__ import annotations

import random
from fnmatch import fnmatch
from typing import TYPE_CHECKING, Any, Callable, Optional

from agent_orchestrator.config import OrchestratorConfig, ProjectConfig, ReactionConfig
from agent_orchestrator.coordination import CancellationToken, CancelledError
from agent_orchestrator.errors import (
    OrchestratorError,
    PermanentExternalError,
    classify_exception,
)
from agent_orchestrator.events.bus import EventBus
from agent_orchestrator.events.types import EventType, SessionEvent
from agent_orchestrator.external import ExternalCaller, RetryPolicy
from agent_orchestrator.models import Session
from agent_orchestrator.plugins.base import PluginSlot
from agent_orchestrator.plugins.registry import PluginRegistry
from agent_orchestrator.state_store import ReactionLedger, ReactionRecord, ReactionStatus

if TYPE_CHECKING:
    from agent_orchestrator.logger import OrchestratorLogger


# Prompts and notifications used when a reaction has no message template
DEFAULT_MESSAGES = {
    "ci_failed": (
        "CI is failing on your pull request {pr_url}. Inspect the failing checks, "
        "fix the problems and push the fix to {branch}."
    ),
    "changes_requested": (
        "A reviewer requested changes on {pr_url}. Read every review comment, "
        "address it and push the changes to {branch}."
    ),
    "mergeable": "{project} #{issue_id}: {pr_url} is approved, green and ready to merge.",
    "session.state_conflict": (
        "Session {session_id} is held in {state}: conflicting signals ({reason})."
    ),
    "notify": "Session {session_id} ({project} #{issue_id}) is now {state}.",
    "send-to-agent": "Session state is now {state}. Check {pr_url} and continue.",
}


class ReactionSkipped(Exception):
    """A reaction that is gated off for this session."""


class _TemplateValues(dict):
    def __missing__(self, key: str) -> str:
        return "{" + key + "}"


def render_message(template: str, session: Session, event: SessionEvent) -> str:
    """
    Fill a message template with session fields.

    Unknown placeholders are left as written.
    """
    values = _TemplateValues(
        session_id=session.session_id,
        project=session.project,
        issue_id=session.issue_id,
        branch=session.branch,
        state=session.status.value,
        pr_url=session.pr.url if session.pr else "",
        pr_number=session.pr.number if session.pr else "",
        event=event.event_type.value,
        reason=event.payload.get("reason", ""),
    )
    try:
        return template.format_map(values)
    except (ValueError, IndexError, AttributeError):
        return template


class ReactionEngine:
    """
    Matches events to ReactionConfigs and executes them at most once.

    The caller holds the session lock; reactions for a session run in event
    order on that worker.
    """

    def __init__(
        self,
        config: OrchestratorConfig,
        registry: PluginRegistry,
        ledger: ReactionLedger,
        bus: EventBus,
        caller: ExternalCaller,
        logger: Optional[OrchestratorLogger] = None,
        rng: Callable[[], float] = random.random,
    ) -> None:
        self.config = config
        self.registry = registry
        self.ledger = ledger
        self.bus = bus
        self.caller = caller
        self._logger = logger
        self._rng = rng

    def _log(
        self,
        event_type: str,
        data: Optional[dict] = None,
        level: str = "info",
    ) -> None:
        """Log an event if logger is configured."""
        if self._logger:
            log_data = {"component": "reactions"}
            if data:
                log_data.update(data)
            self._logger.log(event_type, log_data, level=level)

    def matching(self, session: Session, event: SessionEvent) -> list[ReactionConfig]:
        """Reactions of the session's project that apply to an event."""
        matched = []
        for reaction in self.config.reactions_for(session.project):
            if not event.matches(reaction.event):
                continue
            if reaction.labels and not set(reaction.labels) & set(session.issue_labels):
                continue
            if reaction.branch_pattern and not fnmatch(session.branch, reaction.branch_pattern):
                continue
            matched.append(reaction)
        return matched

    def process_event(
        self,
        session: Session,
        event: SessionEvent,
        token: CancellationToken,
    ) -> list[ReactionRecord]:
        """
        Run every matching reaction for one event, in configuration order.

        Returns:
            The final ledger record of each matching reaction.

        Raises:
            CancelledError: If the session is cancelled; nothing after the
                checkpoint runs.
        """
        project = self.config.get_project(session.project)
        records = []
        for reaction in self.matching(session, event):
            token.raise_if_cancelled()
            records.append(self.execute(session, project, event, reaction, token))
        return records

    def execute(
        self,
        session: Session,
        project: ProjectConfig,
        event: SessionEvent,
        reaction: ReactionConfig,
        token: CancellationToken,
    ) -> ReactionRecord:
        """
        Execute one reaction for one event, honouring the ledger.

        Returns:
            The final ledger record for the key.
        """
        existing = self.ledger.get(session.session_id, event.seq, reaction.kind)
        if existing is not None and existing.is_final:
            return existing
        if existing is not None and existing.status == ReactionStatus.STARTED:
            return self._dead_letter(
                session, event, reaction, existing.attempt,
                "interrupted before its outcome was recorded",
            )

        policy = RetryPolicy(
            max_attempts=reaction.max_attempts,
            base_delay_seconds=reaction.backoff_base_seconds,
            backoff_multiplier=reaction.backoff_multiplier,
            max_delay_seconds=reaction.max_backoff_seconds,
            jitter_seconds=self.config.external.jitter_seconds,
        )
        attempt = existing.attempt if existing is not None else 0

        while True:
            attempt += 1
            token.raise_if_cancelled()
            self.ledger.record(
                session.session_id, event.seq, reaction.kind,
                ReactionStatus.STARTED, attempt=attempt,
            )
            session.reaction_attempts[reaction.kind] = (
                session.reaction_attempts.get(reaction.kind, 0) + 1
            )

            try:
                self._perform(session, project, event, reaction, token)
            except CancelledError:
                self.ledger.record(
                    session.session_id, event.seq, reaction.kind,
                    ReactionStatus.SKIPPED, attempt=attempt, error="cancelled",
                )
                raise
            except ReactionSkipped as e:
                self._log("reaction_skipped", {
                    "session_id": session.session_id,
                    "seq": event.seq,
                    "kind": reaction.kind,
                    "reason": str(e),
                })
                return self.ledger.record(
                    session.session_id, event.seq, reaction.kind,
                    ReactionStatus.SKIPPED, attempt=attempt, error=str(e),
                )
            except Exception as exc:
                error = classify_exception(exc, reaction.kind)
                self.ledger.record(
                    session.session_id, event.seq, reaction.kind,
                    ReactionStatus.FAILED, attempt=attempt, error=str(error),
                )
                self._log("reaction_failed", {
                    "session_id": session.session_id,
                    "seq": event.seq,
                    "kind": reaction.kind,
                    "attempt": attempt,
                    "error": str(error),
                }, level="warn")

                if not error.should_retry or attempt >= policy.max_attempts:
                    return self._dead_letter(session, event, reaction, attempt, str(error))

                if token.sleep(policy.delay(attempt, self._rng)):
                    self.ledger.record(
                        session.session_id, event.seq, reaction.kind,
                        ReactionStatus.SKIPPED, attempt=attempt, error="cancelled",
                    )
                    raise CancelledError(session.session_id)
                continue

            self._log("reaction_succeeded", {
                "session_id": session.session_id,
                "seq": event.seq,
                "kind": reaction.kind,
                "attempt": attempt,
            })
            return self.ledger.record(
                session.session_id, event.seq, reaction.kind,
                ReactionStatus.SUCCEEDED, attempt=attempt,
            )

    def _perform(
        self,
        session: Session,
        project: ProjectConfig,
        event: SessionEvent,
        reaction: ReactionConfig,
        token: CancellationToken,
    ) -> None:
        """Run the side effect of one attempt. No retries here."""
        template = (
            reaction.message
            or DEFAULT_MESSAGES.get(reaction.event)
            or DEFAULT_MESSAGES.get(reaction.action, "")
        )
        message = render_message(template, session, event)

        if reaction.action == "send-to-agent":
            if not session.runtime_handle:
                raise PermanentExternalError(
                    "Session has no runtime to send to", session_id=session.session_id
                )
            runtime = self.registry.require(
                PluginSlot.RUNTIME, session.runtime or project.plugin_name("runtime")
            )
            self._call("runtime.send_message", runtime.send_message,
                       session.runtime_handle, message, token=token)

        elif reaction.action == "notify":
            notifier = self.registry.require(PluginSlot.NOTIFIER, project.plugin_name("notifier"))
            self._call("notifier.notify", notifier.notify, message,
                       session_id=session.session_id, priority=reaction.priority, token=token)

        elif reaction.action == "auto-merge":
            if not project.auto_merge:
                raise ReactionSkipped(f"auto-merge is disabled for project {project.name}")
            if session.pr is None:
                raise PermanentExternalError(
                    "Session has no pull request to merge", session_id=session.session_id
                )
            scm = self.registry.require(PluginSlot.SCM, project.plugin_name("scm"))
            self._call("scm.merge", scm.merge, session.pr, project,
                       method=reaction.merge_method, token=token)

        elif reaction.action == "custom":
            plugin = self.registry.require(PluginSlot.REACTION, reaction.plugin)
            self._call(f"reaction.{reaction.plugin}", plugin.run,
                       session, event, reaction, token=token)

    def _call(self, describe: str, fn: Callable[..., Any], *args: Any,
              token: CancellationToken, **kwargs: Any) -> Any:
        return self.caller.call(describe, fn, *args, token=token, retry=False, **kwargs)

    def _dead_letter(
        self,
        session: Session,
        event: SessionEvent,
        reaction: ReactionConfig,
        attempts: int,
        error: str,
    ) -> ReactionRecord:
        """Mark a key permanently failed and escalate once."""
        record = self.ledger.record(
            session.session_id, event.seq, reaction.kind,
            ReactionStatus.DEAD_LETTERED, attempt=attempts, error=error,
        )
        self.bus.emit(session.session_id, EventType.REACTION_DEAD_LETTERED, {
            "seq": event.seq,
            "kind": reaction.kind,
            "attempts": attempts,
            "error": error,
        })
        self._log("reaction_dead_lettered", {
            "session_id": session.session_id,
            "seq": event.seq,
            "kind": reaction.kind,
            "attempts": attempts,
            "error": error,
        }, level="error")
        self._escalate(session, event, reaction, error)
        return record

    def _escalate(
        self,
        session: Session,
        event: SessionEvent,
        reaction: ReactionConfig,
        error: str,
    ) -> None:
        """Fallback notification for a dead-lettered reaction. Best effort."""
        message = (
            f"Reaction '{reaction.kind}' for {event.event_type.value} #{event.seq} "
            f"on session {session.session_id} gave up: {error}"
        )
        try:
            project = self.config.get_project(session.project)
            notifier = self.registry.require(PluginSlot.NOTIFIER, project.plugin_name("notifier"))
            self.caller.call(
                "notifier.notify", notifier.notify, message,
                session_id=session.session_id,
                priority=self.config.lifecycle.escalation_priority,
            )
        except OrchestratorError as e:
            self._log("escalation_failed", {
                "session_id": session.session_id,
                "kind": reaction.kind,
                "error": str(e),
            }, level="error")
