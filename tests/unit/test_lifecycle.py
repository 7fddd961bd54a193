"""Tests for the LifecycleManager poll cycle.

Verifies that:
- Observed facts drive state transitions and nothing else writes state
- Conflicts and poll errors hold the state and are reported once
- Terminal sessions are handed to cleanup
- Halted, cancelled, busy and unknown sessions are skipped
- Webhooks and the scheduler pick the right sessions
"""
import threading
import time

import pytest

from agent_orchestrator.errors import (
    PermanentExternalError,
    SessionNotFoundError,
    TransientExternalError,
)
from agent_orchestrator.models import CIStatus, PRState, SessionStatus
from agent_orchestrator.webhooks import (
    IssueWebhookEvent,
    MergeRequestWebhookEvent,
    UnknownWebhookEvent,
)


def wait_for_status(orchestrator, session_id, status, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        session = orchestrator.sessions.get(session_id)
        if session is not None and session.status == status:
            return session
        time.sleep(0.01)
    raise AssertionError(f"{session_id} never reached {status.value}")


class TestTransitions:
    """Tests for fact-driven transitions."""

    def test_spawning_to_working(self, orchestrator, event_types):
        session = orchestrator.sessions.spawn("app", "42")

        result = orchestrator.lifecycle.poll_session(session.session_id)

        assert result.transitioned
        assert (result.previous, result.status) == ("spawning", "working")
        assert event_types(orchestrator, session.session_id) == [
            "session.spawned", "session.transition",
        ]
        stored = orchestrator.store.load(session.session_id)
        assert stored.status == SessionStatus.WORKING
        assert stored.reacted_seq == 2

    def test_no_change_no_event(self, orchestrator, spawn_working, event_types):
        session = spawn_working(orchestrator)

        result = orchestrator.lifecycle.poll_session(session.session_id)

        assert not result.transitioned
        assert result.status == "working"
        assert len(event_types(orchestrator, session.session_id)) == 2

    def test_pr_opened(self, orchestrator, fakes, spawn_working):
        session = spawn_working(orchestrator)
        fakes.scm.open_pr(ci=CIStatus.PASSING)

        result = orchestrator.lifecycle.poll_session(session.session_id)

        assert result.status == "pr_open"
        stored = orchestrator.store.load(session.session_id)
        assert stored.pr.number == 7
        assert stored.ci_status == CIStatus.PASSING

    def test_transition_payload_has_facts(self, orchestrator, fakes, spawn_working):
        session = spawn_working(orchestrator)
        fakes.scm.open_pr()

        result = orchestrator.lifecycle.poll_session(session.session_id)

        assert result.event.payload["from"] == "working"
        assert result.event.payload["to"] == "pr_open"
        assert result.event.payload["facts"]["pr"] == 7

    def test_ci_failure_triggers_reaction(self, orchestrator, fakes, spawn_working):
        session = spawn_working(orchestrator)
        fakes.scm.open_pr()
        orchestrator.lifecycle.poll_session(session.session_id)
        fakes.scm.ci = CIStatus.FAILING

        result = orchestrator.lifecycle.poll_session(session.session_id)

        assert result.status == "ci_failed"
        assert [r.kind for r in result.reactions] == ["send-to-agent"]
        assert len(fakes.runtime.messages) == 1

    def test_runtime_death_fails_session(self, orchestrator, fakes, spawn_working):
        session = spawn_working(orchestrator)
        fakes.runtime.alive[session.runtime_handle] = False

        result = orchestrator.lifecycle.poll_session(session.session_id)

        assert result.status == "failed"
        assert orchestrator.sessions.get(session.session_id).status == SessionStatus.TERMINATED

    def test_closed_issue_abandons(self, orchestrator, fakes, spawn_working):
        session = spawn_working(orchestrator)
        fakes.tracker.closed.add("42")

        assert orchestrator.lifecycle.poll_session(session.session_id).status == "abandoned"

    def test_closed_pr_abandons(self, orchestrator, fakes, spawn_working):
        session = spawn_working(orchestrator)
        fakes.scm.open_pr()
        fakes.scm.pr_state = PRState.CLOSED

        assert orchestrator.lifecycle.poll_session(session.session_id).status == "abandoned"

    def test_merged_session_is_cleaned_up(self, orchestrator, fakes, spawn_working, event_types):
        session = spawn_working(orchestrator)
        fakes.scm.open_pr()
        fakes.scm.pr_state = PRState.MERGED

        result = orchestrator.lifecycle.poll_session(session.session_id)

        assert result.status == "merged"
        assert orchestrator.store.load(session.session_id) is None
        assert orchestrator.sessions.get(session.session_id).status == SessionStatus.TERMINATED
        assert fakes.runtime.destroyed == [session.runtime_handle]
        assert event_types(orchestrator, session.session_id)[-2:] == [
            "session.transition", "session.terminated",
        ]


class TestConflictsAndErrors:
    """Tests for held states."""

    def test_missing_pr_is_a_conflict_once(self, orchestrator, fakes, spawn_working, event_types):
        session = spawn_working(orchestrator)
        fakes.scm.open_pr()
        orchestrator.lifecycle.poll_session(session.session_id)
        fakes.scm.pr = None

        first = orchestrator.lifecycle.poll_session(session.session_id)
        second = orchestrator.lifecycle.poll_session(session.session_id)

        assert first.status == second.status == "pr_open"
        assert "no pull request" in first.error
        assert event_types(orchestrator, session.session_id).count("session.state_conflict") == 1
        assert orchestrator.store.load(session.session_id).conflict == "pr_missing"

    def test_conflict_cleared_when_facts_agree(self, orchestrator, fakes, spawn_working):
        session = spawn_working(orchestrator)
        fakes.scm.open_pr()
        orchestrator.lifecycle.poll_session(session.session_id)
        fakes.scm.pr = None
        orchestrator.lifecycle.poll_session(session.session_id)
        fakes.scm.open_pr()

        orchestrator.lifecycle.poll_session(session.session_id)

        assert orchestrator.store.load(session.session_id).conflict is None

    def test_permanent_poll_error_reported_once(self, orchestrator, fakes, spawn_working,
                                                event_types):
        session = spawn_working(orchestrator)
        fakes.scm.find_error = PermanentExternalError("repository not found")

        first = orchestrator.lifecycle.poll_session(session.session_id)
        orchestrator.lifecycle.poll_session(session.session_id)

        assert first.status == "working"
        assert "repository not found" in first.error
        assert event_types(orchestrator, session.session_id).count("session.failed") == 1
        stored = orchestrator.store.load(session.session_id)
        assert stored.status == SessionStatus.WORKING
        assert "repository not found" in stored.last_error

        fakes.scm.find_error = None
        orchestrator.lifecycle.poll_session(session.session_id)
        assert orchestrator.store.load(session.session_id).last_error is None

    def test_transient_poll_error_is_retried_quietly(self, orchestrator, fakes, spawn_working,
                                                     event_types):
        session = spawn_working(orchestrator)
        fakes.scm.find_calls = 0
        fakes.scm.find_error = TransientExternalError("502 Bad Gateway")

        result = orchestrator.lifecycle.poll_session(session.session_id)

        assert result.error
        assert fakes.scm.find_calls == 3
        assert len(event_types(orchestrator, session.session_id)) == 2


class TestSkips:
    """Tests for sessions the poll cycle leaves alone."""

    def test_unknown_session(self, orchestrator):
        assert orchestrator.lifecycle.poll_session("app-404-000000").skipped == "not_found"

    def test_terminal_session(self, orchestrator):
        session = orchestrator.sessions.spawn("app", "42")
        session.status = SessionStatus.FAILED
        orchestrator.store.save(session)

        assert orchestrator.lifecycle.poll_session(session.session_id).skipped == "terminal"

    def test_cancelled_session(self, orchestrator):
        session = orchestrator.sessions.spawn("app", "42")
        orchestrator.coordinator.cancel(session.session_id)

        assert orchestrator.lifecycle.poll_session(session.session_id).skipped == "cancelled"
        assert orchestrator.store.load(session.session_id).status == SessionStatus.SPAWNING

    def test_busy_session(self, orchestrator):
        session = orchestrator.sessions.spawn("app", "42")
        results = []

        with orchestrator.coordinator.hold(session.session_id):
            worker = threading.Thread(
                target=lambda: results.append(
                    orchestrator.lifecycle.poll_session(session.session_id)
                )
            )
            worker.start()
            worker.join(timeout=5)

        assert results[0].skipped == "busy"

    def test_halted_session_and_resume(self, orchestrator, spawn_working, event_types):
        session = spawn_working(orchestrator)
        session.halted = True
        orchestrator.store.save(session)

        assert orchestrator.lifecycle.poll_session(session.session_id).skipped == "halted"
        assert orchestrator.lifecycle.active_sessions() == []

        resumed = orchestrator.lifecycle.resume(session.session_id)

        assert resumed.halted is False
        assert event_types(orchestrator, session.session_id)[-1] == "session.resumed"
        assert orchestrator.lifecycle.poll_session(session.session_id).skipped is None

    def test_resume_running_session_is_noop(self, orchestrator, spawn_working, event_types):
        session = spawn_working(orchestrator)
        orchestrator.lifecycle.resume(session.session_id)
        assert "session.resumed" not in event_types(orchestrator, session.session_id)

    def test_resume_unknown(self, orchestrator):
        with pytest.raises(SessionNotFoundError):
            orchestrator.lifecycle.resume("app-404-000000")


class TestScheduling:
    """Tests for webhooks, tick() and scan_once()."""

    def test_webhook_matches_by_branch(self, orchestrator, fakes, spawn_working):
        session = spawn_working(orchestrator)
        fakes.scm.open_pr()

        matched = orchestrator.lifecycle.handle_webhook(MergeRequestWebhookEvent(
            action="open", number=7, source_branch="feat/issue-42", project="acme/app",
        ))

        assert matched == [session.session_id]
        wait_for_status(orchestrator, session.session_id, SessionStatus.PR_OPEN)

    def test_webhook_matches_issue(self, orchestrator, spawn_working):
        session = spawn_working(orchestrator)
        event = IssueWebhookEvent(action="close", issue_id="42", state="closed")
        assert orchestrator.lifecycle.handle_webhook(event) == [session.session_id]

    def test_webhook_for_other_project(self, orchestrator, spawn_working):
        spawn_working(orchestrator)
        event = IssueWebhookEvent(action="close", issue_id="42", project="acme/other")
        assert orchestrator.lifecycle.handle_webhook(event) == []

    def test_unknown_webhook(self, orchestrator, spawn_working):
        spawn_working(orchestrator)
        assert orchestrator.lifecycle.handle_webhook(UnknownWebhookEvent("Pipeline Hook")) == []

    def test_tick_respects_poll_interval(self, orchestrator):
        first = orchestrator.sessions.spawn("app", "42")
        second = orchestrator.sessions.spawn("app", "43")

        submitted = orchestrator.lifecycle.tick()

        assert sorted(submitted) == sorted([first.session_id, second.session_id])
        assert orchestrator.lifecycle.tick() == []
        wait_for_status(orchestrator, first.session_id, SessionStatus.WORKING)
        wait_for_status(orchestrator, second.session_id, SessionStatus.WORKING)

    def test_scan_once(self, orchestrator):
        first = orchestrator.sessions.spawn("app", "42")
        second = orchestrator.sessions.spawn("app", "43")

        results = orchestrator.lifecycle.scan_once(timeout=5)

        assert sorted(r.session_id for r in results) == sorted(
            [first.session_id, second.session_id]
        )
        assert {r.status for r in results} == {"working"}

    def test_run_stops_on_event(self, orchestrator):
        session = orchestrator.sessions.spawn("app", "42")
        stop = threading.Event()
        runner = threading.Thread(target=orchestrator.lifecycle.run, args=(stop,))
        runner.start()
        try:
            wait_for_status(orchestrator, session.session_id, SessionStatus.WORKING)
        finally:
            stop.set()
            runner.join(timeout=5)
        assert not runner.is_alive()
