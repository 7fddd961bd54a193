"""End-to-end lifecycle scenarios.

Drives spawned sessions through the full poll/transition/reaction loop with
the fake plugins and verifies that:
- A healthy agent settles in working and stays there
- CI failures and review feedback are forwarded to the agent once per
  transition
- Mergeable sessions notify, and auto-merge leads to merged and teardown
- Terminating a session during a reaction backoff skips the reaction
- Concurrent polls of one session react at most once
- Reactions interrupted by a crash are dead-lettered on recovery, never
  re-run; reactions never started are run
- halt_on_dead_letter stops a session until it is resumed
- Terminal and transition states persisted before a crash are finished
  without repeating events or reactions
- Two orchestrators over one data directory share locks, sequence numbers
  and cancellation
"""
import threading
import time

import pytest

from agent_orchestrator.config import LifecycleConfig, ProjectConfig, ReactionConfig
from agent_orchestrator.errors import PermanentExternalError, TransientExternalError
from agent_orchestrator.events.types import EventType
from agent_orchestrator.models import CIStatus, PRState, ReviewDecision, SessionStatus
from agent_orchestrator.state_store import ReactionStatus


def open_pr_and_poll(orchestrator, fakes, session_id, **pr):
    fakes.scm.open_pr(**pr)
    result = orchestrator.lifecycle.poll_session(session_id)
    assert result.status == "pr_open"
    return result


class TestHealthyAgent:
    """An agent working on its issue without a PR yet."""

    def test_spawn_settles_in_working(self, orchestrator, event_types):
        session = orchestrator.sessions.spawn("app", "42")

        statuses = [orchestrator.lifecycle.poll_session(session.session_id).status
                    for _ in range(3)]

        assert statuses == ["working", "working", "working"]
        assert event_types(orchestrator, session.session_id) == [
            "session.spawned", "session.transition",
        ]

    def test_repeated_polls_are_idempotent(self, orchestrator, fakes, spawn_working,
                                           event_types):
        session = spawn_working(orchestrator)
        open_pr_and_poll(orchestrator, fakes, session.session_id)
        before = event_types(orchestrator, session.session_id)

        for _ in range(5):
            orchestrator.lifecycle.poll_session(session.session_id)

        assert event_types(orchestrator, session.session_id) == before


class TestRemediation:
    """CI failures and change requests go back to the agent."""

    def test_ci_failure_sends_one_message(self, orchestrator, fakes, spawn_working):
        session = spawn_working(orchestrator)
        open_pr_and_poll(orchestrator, fakes, session.session_id)
        fakes.scm.ci = CIStatus.FAILING

        for _ in range(3):
            assert orchestrator.lifecycle.poll_session(session.session_id).status == "ci_failed"

        assert len(fakes.runtime.messages) == 1
        assert "CI is failing" in fakes.runtime.messages[0][1]

    def test_state_is_persisted_before_reactions_run(self, orchestrator, fakes, spawn_working):
        session = spawn_working(orchestrator)
        open_pr_and_poll(orchestrator, fakes, session.session_id)
        seen = []
        fakes.runtime.send_message = lambda handle, message: seen.append(
            orchestrator.store.load(session.session_id).status
        )
        fakes.scm.ci = CIStatus.FAILING

        orchestrator.lifecycle.poll_session(session.session_id)

        assert seen == [SessionStatus.CI_FAILED]

    def test_each_failure_episode_reacts_again(self, orchestrator, fakes, spawn_working):
        session = spawn_working(orchestrator)
        open_pr_and_poll(orchestrator, fakes, session.session_id)

        fakes.scm.ci = CIStatus.FAILING
        orchestrator.lifecycle.poll_session(session.session_id)
        fakes.scm.ci = CIStatus.PENDING
        assert orchestrator.lifecycle.poll_session(session.session_id).status == "pr_open"
        fakes.scm.ci = CIStatus.FAILING
        orchestrator.lifecycle.poll_session(session.session_id)

        assert len(fakes.runtime.messages) == 2

    def test_changes_requested(self, orchestrator, fakes, spawn_working):
        session = spawn_working(orchestrator)
        open_pr_and_poll(orchestrator, fakes, session.session_id, ci=CIStatus.PASSING)
        fakes.scm.review = ReviewDecision.CHANGES_REQUESTED

        result = orchestrator.lifecycle.poll_session(session.session_id)

        assert result.status == "changes_requested"
        assert len(fakes.runtime.messages) == 1
        assert "requested changes" in fakes.runtime.messages[0][1]


class TestMerge:
    """Approved, green PRs through to teardown."""

    def test_mergeable_notifies_once(self, orchestrator, fakes, spawn_working):
        session = spawn_working(orchestrator)
        open_pr_and_poll(orchestrator, fakes, session.session_id, ci=CIStatus.PASSING,
                         review=ReviewDecision.APPROVED, mergeable=True)

        for _ in range(3):
            assert orchestrator.lifecycle.poll_session(session.session_id).status == "mergeable"

        assert len(fakes.notifier.notifications) == 1
        _, session_id, priority = fakes.notifier.notifications[0]
        assert (session_id, priority) == (session.session_id, "action")
        assert fakes.scm.merged == []

    def test_auto_merge_to_teardown(self, build, make_config, fakes, spawn_working,
                                    event_types):
        orchestrator = build(make_config(
            project=ProjectConfig(name="app", repo="acme/app", auto_merge=True),
            reactions=[ReactionConfig(event="mergeable", action="auto-merge",
                                      backoff_base_seconds=0)],
        ))
        session = spawn_working(orchestrator)
        open_pr_and_poll(orchestrator, fakes, session.session_id, ci=CIStatus.PASSING,
                         review=ReviewDecision.APPROVED, mergeable=True)

        assert orchestrator.lifecycle.poll_session(session.session_id).status == "mergeable"
        assert fakes.scm.merged == [7]
        assert fakes.scm.pr_state == PRState.MERGED

        assert orchestrator.lifecycle.poll_session(session.session_id).status == "merged"
        archived = orchestrator.sessions.get(session.session_id)
        assert archived.status == SessionStatus.TERMINATED
        assert event_types(orchestrator, session.session_id)[-1] == "session.terminated"
        assert orchestrator.lifecycle.active_sessions() == []


class TestTerminationDuringReaction:
    """An operator stop while a reaction waits out its backoff."""

    def test_terminate_skips_pending_retry(self, build, make_config, fakes, spawn_working):
        orchestrator = build(make_config(reactions=[
            ReactionConfig(event="ci_failed", action="send-to-agent", backoff_base_seconds=5),
        ]))
        session = spawn_working(orchestrator)
        open_pr_and_poll(orchestrator, fakes, session.session_id)
        fakes.scm.ci = CIStatus.FAILING
        fakes.runtime.send_errors = [TransientExternalError("agent busy")]
        fakes.runtime.send_attempted.clear()

        results = []
        poller = threading.Thread(
            target=lambda: results.append(orchestrator.lifecycle.poll_session(session.session_id))
        )
        poller.start()
        assert fakes.runtime.send_attempted.wait(timeout=5)

        terminated = orchestrator.sessions.terminate(session.session_id)
        poller.join(timeout=5)

        assert not poller.is_alive()
        assert results[0].skipped == "cancelled"
        assert terminated.status == SessionStatus.TERMINATED
        assert fakes.runtime.messages == []
        record = orchestrator.ledger.get(session.session_id, 4, "send-to-agent")
        assert record.status == ReactionStatus.SKIPPED
        assert record.error == "cancelled"
        assert orchestrator.lifecycle.poll_session(session.session_id).skipped == "cancelled"


class TestAtMostOnce:
    """Concurrent polls of the same session."""

    @pytest.mark.parametrize("workers", [2, 8])
    def test_concurrent_polls_react_once(self, orchestrator, fakes, spawn_working,
                                         event_types, workers):
        session = spawn_working(orchestrator)
        open_pr_and_poll(orchestrator, fakes, session.session_id)
        fakes.scm.ci = CIStatus.FAILING
        barrier = threading.Barrier(workers)
        results = []

        def poll():
            barrier.wait()
            results.append(orchestrator.lifecycle.poll_session(session.session_id))

        threads = [threading.Thread(target=poll) for _ in range(workers)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=10)

        assert len(results) == workers
        assert sum(1 for r in results if r.transitioned) == 1
        assert len(fakes.runtime.messages) == 1
        assert event_types(orchestrator, session.session_id).count("session.transition") == 3

    def test_scan_polls_sessions_in_parallel(self, orchestrator, fakes):
        sessions = [orchestrator.sessions.spawn("app", str(issue)) for issue in range(40, 46)]

        results = orchestrator.lifecycle.scan_once(timeout=10)

        assert len(results) == len(sessions)
        assert all(r.status == "working" for r in results)


class TestCrashRecovery:
    """A new process over the same data directory."""

    def simulate_crash_after_transition(self, orchestrator, fakes, session_id):
        """Persist a ci_failed transition without settling its reactions."""
        open_pr_and_poll(orchestrator, fakes, session_id)
        event = orchestrator.bus.emit(session_id, EventType.SESSION_TRANSITION, {
            "from": "pr_open", "to": "ci_failed",
        })
        session = orchestrator.store.load(session_id)
        session.status = SessionStatus.CI_FAILED
        orchestrator.store.save(session)
        fakes.scm.ci = CIStatus.FAILING
        return event

    def test_in_doubt_reaction_is_dead_lettered(self, orchestrator, build, fakes,
                                                spawn_working, event_types):
        session = spawn_working(orchestrator)
        event = self.simulate_crash_after_transition(orchestrator, fakes, session.session_id)
        orchestrator.ledger.record(session.session_id, event.seq, "send-to-agent",
                                   ReactionStatus.STARTED, attempt=1)

        restarted = build()
        records = restarted.lifecycle.recover()

        assert [r.status for r in records] == [ReactionStatus.DEAD_LETTERED]
        assert fakes.runtime.messages == []
        assert len(fakes.notifier.notifications) == 1
        assert fakes.notifier.notifications[0][2] == "urgent"
        assert restarted.store.load(session.session_id).reacted_seq == event.seq
        assert "reaction.dead_lettered" in event_types(restarted, session.session_id)

        restarted.lifecycle.poll_session(session.session_id)
        assert fakes.runtime.messages == []

    def test_unstarted_reaction_runs_on_recovery(self, orchestrator, build, fakes,
                                                 spawn_working):
        session = spawn_working(orchestrator)
        event = self.simulate_crash_after_transition(orchestrator, fakes, session.session_id)

        restarted = build()
        records = restarted.lifecycle.recover()

        assert [r.status for r in records] == [ReactionStatus.SUCCEEDED]
        assert len(fakes.runtime.messages) == 1
        assert restarted.ledger.get(session.session_id, event.seq, "send-to-agent").is_final

        assert restarted.lifecycle.recover() == []
        assert len(fakes.runtime.messages) == 1


class TestDeadLetterHalt:
    """halt_on_dead_letter stops a session until an operator resumes it."""

    def test_halt_and_resume(self, build, make_config, fakes, spawn_working, event_types):
        orchestrator = build(make_config(
            lifecycle=LifecycleConfig(max_workers=4, halt_on_dead_letter=True),
        ))
        session = spawn_working(orchestrator)
        open_pr_and_poll(orchestrator, fakes, session.session_id)
        fakes.scm.ci = CIStatus.FAILING
        fakes.runtime.send_errors = [PermanentExternalError("pane not found")]

        orchestrator.lifecycle.poll_session(session.session_id)

        stored = orchestrator.store.load(session.session_id)
        assert stored.halted
        assert stored.status == SessionStatus.CI_FAILED
        assert event_types(orchestrator, session.session_id)[-2:] == [
            "reaction.dead_lettered", "session.halted",
        ]
        assert orchestrator.lifecycle.poll_session(session.session_id).skipped == "halted"
        assert orchestrator.lifecycle.active_sessions() == []

        orchestrator.lifecycle.resume(session.session_id)
        fakes.scm.ci = CIStatus.PENDING

        assert orchestrator.lifecycle.poll_session(session.session_id).status == "pr_open"
        assert not orchestrator.store.load(session.session_id).halted

    def test_no_halt_by_default(self, orchestrator, fakes, spawn_working):
        session = spawn_working(orchestrator)
        open_pr_and_poll(orchestrator, fakes, session.session_id)
        fakes.scm.ci = CIStatus.FAILING
        fakes.runtime.send_errors = [PermanentExternalError("pane not found")]

        orchestrator.lifecycle.poll_session(session.session_id)

        assert not orchestrator.store.load(session.session_id).halted
        assert orchestrator.lifecycle.poll_session(session.session_id).skipped is None


class TestCrashAfterTerminalState:
    """A terminal state persisted by a process that died before teardown."""

    def crash_after_merge(self, orchestrator, fakes, session_id):
        open_pr_and_poll(orchestrator, fakes, session_id)
        fakes.scm.pr_state = PRState.MERGED
        event = orchestrator.bus.emit(session_id, EventType.SESSION_TRANSITION, {
            "from": "pr_open", "to": "merged",
        })
        session = orchestrator.store.load(session_id)
        session.status = SessionStatus.MERGED
        orchestrator.store.save(session)
        return event

    def test_recovery_tears_down(self, orchestrator, build, fakes, spawn_working, event_types):
        session = spawn_working(orchestrator)
        event = self.crash_after_merge(orchestrator, fakes, session.session_id)

        restarted = build()
        restarted.lifecycle.recover()

        assert restarted.store.load(session.session_id) is None
        archived = restarted.sessions.get(session.session_id)
        assert archived.status == SessionStatus.TERMINATED
        assert archived.reacted_seq == event.seq
        assert fakes.runtime.destroyed == [session.runtime_handle]
        assert fakes.workspace.destroyed == [session.workspace_path]
        assert event_types(restarted, session.session_id)[-1] == "session.terminated"
        assert restarted.lifecycle.active_sessions() == []

    def test_scan_tears_down(self, orchestrator, build, fakes, spawn_working):
        session = spawn_working(orchestrator)
        self.crash_after_merge(orchestrator, fakes, session.session_id)

        restarted = build()
        assert [s.session_id for s in restarted.lifecycle.active_sessions()] == [
            session.session_id,
        ]

        result = restarted.lifecycle.poll_session(session.session_id)

        assert result.skipped == "terminal"
        assert result.status == "merged"
        assert restarted.sessions.get(session.session_id).status == SessionStatus.TERMINATED
        assert restarted.lifecycle.active_sessions() == []

    def test_terminal_reactions_settle_before_teardown(self, build, make_config, fakes,
                                                       spawn_working):
        orchestrator = build(make_config(reactions=[
            ReactionConfig(event="merged", action="notify", priority="info",
                           backoff_base_seconds=0),
        ]))
        session = spawn_working(orchestrator)
        event = self.crash_after_merge(orchestrator, fakes, session.session_id)

        restarted = build(orchestrator.config)
        records = restarted.lifecycle.recover()

        assert [(r.seq, r.status) for r in records] == [(event.seq, ReactionStatus.SUCCEEDED)]
        assert len(fakes.notifier.notifications) == 1
        assert restarted.store.load(session.session_id) is None


class TestCrashBeforeSave:
    """A transition event logged by a process that died before saving the record."""

    def crash_before_save(self, orchestrator, fakes, session_id):
        open_pr_and_poll(orchestrator, fakes, session_id)
        fakes.scm.ci = CIStatus.FAILING
        return orchestrator.bus.emit(session_id, EventType.SESSION_TRANSITION, {
            "from": "pr_open", "to": "ci_failed",
        })

    def test_recovery_adopts_logged_state(self, orchestrator, build, fakes, spawn_working,
                                          event_types):
        session = spawn_working(orchestrator)
        event = self.crash_before_save(orchestrator, fakes, session.session_id)
        assert orchestrator.store.load(session.session_id).status == SessionStatus.PR_OPEN

        restarted = build()
        restarted.lifecycle.recover()
        result = restarted.lifecycle.poll_session(session.session_id)

        assert not result.transitioned
        assert result.status == "ci_failed"
        stored = restarted.store.load(session.session_id)
        assert stored.status == SessionStatus.CI_FAILED
        assert stored.reacted_seq == event.seq
        assert len(fakes.runtime.messages) == 1
        assert event_types(restarted, session.session_id).count("session.transition") == 3

    def test_poll_adopts_logged_state(self, orchestrator, build, fakes, spawn_working,
                                      event_types):
        session = spawn_working(orchestrator)
        self.crash_before_save(orchestrator, fakes, session.session_id)

        restarted = build()
        first = restarted.lifecycle.poll_session(session.session_id)
        second = restarted.lifecycle.poll_session(session.session_id)

        assert not first.transitioned and not second.transitioned
        assert first.status == second.status == "ci_failed"
        assert len(fakes.runtime.messages) == 1
        assert event_types(restarted, session.session_id).count("session.transition") == 3


class TestTwoInstances:
    """Two orchestrators over one data directory, as with `run` and a CLI command."""

    def test_lock_is_shared(self, orchestrator, build, spawn_working):
        session = spawn_working(orchestrator)
        other = build()

        with other.coordinator.hold(session.session_id):
            assert orchestrator.lifecycle.poll_session(session.session_id).skipped == "busy"

        assert orchestrator.lifecycle.poll_session(session.session_id).skipped is None

    def test_alternating_polls_keep_one_sequence(self, orchestrator, build, fakes,
                                                 spawn_working):
        session = spawn_working(orchestrator)
        other = build()

        open_pr_and_poll(other, fakes, session.session_id)
        orchestrator.lifecycle.poll_session(session.session_id)
        fakes.scm.ci = CIStatus.FAILING
        orchestrator.lifecycle.poll_session(session.session_id)
        other.lifecycle.poll_session(session.session_id)

        seqs = [e.seq for e in other.event_log.read(session.session_id)]
        assert seqs == list(range(1, len(seqs) + 1))
        assert [e.event_type for e in orchestrator.event_log.read(session.session_id)].count(
            EventType.SESSION_TRANSITION
        ) == 3
        assert len(fakes.runtime.messages) == 1

    def test_terminate_from_other_instance_stops_poll(self, orchestrator, build, fakes,
                                                      spawn_working, event_types):
        session = spawn_working(orchestrator)
        open_pr_and_poll(orchestrator, fakes, session.session_id)
        entered = threading.Event()
        release = threading.Event()

        def slow_ci_status(pr, project):
            entered.set()
            release.wait(timeout=5)
            return CIStatus.FAILING

        fakes.scm.get_ci_status = slow_ci_status
        results = []
        poller = threading.Thread(
            target=lambda: results.append(orchestrator.lifecycle.poll_session(session.session_id))
        )
        poller.start()
        assert entered.wait(timeout=5)

        other = build()
        terminator = threading.Thread(target=other.sessions.terminate, args=(session.session_id,))
        terminator.start()
        deadline = time.monotonic() + 5
        while not orchestrator.coordinator.is_cancelled(session.session_id):
            assert time.monotonic() < deadline
            time.sleep(0.01)
        release.set()
        poller.join(timeout=5)
        terminator.join(timeout=10)

        assert not poller.is_alive() and not terminator.is_alive()
        assert results[0].skipped == "cancelled"
        assert fakes.runtime.messages == []
        assert orchestrator.store.load(session.session_id) is None
        assert orchestrator.sessions.get(session.session_id).status == SessionStatus.TERMINATED
        types = event_types(orchestrator, session.session_id)
        assert types.count("session.transition") == 2
        assert types[-1] == "session.terminated"
