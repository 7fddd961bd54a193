"""Tests for the session state machine.

Verifies that compute_next_state:
- Moves spawning sessions to working or failed
- Maps open PR facts to the matching review/CI state
- Returns remediation states to pr_open once a fix is pushed
- Raises StateConflictError for contradictory facts
- Keeps every terminal state reachable from the active states
"""
import pytest

from agent_orchestrator.errors import StateConflictError
from agent_orchestrator.models import (
    CIStatus,
    ObservedFacts,
    PRState,
    PullRequestRef,
    ReviewDecision,
    SessionStatus,
)
from agent_orchestrator.state_machine import (
    InvalidTransitionError,
    allowed_targets,
    assert_transition,
    can_transition,
    compute_next_state,
    is_terminal,
)

S = SessionStatus
PR = PullRequestRef(number=7, url="https://scm.test/pull/7")


def open_pr(**kwargs) -> ObservedFacts:
    return ObservedFacts(pr=PR, pr_state=PRState.OPEN, **kwargs)


class TestSpawning:
    """Tests for the first poll after spawn."""

    def test_alive_runtime_moves_to_working(self):
        assert compute_next_state(S.SPAWNING, ObservedFacts(runtime_alive=True)) == S.WORKING

    def test_unknown_runtime_moves_to_working(self):
        assert compute_next_state(S.SPAWNING, ObservedFacts(runtime_alive=None)) == S.WORKING

    def test_dead_runtime_fails(self):
        assert compute_next_state(S.SPAWNING, ObservedFacts(runtime_alive=False)) == S.FAILED


class TestWorking:
    """Tests for sessions without a PR yet."""

    def test_no_pr_stays_working(self):
        assert compute_next_state(S.WORKING, ObservedFacts()) == S.WORKING

    def test_new_pr_moves_to_pr_open_whatever_its_checks(self):
        facts = open_pr(ci=CIStatus.FAILING)
        assert compute_next_state(S.WORKING, facts) == S.PR_OPEN

    def test_closed_issue_abandons(self):
        assert compute_next_state(S.WORKING, ObservedFacts(issue_closed=True)) == S.ABANDONED

    def test_dead_agent_fails(self):
        assert compute_next_state(S.WORKING, ObservedFacts(runtime_alive=False)) == S.FAILED

    def test_pr_merged_directly(self):
        facts = ObservedFacts(pr=PR, pr_state=PRState.MERGED)
        assert compute_next_state(S.WORKING, facts) == S.MERGED


class TestOpenPullRequest:
    """Tests for mapping open PR facts."""

    @pytest.mark.parametrize("facts,expected", [
        (open_pr(ci=CIStatus.PENDING), S.PR_OPEN),
        (open_pr(ci=CIStatus.FAILING), S.CI_FAILED),
        (open_pr(ci=CIStatus.PASSING), S.REVIEW_PENDING),
        (open_pr(ci=CIStatus.PASSING, review=ReviewDecision.CHANGES_REQUESTED),
         S.CHANGES_REQUESTED),
        (open_pr(ci=CIStatus.PENDING, review=ReviewDecision.APPROVED), S.APPROVED),
        (open_pr(ci=CIStatus.PASSING, review=ReviewDecision.APPROVED, mergeable=True),
         S.MERGEABLE),
    ])
    def test_pr_open_targets(self, facts, expected):
        assert compute_next_state(S.PR_OPEN, facts) == expected

    def test_failing_ci_wins_over_approval(self):
        facts = open_pr(ci=CIStatus.FAILING, review=ReviewDecision.APPROVED)
        assert compute_next_state(S.APPROVED, facts) == S.CI_FAILED

    def test_identical_facts_are_stable(self):
        facts = open_pr(ci=CIStatus.FAILING)
        assert compute_next_state(S.CI_FAILED, facts) == S.CI_FAILED

    def test_fixed_ci_returns_to_pr_open(self):
        facts = open_pr(ci=CIStatus.PASSING)
        assert compute_next_state(S.CI_FAILED, facts) == S.PR_OPEN

    def test_addressed_review_returns_to_pr_open(self):
        facts = open_pr(ci=CIStatus.PASSING, review=ReviewDecision.PENDING)
        assert compute_next_state(S.CHANGES_REQUESTED, facts) == S.PR_OPEN

    def test_closed_pr_abandons(self):
        facts = ObservedFacts(pr=PR, pr_state=PRState.CLOSED)
        assert compute_next_state(S.REVIEW_PENDING, facts) == S.ABANDONED

    def test_merged_pr_from_mergeable(self):
        facts = ObservedFacts(pr=PR, pr_state=PRState.MERGED)
        assert compute_next_state(S.MERGEABLE, facts) == S.MERGED


class TestConflicts:
    """Tests for facts that fit no valid transition."""

    def test_missing_pr_in_pr_state(self):
        with pytest.raises(StateConflictError) as exc_info:
            compute_next_state(S.REVIEW_PENDING, ObservedFacts())
        assert exc_info.value.reason == "pr_missing"

    def test_mergeable_with_failing_ci(self):
        facts = open_pr(ci=CIStatus.FAILING, mergeable=True)
        with pytest.raises(StateConflictError) as exc_info:
            compute_next_state(S.PR_OPEN, facts)
        assert exc_info.value.reason == "mergeable_contradiction"

    def test_conflict_is_deterministic(self):
        facts = open_pr(review=ReviewDecision.CHANGES_REQUESTED, mergeable=True)
        for _ in range(3):
            with pytest.raises(StateConflictError):
                compute_next_state(S.APPROVED, facts)


class TestTerminalStates:
    """Tests for terminal states and the transition table."""

    @pytest.mark.parametrize("status", [S.MERGED, S.TERMINATED, S.ABANDONED, S.FAILED])
    def test_terminal_states_do_not_move(self, status):
        assert is_terminal(status)
        facts = open_pr(ci=CIStatus.FAILING)
        assert compute_next_state(status, facts) == status

    @pytest.mark.parametrize("status", [
        s for s in SessionStatus if s not in (S.MERGED, S.TERMINATED, S.ABANDONED, S.FAILED)
    ])
    def test_exits_reachable_from_every_active_state(self, status):
        assert can_transition(status, S.ABANDONED)
        assert can_transition(status, S.FAILED)
        assert can_transition(status, S.TERMINATED)

    def test_every_state_can_reach_terminated(self):
        """Every state has a path to terminated."""
        for start in SessionStatus:
            seen = {start}
            frontier = [start]
            while frontier:
                current = frontier.pop()
                for target in allowed_targets(current):
                    if target not in seen:
                        seen.add(target)
                        frontier.append(target)
            assert S.TERMINATED in seen, start

    def test_assert_transition_rejects_illegal_moves(self):
        with pytest.raises(InvalidTransitionError):
            assert_transition(S.TERMINATED, S.WORKING)

    def test_assert_transition_allows_self(self):
        assert_transition(S.WORKING, S.WORKING)
