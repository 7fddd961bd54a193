"""
Session State Machine for the Agent Orchestrator.

This module handles:
- The table of allowed session transitions
- Computing the next state from the current state and observed facts
- Detecting conflicting facts that match no valid transition

compute_next_state() is a pure function: the same (state, facts) pair
always yields the same answer.

┌──────────┐   ┌─────────┐   ┌─────────┐   ┌────────────────┐   ┌──────────┐   ┌───────────┐   ┌────────┐
│ SPAWNING │-->│ WORKING │-->│ PR_OPEN │-->│ REVIEW_PENDING │-->│ APPROVED │-->│ MERGEABLE │-->│ MERGED │
└──────────┘   └─────────┘   └─────────┘   └────────────────┘   └──────────┘   └───────────┘   └────────┘
                                 │  ▲                │                                            │
                                 ▼  │                ▼                                            ▼
                            ┌───────────┐   ┌───────────────────┐                          ┌────────────┐
                            │ CI_FAILED │   │ CHANGES_REQUESTED │                          │ TERMINATED │
                            └───────────┘   └───────────────────┘                          └────────────┘

ABANDONED and FAILED are reachable from every non-terminal state.
"""

from __future__ import annotations

from agent_orchestrator.errors import StateConflictError
from agent_orchestrator.models import (
    CIStatus,
    ObservedFacts,
    PRState,
    ReviewDecision,
    SessionStatus,
)

S = SessionStatus

_EXITS = {S.ABANDONED, S.FAILED, S.TERMINATED}

_ALLOWED_TRANSITIONS: dict[SessionStatus, set[SessionStatus]] = {
    S.SPAWNING: {S.WORKING} | _EXITS,
    S.WORKING: {S.PR_OPEN, S.MERGED} | _EXITS,
    S.PR_OPEN: {
        S.CI_FAILED,
        S.REVIEW_PENDING,
        S.CHANGES_REQUESTED,
        S.APPROVED,
        S.MERGEABLE,
        S.MERGED,
    } | _EXITS,
    S.CI_FAILED: {S.WORKING, S.PR_OPEN, S.MERGED} | _EXITS,
    S.REVIEW_PENDING: {
        S.PR_OPEN,
        S.CI_FAILED,
        S.CHANGES_REQUESTED,
        S.APPROVED,
        S.MERGEABLE,
        S.MERGED,
    } | _EXITS,
    S.CHANGES_REQUESTED: {S.WORKING, S.PR_OPEN, S.MERGED} | _EXITS,
    S.APPROVED: {
        S.PR_OPEN,
        S.REVIEW_PENDING,
        S.CI_FAILED,
        S.CHANGES_REQUESTED,
        S.MERGEABLE,
        S.MERGED,
    } | _EXITS,
    S.MERGEABLE: {
        S.PR_OPEN,
        S.REVIEW_PENDING,
        S.CI_FAILED,
        S.CHANGES_REQUESTED,
        S.APPROVED,
        S.MERGED,
    } | _EXITS,
    S.MERGED: {S.TERMINATED},
    # Cleanup of a dead session still tears it down
    S.ABANDONED: {S.TERMINATED},
    S.FAILED: {S.TERMINATED},
    S.TERMINATED: set(),
}

# States the lifecycle no longer polls
_TERMINAL_STATES: frozenset[SessionStatus] = frozenset(
    {S.MERGED, S.TERMINATED, S.ABANDONED, S.FAILED}
)

# States in which the session is known to have a PR
_PR_STATES: frozenset[SessionStatus] = frozenset(
    {
        S.PR_OPEN,
        S.CI_FAILED,
        S.REVIEW_PENDING,
        S.CHANGES_REQUESTED,
        S.APPROVED,
        S.MERGEABLE,
    }
)

# States that wait for the agent to push a fix
_REMEDIATION_STATES: frozenset[SessionStatus] = frozenset({S.CI_FAILED, S.CHANGES_REQUESTED})


class InvalidTransitionError(ValueError):
    """Raised when a transition is not in the table."""
    pass


def can_transition(source: SessionStatus, target: SessionStatus) -> bool:
    return target in _ALLOWED_TRANSITIONS[source]


def assert_transition(source: SessionStatus, target: SessionStatus) -> None:
    if source == target:
        return
    if not can_transition(source, target):
        raise InvalidTransitionError(
            f"Illegal state transition: {source.value} -> {target.value}"
        )


def is_terminal(status: SessionStatus) -> bool:
    return status in _TERMINAL_STATES


def has_pr(status: SessionStatus) -> bool:
    return status in _PR_STATES


def allowed_targets(status: SessionStatus) -> list[SessionStatus]:
    return sorted(_ALLOWED_TRANSITIONS[status], key=lambda s: s.value)


def _open_pr_target(facts: ObservedFacts) -> SessionStatus:
    """Map the facts of an open PR to the state they describe."""
    if facts.ci == CIStatus.FAILING:
        return S.CI_FAILED
    if facts.review == ReviewDecision.CHANGES_REQUESTED:
        return S.CHANGES_REQUESTED
    if facts.review == ReviewDecision.APPROVED:
        if facts.ci == CIStatus.PASSING and facts.mergeable:
            return S.MERGEABLE
        return S.APPROVED
    if facts.ci == CIStatus.PASSING:
        return S.REVIEW_PENDING
    return S.PR_OPEN


def compute_next_state(current: SessionStatus, facts: ObservedFacts) -> SessionStatus:
    """
    Compute the next state of a session.

    Args:
        current: The session's current state.
        facts: Facts observed on this poll.

    Returns:
        The candidate next state. Equal to current when nothing changes.

    Raises:
        StateConflictError: If the facts contradict each other or lead to a
            state that is not reachable from current.
    """
    if is_terminal(current):
        return current

    if current == S.SPAWNING:
        return S.FAILED if facts.runtime_alive is False else S.WORKING

    if facts.pr is not None and facts.pr_state == PRState.MERGED:
        candidate = S.MERGED
    elif facts.pr is not None and facts.pr_state == PRState.CLOSED:
        candidate = S.ABANDONED
    elif facts.pr is None:
        if has_pr(current):
            raise StateConflictError(
                f"Session in {current.value} but no pull request was found",
                reason="pr_missing",
            )
        if facts.issue_closed:
            candidate = S.ABANDONED
        elif facts.runtime_alive is False:
            candidate = S.FAILED
        else:
            candidate = S.WORKING
    else:
        if facts.mergeable and (
            facts.ci == CIStatus.FAILING
            or facts.review == ReviewDecision.CHANGES_REQUESTED
        ):
            raise StateConflictError(
                "PR reported mergeable while CI is failing or changes are requested",
                reason="mergeable_contradiction",
            )
        candidate = _open_pr_target(facts)
        if current == S.WORKING:
            candidate = S.PR_OPEN
        elif current in _REMEDIATION_STATES and candidate != current:
            # The fix was pushed; re-evaluate from pr_open.
            candidate = S.PR_OPEN

    if candidate != current and not can_transition(current, candidate):
        raise StateConflictError(
            f"No transition from {current.value} to {candidate.value}",
            reason=f"invalid_transition:{current.value}->{candidate.value}",
        )
    return candidate
