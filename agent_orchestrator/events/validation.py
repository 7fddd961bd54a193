"""
Event payload validation for the session event log.

Each EventType has a defined set of allowed payload fields. Payloads with
other fields are rejected before anything is written, so the log never holds
partially-typed provider data.
"""

from typing import Set

from agent_orchestrator.events.types import EventType


ALLOWED_FIELDS: dict[EventType, Set[str]] = {
    EventType.SESSION_SPAWNED: {"project", "issue_id", "branch", "agent", "runtime", "workspace_path"},
    EventType.SESSION_TRANSITION: {"from", "to", "facts"},
    EventType.SESSION_TERMINATED: {"from", "reason", "leaks"},
    EventType.SESSION_FAILED: {"error_type", "message", "stage", "residual_workspace"},
    EventType.SESSION_STATE_CONFLICT: {"state", "reason", "message", "facts"},
    EventType.SESSION_RESOURCE_LEAK: {"resource", "message"},
    EventType.SESSION_HALTED: {"reason", "seq", "kind"},
    EventType.SESSION_RESUMED: {"by"},
    EventType.REACTION_DEAD_LETTERED: {"seq", "kind", "attempts", "error"},
}


def validate_payload(event_type: EventType, payload: dict) -> bool:
    """
    Validate that a payload only contains fields allowed for its event type.

    Returns:
        True if the payload is valid.

    Raises:
        ValueError: If the payload contains disallowed fields.
    """
    if not isinstance(payload, dict):
        raise ValueError(f"Payload for {event_type.value} must be a dict")

    allowed = ALLOWED_FIELDS.get(event_type)
    if allowed is None:
        return True

    disallowed = set(payload.keys()) - allowed
    if disallowed:
        raise ValueError(
            f"Disallowed fields in {event_type.value} payload: {sorted(disallowed)}"
        )
    return True
