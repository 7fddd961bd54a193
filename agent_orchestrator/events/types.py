"""
Event types for the Agent Orchestrator event log.

Defines the SessionEvent dataclass and EventType enum covering every fact
the orchestrator records about a session.
"""

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Optional

from agent_orchestrator.models import now_iso


class EventType(Enum):
    """All event types in the session event log."""

    # Session lifecycle
    SESSION_SPAWNED = "session.spawned"
    SESSION_TRANSITION = "session.transition"
    SESSION_TERMINATED = "session.terminated"
    SESSION_FAILED = "session.failed"

    # Inspection flags
    SESSION_STATE_CONFLICT = "session.state_conflict"
    SESSION_RESOURCE_LEAK = "session.resource_leak"
    SESSION_HALTED = "session.halted"
    SESSION_RESUMED = "session.resumed"

    # Reactions
    REACTION_DEAD_LETTERED = "reaction.dead_lettered"


@dataclass(frozen=True)
class SessionEvent:
    """A single immutable fact in a session's event log."""

    session_id: str
    seq: int
    event_type: EventType
    payload: dict = field(default_factory=dict)
    timestamp: str = field(default_factory=now_iso)

    @property
    def target_state(self) -> Optional[str]:
        """State entered by a transition event, None for other events."""
        if self.event_type != EventType.SESSION_TRANSITION:
            return None
        return self.payload.get("to")

    def matches(self, trigger: str) -> bool:
        """
        Check whether a reaction trigger refers to this event.

        A trigger is either a full event type ("session.spawned") or the name
        of a state entered by a transition ("ci_failed").
        """
        return trigger == self.event_type.value or trigger == self.target_state

    def to_dict(self) -> dict[str, Any]:
        """Convert to dict for JSON serialization."""
        d = asdict(self)
        d["event_type"] = self.event_type.value
        return d

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SessionEvent":
        """Create from dict."""
        data = data.copy()
        data["event_type"] = EventType(data["event_type"])
        return cls(**data)

    def __str__(self) -> str:
        return f"[{self.timestamp}] #{self.seq} {self.event_type.value} session={self.session_id}"
