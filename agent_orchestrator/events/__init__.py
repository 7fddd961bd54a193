"""Session event log: types, payload validation, persistence and bus."""

from agent_orchestrator.events.bus import EventBus
from agent_orchestrator.events.persistence import EventLog, EventLogError
from agent_orchestrator.events.types import EventType, SessionEvent
from agent_orchestrator.events.validation import validate_payload

__all__ = [
    "EventBus",
    "EventLog",
    "EventLogError",
    "EventType",
    "SessionEvent",
    "validate_payload",
]
