"""
Event bus for the session event log.

Validates payloads, appends events to the EventLog, then routes them to
subscribers (structured logging, notifications, the dashboard).
"""

import logging
from typing import Callable, Optional

from agent_orchestrator.events.persistence import EventLog
from agent_orchestrator.events.types import EventType, SessionEvent
from agent_orchestrator.events.validation import validate_payload

EventHandler = Callable[[SessionEvent], None]

logger = logging.getLogger(__name__)


class EventBus:
    """Lightweight event bus in front of the session event log."""

    def __init__(self, event_log: EventLog) -> None:
        self._log = event_log
        self._handlers: dict[EventType, list[EventHandler]] = {}
        self._global_handlers: list[EventHandler] = []

    @property
    def log(self) -> EventLog:
        return self._log

    def subscribe(self, event_type: EventType, handler: EventHandler) -> None:
        """Subscribe to a specific event type."""
        self._handlers.setdefault(event_type, []).append(handler)

    def subscribe_all(self, handler: EventHandler) -> None:
        """Subscribe to all events (for logging, metrics)."""
        self._global_handlers.append(handler)

    def unsubscribe(self, event_type: EventType, handler: EventHandler) -> None:
        """Unsubscribe from event type."""
        if event_type in self._handlers:
            self._handlers[event_type] = [
                h for h in self._handlers[event_type] if h != handler
            ]

    def emit(
        self,
        session_id: str,
        event_type: EventType,
        payload: Optional[dict] = None,
    ) -> SessionEvent:
        """
        Validate, persist and dispatch an event.

        Invalid payloads raise ValueError and are neither persisted nor
        dispatched. Subscriber failures are logged and never propagate.

        Returns:
            The persisted event with its sequence number.
        """
        payload = payload or {}
        validate_payload(event_type, payload)

        event = self._log.append(session_id, event_type, payload)

        for handler in self._global_handlers + self._handlers.get(event_type, []):
            try:
                handler(event)
            except Exception:
                logger.exception("Event handler failed for %s", event)

        return event
