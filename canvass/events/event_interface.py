"""
Event interface for the canvass sync core.

This module defines the events the core publishes to its presentation
collaborator (write failures, interrupted subscriptions, counters, exports)
and the emitter that delivers them.
"""

import json
import time
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Union

from canvass.config.logging_config import get_logger

logger = get_logger(__name__)


class EventType(Enum):
    """Types of events that can be emitted by the event bus."""

    # Session events
    SIGNED_IN = "session.signed_in"
    SIGNED_OUT = "session.signed_out"
    BUILDING_SELECTED = "session.building_selected"

    # Store events
    WRITE_FAILED = "store.write_failed"
    SUBSCRIPTION_INTERRUPTED = "store.subscription_interrupted"
    SUBSCRIPTION_RESTORED = "store.subscription_restored"

    # Domain events
    VISIT_RECORDED = "visits.recorded"
    DOOR_COUNT_CHANGED = "visits.door_count_changed"
    EXPORT_COMPLETED = "export.completed"
    DRAFT_COMMITTED = "drafts.committed"

    ERROR = "error"

    # Catch-all for unknown events
    UNKNOWN = "unknown"

    @classmethod
    def from_string(cls, event_type_str: str) -> 'EventType':
        """Convert a string to an EventType enum value."""
        try:
            return next(e for e in cls if e.value == event_type_str)
        except StopIteration:
            logger.warning(f"Unknown event type: {event_type_str}")
            return cls.UNKNOWN


@dataclass
class Event:
    """Base class for all events in the system."""

    type: EventType
    data: Dict[str, Any] = field(default_factory=dict)
    created_at: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        """Convert the event to a dictionary."""
        result = asdict(self)
        result['type'] = self.type.value
        return result

    def to_json(self) -> str:
        """Convert the event to a JSON string."""
        return json.dumps(self.to_dict(), default=str)


@dataclass
class WriteFailedEvent(Event):
    """A write issued by the core was rejected or never acknowledged."""

    operation: str = ""
    path: Optional[str] = None
    error: Dict[str, Any] = field(default_factory=dict)


@dataclass
class CountEvent(Event):
    """The current-day door count changed."""

    user_id: Optional[str] = None
    count: int = 0


# Type for event handlers
EventHandlerType = Callable[[Event], None]


class EventEmitter:
    """
    Event emitter for publishing and subscribing to events.

    This class provides methods for registering event handlers and
    emitting events to all registered handlers.
    """

    def __init__(self):
        """Initialize the event emitter."""
        self._handlers: Dict[EventType, List[EventHandlerType]] = {}
        self._wildcard_handlers: List[EventHandlerType] = []

    def on(self, event_type: Union[EventType, str], handler: EventHandlerType) -> None:
        """
        Register a handler for a specific event type.

        Args:
            event_type: The type of event to handle
            handler: The callback function to invoke when the event occurs
        """
        if isinstance(event_type, str):
            event_type = EventType.from_string(event_type)

        self._handlers.setdefault(event_type, []).append(handler)
        logger.debug(f"Registered handler for event type: {event_type.value}")

    def on_any(self, handler: EventHandlerType) -> None:
        """
        Register a handler for all event types.

        Args:
            handler: The callback function to invoke when any event occurs
        """
        self._wildcard_handlers.append(handler)
        logger.debug("Registered wildcard event handler")

    def off(self, event_type: Union[EventType, str], handler: Optional[EventHandlerType] = None) -> None:
        """
        Remove a handler for a specific event type.

        Args:
            event_type: The type of event
            handler: The handler to remove. If None, removes all handlers for the event type.
        """
        if isinstance(event_type, str):
            event_type = EventType.from_string(event_type)

        if event_type in self._handlers:
            if handler is None:
                self._handlers[event_type] = []
                logger.debug(f"Removed all handlers for event type: {event_type.value}")
            else:
                try:
                    self._handlers[event_type].remove(handler)
                    logger.debug(f"Removed handler for event type: {event_type.value}")
                except ValueError:
                    logger.warning(f"Handler not found for event type: {event_type.value}")

    def off_any(self, handler: Optional[EventHandlerType] = None) -> None:
        """
        Remove a wildcard handler.

        Args:
            handler: The handler to remove. If None, removes all wildcard handlers.
        """
        if handler is None:
            self._wildcard_handlers = []
            logger.debug("Removed all wildcard handlers")
        else:
            try:
                self._wildcard_handlers.remove(handler)
                logger.debug("Removed wildcard handler")
            except ValueError:
                logger.warning("Wildcard handler not found")

    def emit(self, event: Event) -> None:
        """
        Emit an event to all registered handlers.

        Args:
            event: The event to emit
        """
        for handler in list(self._handlers.get(event.type, [])):
            try:
                handler(event)
            except Exception as e:
                logger.error(f"Error in event handler for {event.type.value}: {str(e)}")

        for handler in list(self._wildcard_handlers):
            try:
                handler(event)
            except Exception as e:
                logger.error(f"Error in wildcard event handler for {event.type.value}: {str(e)}")

    def clear(self) -> None:
        """Remove every handler."""
        self._handlers = {}
        self._wildcard_handlers = []


# Global event emitter instance
event_bus = EventEmitter()
