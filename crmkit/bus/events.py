"""
Event Bus - Decoupled Module Communication
Modules emit events, other modules listen. No direct imports between modules.
"""

from typing import Callable, Dict, List, Any
import logging

logger = logging.getLogger(__name__)


class EventBus:
    """
    Simple event bus for decoupled module communication.
    Modules emit events, other modules register handlers to listen.
    """

    def __init__(self):
        self._handlers: Dict[str, List[Callable]] = {}

    def on(self, event_name: str, handler: Callable):
        """
        Register a handler for an event.

        Args:
            event_name: Name of the event to listen for
            handler: Callable that receives event_data dict
        """
        self._handlers.setdefault(event_name, []).append(handler)
        logger.debug(f"Registered handler for event '{event_name}': {getattr(handler, '__name__', handler)}")

    def off(self, event_name: str, handler: Callable):
        """Remove a previously registered handler. Unknown handlers are ignored."""
        handlers = self._handlers.get(event_name, [])
        if handler in handlers:
            handlers.remove(handler)

    def emit(self, event_name: str, event_data: Dict[str, Any] = None):
        """
        Emit an event to all registered handlers.

        Args:
            event_name: Name of the event
            event_data: Optional dict of data to pass to handlers
        """
        if event_data is None:
            event_data = {}

        logger.debug(f"Emitting event '{event_name}' with data: {event_data}")

        for handler in list(self._handlers.get(event_name, [])):
            try:
                handler(event_data)
            except Exception as e:
                logger.error(f"Error in handler {getattr(handler, '__name__', handler)} for event '{event_name}': {e}")

    def clear(self):
        """Clear all handlers (useful for testing)."""
        self._handlers.clear()


# Singleton instance
bus = EventBus()


# =============================================================================
# STANDARD EVENTS
# =============================================================================

# Contacts
EVENT_CONTACT_CREATED = 'contact_created'
EVENT_CONTACT_UPDATED = 'contact_updated'
EVENT_CONTACT_DELETED = 'contact_deleted'

# Deals and pipeline
EVENT_DEAL_CREATED = 'deal_created'
EVENT_DEAL_UPDATED = 'deal_updated'
EVENT_DEAL_STAGE_CHANGED = 'deal_stage_changed'
EVENT_DEAL_DELETED = 'deal_deleted'
EVENT_DEAL_STAGES_SEEDED = 'deal_stages_seeded'

# Activity log
EVENT_ACTIVITY_CREATED = 'activity_created'
EVENT_ACTIVITY_UPDATED = 'activity_updated'
EVENT_ACTIVITY_DELETED = 'activity_deleted'

# Todos
EVENT_TODO_CREATED = 'todo_created'
EVENT_TODO_UPDATED = 'todo_updated'
EVENT_TODO_DELETED = 'todo_deleted'

# Presentation
EVENT_VIEWS_INVALIDATED = 'views_invalidated'
EVENT_NOTIFICATION = 'notification'
