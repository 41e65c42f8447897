"""
View invalidation.

Every mutation names the views it made stale. The set is returned to the
caller on the ActionResult and broadcast as EVENT_VIEWS_INVALIDATED so any
subscriber (a cache, a long-lived board) can re-fetch.
"""

import logging
from typing import FrozenSet, Set

from crmkit.bus.events import bus, EVENT_VIEWS_INVALIDATED

logger = logging.getLogger(__name__)

VIEW_DASHBOARD = '/dashboard'
VIEW_CONTACTS = '/dashboard/contacts'
VIEW_PIPELINE = '/dashboard/pipeline'
VIEW_TODOS = '/dashboard/todos'


def contact_view(contact_id: str) -> str:
    """Detail view key for one contact."""
    return f"{VIEW_CONTACTS}/{contact_id}"


def invalidate(*views: str) -> FrozenSet[str]:
    """Mark views stale. Empty/None keys are dropped."""
    stale = frozenset(v for v in views if v)
    if stale:
        logger.debug(f"Invalidated views: {sorted(stale)}")
        bus.emit(EVENT_VIEWS_INVALIDATED, {'views': sorted(stale)})
    return stale


class StaleViews:
    """
    Bus subscriber that accumulates invalidated view keys until drained.

    Usage:
        stale = StaleViews().attach()
        actions.create_todo({'title': 'x'})
        stale.drain()   # {'/dashboard', '/dashboard/todos'}
    """

    def __init__(self, event_bus=None):
        self._bus = event_bus or bus
        self._stale: Set[str] = set()

    def _on_invalidated(self, event_data):
        self._stale.update(event_data.get('views', []))

    def attach(self) -> 'StaleViews':
        self._bus.on(EVENT_VIEWS_INVALIDATED, self._on_invalidated)
        return self

    def detach(self):
        self._bus.off(EVENT_VIEWS_INVALIDATED, self._on_invalidated)

    def is_stale(self, view: str) -> bool:
        return view in self._stale

    def drain(self) -> Set[str]:
        stale, self._stale = self._stale, set()
        return stale
