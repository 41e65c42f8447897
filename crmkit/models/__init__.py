"""
Data Models
Dataclasses for all entities. These are pure Python objects, no database logic.
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Union

ACTIVITY_TYPES = ('note', 'call', 'email', 'meeting', 'task')
DEFAULT_ACTIVITY_TYPE = 'note'

Number = Union[int, float, Decimal]


@dataclass
class Contact:
    """A person the user is selling to."""
    id: Optional[str] = None
    user_id: Optional[str] = None
    name: str = ''
    email: Optional[str] = None
    phone: Optional[str] = None
    company: Optional[str] = None
    notes: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    # joined
    deals: List[Dict[str, Any]] = field(default_factory=list)
    activities: List[Dict[str, Any]] = field(default_factory=list)


@dataclass
class DealStage:
    """Pipeline column. order_index gives left-to-right position."""
    id: Optional[str] = None
    user_id: Optional[str] = None
    name: str = ''
    order_index: int = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def summary(self) -> Dict[str, Any]:
        return {'id': self.id, 'name': self.name, 'order_index': self.order_index}


@dataclass
class Deal:
    """Sales opportunity sitting in exactly one stage."""
    id: Optional[str] = None
    user_id: Optional[str] = None
    title: str = ''
    description: Optional[str] = None
    value: Optional[Number] = None
    stage_id: Optional[str] = None
    contact_id: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    # joined
    contact: Optional[Dict[str, Any]] = None
    stage: Optional[Dict[str, Any]] = None
    activities: List[Dict[str, Any]] = field(default_factory=list)


@dataclass
class Activity:
    """Activity log entry linked to a contact, a deal, or both."""
    id: Optional[str] = None
    user_id: Optional[str] = None
    content: str = ''
    type: str = DEFAULT_ACTIVITY_TYPE
    contact_id: Optional[str] = None
    deal_id: Optional[str] = None
    created_at: Optional[datetime] = None
    # joined
    contact: Optional[Dict[str, Any]] = None
    deal: Optional[Dict[str, Any]] = None


@dataclass
class Todo:
    id: Optional[str] = None
    user_id: Optional[str] = None
    title: str = ''
    completed: bool = False
    created_at: Optional[datetime] = None


@dataclass
class StageGroup:
    """One pipeline column: a stage and the deals currently in it."""
    stage: DealStage
    deals: List[Deal] = field(default_factory=list)


@dataclass
class PipelineSnapshot:
    """Everything the pipeline view needs, fetched in one go."""
    stages: List[DealStage] = field(default_factory=list)
    deals_by_stage: List[StageGroup] = field(default_factory=list)
    contacts: List[Contact] = field(default_factory=list)


@dataclass
class ActionResult:
    """
    Outcome of a Mutation Gateway call.

    Either success with the persisted record (may be None for deletes), or an
    error message. `invalidated` lists the view keys the mutation made stale.
    """
    success: bool = False
    error: Optional[str] = None
    record: Any = None
    invalidated: FrozenSet[str] = frozenset()

    @classmethod
    def ok(cls, record: Any = None, invalidated: Iterable[str] = ()) -> 'ActionResult':
        return cls(success=True, record=record, invalidated=frozenset(invalidated))

    @classmethod
    def fail(cls, message: str) -> 'ActionResult':
        return cls(success=False, error=message)
