"""
Pipeline Board - Optimistic Stage Reassignment

Holds the kanban state (stages, deals grouped by stage, contacts) for one
session and moves deals between stages optimistically:

    begin_move     remove the deal from its column and append it to the
                   target column right away, before the store answers
    complete_move  persist through the gateway; keep the local state on
                   success, or throw it away and re-fetch on failure

Several moves may be in flight at once, one per deal. A failed move
re-fetches the whole board, which also discards any other optimistic moves
still pending: the board always ends up equal to what the store holds.
"""

import logging
from dataclasses import dataclass, replace
from decimal import Decimal
from typing import Callable, Dict, List, Optional, Tuple

from crmkit.bus.events import bus, EVENT_NOTIFICATION
from crmkit.engine import actions, queries
from crmkit.errors import StoreError
from crmkit.models import ActionResult, Contact, Deal, DealStage, PipelineSnapshot, StageGroup

logger = logging.getLogger(__name__)

STATE_LOADING = 'loading'
STATE_READY = 'ready'

MOVE_PENDING = 'pending'
MOVE_RECONCILED = 'reconciled'
MOVE_ROLLED_BACK = 'rolled_back'

MOVE_SUCCESS_MESSAGE = "Deal stage updated successfully"
MOVE_FAILURE_MESSAGE = "Failed to update deal stage"


@dataclass
class Notification:
    """Transient message for the user (toast)."""
    level: str          # 'success' or 'error'
    title: str
    message: str


@dataclass
class PendingMove:
    deal_id: str
    from_stage_id: str
    to_stage_id: str
    status: str = MOVE_PENDING
    error: Optional[str] = None


def _as_decimal(value) -> Decimal:
    if value is None:
        return Decimal(0)
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def _default_notify(notification: Notification) -> None:
    log = logger.info if notification.level == 'success' else logger.warning
    log(f"{notification.title}: {notification.message}")
    bus.emit(EVENT_NOTIFICATION, {'notification': notification})


class PipelineBoard:
    """
    Client-side pipeline state with optimistic moves.

    Usage:
        board = PipelineBoard()
        board.load()
        board.move_deal(deal_id, won_stage_id)   # 'reconciled' / 'rolled_back' / None
    """

    def __init__(
        self,
        fetch: Optional[Callable[[], PipelineSnapshot]] = None,
        persist: Optional[Callable[[str, str], ActionResult]] = None,
        notify: Optional[Callable[[Notification], None]] = None,
    ):
        self._fetch = fetch or queries.get_pipeline_data
        self._persist = persist or actions.update_deal_stage
        self._notify = notify or _default_notify

        self.state = STATE_LOADING
        self.stages: List[DealStage] = []
        self.groups: List[StageGroup] = []
        self.contacts: List[Contact] = []
        self.pending: Dict[str, PendingMove] = {}

    # -------------------------------------------------------------------------
    # Loading
    # -------------------------------------------------------------------------

    def load(self) -> 'PipelineBoard':
        """Fetch the snapshot and become ready."""
        self.pending.clear()
        self._apply_snapshot(self._fetch())
        self.state = STATE_READY
        logger.debug(f"Pipeline loaded: {len(self.groups)} stages, {self.total_deals} deals")
        return self

    def refresh(self) -> None:
        """Replace all local state with what the store holds now."""
        self._apply_snapshot(self._fetch())
        logger.info("Pipeline re-synchronised from store")

    def _apply_snapshot(self, snapshot: PipelineSnapshot) -> None:
        self.stages = list(snapshot.stages)
        self.groups = [StageGroup(stage=g.stage, deals=list(g.deals)) for g in snapshot.deals_by_stage]
        self.contacts = list(snapshot.contacts)

    # -------------------------------------------------------------------------
    # Lookup
    # -------------------------------------------------------------------------

    def group_for(self, stage_id: Optional[str]) -> Optional[StageGroup]:
        for group in self.groups:
            if group.stage.id == stage_id:
                return group
        return None

    def find_deal(self, deal_id: str) -> Optional[Tuple[StageGroup, Deal]]:
        for group in self.groups:
            for deal in group.deals:
                if deal.id == deal_id:
                    return group, deal
        return None

    # -------------------------------------------------------------------------
    # Moves
    # -------------------------------------------------------------------------

    def begin_move(self, deal_id: str, to_stage_id: Optional[str]) -> Optional[PendingMove]:
        """
        Apply a drop optimistically. Returns None, changing nothing, when the
        drop is not a move: board not ready, no such target column, unknown
        deal, same column, or a move for this deal is still in flight.
        """
        if self.state != STATE_READY:
            return None

        target = self.group_for(to_stage_id)
        if target is None:
            logger.debug(f"begin_move: no drop target for stage {to_stage_id}")
            return None

        found = self.find_deal(deal_id)
        if found is None:
            logger.debug(f"begin_move: deal {deal_id} not on board")
            return None

        source, deal = found
        if deal.stage_id == to_stage_id:
            return None

        if deal_id in self.pending:
            logger.warning(f"begin_move: deal {deal_id} already moving, drop ignored")
            return None

        source.deals = [d for d in source.deals if d.id != deal_id]
        target.deals = target.deals + [replace(deal, stage_id=to_stage_id, stage=target.stage.summary())]

        move = PendingMove(deal_id=deal_id, from_stage_id=source.stage.id, to_stage_id=to_stage_id)
        self.pending[deal_id] = move
        logger.debug(f"begin_move: deal {deal_id} {source.stage.id} -> {to_stage_id} (optimistic)")
        return move

    def complete_move(self, move: PendingMove) -> str:
        """
        Persist a move started with begin_move and reconcile.
        Returns the final status: 'reconciled' or 'rolled_back'.

        If the re-fetch after a failure raises StoreError, the board drops
        back to 'loading' (no further moves until load() succeeds) and the
        error propagates.
        """
        try:
            result = self._persist(move.deal_id, move.to_stage_id)
            error = None if result.success else (result.error or MOVE_FAILURE_MESSAGE)
        except Exception as exc:
            logger.error(f"complete_move: persisting deal {move.deal_id} raised {type(exc).__name__}: {exc}",
                         exc_info=True)
            error = MOVE_FAILURE_MESSAGE

        self.pending.pop(move.deal_id, None)

        if error is None:
            move.status = MOVE_RECONCILED
            self._notify(Notification('success', 'Success', MOVE_SUCCESS_MESSAGE))
            return move.status

        move.status = MOVE_ROLLED_BACK
        move.error = error
        self._notify(Notification('error', 'Error', error))
        try:
            self.refresh()
        except StoreError as exc:
            # local columns still hold the rejected move; refuse drops until a load succeeds
            self.state = STATE_LOADING
            logger.error(f"complete_move: re-sync after failed move of deal {move.deal_id} failed: {exc}")
            raise
        return move.status

    def move_deal(self, deal_id: str, to_stage_id: Optional[str]) -> Optional[str]:
        """Drop a deal on a column. None when the drop was not a move."""
        move = self.begin_move(deal_id, to_stage_id)
        if move is None:
            return None
        return self.complete_move(move)

    # -------------------------------------------------------------------------
    # Derived metrics
    # -------------------------------------------------------------------------

    @property
    def total_deals(self) -> int:
        return sum(len(group.deals) for group in self.groups)

    @property
    def total_value(self) -> Decimal:
        """Sum of deal values; a deal without a value counts as 0."""
        return sum((_as_decimal(deal.value) for group in self.groups for deal in group.deals), Decimal(0))

    @property
    def average_deal_size(self) -> Decimal:
        count = self.total_deals
        if count == 0:
            return Decimal(0)
        return self.total_value / count

    @property
    def active_stages(self) -> int:
        return len(self.stages)
