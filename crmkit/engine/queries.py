"""
Query Layer - Scoped Read Operations
Every read is filtered by the caller's owner identity. An unauthenticated
caller gets an empty result ([], 0, {} or None), never an exception.
Store failures propagate as StoreError; a missing single row as NotFoundError.
"""

import logging
from typing import Any, Dict, List, Optional

from crmkit.auth import get_current_user
from crmkit.config import config
from crmkit.db.connection import get_db_cursor
from crmkit.errors import NotFoundError
from crmkit.models import (
    Activity, Contact, Deal, DealStage, PipelineSnapshot, StageGroup, Todo,
)

logger = logging.getLogger(__name__)


# =============================================================================
# SHARED SQL FRAGMENTS
# =============================================================================

_CONTACT_DEALS_SUMMARY = """
    COALESCE((
        SELECT json_agg(json_build_object('id', d.id, 'title', d.title, 'stage_id', d.stage_id)
                        ORDER BY d.created_at DESC)
        FROM deals d
        WHERE d.contact_id = c.id AND d.user_id = c.user_id
    ), '[]'::json) AS deals
"""

DEAL_SELECT = """
    SELECT d.*,
           CASE WHEN c.id IS NULL THEN NULL
                ELSE json_build_object('id', c.id, 'name', c.name, 'email', c.email, 'company', c.company)
           END AS contact,
           json_build_object('id', s.id, 'name', s.name, 'order_index', s.order_index) AS stage
    FROM deals d
    JOIN deal_stages s ON s.id = d.stage_id
    LEFT JOIN contacts c ON c.id = d.contact_id
"""

ACTIVITY_SELECT = """
    SELECT a.*,
           CASE WHEN c.id IS NULL THEN NULL
                ELSE json_build_object('id', c.id, 'name', c.name, 'email', c.email)
           END AS contact,
           CASE WHEN d.id IS NULL THEN NULL
                ELSE json_build_object('id', d.id, 'title', d.title)
           END AS deal
    FROM activities a
    LEFT JOIN contacts c ON c.id = a.contact_id
    LEFT JOIN deals d ON d.id = a.deal_id
"""


def _page_clause(params: Dict[str, Any], limit: Optional[int], offset: Optional[int]) -> str:
    """
    LIMIT/OFFSET for list queries. An offset without a limit pages by
    DEFAULT_PAGE_SIZE.
    """
    if offset:
        params['limit'] = limit or config.DEFAULT_PAGE_SIZE
        params['offset'] = offset
        return "LIMIT %(limit)s OFFSET %(offset)s"
    if limit:
        params['limit'] = limit
        return "LIMIT %(limit)s"
    return ""


def _search_pattern(text: str) -> str:
    """Substring pattern for ILIKE ... ESCAPE; wildcards typed by the user match literally."""
    escaped = text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


def _require_row(row, entity: str, record_id: str):
    if row is None:
        raise NotFoundError(f"{entity} {record_id} not found")
    return row


def group_deals_by_stage(stages: List[DealStage], deals: List[Deal]) -> List[StageGroup]:
    """
    One group per stage, in the order given. Stages without deals get an
    empty list. Deals keep their relative order.
    """
    by_stage: Dict[str, List[Deal]] = {stage.id: [] for stage in stages}
    for deal in deals:
        if deal.stage_id in by_stage:
            by_stage[deal.stage_id].append(deal)
    return [StageGroup(stage=stage, deals=by_stage[stage.id]) for stage in stages]


# =============================================================================
# CONTACTS
# =============================================================================

def _contact_conditions(params: Dict[str, Any], search: Optional[str], company: Optional[str]) -> str:
    conditions = ["c.user_id = %(user_id)s"]
    if search:
        conditions.append("(c.name ILIKE %(search)s ESCAPE '\\' OR c.email ILIKE %(search)s ESCAPE '\\' "
                          "OR c.company ILIKE %(search)s ESCAPE '\\')")
        params['search'] = _search_pattern(search)
    if company:
        conditions.append("c.company = %(company)s")
        params['company'] = company
    return " AND ".join(conditions)


def get_contacts(
    search: Optional[str] = None,
    company: Optional[str] = None,
    limit: Optional[int] = None,
    offset: Optional[int] = None,
) -> List[Contact]:
    """
    Contacts newest first, each with its deal summaries.
    `search` matches name, email or company (case-insensitive substring).
    """
    user_id = get_current_user()
    if not user_id:
        logger.debug("get_contacts: no authenticated user")
        return []

    params: Dict[str, Any] = {'user_id': user_id}
    where_clause = _contact_conditions(params, search, company)
    page = _page_clause(params, limit, offset)

    with get_db_cursor() as cur:
        cur.execute(f"""
            SELECT c.*, {_CONTACT_DEALS_SUMMARY}
            FROM contacts c
            WHERE {where_clause}
            ORDER BY c.created_at DESC
            {page}
        """, params)
        rows = cur.fetchall()

    logger.debug(f"get_contacts: {len(rows)} results (search={search!r}, company={company!r})")
    return [Contact(**row) for row in rows]


def get_contact_by_id(contact_id: str) -> Optional[Contact]:
    """Contact with its deals (plus stage) and activities (plus deal title)."""
    user_id = get_current_user()
    if not user_id:
        return None

    with get_db_cursor() as cur:
        cur.execute("""
            SELECT c.*,
                   COALESCE((
                       SELECT json_agg(row_to_json(x) ORDER BY x.created_at DESC)
                       FROM (
                           SELECT d.*, json_build_object('name', s.name, 'order_index', s.order_index) AS stage
                           FROM deals d
                           JOIN deal_stages s ON s.id = d.stage_id
                           WHERE d.contact_id = c.id AND d.user_id = c.user_id
                       ) x
                   ), '[]'::json) AS deals,
                   COALESCE((
                       SELECT json_agg(row_to_json(y) ORDER BY y.created_at DESC)
                       FROM (
                           SELECT a.*,
                                  CASE WHEN d.id IS NULL THEN NULL
                                       ELSE json_build_object('title', d.title)
                                  END AS deal
                           FROM activities a
                           LEFT JOIN deals d ON d.id = a.deal_id
                           WHERE a.contact_id = c.id AND a.user_id = c.user_id
                       ) y
                   ), '[]'::json) AS activities
            FROM contacts c
            WHERE c.id = %(contact_id)s AND c.user_id = %(user_id)s
        """, {'contact_id': contact_id, 'user_id': user_id})
        row = _require_row(cur.fetchone(), 'contact', contact_id)

    return Contact(**row)


def get_contacts_count(search: Optional[str] = None, company: Optional[str] = None) -> int:
    """Row count honouring the same filters as get_contacts."""
    user_id = get_current_user()
    if not user_id:
        return 0

    params: Dict[str, Any] = {'user_id': user_id}
    where_clause = _contact_conditions(params, search, company)

    with get_db_cursor() as cur:
        cur.execute(f"SELECT COUNT(*) AS count FROM contacts c WHERE {where_clause}", params)
        row = cur.fetchone()

    return int(row['count']) if row else 0


def get_companies() -> List[str]:
    """Distinct non-empty company names, sorted. Feeds the company filter."""
    user_id = get_current_user()
    if not user_id:
        return []

    with get_db_cursor() as cur:
        cur.execute("""
            SELECT DISTINCT company
            FROM contacts
            WHERE user_id = %s AND company IS NOT NULL AND company <> ''
            ORDER BY company
        """, (user_id,))
        rows = cur.fetchall()

    return [row['company'] for row in rows]


# =============================================================================
# DEALS AND STAGES
# =============================================================================

def _fetch_stages(cur, user_id: str) -> List[DealStage]:
    cur.execute("""
        SELECT * FROM deal_stages
        WHERE user_id = %s
        ORDER BY order_index ASC
    """, (user_id,))
    return [DealStage(**row) for row in cur.fetchall()]


def _fetch_all_deals(cur, user_id: str) -> List[Deal]:
    cur.execute(f"""
        {DEAL_SELECT}
        WHERE d.user_id = %s
        ORDER BY d.created_at DESC
    """, (user_id,))
    return [Deal(**row) for row in cur.fetchall()]


def get_deals(
    stage_id: Optional[str] = None,
    contact_id: Optional[str] = None,
    search: Optional[str] = None,
    limit: Optional[int] = None,
    offset: Optional[int] = None,
) -> List[Deal]:
    """Deals newest first with contact and stage summaries."""
    user_id = get_current_user()
    if not user_id:
        return []

    conditions = ["d.user_id = %(user_id)s"]
    params: Dict[str, Any] = {'user_id': user_id}

    if stage_id:
        conditions.append("d.stage_id = %(stage_id)s")
        params['stage_id'] = stage_id

    if contact_id:
        conditions.append("d.contact_id = %(contact_id)s")
        params['contact_id'] = contact_id

    if search:
        conditions.append("(d.title ILIKE %(search)s ESCAPE '\\' OR d.description ILIKE %(search)s ESCAPE '\\')")
        params['search'] = _search_pattern(search)

    where_clause = " AND ".join(conditions)
    page = _page_clause(params, limit, offset)

    with get_db_cursor() as cur:
        cur.execute(f"""
            {DEAL_SELECT}
            WHERE {where_clause}
            ORDER BY d.created_at DESC
            {page}
        """, params)
        rows = cur.fetchall()

    logger.debug(f"get_deals: {len(rows)} results (stage_id={stage_id}, contact_id={contact_id})")
    return [Deal(**row) for row in rows]


def get_deal_by_id(deal_id: str) -> Optional[Deal]:
    """Deal with its full contact row, stage summary and activities."""
    user_id = get_current_user()
    if not user_id:
        return None

    with get_db_cursor() as cur:
        cur.execute("""
            SELECT d.*,
                   CASE WHEN c.id IS NULL THEN NULL ELSE row_to_json(c) END AS contact,
                   json_build_object('id', s.id, 'name', s.name, 'order_index', s.order_index) AS stage,
                   COALESCE((
                       SELECT json_agg(a ORDER BY a.created_at DESC)
                       FROM activities a
                       WHERE a.deal_id = d.id AND a.user_id = d.user_id
                   ), '[]'::json) AS activities
            FROM deals d
            JOIN deal_stages s ON s.id = d.stage_id
            LEFT JOIN contacts c ON c.id = d.contact_id
            WHERE d.id = %(deal_id)s AND d.user_id = %(user_id)s
        """, {'deal_id': deal_id, 'user_id': user_id})
        row = _require_row(cur.fetchone(), 'deal', deal_id)

    return Deal(**row)


def get_deal_stages() -> List[DealStage]:
    """The caller's stages, ordered by order_index."""
    user_id = get_current_user()
    if not user_id:
        return []

    with get_db_cursor() as cur:
        return _fetch_stages(cur, user_id)


def get_deals_by_stage() -> List[StageGroup]:
    """Kanban columns: one group per stage in order_index order, empty ones included."""
    user_id = get_current_user()
    if not user_id:
        return []

    with get_db_cursor() as cur:
        stages = _fetch_stages(cur, user_id)
        deals = _fetch_all_deals(cur, user_id)

    groups = group_deals_by_stage(stages, deals)
    logger.debug(f"get_deals_by_stage: {len(deals)} deals across {len(groups)} stages")
    return groups


def get_deals_count_by_stage() -> List[Dict[str, Any]]:
    """[{'stage_name', 'count'}] for every stage, zero included."""
    user_id = get_current_user()
    if not user_id:
        return []

    with get_db_cursor() as cur:
        cur.execute("""
            SELECT s.name AS stage_name, COUNT(d.id) AS count
            FROM deal_stages s
            LEFT JOIN deals d ON d.stage_id = s.id AND d.user_id = s.user_id
            WHERE s.user_id = %s
            GROUP BY s.id, s.name, s.order_index
            ORDER BY s.order_index ASC
        """, (user_id,))
        rows = cur.fetchall()

    return [{'stage_name': row['stage_name'], 'count': int(row['count'])} for row in rows]


def get_deal_value_by_stage() -> List[Dict[str, Any]]:
    """[{'stage_name', 'total_value'}] for every stage. Deals without a value are ignored."""
    user_id = get_current_user()
    if not user_id:
        return []

    with get_db_cursor() as cur:
        cur.execute("""
            SELECT s.name AS stage_name, COALESCE(SUM(d.value), 0) AS total_value
            FROM deal_stages s
            LEFT JOIN deals d ON d.stage_id = s.id AND d.user_id = s.user_id AND d.value IS NOT NULL
            WHERE s.user_id = %s
            GROUP BY s.id, s.name, s.order_index
            ORDER BY s.order_index ASC
        """, (user_id,))
        rows = cur.fetchall()

    return [{'stage_name': row['stage_name'], 'total_value': row['total_value']} for row in rows]


def get_pipeline_data() -> PipelineSnapshot:
    """
    Stages, grouped deals and contacts read in a single transaction, so the
    board never mixes two points in time.
    """
    user_id = get_current_user()
    if not user_id:
        return PipelineSnapshot()

    with get_db_cursor() as cur:
        stages = _fetch_stages(cur, user_id)
        deals = _fetch_all_deals(cur, user_id)
        cur.execute("""
            SELECT * FROM contacts
            WHERE user_id = %s
            ORDER BY name ASC
        """, (user_id,))
        contacts = [Contact(**row) for row in cur.fetchall()]

    return PipelineSnapshot(
        stages=stages,
        deals_by_stage=group_deals_by_stage(stages, deals),
        contacts=contacts,
    )


# =============================================================================
# ACTIVITIES
# =============================================================================

def get_activities(
    contact_id: Optional[str] = None,
    deal_id: Optional[str] = None,
    type: Optional[str] = None,
    limit: Optional[int] = None,
    offset: Optional[int] = None,
) -> List[Activity]:
    """Activity log newest first, with contact and deal summaries."""
    user_id = get_current_user()
    if not user_id:
        return []

    conditions = ["a.user_id = %(user_id)s"]
    params: Dict[str, Any] = {'user_id': user_id}

    if contact_id:
        conditions.append("a.contact_id = %(contact_id)s")
        params['contact_id'] = contact_id

    if deal_id:
        conditions.append("a.deal_id = %(deal_id)s")
        params['deal_id'] = deal_id

    if type:
        conditions.append("a.type = %(type)s")
        params['type'] = type

    where_clause = " AND ".join(conditions)
    page = _page_clause(params, limit, offset)

    with get_db_cursor() as cur:
        cur.execute(f"""
            {ACTIVITY_SELECT}
            WHERE {where_clause}
            ORDER BY a.created_at DESC
            {page}
        """, params)
        rows = cur.fetchall()

    logger.debug(f"get_activities: {len(rows)} results (contact_id={contact_id}, deal_id={deal_id}, type={type})")
    return [Activity(**row) for row in rows]


def get_activity_by_id(activity_id: str) -> Optional[Activity]:
    user_id = get_current_user()
    if not user_id:
        return None

    with get_db_cursor() as cur:
        cur.execute(f"""
            {ACTIVITY_SELECT}
            WHERE a.id = %(activity_id)s AND a.user_id = %(user_id)s
        """, {'activity_id': activity_id, 'user_id': user_id})
        row = _require_row(cur.fetchone(), 'activity', activity_id)

    return Activity(**row)


def get_contact_activities(contact_id: str, limit: Optional[int] = None) -> List[Activity]:
    return get_activities(contact_id=contact_id, limit=limit or config.DETAIL_ACTIVITY_LIMIT)


def get_deal_activities(deal_id: str, limit: Optional[int] = None) -> List[Activity]:
    return get_activities(deal_id=deal_id, limit=limit or config.DETAIL_ACTIVITY_LIMIT)


def get_recent_activities(limit: Optional[int] = None) -> List[Activity]:
    """Latest entries for the dashboard."""
    return get_activities(limit=limit or config.RECENT_ACTIVITY_LIMIT)


def get_activity_count_by_type() -> Dict[str, int]:
    user_id = get_current_user()
    if not user_id:
        return {}

    with get_db_cursor() as cur:
        cur.execute("""
            SELECT type, COUNT(*) AS count
            FROM activities
            WHERE user_id = %s
            GROUP BY type
            ORDER BY type
        """, (user_id,))
        rows = cur.fetchall()

    return {row['type']: int(row['count']) for row in rows}


# =============================================================================
# TODOS
# =============================================================================

def get_todos(limit: Optional[int] = None, completed: Optional[bool] = None) -> List[Todo]:
    user_id = get_current_user()
    if not user_id:
        return []

    conditions = ["user_id = %(user_id)s"]
    params: Dict[str, Any] = {'user_id': user_id}

    if completed is not None:
        conditions.append("completed = %(completed)s")
        params['completed'] = completed

    where_clause = " AND ".join(conditions)
    page = _page_clause(params, limit, None)

    with get_db_cursor() as cur:
        cur.execute(f"""
            SELECT * FROM todos
            WHERE {where_clause}
            ORDER BY created_at DESC
            {page}
        """, params)
        rows = cur.fetchall()

    return [Todo(**row) for row in rows]


def get_todos_count() -> int:
    user_id = get_current_user()
    if not user_id:
        return 0

    with get_db_cursor() as cur:
        cur.execute("SELECT COUNT(*) AS count FROM todos WHERE user_id = %s", (user_id,))
        row = cur.fetchone()

    return int(row['count']) if row else 0


def get_todo_by_id(todo_id: str) -> Optional[Todo]:
    user_id = get_current_user()
    if not user_id:
        return None

    with get_db_cursor() as cur:
        cur.execute("""
            SELECT * FROM todos
            WHERE id = %s AND user_id = %s
        """, (todo_id, user_id))
        row = _require_row(cur.fetchone(), 'todo', todo_id)

    return Todo(**row)
