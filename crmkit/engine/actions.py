"""
Mutation Gateway - Validated Write Operations
One function per user intent. Each one checks the caller's identity,
validates the input, writes exactly one row scoped by owner, marks the
affected views stale and emits a bus event.

Nothing raises across this boundary: every CRMError (Unauthorized,
ValidationError, StoreError, NotFoundError) comes back as
ActionResult.fail(message).
"""

import functools
import logging
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Iterable, List, Mapping, Optional

from crmkit.auth import require_user
from crmkit.bus.events import (
    bus,
    EVENT_ACTIVITY_CREATED, EVENT_ACTIVITY_DELETED, EVENT_ACTIVITY_UPDATED,
    EVENT_CONTACT_CREATED, EVENT_CONTACT_DELETED, EVENT_CONTACT_UPDATED,
    EVENT_DEAL_CREATED, EVENT_DEAL_DELETED, EVENT_DEAL_STAGE_CHANGED,
    EVENT_DEAL_STAGES_SEEDED, EVENT_DEAL_UPDATED,
    EVENT_TODO_CREATED, EVENT_TODO_DELETED, EVENT_TODO_UPDATED,
)
from crmkit.bus.views import (
    VIEW_CONTACTS, VIEW_DASHBOARD, VIEW_PIPELINE, VIEW_TODOS, contact_view, invalidate,
)
from crmkit.config import config
from crmkit.db.connection import get_db_cursor
from crmkit.engine.queries import ACTIVITY_SELECT, DEAL_SELECT
from crmkit.errors import CRMError, NotFoundError, ValidationError
from crmkit.models import (
    ACTIVITY_TYPES, DEFAULT_ACTIVITY_TYPE, ActionResult, Activity, Contact, Deal, DealStage, Todo,
)

logger = logging.getLogger(__name__)

# Allowlists for dynamic UPDATE queries - column names never come from user input directly
_CONTACT_COLUMNS = {'name', 'email', 'phone', 'company', 'notes'}
_DEAL_COLUMNS = {'title', 'description', 'value', 'stage_id', 'contact_id'}

# Tables whose ownership can be checked before linking to them
_OWNED_TABLES = {'contacts': 'contact', 'deals': 'deal', 'deal_stages': 'deal stage'}


def gateway(func):
    """Convert any CRMError raised by a mutation into a failed ActionResult."""
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except CRMError as exc:
            logger.warning(f"{func.__name__} rejected | {type(exc).__name__}: {exc}")
            return ActionResult.fail(str(exc))
    return wrapper


# =============================================================================
# INPUT HELPERS
# =============================================================================

def _validate_columns(updates: Mapping[str, Any], allowed: set, entity: str) -> None:
    """Raise ValidationError if any key in updates is not an allowed column name."""
    invalid = set(updates.keys()) - allowed
    if invalid:
        raise ValidationError(f"Invalid {entity} fields: {sorted(invalid)}")


def _clean(value: Any) -> Optional[str]:
    """Trim text; blank becomes None."""
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _required(data: Mapping[str, Any], key: str, label: str) -> str:
    value = _clean(data.get(key))
    if not value:
        raise ValidationError(f"{label} is required")
    return value


def _deal_value(value: Any) -> Optional[Decimal]:
    if value is None or (isinstance(value, str) and not value.strip()):
        return None
    try:
        number = Decimal(str(value).strip())
    except InvalidOperation:
        raise ValidationError(f"Value must be a number, got {value!r}")
    if not number.is_finite():
        raise ValidationError(f"Value must be a number, got {value!r}")
    return number


def _activity_type(value: Any) -> str:
    activity_type = _clean(value) or DEFAULT_ACTIVITY_TYPE
    if activity_type not in ACTIVITY_TYPES:
        raise ValidationError(f"Invalid activity type: {activity_type}")
    return activity_type


def _require_owned(cur, table: str, record_id: str, user_id: str) -> None:
    """NotFoundError unless `record_id` exists in `table` and belongs to `user_id`."""
    entity = _OWNED_TABLES[table]
    cur.execute(f"SELECT 1 FROM {table} WHERE id = %s AND user_id = %s", (record_id, user_id))
    if cur.fetchone() is None:
        raise NotFoundError(f"{entity} {record_id} not found")


def _set_clause(updates: Mapping[str, Any]) -> str:
    # keys are validated against an allowlist before reaching here
    return ', '.join(f"{key} = %({key})s" for key in updates.keys())


def _fetch_deal(cur, deal_id: str, user_id: str) -> Deal:
    cur.execute(f"""
        {DEAL_SELECT}
        WHERE d.id = %s AND d.user_id = %s
    """, (deal_id, user_id))
    return Deal(**cur.fetchone())


def _fetch_activity(cur, activity_id: str, user_id: str) -> Activity:
    cur.execute(f"""
        {ACTIVITY_SELECT}
        WHERE a.id = %s AND a.user_id = %s
    """, (activity_id, user_id))
    return Activity(**cur.fetchone())


def _activity_views(contact_id: Optional[str], deal_id: Optional[str]) -> List[str]:
    views = [VIEW_DASHBOARD]
    if contact_id:
        views.append(contact_view(contact_id))
    if deal_id:
        views.append(VIEW_PIPELINE)
    return views


# =============================================================================
# CONTACTS
# =============================================================================

@gateway
def create_contact(data: Mapping[str, Any]) -> ActionResult:
    """
    Create a contact. Requires a non-blank name; other text fields are
    trimmed and stored as NULL when blank.
    """
    user_id = require_user()
    row = {
        'user_id': user_id,
        'name': _required(data, 'name', 'Name'),
        'email': _clean(data.get('email')),
        'phone': _clean(data.get('phone')),
        'company': _clean(data.get('company')),
        'notes': _clean(data.get('notes')),
    }

    with get_db_cursor() as cur:
        cur.execute("""
            INSERT INTO contacts (user_id, name, email, phone, company, notes)
            VALUES (%(user_id)s, %(name)s, %(email)s, %(phone)s, %(company)s, %(notes)s)
            RETURNING *
        """, row)
        contact = Contact(**cur.fetchone())

    logger.info(f"Created contact {contact.id}: {contact.name}")
    bus.emit(EVENT_CONTACT_CREATED, {'contact_id': contact.id, 'contact': contact})
    return ActionResult.ok(contact, invalidate(VIEW_DASHBOARD, VIEW_CONTACTS))


@gateway
def update_contact(contact_id: str, data: Mapping[str, Any]) -> ActionResult:
    """
    Update the given contact fields. Keys left out of `data` are unchanged;
    `name`, when present, must not be blank.
    """
    user_id = require_user()
    _validate_columns(data, _CONTACT_COLUMNS, 'contact')
    if not data:
        raise ValidationError("No contact fields to update")

    updates = {key: _clean(value) for key, value in data.items()}
    if 'name' in updates:
        updates['name'] = _required(data, 'name', 'Name')

    params = dict(updates, contact_id=contact_id, user_id=user_id)
    with get_db_cursor() as cur:
        cur.execute(f"""
            UPDATE contacts
            SET {_set_clause(updates)}, updated_at = NOW()
            WHERE id = %(contact_id)s AND user_id = %(user_id)s
            RETURNING *
        """, params)
        row = cur.fetchone()
        if row is None:
            raise NotFoundError(f"contact {contact_id} not found")
        contact = Contact(**row)

    logger.info(f"Updated contact {contact_id}: {sorted(updates)}")
    bus.emit(EVENT_CONTACT_UPDATED, {'contact_id': contact_id, 'updates': updates})
    return ActionResult.ok(contact, invalidate(VIEW_DASHBOARD, VIEW_CONTACTS, contact_view(contact_id)))


@gateway
def delete_contact(contact_id: str) -> ActionResult:
    """Delete a contact. Its activities go with it; its deals are kept, unlinked."""
    user_id = require_user()

    with get_db_cursor() as cur:
        cur.execute("""
            DELETE FROM contacts
            WHERE id = %s AND user_id = %s
            RETURNING id
        """, (contact_id, user_id))
        if cur.fetchone() is None:
            raise NotFoundError(f"contact {contact_id} not found")

    logger.info(f"Deleted contact {contact_id}")
    bus.emit(EVENT_CONTACT_DELETED, {'contact_id': contact_id})
    return ActionResult.ok(None, invalidate(VIEW_DASHBOARD, VIEW_CONTACTS))


# =============================================================================
# DEALS
# =============================================================================

@gateway
def create_deal(data: Mapping[str, Any]) -> ActionResult:
    """
    Create a deal in a stage. Requires a title and a stage_id; the stage and
    the optional contact must belong to the caller.
    """
    user_id = require_user()
    title = _required(data, 'title', 'Title')
    stage_id = _clean(data.get('stage_id'))
    if not stage_id:
        raise ValidationError("Stage is required")

    row = {
        'user_id': user_id,
        'title': title,
        'description': _clean(data.get('description')),
        'value': _deal_value(data.get('value')),
        'stage_id': stage_id,
        'contact_id': _clean(data.get('contact_id')),
    }

    with get_db_cursor() as cur:
        _require_owned(cur, 'deal_stages', stage_id, user_id)
        if row['contact_id']:
            _require_owned(cur, 'contacts', row['contact_id'], user_id)
        cur.execute("""
            INSERT INTO deals (user_id, title, description, value, stage_id, contact_id)
            VALUES (%(user_id)s, %(title)s, %(description)s, %(value)s, %(stage_id)s, %(contact_id)s)
            RETURNING id
        """, row)
        deal = _fetch_deal(cur, cur.fetchone()['id'], user_id)

    logger.info(f"Created deal {deal.id}: {deal.title} (stage {stage_id})")
    bus.emit(EVENT_DEAL_CREATED, {'deal_id': deal.id, 'deal': deal})
    return ActionResult.ok(deal, invalidate(VIEW_DASHBOARD, VIEW_PIPELINE))


@gateway
def update_deal(deal_id: str, data: Mapping[str, Any]) -> ActionResult:
    """Update the given deal fields. Keys left out of `data` are unchanged."""
    user_id = require_user()
    _validate_columns(data, _DEAL_COLUMNS, 'deal')
    if not data:
        raise ValidationError("No deal fields to update")

    updates: Dict[str, Any] = {}
    if 'title' in data:
        updates['title'] = _required(data, 'title', 'Title')
    if 'description' in data:
        updates['description'] = _clean(data['description'])
    if 'value' in data:
        updates['value'] = _deal_value(data['value'])
    if 'stage_id' in data:
        updates['stage_id'] = _clean(data['stage_id'])
        if not updates['stage_id']:
            raise ValidationError("Stage is required")
    if 'contact_id' in data:
        updates['contact_id'] = _clean(data['contact_id'])

    params = dict(updates, deal_id=deal_id, user_id=user_id)
    with get_db_cursor() as cur:
        if updates.get('stage_id'):
            _require_owned(cur, 'deal_stages', updates['stage_id'], user_id)
        if updates.get('contact_id'):
            _require_owned(cur, 'contacts', updates['contact_id'], user_id)
        cur.execute(f"""
            UPDATE deals
            SET {_set_clause(updates)}, updated_at = NOW()
            WHERE id = %(deal_id)s AND user_id = %(user_id)s
            RETURNING id
        """, params)
        if cur.fetchone() is None:
            raise NotFoundError(f"deal {deal_id} not found")
        deal = _fetch_deal(cur, deal_id, user_id)

    logger.info(f"Updated deal {deal_id}: {sorted(updates)}")
    bus.emit(EVENT_DEAL_UPDATED, {'deal_id': deal_id, 'updates': updates})
    return ActionResult.ok(deal, invalidate(VIEW_DASHBOARD, VIEW_PIPELINE))


@gateway
def update_deal_stage(deal_id: str, stage_id: str) -> ActionResult:
    """Move a deal to another stage. Used by the pipeline board on drop."""
    user_id = require_user()
    stage_id = _clean(stage_id)
    if not stage_id:
        raise ValidationError("Stage is required")

    with get_db_cursor() as cur:
        _require_owned(cur, 'deal_stages', stage_id, user_id)
        cur.execute("""
            UPDATE deals
            SET stage_id = %s, updated_at = NOW()
            WHERE id = %s AND user_id = %s
            RETURNING id
        """, (stage_id, deal_id, user_id))
        if cur.fetchone() is None:
            raise NotFoundError(f"deal {deal_id} not found")
        deal = _fetch_deal(cur, deal_id, user_id)

    logger.info(f"Moved deal {deal_id} to stage {stage_id}")
    bus.emit(EVENT_DEAL_STAGE_CHANGED, {'deal_id': deal_id, 'stage_id': stage_id})
    return ActionResult.ok(deal, invalidate(VIEW_DASHBOARD, VIEW_PIPELINE))


@gateway
def delete_deal(deal_id: str) -> ActionResult:
    """Delete a deal together with its activities."""
    user_id = require_user()

    with get_db_cursor() as cur:
        cur.execute("""
            DELETE FROM deals
            WHERE id = %s AND user_id = %s
            RETURNING id
        """, (deal_id, user_id))
        if cur.fetchone() is None:
            raise NotFoundError(f"deal {deal_id} not found")

    logger.info(f"Deleted deal {deal_id}")
    bus.emit(EVENT_DEAL_DELETED, {'deal_id': deal_id})
    return ActionResult.ok(None, invalidate(VIEW_DASHBOARD, VIEW_PIPELINE))


@gateway
def seed_deal_stages(names: Optional[Iterable[str]] = None) -> ActionResult:
    """
    Give the caller their pipeline columns (DEFAULT_DEAL_STAGES unless
    `names` is given), with order_index 1..n. Does nothing when the caller
    already has stages.
    """
    user_id = require_user()
    if names is None:
        names = config.DEFAULT_DEAL_STAGES
    names = [n for n in (_clean(n) for n in names) if n]
    if not names:
        raise ValidationError("At least one stage name is required")

    with get_db_cursor() as cur:
        cur.execute("SELECT COUNT(*) AS count FROM deal_stages WHERE user_id = %s", (user_id,))
        if cur.fetchone()['count']:
            logger.debug(f"seed_deal_stages: user {user_id} already has stages")
            return ActionResult.ok([])

        stages = []
        for order_index, name in enumerate(names, start=1):
            cur.execute("""
                INSERT INTO deal_stages (user_id, name, order_index)
                VALUES (%s, %s, %s)
                RETURNING *
            """, (user_id, name, order_index))
            stages.append(DealStage(**cur.fetchone()))

    logger.info(f"Seeded {len(stages)} deal stages for user {user_id}")
    bus.emit(EVENT_DEAL_STAGES_SEEDED, {'stages': stages})
    return ActionResult.ok(stages, invalidate(VIEW_DASHBOARD, VIEW_PIPELINE))


# =============================================================================
# ACTIVITIES
# =============================================================================

@gateway
def create_activity(data: Mapping[str, Any]) -> ActionResult:
    """
    Log an activity. Requires content and a link to a contact, a deal or
    both. Type defaults to 'note'.
    """
    user_id = require_user()
    content = _required(data, 'content', 'Content')
    contact_id = _clean(data.get('contact_id'))
    deal_id = _clean(data.get('deal_id'))
    if not contact_id and not deal_id:
        raise ValidationError("Activity must be linked to either a contact or a deal")

    row = {
        'user_id': user_id,
        'content': content,
        'type': _activity_type(data.get('type')),
        'contact_id': contact_id,
        'deal_id': deal_id,
    }

    with get_db_cursor() as cur:
        if contact_id:
            _require_owned(cur, 'contacts', contact_id, user_id)
        if deal_id:
            _require_owned(cur, 'deals', deal_id, user_id)
        cur.execute("""
            INSERT INTO activities (user_id, content, type, contact_id, deal_id)
            VALUES (%(user_id)s, %(content)s, %(type)s, %(contact_id)s, %(deal_id)s)
            RETURNING id
        """, row)
        activity = _fetch_activity(cur, cur.fetchone()['id'], user_id)

    logger.info(f"Logged {activity.type} activity {activity.id} (contact={contact_id}, deal={deal_id})")
    bus.emit(EVENT_ACTIVITY_CREATED, {'activity_id': activity.id, 'activity': activity})
    return ActionResult.ok(activity, invalidate(*_activity_views(contact_id, deal_id)))


@gateway
def update_activity(activity_id: str, data: Mapping[str, Any]) -> ActionResult:
    """Rewrite an activity's content and type. Links cannot be changed."""
    user_id = require_user()
    content = _required(data, 'content', 'Content')
    activity_type = _activity_type(data.get('type'))

    with get_db_cursor() as cur:
        cur.execute("""
            UPDATE activities
            SET content = %s, type = %s
            WHERE id = %s AND user_id = %s
            RETURNING id
        """, (content, activity_type, activity_id, user_id))
        if cur.fetchone() is None:
            raise NotFoundError(f"activity {activity_id} not found")
        activity = _fetch_activity(cur, activity_id, user_id)

    logger.info(f"Updated activity {activity_id}")
    bus.emit(EVENT_ACTIVITY_UPDATED, {'activity_id': activity_id, 'activity': activity})
    return ActionResult.ok(activity, invalidate(*_activity_views(activity.contact_id, activity.deal_id)))


@gateway
def delete_activity(activity_id: str) -> ActionResult:
    user_id = require_user()

    with get_db_cursor() as cur:
        cur.execute("""
            DELETE FROM activities
            WHERE id = %s AND user_id = %s
            RETURNING contact_id, deal_id
        """, (activity_id, user_id))
        row = cur.fetchone()
        if row is None:
            raise NotFoundError(f"activity {activity_id} not found")

    logger.info(f"Deleted activity {activity_id}")
    bus.emit(EVENT_ACTIVITY_DELETED, {'activity_id': activity_id})
    return ActionResult.ok(None, invalidate(*_activity_views(row['contact_id'], row['deal_id'])))


# =============================================================================
# TODOS
# =============================================================================

_TODO_VIEWS = (VIEW_DASHBOARD, VIEW_TODOS)


@gateway
def create_todo(data: Mapping[str, Any]) -> ActionResult:
    user_id = require_user()
    title = _required(data, 'title', 'Title')

    with get_db_cursor() as cur:
        cur.execute("""
            INSERT INTO todos (user_id, title)
            VALUES (%s, %s)
            RETURNING *
        """, (user_id, title))
        todo = Todo(**cur.fetchone())

    logger.info(f"Created todo {todo.id}: {todo.title}")
    bus.emit(EVENT_TODO_CREATED, {'todo_id': todo.id, 'todo': todo})
    return ActionResult.ok(todo, invalidate(*_TODO_VIEWS))


def _update_todo_row(todo_id: str, user_id: str, column: str, value: Any) -> Todo:
    # column is one of the two literal names passed below
    with get_db_cursor() as cur:
        cur.execute(f"""
            UPDATE todos
            SET {column} = %s
            WHERE id = %s AND user_id = %s
            RETURNING *
        """, (value, todo_id, user_id))
        row = cur.fetchone()
        if row is None:
            raise NotFoundError(f"todo {todo_id} not found")
    return Todo(**row)


@gateway
def toggle_todo(todo_id: str, completed: bool) -> ActionResult:
    """Set the completed flag."""
    user_id = require_user()
    todo = _update_todo_row(todo_id, user_id, 'completed', bool(completed))

    logger.info(f"Todo {todo_id} completed={todo.completed}")
    bus.emit(EVENT_TODO_UPDATED, {'todo_id': todo_id, 'updates': {'completed': todo.completed}})
    return ActionResult.ok(todo, invalidate(*_TODO_VIEWS))


@gateway
def update_todo(todo_id: str, data: Mapping[str, Any]) -> ActionResult:
    user_id = require_user()
    title = _required(data, 'title', 'Title')
    todo = _update_todo_row(todo_id, user_id, 'title', title)

    logger.info(f"Renamed todo {todo_id}")
    bus.emit(EVENT_TODO_UPDATED, {'todo_id': todo_id, 'updates': {'title': title}})
    return ActionResult.ok(todo, invalidate(*_TODO_VIEWS))


@gateway
def delete_todo(todo_id: str) -> ActionResult:
    user_id = require_user()

    with get_db_cursor() as cur:
        cur.execute("""
            DELETE FROM todos
            WHERE id = %s AND user_id = %s
            RETURNING id
        """, (todo_id, user_id))
        if cur.fetchone() is None:
            raise NotFoundError(f"todo {todo_id} not found")

    logger.info(f"Deleted todo {todo_id}")
    bus.emit(EVENT_TODO_DELETED, {'todo_id': todo_id})
    return ActionResult.ok(None, invalidate(*_TODO_VIEWS))
