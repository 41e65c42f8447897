"""
Unit tests for the Query Layer (crmkit/engine/queries.py).

Strategy: patch crmkit.engine.queries.get_db_cursor with a contextmanager that
yields a MagicMock cursor. Rows are plain dicts, as RealDictCursor returns
them (json columns already decoded). Every test runs signed in as USER unless
it opts out with signed_in_as(None).
"""

import pytest
from contextlib import contextmanager
from datetime import datetime
from decimal import Decimal
from unittest.mock import MagicMock, patch

from crmkit.auth import signed_in_as
from crmkit.engine import queries
from crmkit.engine.queries import group_deals_by_stage
from crmkit.errors import NotFoundError, StoreError
from crmkit.models import Activity, Contact, Deal, DealStage, PipelineSnapshot, Todo

USER = 'user-1'

STAGE_ROWS = [
    {'id': 's-1', 'user_id': USER, 'name': 'Lead', 'order_index': 1, 'created_at': None, 'updated_at': None},
    {'id': 's-2', 'user_id': USER, 'name': 'In Progress', 'order_index': 2, 'created_at': None, 'updated_at': None},
    {'id': 's-3', 'user_id': USER, 'name': 'Won', 'order_index': 3, 'created_at': None, 'updated_at': None},
]

CONTACT_ROW = {
    'id': 'c-1', 'user_id': USER, 'name': 'Ada Lovelace', 'email': 'ada@example.com',
    'phone': None, 'company': 'Analytical Engines', 'notes': None,
    'created_at': datetime(2026, 3, 1), 'updated_at': datetime(2026, 3, 1),
}


def _deal_row(deal_id, stage_id, value=None, contact=None):
    stage = next(s for s in STAGE_ROWS if s['id'] == stage_id)
    return {
        'id': deal_id, 'user_id': USER, 'title': f'Deal {deal_id}', 'description': None,
        'value': value, 'stage_id': stage_id, 'contact_id': (contact or {}).get('id'),
        'created_at': None, 'updated_at': None, 'contact': contact,
        'stage': {'id': stage['id'], 'name': stage['name'], 'order_index': stage['order_index']},
    }


ACTIVITY_ROW = {
    'id': 'a-1', 'user_id': USER, 'content': 'Intro call', 'type': 'call',
    'contact_id': 'c-1', 'deal_id': None, 'created_at': datetime(2026, 3, 2),
    'contact': {'id': 'c-1', 'name': 'Ada Lovelace', 'email': 'ada@example.com'}, 'deal': None,
}

TODO_ROW = {'id': 't-1', 'user_id': USER, 'title': 'Send proposal', 'completed': False, 'created_at': None}


@contextmanager
def cursor_patch(fetchone=None, fetchall=None, fetchall_side_effect=None):
    cur = MagicMock()
    cur.fetchone.return_value = fetchone
    if fetchall_side_effect is not None:
        cur.fetchall.side_effect = fetchall_side_effect
    else:
        cur.fetchall.return_value = fetchall if fetchall is not None else []

    @contextmanager
    def fake_cursor(dict_cursor=True):
        yield cur

    with patch('crmkit.engine.queries.get_db_cursor', fake_cursor):
        yield cur


def _sql_and_params(cur, call_index=-1):
    args = cur.execute.call_args_list[call_index][0]
    return args[0], args[1]


@pytest.fixture(autouse=True)
def signed_in():
    with signed_in_as(USER):
        yield


# ---------------------------------------------------------------------------
# Unauthenticated reads
# ---------------------------------------------------------------------------

class TestUnauthenticated:

    @pytest.mark.parametrize('call, expected', [
        (lambda: queries.get_contacts(), []),
        (lambda: queries.get_contacts_count(), 0),
        (lambda: queries.get_companies(), []),
        (lambda: queries.get_contact_by_id('c-1'), None),
        (lambda: queries.get_deals(), []),
        (lambda: queries.get_deal_by_id('d-1'), None),
        (lambda: queries.get_deal_stages(), []),
        (lambda: queries.get_deals_by_stage(), []),
        (lambda: queries.get_deals_count_by_stage(), []),
        (lambda: queries.get_deal_value_by_stage(), []),
        (lambda: queries.get_activities(), []),
        (lambda: queries.get_activity_by_id('a-1'), None),
        (lambda: queries.get_recent_activities(), []),
        (lambda: queries.get_activity_count_by_type(), {}),
        (lambda: queries.get_todos(), []),
        (lambda: queries.get_todos_count(), 0),
        (lambda: queries.get_todo_by_id('t-1'), None),
    ])
    def test_empty_result_without_touching_store(self, call, expected):
        with cursor_patch() as cur, signed_in_as(None):
            assert call() == expected
        cur.execute.assert_not_called()

    def test_pipeline_data_is_empty_snapshot(self):
        with cursor_patch() as cur, signed_in_as(None):
            snapshot = queries.get_pipeline_data()
        assert snapshot == PipelineSnapshot()
        cur.execute.assert_not_called()


# ---------------------------------------------------------------------------
# Contacts
# ---------------------------------------------------------------------------

class TestGetContacts:

    def test_returns_contacts_scoped_to_owner(self):
        with cursor_patch(fetchall=[dict(CONTACT_ROW, deals=[])]) as cur:
            results = queries.get_contacts()
        assert results == [Contact(**CONTACT_ROW)]
        sql, params = _sql_and_params(cur)
        assert params == {'user_id': USER}
        assert 'ORDER BY c.created_at DESC' in sql
        assert 'LIMIT' not in sql

    def test_search_matches_name_email_company(self):
        with cursor_patch() as cur:
            queries.get_contacts(search='ada')
        sql, params = _sql_and_params(cur)
        assert params['search'] == '%ada%'
        assert 'c.name ILIKE %(search)s' in sql
        assert 'c.email ILIKE %(search)s' in sql
        assert 'c.company ILIKE %(search)s' in sql

    def test_search_wildcards_match_literally(self):
        with cursor_patch() as cur:
            queries.get_contacts(search='50%_off\\')
        sql, params = _sql_and_params(cur)
        assert params['search'] == '%50\\%\\_off\\\\%'
        assert sql.count("ESCAPE '\\'") == 3

    def test_company_filter_is_exact(self):
        with cursor_patch() as cur:
            queries.get_contacts(company='Analytical Engines')
        sql, params = _sql_and_params(cur)
        assert 'c.company = %(company)s' in sql
        assert params['company'] == 'Analytical Engines'

    def test_limit_only(self):
        with cursor_patch() as cur:
            queries.get_contacts(limit=5)
        sql, params = _sql_and_params(cur)
        assert 'LIMIT %(limit)s' in sql
        assert 'OFFSET' not in sql
        assert params['limit'] == 5

    def test_offset_without_limit_uses_page_size(self):
        with cursor_patch() as cur:
            queries.get_contacts(offset=20)
        sql, params = _sql_and_params(cur)
        assert 'LIMIT %(limit)s OFFSET %(offset)s' in sql
        assert params['limit'] == queries.config.DEFAULT_PAGE_SIZE
        assert params['offset'] == 20

    def test_store_error_propagates(self):
        with cursor_patch() as cur:
            cur.execute.side_effect = StoreError('relation "contacts" does not exist')
            with pytest.raises(StoreError, match='does not exist'):
                queries.get_contacts()


class TestGetContactById:

    def test_returns_contact_with_deals_and_activities(self):
        row = dict(CONTACT_ROW, deals=[{'id': 'd-1', 'title': 'Retainer', 'stage': {'name': 'Lead'}}],
                   activities=[{'id': 'a-1', 'type': 'call', 'content': 'Intro', 'deal': None}])
        with cursor_patch(fetchone=row) as cur:
            contact = queries.get_contact_by_id('c-1')
        assert contact.name == 'Ada Lovelace'
        assert contact.deals[0]['stage']['name'] == 'Lead'
        assert contact.activities[0]['type'] == 'call'
        _, params = _sql_and_params(cur)
        assert params == {'contact_id': 'c-1', 'user_id': USER}

    def test_missing_contact_raises_not_found(self):
        with cursor_patch(fetchone=None):
            with pytest.raises(NotFoundError, match='contact c-9 not found'):
                queries.get_contact_by_id('c-9')


class TestContactAggregates:

    def test_count_honours_filters(self):
        with cursor_patch(fetchone={'count': 7}) as cur:
            assert queries.get_contacts_count(search='ada') == 7
        sql, params = _sql_and_params(cur)
        assert 'COUNT(*)' in sql
        assert params['search'] == '%ada%'

    def test_companies_are_plain_strings(self):
        with cursor_patch(fetchall=[{'company': 'Acme'}, {'company': 'Globex'}]):
            assert queries.get_companies() == ['Acme', 'Globex']


# ---------------------------------------------------------------------------
# Deals and stages
# ---------------------------------------------------------------------------

class TestGetDeals:

    def test_filters_and_joined_summaries(self):
        contact = {'id': 'c-1', 'name': 'Ada Lovelace', 'email': 'ada@example.com', 'company': None}
        with cursor_patch(fetchall=[_deal_row('d-1', 's-1', Decimal('500'), contact)]) as cur:
            deals = queries.get_deals(stage_id='s-1', contact_id='c-1', search='site')
        assert deals[0].contact['name'] == 'Ada Lovelace'
        assert deals[0].stage == {'id': 's-1', 'name': 'Lead', 'order_index': 1}
        sql, params = _sql_and_params(cur)
        assert params == {'user_id': USER, 'stage_id': 's-1', 'contact_id': 'c-1', 'search': '%site%'}
        assert 'd.title ILIKE %(search)s' in sql

    def test_search_escapes_underscore(self):
        with cursor_patch() as cur:
            queries.get_deals(search='v_2')
        sql, params = _sql_and_params(cur)
        assert params['search'] == '%v\\_2%'
        assert "d.description ILIKE %(search)s ESCAPE '\\'" in sql

    def test_deal_without_contact(self):
        with cursor_patch(fetchall=[_deal_row('d-1', 's-1')]):
            deals = queries.get_deals()
        assert deals[0].contact is None


class TestGetDealById:

    def test_returns_deal(self):
        row = dict(_deal_row('d-1', 's-2', Decimal('1200')), activities=[])
        with cursor_patch(fetchone=row):
            deal = queries.get_deal_by_id('d-1')
        assert deal.value == Decimal('1200')
        assert deal.stage['name'] == 'In Progress'

    def test_missing_deal_raises_not_found(self):
        with cursor_patch(fetchone=None):
            with pytest.raises(NotFoundError, match='deal d-9 not found'):
                queries.get_deal_by_id('d-9')


class TestStages:

    def test_stages_in_order(self):
        with cursor_patch(fetchall=STAGE_ROWS) as cur:
            stages = queries.get_deal_stages()
        assert [s.name for s in stages] == ['Lead', 'In Progress', 'Won']
        sql, _ = _sql_and_params(cur)
        assert 'ORDER BY order_index ASC' in sql

    def test_deals_by_stage_includes_empty_stages(self):
        deals = [_deal_row('d-1', 's-1'), _deal_row('d-2', 's-3'), _deal_row('d-3', 's-1')]
        with cursor_patch(fetchall_side_effect=[STAGE_ROWS, deals]):
            groups = queries.get_deals_by_stage()
        assert [g.stage.id for g in groups] == ['s-1', 's-2', 's-3']
        assert [d.id for d in groups[0].deals] == ['d-1', 'd-3']
        assert groups[1].deals == []
        assert [d.id for d in groups[2].deals] == ['d-2']

    def test_count_by_stage(self):
        rows = [{'stage_name': 'Lead', 'count': 2}, {'stage_name': 'Won', 'count': 0}]
        with cursor_patch(fetchall=rows):
            assert queries.get_deals_count_by_stage() == rows

    def test_value_by_stage(self):
        rows = [{'stage_name': 'Lead', 'total_value': Decimal('1500')},
                {'stage_name': 'Won', 'total_value': Decimal('0')}]
        with cursor_patch(fetchall=rows) as cur:
            assert queries.get_deal_value_by_stage() == rows
        sql, _ = _sql_and_params(cur)
        assert 'd.value IS NOT NULL' in sql


class TestPipelineData:

    def test_snapshot_groups_and_contacts(self):
        deals = [_deal_row('d-1', 's-2', Decimal('100'))]
        with cursor_patch(fetchall_side_effect=[STAGE_ROWS, deals, [CONTACT_ROW]]) as cur:
            snapshot = queries.get_pipeline_data()
        assert [s.id for s in snapshot.stages] == ['s-1', 's-2', 's-3']
        assert [len(g.deals) for g in snapshot.deals_by_stage] == [0, 1, 0]
        assert snapshot.contacts == [Contact(**CONTACT_ROW)]
        assert cur.execute.call_count == 3


class TestGroupDealsByStage:

    def test_orphan_deals_dropped(self):
        stages = [DealStage(id='s-1', name='Lead')]
        deals = [Deal(id='d-1', stage_id='s-1'), Deal(id='d-2', stage_id='gone')]
        groups = group_deals_by_stage(stages, deals)
        assert [d.id for d in groups[0].deals] == ['d-1']

    def test_no_stages_no_groups(self):
        assert group_deals_by_stage([], [Deal(id='d-1', stage_id='s-1')]) == []


# ---------------------------------------------------------------------------
# Activities
# ---------------------------------------------------------------------------

class TestActivities:

    def test_filters(self):
        with cursor_patch(fetchall=[ACTIVITY_ROW]) as cur:
            results = queries.get_activities(contact_id='c-1', type='call')
        assert results == [Activity(**ACTIVITY_ROW)]
        _, params = _sql_and_params(cur)
        assert params == {'user_id': USER, 'contact_id': 'c-1', 'type': 'call'}

    def test_recent_uses_configured_limit(self):
        with cursor_patch() as cur:
            queries.get_recent_activities()
        _, params = _sql_and_params(cur)
        assert params['limit'] == queries.config.RECENT_ACTIVITY_LIMIT

    def test_contact_activities_use_detail_limit(self):
        with cursor_patch() as cur:
            queries.get_contact_activities('c-1')
        _, params = _sql_and_params(cur)
        assert params['contact_id'] == 'c-1'
        assert params['limit'] == queries.config.DETAIL_ACTIVITY_LIMIT

    def test_deal_activities_explicit_limit(self):
        with cursor_patch() as cur:
            queries.get_deal_activities('d-1', limit=3)
        _, params = _sql_and_params(cur)
        assert params['deal_id'] == 'd-1'
        assert params['limit'] == 3

    def test_activity_by_id_missing(self):
        with cursor_patch(fetchone=None):
            with pytest.raises(NotFoundError, match='activity a-9 not found'):
                queries.get_activity_by_id('a-9')

    def test_count_by_type(self):
        rows = [{'type': 'call', 'count': 3}, {'type': 'note', 'count': 1}]
        with cursor_patch(fetchall=rows):
            assert queries.get_activity_count_by_type() == {'call': 3, 'note': 1}


# ---------------------------------------------------------------------------
# Todos
# ---------------------------------------------------------------------------

class TestTodos:

    def test_list_newest_first(self):
        with cursor_patch(fetchall=[TODO_ROW]) as cur:
            assert queries.get_todos() == [Todo(**TODO_ROW)]
        sql, params = _sql_and_params(cur)
        assert 'ORDER BY created_at DESC' in sql
        assert params == {'user_id': USER}

    def test_completed_filter_and_limit(self):
        with cursor_patch() as cur:
            queries.get_todos(limit=5, completed=False)
        _, params = _sql_and_params(cur)
        assert params == {'user_id': USER, 'completed': False, 'limit': 5}

    def test_count(self):
        with cursor_patch(fetchone={'count': 4}):
            assert queries.get_todos_count() == 4

    def test_by_id_missing(self):
        with cursor_patch(fetchone=None):
            with pytest.raises(NotFoundError, match='todo t-9 not found'):
                queries.get_todo_by_id('t-9')
