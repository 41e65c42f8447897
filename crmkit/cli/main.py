#!/usr/bin/env python3
"""
crmkit Terminal CLI
Command-line front end for todos, contacts, deals, the pipeline board and
the activity log.
"""

import logging
import re
import click
from typing import Optional

from crmkit.auth import signed_in_as
from crmkit.db.schema import apply_schema
from crmkit.engine import actions, queries
from crmkit.engine.pipeline import MOVE_ROLLED_BACK, Notification, PipelineBoard
from crmkit.errors import StoreError
from crmkit.logging_config import configure_logging, log_call
from crmkit.models import ACTIVITY_TYPES, ActionResult

_EMAIL_RE = re.compile(r'^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$')


# =============================================================================
# HELPERS
# =============================================================================

def _date(value) -> str:
    """YYYY-MM-DD for datetimes and for ISO strings from joined JSON."""
    return str(value)[:10] if value else ''


def _money(value) -> str:
    return f"${value or 0:,.0f}"


def _report(result: ActionResult, message: str) -> None:
    """Echo a gateway result; failures go to stderr with exit code 1."""
    if result.success:
        click.echo(message)
        return
    logging.getLogger("crmkit").warning(f"cli | gateway error: {result.error}")
    click.echo(f"Error: {result.error}", err=True)
    click.get_current_context().exit(1)


def _store_failure(exc: StoreError) -> None:
    logging.getLogger("crmkit").warning(f"cli | {type(exc).__name__}: {exc}")
    click.echo(f"Error: {exc}", err=True)
    click.get_current_context().exit(1)


def _echo_notification(notification: Notification) -> None:
    mark = '✓' if notification.level == 'success' else '✗'
    click.echo(f"{mark} {notification.title}: {notification.message}", err=notification.level != 'success')


@log_call
def _prompt_email() -> Optional[str]:
    """Prompt for an email address, re-prompting on bad format. Returns None if left blank."""
    logger = logging.getLogger("crmkit")
    while True:
        raw = click.prompt("Email", default="", show_default=False) or None
        if raw is None:
            return None
        if _EMAIL_RE.match(raw.strip()):
            return raw.strip()
        logger.debug(f"_prompt_email | rejected input={raw!r}")
        click.echo("  Invalid email address - please try again or press Enter to skip.", err=True)


@click.group()
@click.option('--user', 'user_id', help='Owner identity to act as (defaults to CRM_USER_ID)')
@click.option('-v', '--verbose', is_flag=True, help='Echo log lines to stderr')
@click.pass_context
def cli(ctx, user_id, verbose):
    """crmkit - todos, contacts, deals and pipeline"""
    configure_logging(verbose=verbose)
    if user_id:
        ctx.with_resource(signed_in_as(user_id))


# =============================================================================
# DATABASE
# =============================================================================

@cli.group()
def db():
    """Database setup"""
    pass


@db.command('init')
@click.option('--no-stages', is_flag=True, help='Skip creating the default pipeline stages')
@log_call
def db_init(no_stages):
    """Create tables and the default pipeline stages"""
    try:
        apply_schema()
    except StoreError as e:
        _store_failure(e)
        return
    click.echo("✓ Schema applied")

    if no_stages:
        return

    result = actions.seed_deal_stages()
    if result.success and not result.record:
        click.echo("Deal stages already configured.")
        return
    names = ', '.join(s.name for s in result.record or [])
    _report(result, f"✓ Created deal stages: {names}")


# =============================================================================
# CONTACTS COMMANDS
# =============================================================================

@cli.group()
def contacts():
    """Manage contacts"""
    pass


@contacts.command('list')
@click.option('--search', help='Match name, email or company')
@click.option('--company', help='Filter by exact company')
@click.option('--limit', type=int, help='Max results')
@click.option('--offset', type=int, help='Skip this many results')
@log_call
def contacts_list(search, company, limit, offset):
    """List contacts, newest first"""
    try:
        results = queries.get_contacts(search=search, company=company, limit=limit, offset=offset)
        total = queries.get_contacts_count(search=search, company=company) if results else 0
    except StoreError as e:
        _store_failure(e)
        return

    if not results:
        click.echo("No contacts found.")
        return

    click.echo(f"\nShowing {len(results)} of {total} contacts:\n")
    click.echo(f"{'ID':<38} {'Name':<25} {'Company':<20} {'Deals':>5}")
    click.echo("-" * 92)

    for c in results:
        click.echo(
            f"{c.id:<38} {c.name[:23]:<25} "
            f"{(c.company or '')[:18]:<20} {len(c.deals):>5}"
        )


@contacts.command('companies')
@log_call
def contacts_companies():
    """List the companies your contacts work for"""
    try:
        companies = queries.get_companies()
    except StoreError as e:
        _store_failure(e)
        return
    if not companies:
        click.echo("No companies recorded.")
        return
    for name in companies:
        click.echo(name)


@contacts.command('show')
@click.argument('contact_id')
@log_call
def contacts_show(contact_id):
    """Show full contact details"""
    try:
        contact = queries.get_contact_by_id(contact_id)
    except StoreError as e:
        _store_failure(e)
        return

    if contact is None:
        click.echo("Not signed in.", err=True)
        return

    click.echo(f"\n{'='*80}")
    click.echo(f"CONTACT: {contact.name}")
    click.echo(f"{'='*80}")
    click.echo(f"ID:       {contact.id}")
    click.echo(f"Email:    {contact.email or '(not set)'}")
    click.echo(f"Phone:    {contact.phone or '(not set)'}")
    click.echo(f"Company:  {contact.company or '(not set)'}")
    click.echo(f"Created:  {contact.created_at}")
    click.echo(f"Updated:  {contact.updated_at}")

    if contact.notes:
        click.echo(f"\nNotes:\n{contact.notes}")

    click.echo(f"\n{'='*80}")
    click.echo("DEALS")
    click.echo(f"{'='*80}")
    if contact.deals:
        for d in contact.deals:
            stage = (d.get('stage') or {}).get('name', '?')
            click.echo(f"  {d['title']} [{stage}] {_money(d.get('value'))}")
    else:
        click.echo("No deals yet.")

    click.echo(f"\n{'='*80}")
    click.echo("ACTIVITY")
    click.echo(f"{'='*80}")
    if contact.activities:
        for a in contact.activities:
            deal = a.get('deal') or {}
            suffix = f" (deal: {deal['title']})" if deal.get('title') else ''
            click.echo(f"\n[{_date(a.get('created_at'))}] {a['type']}{suffix}")
            click.echo(f"  {a['content'][:100]}")
    else:
        click.echo("No activity yet.")

    click.echo()


@contacts.command('add')
@log_call
def contacts_add():
    """Add a new contact (interactive)"""
    click.echo("\n=== ADD NEW CONTACT ===\n")

    data = {
        'name': click.prompt("Name", type=str),
        'email': _prompt_email(),
        'phone': click.prompt("Phone", default="", show_default=False) or None,
        'company': click.prompt("Company", default="", show_default=False) or None,
        'notes': click.prompt("Notes", default="", show_default=False) or None,
    }

    result = actions.create_contact(data)
    contact = result.record
    _report(result, f"\n✓ Created contact {contact.id if contact else ''}: {data['name'].strip()}")


@contacts.command('edit')
@click.argument('contact_id')
@click.option('--name', help='Update name')
@click.option('--email', help='Update email')
@click.option('--phone', help='Update phone')
@click.option('--company', help='Update company')
@click.option('--notes', help='Update notes')
@log_call
def contacts_edit(contact_id, name, email, phone, company, notes):
    """Edit a contact (use options to set fields)"""
    fields = {'name': name, 'email': email, 'phone': phone, 'company': company, 'notes': notes}
    updates = {k: v for k, v in fields.items() if v is not None}

    if not updates:
        click.echo("No updates specified. Use --name, --email, --phone, --company or --notes", err=True)
        return

    result = actions.update_contact(contact_id, updates)
    _report(result, f"✓ Updated contact {contact_id}")


@contacts.command('delete')
@click.argument('contact_id')
@click.confirmation_option(prompt='Delete this contact and its activity log?')
@log_call
def contacts_delete(contact_id):
    """Delete a contact"""
    _report(actions.delete_contact(contact_id), f"✓ Deleted contact {contact_id}")


# =============================================================================
# DEALS COMMANDS
# =============================================================================

@cli.group()
def deals():
    """Manage deals"""
    pass


@deals.command('list')
@click.option('--stage', 'stage_id', help='Filter by stage ID')
@click.option('--contact', 'contact_id', help='Filter by contact ID')
@click.option('--search', help='Match title or description')
@click.option('--limit', type=int, help='Max results')
@log_call
def deals_list(stage_id, contact_id, search, limit):
    """List deals, newest first"""
    try:
        results = queries.get_deals(stage_id=stage_id, contact_id=contact_id, search=search, limit=limit)
    except StoreError as e:
        _store_failure(e)
        return

    if not results:
        click.echo("No deals found.")
        return

    click.echo(f"\nFound {len(results)} deals:\n")
    click.echo(f"{'ID':<38} {'Title':<25} {'Stage':<14} {'Value':>12}")
    click.echo("-" * 92)

    for d in results:
        stage = (d.stage or {}).get('name', '')
        click.echo(f"{d.id:<38} {d.title[:23]:<25} {stage[:12]:<14} {_money(d.value):>12}")


@deals.command('show')
@click.argument('deal_id')
@log_call
def deals_show(deal_id):
    """Show a deal with its contact and activity"""
    try:
        deal = queries.get_deal_by_id(deal_id)
    except StoreError as e:
        _store_failure(e)
        return

    if deal is None:
        click.echo("Not signed in.", err=True)
        return

    click.echo(f"\n{'='*80}")
    click.echo(f"DEAL: {deal.title}")
    click.echo(f"{'='*80}")
    click.echo(f"ID:       {deal.id}")
    click.echo(f"Stage:    {(deal.stage or {}).get('name', '?')}")
    click.echo(f"Value:    {_money(deal.value) if deal.value is not None else '(not set)'}")
    click.echo(f"Contact:  {(deal.contact or {}).get('name') or '(none)'}")
    if deal.description:
        click.echo(f"\n{deal.description}")

    if deal.activities:
        click.echo("\nActivity:")
        for a in deal.activities:
            click.echo(f"  [{_date(a.get('created_at'))}] {a['type']}: {a['content'][:80]}")
    click.echo()


@deals.command('add')
@log_call
def deals_add():
    """Add a new deal (interactive)"""
    try:
        stages = queries.get_deal_stages()
    except StoreError as e:
        _store_failure(e)
        return
    if not stages:
        click.echo("No deal stages configured. Run: crmkit db init", err=True)
        return

    click.echo("\n=== ADD NEW DEAL ===\n")
    for n, stage in enumerate(stages, start=1):
        click.echo(f"  {n}. {stage.name}")

    title = click.prompt("Title", type=str)
    choice = click.prompt("Stage", type=click.IntRange(1, len(stages)), default=1)
    value = click.prompt("Value", default="", show_default=False) or None
    contact_id = click.prompt("Contact ID", default="", show_default=False) or None
    description = click.prompt("Description", default="", show_default=False) or None

    result = actions.create_deal({
        'title': title,
        'stage_id': stages[choice - 1].id,
        'value': value,
        'contact_id': contact_id,
        'description': description,
    })
    deal = result.record
    _report(result, f"\n✓ Created deal {deal.id if deal else ''}: {title.strip()}")


@deals.command('edit')
@click.argument('deal_id')
@click.option('--title', help='Update title')
@click.option('--description', help='Update description')
@click.option('--value', help='Update value')
@click.option('--stage', 'stage_id', help='Move to stage ID')
@click.option('--contact', 'contact_id', help='Link to contact ID ("" to unlink)')
@log_call
def deals_edit(deal_id, title, description, value, stage_id, contact_id):
    """Edit a deal (use options to set fields)"""
    fields = {
        'title': title, 'description': description, 'value': value,
        'stage_id': stage_id, 'contact_id': contact_id,
    }
    updates = {k: v for k, v in fields.items() if v is not None}

    if not updates:
        click.echo("No updates specified. Use --title, --description, --value, --stage or --contact", err=True)
        return

    _report(actions.update_deal(deal_id, updates), f"✓ Updated deal {deal_id}")


@deals.command('delete')
@click.argument('deal_id')
@click.confirmation_option(prompt='Delete this deal and its activity log?')
@log_call
def deals_delete(deal_id):
    """Delete a deal"""
    _report(actions.delete_deal(deal_id), f"✓ Deleted deal {deal_id}")


# =============================================================================
# PIPELINE COMMANDS
# =============================================================================

@cli.group()
def pipeline():
    """Kanban view of deals by stage"""
    pass


def _print_board(board: PipelineBoard) -> None:
    if not board.groups:
        click.echo("No pipeline stages yet. Run: crmkit db init")
        return

    for group in board.groups:
        click.echo(f"\n{group.stage.name.upper()} ({len(group.deals)})")
        click.echo("-" * 60)
        for d in group.deals:
            contact = (d.contact or {}).get('name') or ''
            click.echo(f"  {d.id}  {d.title[:22]:<22} {_money(d.value):>10}  {contact[:15]}")

    click.echo(f"\n{'='*60}")
    click.echo(f"Total deals:        {board.total_deals}")
    click.echo(f"Pipeline value:     {_money(board.total_value)}")
    click.echo(f"Active stages:      {board.active_stages}")
    click.echo(f"Average deal size:  {_money(board.average_deal_size)}")


@pipeline.command('show')
@log_call
def pipeline_show():
    """Show every stage with its deals and pipeline metrics"""
    try:
        board = PipelineBoard(notify=_echo_notification).load()
    except StoreError as e:
        _store_failure(e)
        return
    _print_board(board)


@pipeline.command('move')
@click.argument('deal_id')
@click.argument('stage')
@log_call
def pipeline_move(deal_id, stage):
    """Move a deal to another stage (stage ID or name)"""
    try:
        board = PipelineBoard(notify=_echo_notification).load()
    except StoreError as e:
        _store_failure(e)
        return

    target = board.group_for(stage)
    if target is None:
        target = next((g for g in board.groups if g.stage.name.lower() == stage.lower()), None)
    if target is None:
        click.echo(f"No stage {stage!r}.", err=True)
        click.get_current_context().exit(1)
        return

    try:
        status = board.move_deal(deal_id, target.stage.id)
    except StoreError as e:
        _store_failure(e)
        return
    if status is None:
        click.echo("Nothing to move: unknown deal, or it is already in that stage.")
        return

    _print_board(board)
    if status == MOVE_ROLLED_BACK:
        click.get_current_context().exit(1)


# =============================================================================
# ACTIVITY COMMANDS
# =============================================================================

@cli.group()
def activities():
    """Activity log (notes, calls, emails, meetings, tasks)"""
    pass


@activities.command('list')
@click.option('--contact', 'contact_id', help='Filter by contact ID')
@click.option('--deal', 'deal_id', help='Filter by deal ID')
@click.option('--type', 'activity_type', type=click.Choice(ACTIVITY_TYPES), help='Filter by type')
@click.option('--limit', type=int, help='Max results')
@log_call
def activities_list(contact_id, deal_id, activity_type, limit):
    """List activity, newest first"""
    try:
        results = queries.get_activities(contact_id=contact_id, deal_id=deal_id, type=activity_type, limit=limit)
    except StoreError as e:
        _store_failure(e)
        return

    if not results:
        click.echo("No activity found.")
        return

    for a in results:
        about = ', '.join(filter(None, [(a.contact or {}).get('name'), (a.deal or {}).get('title')]))
        click.echo(f"\n[{_date(a.created_at)}] {a.type} - {about}  ({a.id})")
        click.echo(f"  {a.content[:100]}")
    click.echo()


@activities.command('log')
@click.option('--contact', 'contact_id', help='Contact ID')
@click.option('--deal', 'deal_id', help='Deal ID')
@click.option('--type', 'activity_type', type=click.Choice(ACTIVITY_TYPES), default='note', show_default=True)
@click.option('--content', help='What happened (prompted when omitted)')
@log_call
def activities_log(contact_id, deal_id, activity_type, content):
    """Log an activity against a contact and/or a deal"""
    if content is None:
        content = click.prompt("Content", type=str)

    result = actions.create_activity({
        'content': content,
        'type': activity_type,
        'contact_id': contact_id,
        'deal_id': deal_id,
    })
    activity = result.record
    _report(result, f"✓ Logged {activity_type} {activity.id if activity else ''}")


@activities.command('edit')
@click.argument('activity_id')
@click.option('--content', required=True, help='New content')
@click.option('--type', 'activity_type', type=click.Choice(ACTIVITY_TYPES), default='note', show_default=True)
@log_call
def activities_edit(activity_id, content, activity_type):
    """Rewrite an activity"""
    result = actions.update_activity(activity_id, {'content': content, 'type': activity_type})
    _report(result, f"✓ Updated activity {activity_id}")


@activities.command('delete')
@click.argument('activity_id')
@log_call
def activities_delete(activity_id):
    """Delete an activity"""
    _report(actions.delete_activity(activity_id), f"✓ Deleted activity {activity_id}")


@activities.command('stats')
@log_call
def activities_stats():
    """Count activity by type"""
    try:
        counts = queries.get_activity_count_by_type()
    except StoreError as e:
        _store_failure(e)
        return
    if not counts:
        click.echo("No activity yet.")
        return
    for activity_type in ACTIVITY_TYPES:
        click.echo(f"{activity_type:<10} {counts.get(activity_type, 0):>5}")


# =============================================================================
# TODO COMMANDS
# =============================================================================

@cli.group()
def todos():
    """Simple todo list"""
    pass


@todos.command('list')
@click.option('--done/--open', 'completed', default=None, help='Only completed / only open todos')
@click.option('--limit', type=int, help='Max results')
@log_call
def todos_list(completed, limit):
    """List todos, newest first"""
    try:
        results = queries.get_todos(limit=limit, completed=completed)
    except StoreError as e:
        _store_failure(e)
        return

    if not results:
        click.echo("No todos found.")
        return

    for t in results:
        mark = 'x' if t.completed else ' '
        click.echo(f"[{mark}] {t.title[:50]:<50} {t.id}")


@todos.command('add')
@click.argument('title')
@log_call
def todos_add(title):
    """Add a todo"""
    _report(actions.create_todo({'title': title}), f"✓ Added: {title.strip()}")


@todos.command('done')
@click.argument('todo_id')
@log_call
def todos_done(todo_id):
    """Mark a todo completed"""
    _report(actions.toggle_todo(todo_id, True), f"✓ Completed {todo_id}")


@todos.command('undo')
@click.argument('todo_id')
@log_call
def todos_undo(todo_id):
    """Mark a todo open again"""
    _report(actions.toggle_todo(todo_id, False), f"✓ Reopened {todo_id}")


@todos.command('edit')
@click.argument('todo_id')
@click.argument('title')
@log_call
def todos_edit(todo_id, title):
    """Rename a todo"""
    _report(actions.update_todo(todo_id, {'title': title}), f"✓ Updated {todo_id}")


@todos.command('delete')
@click.argument('todo_id')
@log_call
def todos_delete(todo_id):
    """Delete a todo"""
    _report(actions.delete_todo(todo_id), f"✓ Deleted {todo_id}")


# =============================================================================
# DASHBOARD
# =============================================================================

@cli.command('dashboard')
@log_call
def dashboard():
    """Overview: counts, pipeline by stage, recent activity and todos"""
    try:
        todo_count = queries.get_todos_count()
        contact_count = queries.get_contacts_count()
        counts = queries.get_deals_count_by_stage()
        values = queries.get_deal_value_by_stage()
        recent = queries.get_recent_activities()
        recent_todos = queries.get_todos(limit=5)
    except StoreError as e:
        _store_failure(e)
        return

    click.echo(f"\n{'='*60}")
    click.echo("DASHBOARD")
    click.echo(f"{'='*60}")
    click.echo(f"Contacts: {contact_count}    Todos: {todo_count}")

    if counts:
        click.echo("\nPipeline:")
        value_by_stage = {v['stage_name']: v['total_value'] for v in values}
        for row in counts:
            name = row['stage_name']
            click.echo(f"  {name[:18]:<20} {row['count']:>4} deals  {_money(value_by_stage.get(name)):>12}")

    click.echo("\nRecent activity:")
    if recent:
        for a in recent:
            click.echo(f"  [{_date(a.created_at)}] {a.type}: {a.content[:60]}")
    else:
        click.echo("  (none)")

    click.echo("\nRecent todos:")
    if recent_todos:
        for t in recent_todos:
            click.echo(f"  [{'x' if t.completed else ' '}] {t.title[:60]}")
    else:
        click.echo("  (none)")
    click.echo()


# =============================================================================
# MAIN
# =============================================================================

if __name__ == '__main__':
    cli()
