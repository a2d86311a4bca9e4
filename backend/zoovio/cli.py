# Overview: Flask CLI command groups for bootstrap, inspection, and reconciliation.

# backend/zoovio/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap/repair:
# - python -m flask system init-db
#   Create all tables that do not exist yet.
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
#
# Users:
# - python -m flask users create --email jane@example.com --full-name "Jane Doe" --password "secret1"
#   Create a shopper account (prompts if options are omitted).
# - python -m flask users list
#
# Orders:
# - python -m flask orders show <order-id-or-number>
#   Print an order with its payments and audit trail.
# - python -m flask orders reconcile <order-id-or-number>
#   Fetch the checkout session from the processor and apply it, exactly as
#   the verification endpoint would.

import click
from flask.cli import with_appcontext

from .extensions import db
from .errors import ZoovioError
from .models import AuditEntry, Order, User
from .services.auth_service import create_user
from .services import checkout_service
from .services.audit_service import ACTOR_SYSTEM
from .services.processor_adapter import get_processor


@click.group('system')
def system_group():
    """System bootstrap and repair commands."""


@system_group.command('init-db')
@with_appcontext
def init_db():
    """Create missing tables (use `flask db upgrade` for migrations)."""
    db.create_all()
    click.echo("OK  Tables created")


@system_group.command('reset-db')
@click.option('--yes', is_flag=True, help='Skip confirmation')
@with_appcontext
def reset_db(yes):
    """
    DANGER: Drop all tables and recreate schema.

    This will DELETE ALL DATA!
    """
    if not yes:
        click.confirm("WARN This will DELETE ALL DATA. Are you sure?", abort=True)

    click.echo("DELETE  Dropping all tables...")
    db.drop_all()

    click.echo("BUILD  Creating all tables...")
    db.create_all()

    click.echo("OK  Database reset complete")


@click.group('users')
def users_group():
    """User inspection and bootstrap commands."""


@users_group.command('create')
@click.option('--email', prompt=True, help='Email address')
@click.option('--full-name', prompt=True, help='Full name')
@click.option('--password', prompt=True, hide_input=True, confirmation_prompt=True, help='Password')
@with_appcontext
def create_user_cli(email, full_name, password):
    """Create a shopper account."""
    try:
        user = create_user(email, password, full_name)
    except ZoovioError as e:
        raise click.ClickException(e.message)
    click.echo(f"OK  Created user {user.id} <{user.email}>")


@users_group.command('list')
@with_appcontext
def list_users():
    users = db.session.query(User).order_by(User.id).all()
    if not users:
        click.echo("No users found")
        return
    for user in users:
        state = "active" if user.is_active else "inactive"
        click.echo(f"{user.id:>5}  {user.email:<40} {user.full_name:<30} {state}")


@click.group('orders')
def orders_group():
    """Order inspection and reconciliation commands."""


def _find_order(reference: str) -> Order:
    order = db.session.get(Order, reference)
    if order is None:
        order = db.session.query(Order).filter_by(order_number=reference).first()
    if order is None:
        raise click.ClickException(f"Order {reference} not found")
    return order


@orders_group.command('show')
@click.argument('reference')
@with_appcontext
def show_order(reference):
    """Print an order, its payments and its audit trail."""
    order = _find_order(reference)
    click.echo(f"Order {order.order_number} ({order.id})")
    click.echo(f"  user:     {order.user_id}")
    click.echo(f"  total:    {order.total_amount} {order.currency}")
    click.echo(f"  status:   {order.status} / {order.payment_status}")
    click.echo(f"  session:  {order.checkout_session_id or '-'}")

    for item in order.items:
        click.echo(f"  item:     {item.quantity} x {item.product_name} @ {item.unit_price}")

    for payment in order.payments:
        click.echo(f"  payment:  {payment.id} {payment.status} {payment.amount} {payment.currency}")

    entries = (
        db.session.query(AuditEntry)
        .filter_by(entity_type="order", entity_id=order.id)
        .order_by(AuditEntry.occurred_at, AuditEntry.id)
        .all()
    )
    for entry in entries:
        click.echo(f"  audit:    {entry.occurred_at} {entry.action} ({entry.actor_type})")


@orders_group.command('reconcile')
@click.argument('reference')
@with_appcontext
def reconcile_order(reference):
    """Apply the processor's current view of the order's checkout session."""
    order = _find_order(reference)
    if not order.checkout_session_id:
        raise click.ClickException(f"Order {order.order_number} has no checkout session")

    try:
        session = get_processor().retrieve_session(order.checkout_session_id)
        order = checkout_service.reconcile_session(
            order.id,
            session,
            source=checkout_service.SOURCE_MANUAL,
            actor_type=ACTOR_SYSTEM,
        )
    except ZoovioError as e:
        raise click.ClickException(e.message)

    click.echo(f"OK  {order.order_number}: {order.status} / {order.payment_status}")


def register_commands(app):
    app.cli.add_command(system_group)
    app.cli.add_command(users_group)
    app.cli.add_command(orders_group)
