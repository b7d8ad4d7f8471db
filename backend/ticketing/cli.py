# Overview: Flask CLI command groups for bootstrap, sessions and fulfillment maintenance.

# backend/ticketing/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to "ticketing" (PowerShell: $env:FLASK_APP="ticketing").
# - Use: python -m flask <group> <command> [options]
#
# System:
# - python -m flask system init-db
#   DEV only: create all tables (use migrations elsewhere).
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
#
# Users and sessions:
# - python -m flask users create --email ops@example.com --name "Ops" --staff
# - python -m flask users list
# - python -m flask sessions issue ops@example.com
#   Prints a bearer token for API calls.
# - python -m flask sessions revoke <token>
#
# Fulfillment:
# - python -m flask orders reissue 42
#   Re-run ticket issuance for a paid order (idempotent).
# - python -m flask transfers cancel-stale --older-than-hours 72
#   Cancel pending transfers older than the window.

import click
from datetime import timedelta
from flask.cli import with_appcontext

from .extensions import db
from .models import User
from .services import issuance_service, session_service, transfer_service, user_service
from .services.issuance_service import IssuanceFailed
from .services.order_service import OrderNotFound
from .services.user_service import UserError


@click.group('system')
def system_group():
    """Database bootstrap commands."""


@system_group.command('init-db')
@with_appcontext
def init_db():
    """Create all tables (DEV)."""
    db.create_all()
    click.echo("PASS Tables ensured with create_all()")


@system_group.command('reset-db')
@click.option('--yes', is_flag=True, help='Confirm destructive reset')
@with_appcontext
def reset_db(yes):
    """Drop and recreate all tables (DEV/TEST)."""
    if not yes:
        click.echo("FAIL Refusing to reset without --yes")
        raise SystemExit(1)
    db.drop_all()
    db.create_all()
    click.echo("PASS Database reset")


@click.group('users')
def users_group():
    """User inspection and bootstrap."""


@users_group.command('create')
@click.option('--email', required=True)
@click.option('--name', 'display_name', default=None)
@click.option('--staff', is_flag=True, help='Grant staff access')
@with_appcontext
def create_user(email, display_name, staff):
    try:
        user = user_service.create_user(email, display_name, is_staff=staff)
    except UserError as e:
        click.echo(f"FAIL {e}")
        raise SystemExit(1)
    click.echo(f"PASS Created user {user.email} (ID: {user.id}, staff={user.is_staff})")


@users_group.command('list')
@with_appcontext
def list_users():
    users = db.session.query(User).order_by(User.id.asc()).all()
    if not users:
        click.echo("No users")
        return
    for user in users:
        flags = []
        if user.is_staff:
            flags.append("staff")
        if not user.is_active:
            flags.append("inactive")
        suffix = f" [{', '.join(flags)}]" if flags else ""
        click.echo(f"{user.id:>5}  {user.email}{suffix}")


@click.group('sessions')
def sessions_group():
    """API session tokens."""


@sessions_group.command('issue')
@click.argument('email')
@with_appcontext
def issue_session(email):
    user = user_service.get_user_by_email(email)
    if not user:
        click.echo(f"FAIL No user with email {email}")
        raise SystemExit(1)
    try:
        session, token = session_service.create_session(user.id)
    except ValueError as e:
        click.echo(f"FAIL {e}")
        raise SystemExit(1)
    click.echo(token)


@sessions_group.command('revoke')
@click.argument('token')
@with_appcontext
def revoke_session(token):
    if not session_service.revoke_session(token):
        click.echo("FAIL Unknown or already revoked token")
        raise SystemExit(1)
    click.echo("PASS Session revoked")


@click.group('orders')
def orders_group():
    """Order fulfillment maintenance."""


@orders_group.command('reissue')
@click.argument('order_id', type=int)
@with_appcontext
def reissue_order(order_id):
    """Re-run ticket issuance for a paid order."""
    try:
        created = issuance_service.issue_tickets(order_id)
    except OrderNotFound as e:
        click.echo(f"FAIL {e}")
        raise SystemExit(1)
    except IssuanceFailed as e:
        click.echo(f"FAIL {e}")
        raise SystemExit(1)
    counts = issuance_service.get_issued_counts(order_id)
    click.echo(f"PASS Created {len(created)} tickets for order {order_id}")
    for item_id, count in counts.items():
        click.echo(f"  item {item_id}: {count} tickets")


@click.group('transfers')
def transfers_group():
    """Ticket transfer maintenance."""


@transfers_group.command('cancel-stale')
@click.option('--older-than-hours', type=int, required=True)
@with_appcontext
def cancel_stale(older_than_hours):
    """Cancel pending transfers older than the given age."""
    if older_than_hours <= 0:
        click.echo("FAIL --older-than-hours must be positive")
        raise SystemExit(1)
    count = transfer_service.cancel_stale_transfers(timedelta(hours=older_than_hours))
    click.echo(f"PASS Cancelled {count} stale transfers")


def register_commands(app):
    app.cli.add_command(system_group)
    app.cli.add_command(users_group)
    app.cli.add_command(sessions_group)
    app.cli.add_command(orders_group)
    app.cli.add_command(transfers_group)
