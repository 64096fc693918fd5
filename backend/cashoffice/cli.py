# Overview: Flask CLI command groups for bootstrap, inspection, and recovery.

# backend/cashoffice/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap:
# - python -m flask system init-db
#   Create all tables (use `flask db upgrade` for migrated deployments).
#
# Users:
# - python -m flask users create --username anna --role staff --display-name "Anna K."
#   Create a user.
# - python -m flask users issue-token --username anna
#   Issue a bearer token (printed once, only the hash is stored).
# - python -m flask users revoke-token <token>
#   Revoke a bearer token.
#
# Registers:
# - python -m flask registers list [--all]
# - python -m flask registers create --number "REG-01" --name "Front Desk" --location "Lobby"
#
# Shifts:
# - python -m flask shifts list --status OPEN --limit 20
# - python -m flask shifts force-close 12 --closing-cash 0 --acting-user admin
#   Recover an abandoned shift so the register can be reopened.
#
# Cash closings:
# - python -m flask closings preview [--employee-id 3]
#   Show the open period and its expected amounts without committing.

import json

import click
from flask.cli import with_appcontext

from .errors import CashOfficeError
from .extensions import db
from .models import User
from .models.auth import VALID_ROLES
from .services import closing_service, session_service, shift_service


def _get_user(username: str) -> User | None:
    return db.session.query(User).filter_by(username=username).first()


@click.group('system')
def system_group():
    """System bootstrap commands."""


@system_group.command('init-db')
@with_appcontext
def init_db():
    """Create all tables that do not exist yet."""
    db.create_all()
    click.echo("PASS Database tables created")


@click.group('users')
def users_group():
    """User bootstrap and token commands."""


@users_group.command('create')
@click.option('--username', prompt=True, help='Username')
@click.option('--role', type=click.Choice(list(VALID_ROLES)), prompt=True, help='Role')
@click.option('--display-name', help='Display name')
@with_appcontext
def create_user_cli(username, role, display_name):
    """Create a user that shifts and closings can be attributed to."""
    if _get_user(username):
        click.echo(f"FAIL User '{username}' already exists")
        return

    user = User(username=username, role=role, display_name=display_name, is_active=True)
    db.session.add(user)
    db.session.commit()
    click.echo(f"PASS Created user {user.username} (ID: {user.id}, role: {user.role})")


@users_group.command('issue-token')
@click.option('--username', required=True, help='Username')
@with_appcontext
def issue_token_cli(username):
    """Issue a bearer token for a user."""
    user = _get_user(username)
    if not user:
        click.echo(f"FAIL User '{username}' not found")
        return

    try:
        session, token = session_service.create_session(user.id)
    except CashOfficeError as e:
        click.echo(f"FAIL {e.message}")
        return

    click.echo(f"PASS Token for {user.username} (expires {session.expires_at.isoformat()}Z):")
    click.echo(token)


@users_group.command('revoke-token')
@click.argument('token')
@click.option('--reason', default='Revoked via CLI', help='Revocation reason')
@with_appcontext
def revoke_token_cli(token, reason):
    if session_service.revoke_session(token, reason=reason):
        click.echo("PASS Token revoked")
    else:
        click.echo("FAIL Token not found or already revoked")


@click.group('registers')
def registers_group():
    """Register inspection and bootstrap commands."""


@registers_group.command('create')
@click.option('--number', required=True, help='Register number')
@click.option('--name', required=True, help='Register name')
@click.option('--location', help='Location')
@with_appcontext
def create_register_cli(number, name, location):
    """
    Create a new register.

    Example:
        flask registers create --number REG-01 --name "Front Desk" --location "Lobby"
    """
    try:
        register = shift_service.create_register(number, name, location)
    except CashOfficeError as e:
        click.echo(f"FAIL Error: {e.message}")
        return

    click.echo(f"PASS Created register: {register.register_number} - {register.name}")
    click.echo(f"   Location: {register.location or 'Not specified'}")
    click.echo(f"   Register ID: {register.id}")


@registers_group.command('list')
@click.option('--all', 'show_all', is_flag=True, help='Show inactive registers too')
@with_appcontext
def list_registers_cli(show_all):
    registers = shift_service.list_registers(include_inactive=show_all)

    if not registers:
        click.echo("No registers found.")
        return

    click.echo("\n" + "="*90)
    click.echo(f"{'ID':<5} {'Number':<12} {'Name':<25} {'Location':<20} {'Active':<8} {'Shift'}")
    click.echo("="*90)

    for register in registers:
        open_shift = shift_service.get_open_shift(register.id)
        status = f"OPEN (#{open_shift.id})" if open_shift else "CLOSED"
        active_str = "Yes" if register.is_active else "No"
        location = register.location or "-"

        click.echo(f"{register.id:<5} {register.register_number:<12} {register.name:<25} {location:<20} {active_str:<8} {status}")

    click.echo("="*90 + "\n")


@click.group('shifts')
def shifts_group():
    """Shift inspection and recovery commands."""


@shifts_group.command('list')
@click.option('--register-id', type=int, help='Filter by register ID')
@click.option('--status', type=click.Choice(['OPEN', 'CLOSED']), help='Filter by status')
@click.option('--limit', type=int, default=20, help='Max shifts to show')
@with_appcontext
def list_shifts_cli(register_id, status, limit):
    shifts = shift_service.list_shifts(register_id=register_id, status=status, limit=limit)

    if not shifts:
        click.echo("No shifts found.")
        return

    click.echo("\n" + "="*100)
    click.echo(f"{'ID':<6} {'Register':<10} {'Opened by':<10} {'Status':<8} {'Opened':<22} {'Expected':>10} {'Counted':>10} {'Diff':>10}")
    click.echo("="*100)

    for s in shifts:
        click.echo(
            f"{s.id:<6} {s.register_id:<10} {s.opened_by_user_id:<10} {s.status:<8} "
            f"{s.opened_at.strftime('%Y-%m-%d %H:%M:%S'):<22} "
            f"{str(s.expected_cash or '-'):>10} {str(s.closing_cash or '-'):>10} {str(s.cash_difference or '-'):>10}"
        )

    click.echo("="*100 + "\n")


@shifts_group.command('force-close')
@click.argument('shift_id', type=int)
@click.option('--closing-cash', required=True, help='Cash counted in the abandoned drawer')
@click.option('--acting-user', required=True, help='Username of the manager/admin closing the shift')
@click.option('--notes', help='Reason for the forced close')
@with_appcontext
def force_close_cli(shift_id, closing_cash, acting_user, notes):
    user = _get_user(acting_user)
    if not user or not user.is_manager:
        click.echo(f"FAIL '{acting_user}' is not an active manager or admin")
        return

    try:
        shift = shift_service.force_close_shift(shift_id, closing_cash, user.id, notes=notes)
    except CashOfficeError as e:
        click.echo(f"FAIL {e.message}")
        return

    click.echo(f"PASS Shift {shift.id} force-closed (expected {shift.expected_cash}, difference {shift.cash_difference})")


@click.group('closings')
def closings_group():
    """Cash closing inspection commands."""


@closings_group.command('preview')
@click.option('--employee-id', type=int, help='Scope to one employee (default: all employees)')
@with_appcontext
def preview_closing_cli(employee_id):
    """Print the open period and its expected amounts. Commits nothing."""
    try:
        preview = closing_service.preview_closing(employee_id)
    except CashOfficeError as e:
        click.echo(f"FAIL {e.message}")
        return

    click.echo(json.dumps(preview, indent=2))


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(users_group)
    app.cli.add_command(registers_group)
    app.cli.add_command(shifts_group)
    app.cli.add_command(closings_group)
