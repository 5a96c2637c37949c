# Overview: Flask CLI command groups for bootstrap, inspection, and ledger checks.

# backend/loyalty/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to "loyalty:create_app" (PowerShell: $env:FLASK_APP="loyalty:create_app").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap/repair:
# - python -m flask system init-db
#   Create all tables that do not exist yet.
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
# - python -m flask system seed
#   Idempotent: create the default superuser, manager, cashier and regular accounts.
#
# User inspection/bootstrap:
# - python -m flask users list [--role cashier]
#   List users with role, balance and flags.
# - python -m flask users create --utorid clive123 --name "Clive" --email clive@mail.utoronto.ca --role regular
#   Create a user directly (no actor required).
# - python -m flask users set-role clive123 manager
#   Change a user's role.
#
# Ledger checks:
# - python -m flask ledger audit
#   Verify balances against the ledger and event pools; exits 1 on findings.
# - python -m flask ledger pending-redemptions
#   List redemption requests waiting for a cashier.

import click
from flask.cli import with_appcontext

from .errors import LoyaltyError
from .extensions import db
from .models import Transaction, User
from .models.transactions import REDEMPTION_REQUESTED, TRANSACTION_TYPE_REDEMPTION
from .roles import Role
from .services.audit_service import find_balance_mismatches, find_pool_violations
from .services.concurrency import run_in_transaction
from .validation import validate_email, validate_name, validate_utorid


ROLE_CHOICES = [r.value for r in Role]

DEFAULT_ACCOUNTS = (
    ("superu01", "Super User", "superuser@mail.utoronto.ca", Role.SUPERUSER),
    ("manage01", "Default Manager", "manager@mail.utoronto.ca", Role.MANAGER),
    ("cashie01", "Default Cashier", "cashier@mail.utoronto.ca", Role.CASHIER),
    ("regula01", "Default Member", "regular@mail.utoronto.ca", Role.REGULAR),
)


def _create_user(utorid: str, name: str, email: str, role: Role, verified: bool) -> User:
    utorid = validate_utorid(utorid)
    name = validate_name(name)
    email = validate_email(email)

    def _op():
        user = User(utorid=utorid, name=name, email=email, role=role.value, verified=verified)
        db.session.add(user)
        db.session.flush()
        return user

    return run_in_transaction(_op, conflict_message=f"User '{utorid}' or email '{email}' already exists")


@click.group('system')
def system_group():
    """System bootstrap and repair commands."""


@system_group.command('init-db')
@with_appcontext
def init_db():
    """Create all tables that do not exist yet."""
    db.create_all()
    click.echo("PASS Database tables created.")


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

    click.echo("PASS Database reset complete. Run 'python -m flask system seed' to add default accounts.")


@system_group.command('seed')
@with_appcontext
def seed():
    """
    Create one verified account per role if missing.

    Accounts: superu01, manage01, cashie01, regula01.
    """
    db.create_all()
    for utorid, name, email, role in DEFAULT_ACCOUNTS:
        if db.session.query(User.id).filter_by(utorid=utorid).first():
            click.echo(f"SKIP {utorid} already exists")
            continue
        user = _create_user(utorid, name, email, role, verified=True)
        click.echo(f"PASS Created {role.value}: {user.utorid} (ID: {user.id})")


@click.group('users')
def users_group():
    """User inspection and bootstrap commands."""


@users_group.command('list')
@click.option('--role', type=click.Choice(ROLE_CHOICES), help='Filter by role')
@with_appcontext
def list_users(role):
    """List all users with their roles and balances."""
    query = db.session.query(User)
    if role:
        query = query.filter_by(role=role)

    users = query.order_by(User.id.asc()).all()

    if not users:
        click.echo("No users found.")
        return

    click.echo("\n" + "="*90)
    click.echo(f"{'ID':<5} {'UTORid':<10} {'Name':<24} {'Role':<10} {'Points':>8}  {'Verified':<9} {'Suspicious'}")
    click.echo("="*90)

    for user in users:
        verified_str = "Yes" if user.verified else "No"
        suspicious_str = "Yes" if user.suspicious else "No"
        click.echo(
            f"{user.id:<5} {user.utorid:<10} {user.name:<24} {user.role:<10} {user.points:>8}  {verified_str:<9} {suspicious_str}"
        )

    click.echo("="*90 + "\n")


@users_group.command('create')
@click.option('--utorid', prompt=True, help='UTORid (7-8 alphanumeric characters)')
@click.option('--name', prompt=True, help='Display name')
@click.option('--email', prompt=True, help='University email address')
@click.option('--role', type=click.Choice(ROLE_CHOICES), default=Role.REGULAR.value, show_default=True, help='Role')
@click.option('--verified/--unverified', default=False, help='Mark the account verified')
@with_appcontext
def create_user_cli(utorid, name, email, role, verified):
    """Create a user directly, bypassing the cashier registration flow."""
    try:
        user = _create_user(utorid, name, email, Role.parse(role), verified)
    except LoyaltyError as e:
        click.echo(f"FAIL Failed to create user: {e.message}")
        raise click.exceptions.Exit(1)

    click.echo(f"PASS Created user: {user.utorid} ({user.email}) with role '{user.role}'")


@users_group.command('set-role')
@click.argument('utorid')
@click.argument('role', type=click.Choice(ROLE_CHOICES))
@with_appcontext
def set_role_cli(utorid, role):
    """Change a user's role."""
    user = db.session.query(User).filter_by(utorid=utorid).first()
    if not user:
        click.echo(f"FAIL User '{utorid}' not found")
        raise click.exceptions.Exit(1)

    previous = user.role

    def _op():
        user.role = role
        db.session.flush()
        return user

    run_in_transaction(_op)
    click.echo(f"PASS {utorid}: {previous} -> {role}")


@click.group('ledger')
def ledger_group():
    """Ledger consistency and queue inspection."""


@ledger_group.command('audit')
@with_appcontext
def audit_ledger():
    """
    Check that balances match the ledger and event pools add up.

    Exits with status 1 when any finding is reported.
    """
    mismatches = find_balance_mismatches()
    violations = find_pool_violations()

    for row in mismatches:
        click.echo(
            f"FAIL User {row['utorid']} (ID: {row['user_id']}): points={row['points']} "
            f"ledger={row['ledger_total']} diff={row['difference']:+d}"
        )
    for row in violations:
        click.echo(
            f"FAIL Event {row['event_id']} '{row['name']}': points={row['points']} "
            f"remain={row['points_remain']} awarded={row['points_awarded']} paid={row['ledger_paid']}"
        )

    if mismatches or violations:
        click.echo(f"AUDIT {len(mismatches)} balance mismatch(es), {len(violations)} pool violation(s)")
        raise click.exceptions.Exit(1)

    click.echo("PASS Ledger is consistent.")


@ledger_group.command('pending-redemptions')
@with_appcontext
def pending_redemptions():
    """List redemption requests that have not been processed."""
    pending = (
        db.session.query(Transaction)
        .filter(
            Transaction.type == TRANSACTION_TYPE_REDEMPTION,
            Transaction.redemption_state == REDEMPTION_REQUESTED,
        )
        .order_by(Transaction.created_at.asc(), Transaction.id.asc())
        .all()
    )

    if not pending:
        click.echo("No pending redemptions.")
        return

    for txn in pending:
        click.echo(f"{txn.id:<6} {txn.user.utorid:<10} {txn.redeemed:>8}  {txn.created_at:%Y-%m-%d %H:%M}  {txn.remark}")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(users_group)
    app.cli.add_command(ledger_group)
