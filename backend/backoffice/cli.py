# Overview: Flask CLI command groups for bootstrap, tenant setup, and ledger maintenance.

# backend/backoffice/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# System:
# - python -m flask system create-all
#   Create any missing tables (no data is touched).
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
#
# Organization management (MULTI-TENANT):
# - python -m flask orgs list
#   List all organizations.
# - python -m flask orgs create --name "Acme Corp" --code "ACME"
#   Create a new organization (tenant).
# - python -m flask orgs add-location --org-id 1 --name "Main Shop"
#   Add a stock location to an organization.
# - python -m flask orgs add-drawer --org-id 1 --location-id 1 --name "Till 1"
#   Add a cash drawer (CLOSED) at a location.
#
# Ledger maintenance:
# - python -m flask ledger verify --org-id 1
#   Check every ledger/projection invariant; exits 1 when violations exist.
# - python -m flask ledger rebuild-stock --org-id 1
#   Recompute StockLevel rows from stock ledger sums.

import json

import click
from flask.cli import with_appcontext

from .extensions import db
from .models import CashDrawer, Location, Organization
from .services import ledger_service
from .services.concurrency import begin_write, run_in_transaction
from .services.projection_service import rebuild_stock_levels
from .validation import NegativeStockError


@click.group('system')
def system_group():
    """Schema bootstrap commands."""


@system_group.command('create-all')
@with_appcontext
def create_all():
    """Create missing tables."""
    db.create_all()
    click.echo("PASS Tables created")


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

    click.echo("PASS Database reset complete.")


# =============================================================================
# ORGANIZATION MANAGEMENT COMMANDS
# =============================================================================

@click.group('orgs')
def orgs_group():
    """Organization (tenant) management commands."""


@orgs_group.command('list')
@with_appcontext
def list_orgs():
    """List all organizations."""
    orgs = db.session.query(Organization).order_by(Organization.id).all()

    if not orgs:
        click.echo("No organizations found.")
        return

    click.echo("\n" + "="*72)
    click.echo(f"{'ID':<5} {'Name':<30} {'Code':<15} {'Active':<8} {'Locations'}")
    click.echo("="*72)

    for org in orgs:
        location_count = db.session.query(Location).filter_by(org_id=org.id).count()
        active_str = "Yes" if org.is_active else "No"
        click.echo(f"{org.id:<5} {org.name:<30} {org.code or '-':<15} {active_str:<8} {location_count}")

    click.echo("="*72 + "\n")


@orgs_group.command('create')
@click.option('--name', required=True, help='Organization name')
@click.option('--code', required=True, help='Short code (unique)')
@with_appcontext
def create_org_cli(name, code):
    """Create a new organization (tenant)."""
    existing = db.session.query(Organization).filter_by(code=code).first()
    if existing:
        click.echo(f"FAIL Organization with code '{code}' already exists")
        return

    org = Organization(name=name, code=code, is_active=True)
    db.session.add(org)
    db.session.commit()

    click.echo(f"PASS Created organization: {org.name} (ID: {org.id}, Code: {org.code})")


@orgs_group.command('add-location')
@click.option('--org-id', type=int, required=True, help='Organization ID')
@click.option('--name', required=True, help='Location name (unique within org)')
@with_appcontext
def add_location_cli(org_id, name):
    """Add a stock location to an organization."""
    org = db.session.get(Organization, org_id)
    if not org:
        click.echo(f"FAIL Organization ID {org_id} not found")
        return

    existing = db.session.query(Location).filter_by(org_id=org_id, name=name).first()
    if existing:
        click.echo(f"FAIL Location '{name}' already exists in this organization")
        return

    location = Location(org_id=org_id, name=name)
    db.session.add(location)
    db.session.commit()

    click.echo(f"PASS Created location: {location.name} (ID: {location.id}) in org '{org.name}'")


@orgs_group.command('add-drawer')
@click.option('--org-id', type=int, required=True, help='Organization ID')
@click.option('--location-id', type=int, required=True, help='Location ID')
@click.option('--name', required=True, help='Drawer name (unique within org)')
@with_appcontext
def add_drawer_cli(org_id, location_id, name):
    """Add a cash drawer to a location."""
    location = db.session.get(Location, location_id)
    if not location or location.org_id != org_id:
        click.echo(f"FAIL Location ID {location_id} not found in org {org_id}")
        return

    drawer = CashDrawer(org_id=org_id, location_id=location.id, name=name, status="CLOSED")
    db.session.add(drawer)
    db.session.commit()

    click.echo(f"PASS Created drawer: {drawer.name} (ID: {drawer.id}) at '{location.name}'")


# =============================================================================
# LEDGER MAINTENANCE COMMANDS
# =============================================================================

@click.group('ledger')
def ledger_group():
    """Ledger verification and projection rebuild commands."""


@ledger_group.command('verify')
@click.option('--org-id', type=int, required=True, help='Organization ID')
@click.option('--json', 'as_json', is_flag=True, help='Print the full report as JSON')
@with_appcontext
def verify_ledgers_cli(org_id, as_json):
    """Check stock, credit and cash invariants for one organization."""
    report = ledger_service.verify_org_ledgers(org_id)

    if as_json:
        click.echo(json.dumps(report, indent=2, default=str))
    else:
        for section in ("stock", "credit", "cash"):
            violations = report[section]
            status = "PASS" if not violations else "FAIL"
            click.echo(f"{status} {section}: {len(violations)} violation(s)")
            for violation in violations:
                click.echo(f"   {violation}")

    if not report["ok"]:
        raise click.exceptions.Exit(1)


@ledger_group.command('rebuild-stock')
@click.option('--org-id', type=int, required=True, help='Organization ID')
@with_appcontext
def rebuild_stock_cli(org_id):
    """Recompute StockLevel rows from ledger sums."""
    def _op():
        begin_write()
        return rebuild_stock_levels(org_id)

    try:
        counts = run_in_transaction(_op)
    except NegativeStockError as e:
        click.echo(f"FAIL {e.message}: {e.details}")
        raise click.exceptions.Exit(1)

    click.echo(
        f"PASS Rebuilt stock for org {org_id}: "
        f"created={counts['created']} updated={counts['updated']} deleted={counts['deleted']}"
    )


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(orgs_group)  # Multi-tenant organization management
    app.cli.add_command(ledger_group)
