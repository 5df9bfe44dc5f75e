# Overview: Flask CLI command groups for bootstrap, store setup and the expiry sweep.

# backend/bottlekeep/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Use: flask --app bottlekeep <group> <command> [options]
#
# System bootstrap:
# - flask --app bottlekeep system init-db
#   Create all tables (idempotent; use `flask db upgrade` for migrated databases).
#
# Stores:
# - flask --app bottlekeep stores create --code BKK01 --name "Sukhumvit" [--central] [--timezone Asia/Bangkok]
#   Create a store with default settings.
# - flask --app bottlekeep stores list [--all]
#   List stores.
#
# Deposits:
# - flask --app bottlekeep deposits expiry-sweep [--store-id 1] [--dry-run]
#   Expire lapsed deposits and send expiring-soon warnings (run daily from cron).

import click
from flask.cli import with_appcontext

from .extensions import db
from .services import maintenance_service, store_service
from .validation import DepositError


@click.group('system')
def system_group():
    """System bootstrap commands."""


@system_group.command('init-db')
@with_appcontext
def init_db():
    """Create all tables that do not exist yet."""
    db.create_all()
    click.echo("PASS Database tables created")


@click.group('stores')
def stores_group():
    """Store management commands."""


@stores_group.command('create')
@click.option('--code', required=True, help='Short store code used in deposit codes')
@click.option('--name', required=True, help='Store name')
@click.option('--central', is_flag=True, help='Mark as the central (HQ) store')
@click.option('--timezone', 'tz_name', default=None, help='IANA timezone (defaults to DEFAULT_STORE_TIMEZONE)')
@with_appcontext
def create_store_cli(code, name, central, tz_name):
    """Create a store."""
    try:
        store = store_service.create_store(code, name, is_central=central, timezone=tz_name)
    except DepositError as e:
        click.echo(f"FAIL {e}")
        return
    kind = " (central)" if store.is_central else ""
    click.echo(f"PASS Created store: {store.name}{kind} (ID: {store.id}, Code: {store.code})")


@stores_group.command('list')
@click.option('--all', 'include_inactive', is_flag=True, help='Include inactive stores')
@with_appcontext
def list_stores_cli(include_inactive):
    """List stores."""
    stores = store_service.list_stores(include_inactive=include_inactive)
    if not stores:
        click.echo("No stores found.")
        return

    click.echo("\n" + "="*72)
    click.echo(f"{'ID':<5} {'Code':<10} {'Name':<28} {'Central':<8} {'Active':<7} {'Timezone'}")
    click.echo("="*72)
    for store in stores:
        central = "Yes" if store.is_central else "No"
        active = "Yes" if store.is_active else "No"
        click.echo(f"{store.id:<5} {store.code:<10} {store.name:<28} {central:<8} {active:<7} {store.timezone}")
    click.echo("="*72 + "\n")


@click.group('deposits')
def deposits_group():
    """Deposit maintenance commands."""


@deposits_group.command('expiry-sweep')
@click.option('--store-id', type=int, default=None, help='Only sweep this store')
@click.option('--dry-run', is_flag=True, help='Report what would expire without changing anything')
@with_appcontext
def expiry_sweep(store_id, dry_run):
    """Expire lapsed deposits, store by store."""
    try:
        summaries = maintenance_service.run_expiry_sweep(store_id=store_id, dry_run=dry_run)
    except DepositError as e:
        click.echo(f"FAIL {e}")
        return

    prefix = "DRY RUN " if dry_run else ""
    for summary in summaries:
        click.echo(
            f"{prefix}Store {summary['store_id']}: expired={summary['expired']} "
            f"expiring_soon={summary['expiring_soon']} notified={summary['notified']} "
            f"failed={len(summary['failed'])}"
        )
    click.echo(f"PASS Swept {len(summaries)} store(s)")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(stores_group)
    app.cli.add_command(deposits_group)
