# Overview: Flask CLI command groups for bootstrap, inspection, and maintenance.

# backend/storeledger/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap/repair:
# - python -m flask system init [--store-name "Main Store"] [--store-code MAIN]
#   Idempotent bootstrap: creates tables and the first store if none exists.
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
#
# Inventory inspection:
# - python -m flask inventory show 12 [--store-id 1]
#   Quantity, reservation and recent transactions for one variant.
# - python -m flask inventory low-stock [--store-id 1]
#   Records at or below their low-stock threshold.
#
# Backorders:
# - python -m flask backorders report 12 [--store-id 1]
#   Pending backorder demand by priority tier and waiting time.

import click
from flask.cli import with_appcontext

from .extensions import db
from .models import Store
from .services import backorder_service, inventory_service, store_service


@click.group('system')
def system_group():
    """System bootstrap and repair commands."""


@system_group.command('init')
@click.option('--store-name', default='Main Store', help='Name of the first store')
@click.option('--store-code', default='MAIN', help='Code of the first store')
@with_appcontext
def init_system(store_name, store_code):
    """Create tables and the first store. Safe to run repeatedly."""
    db.create_all()

    existing = db.session.query(Store).order_by(Store.id).first()
    if existing:
        click.echo(f"SKIP Store already configured: {existing.id} {existing.name}")
        return

    store = store_service.create_store(store_name, store_code)
    click.echo(f"PASS Created store {store.id}: {store.name} ({store.code})")


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

    click.echo("PASS Database reset complete. Run 'python -m flask system init' to initialize.")


@click.group('inventory')
def inventory_group():
    """Inventory inspection commands."""


@inventory_group.command('show')
@click.argument('variant_id', type=int)
@click.option('--store-id', type=int, help='Store ID (default store if omitted)')
@click.option('--limit', type=int, default=10, show_default=True, help='Transactions to list')
@with_appcontext
def show_inventory(variant_id, store_id, limit):
    """Show the ledger record and recent transactions for a variant."""
    record = inventory_service.get_inventory(variant_id, store_id)
    if record is None:
        click.echo(f"No inventory record for variant {variant_id}")
        return

    click.echo(
        f"Store {record.store_id} / variant {record.product_variant_id}: "
        f"quantity={record.quantity} reserved={record.reserved_quantity} "
        f"available={record.available_quantity} version={record.version}"
    )
    for tx in inventory_service.list_transactions(variant_id, record.store_id, limit=limit):
        click.echo(
            f"  {tx.occurred_at:%Y-%m-%d %H:%M:%S}  {tx.type:<15} {tx.quantity:+6d}  "
            f"{tx.before_quantity} -> {tx.after_quantity}  actor={tx.actor_id}  {tx.note or ''}"
        )


@inventory_group.command('low-stock')
@click.option('--store-id', type=int, help='Filter by store ID')
@with_appcontext
def low_stock(store_id):
    """List records at or below their low-stock threshold."""
    records = inventory_service.list_low_stock(store_id)
    if not records:
        click.echo("PASS No low-stock records")
        return
    for record in records:
        click.echo(
            f"WARN store={record.store_id} variant={record.product_variant_id} "
            f"quantity={record.quantity} threshold={record.low_stock_threshold}"
        )


@click.group('backorders')
def backorders_group():
    """Backorder reporting commands."""


@backorders_group.command('report')
@click.argument('variant_id', type=int)
@click.option('--store-id', type=int, help='Filter by store ID')
@with_appcontext
def backorder_report(variant_id, store_id):
    """Pending backorder demand for a variant."""
    report = backorder_service.get_allocation_report(variant_id, store_id)
    click.echo(
        f"Variant {variant_id}: {report['pending_lines']} pending line(s), "
        f"{report['pending_quantity']} unit(s)"
    )
    click.echo("By priority:")
    for tier, group in report["by_priority"].items():
        click.echo(f"  {tier:<8} lines={group['lines']} quantity={group['quantity']}")
    click.echo("By waiting time:")
    for bucket, group in report["by_waiting_time"].items():
        click.echo(f"  {bucket:<14} lines={group['lines']} quantity={group['quantity']}")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(inventory_group)
    app.cli.add_command(backorders_group)
