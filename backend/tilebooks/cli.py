# Overview: Flask CLI command groups for bootstrap, ledger verification and maintenance.

# backend/tilebooks/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap/repair:
# - python -m flask system init-db
#   Create all tables (idempotent).
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
#
# Stock ledger:
# - python -m flask products fix-pieces [--dry-run]
#   Re-normalize stored counters whose loose pieces reach a full box.
# - python -m flask ledger verify [--product-id 3]
#   Replay StockHistory and report counter drift.
#
# Customers / invoices:
# - python -m flask customers recalc [--customer-id 1]
#   Rebuild customer aggregates from their invoices.
# - python -m flask invoices backfill-totals
#   Recompute total_before_discount / invoice_value on every invoice.

import click
from flask.cli import with_appcontext

from .extensions import db
from .services import customer_service, invoice_service, stock_ledger_service


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

    click.echo("PASS Database reset complete.")


@click.group('products')
def products_group():
    """Product counter repair commands."""


@products_group.command('fix-pieces')
@click.option('--dry-run', is_flag=True, help='Report only; do not write changes')
@with_appcontext
def fix_pieces(dry_run):
    """Normalize counters where pieces >= pieces_per_box."""
    fixes = stock_ledger_service.normalize_product_counters(dry_run=dry_run)
    if not fixes:
        click.echo("PASS All product counters are normalized.")
        return

    for fix in fixes:
        before, after = fix["before"], fix["after"]
        click.echo(
            f"{fix['product_id']:<6} {fix['product_name']:<30} {fix['counter']:<8} "
            f"{before['boxes']}/{before['pieces']} -> {after['boxes']}/{after['pieces']}"
        )
    verb = "Would fix" if dry_run else "Fixed"
    click.echo(f"{verb} {len(fixes)} counters.")


@click.group('ledger')
def ledger_group():
    """Stock ledger inspection commands."""


@ledger_group.command('verify')
@click.option('--product-id', type=int, default=None, help='Verify a single product')
@with_appcontext
def verify_ledger(product_id):
    """Replay StockHistory and compare with stored counters."""
    results = stock_ledger_service.verify_ledger(product_id)
    inconsistent = [r for r in results if not r["consistent"]]

    for result in inconsistent:
        click.echo(f"FAIL {result['product_id']} {result['product_name']}")
        for counter, values in result["drift"].items():
            click.echo(f"     {counter}: expected {values['expected']} actual {values['actual']}")
        for unknown in result["unknown_actions"]:
            click.echo(f"     unknown action {unknown['action']!r} on entry {unknown['entry_id']}")

    click.echo(f"Checked {len(results)} products, {len(inconsistent)} inconsistent.")
    if inconsistent:
        raise SystemExit(1)


@click.group('customers')
def customers_group():
    """Customer maintenance commands."""


@customers_group.command('recalc')
@click.option('--customer-id', type=int, default=None, help='Recalculate a single customer')
@with_appcontext
def recalc_customers(customer_id):
    """Rebuild customer aggregates from invoices."""
    results = customer_service.recalculate_customer_aggregates(customer_id)
    changed = [r for r in results if r["changed"]]
    for result in changed:
        click.echo(f"{result['customer_id']:<6} {result['before']} -> {result['after']}")
    click.echo(f"Recalculated {len(results)} customers, {len(changed)} changed.")


@click.group('invoices')
def invoices_group():
    """Invoice maintenance commands."""


@invoices_group.command('backfill-totals')
@with_appcontext
def backfill_totals():
    """Recompute derived invoice totals."""
    changed = invoice_service.backfill_invoice_totals()
    click.echo(f"Updated {changed} invoices.")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(products_group)
    app.cli.add_command(ledger_group)
    app.cli.add_command(customers_group)
    app.cli.add_command(invoices_group)
