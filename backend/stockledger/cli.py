# Overview: Flask CLI command group for ledger bootstrap and integrity checks.

# backend/stockledger/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask ledger <command> [options]
#
# - python -m flask ledger init-db [--reset --yes]
#   Create all tables (with --reset: drop and recreate, deletes all data).
# - python -m flask ledger seed-demo --owner-id 1 [--store-code MAIN]
#   Create a demo store, warehouse and ingredients for local use (idempotent).
# - python -m flask ledger verify [--store-code MAIN --owner-id 1]
#   Replay the ledger and compare with stock balances; exits 1 on mismatch.

import click
from flask.cli import with_appcontext

from .extensions import db
from .models import Ingredient, Store, Warehouse
from .services.integrity_service import verify_ledger
from .services.tenancy_service import resolve_store
from .errors import NotFoundError


@click.group('ledger')
def ledger_group():
    """Ingredient stock ledger commands."""


@ledger_group.command('init-db')
@click.option('--reset', is_flag=True, help='Drop all tables first')
@click.option('--yes', is_flag=True, help='Skip confirmation')
@with_appcontext
def init_db(reset, yes):
    """Create the ledger schema."""
    if reset:
        if not yes:
            click.confirm("WARN This will DELETE ALL DATA. Are you sure?", abort=True)
        click.echo("DELETE  Dropping all tables...")
        db.drop_all()

    click.echo("BUILD  Creating all tables...")
    db.create_all()
    click.echo("PASS Database ready.")


@ledger_group.command('seed-demo')
@click.option('--owner-id', type=int, required=True, help='Tenant owning the demo store')
@click.option('--store-code', default='MAIN', help='Store code')
@with_appcontext
def seed_demo(owner_id, store_code):
    """Create a demo store with one warehouse and two ingredients."""
    store = db.session.query(Store).filter_by(owner_id=owner_id, code=store_code).first()
    if not store:
        store = Store(owner_id=owner_id, code=store_code, name=f"Demo Store {store_code}")
        db.session.add(store)
        db.session.flush()
        click.echo(f"PASS Created store {store.code} (ID: {store.id})")
    else:
        click.echo(f"SKIP Store {store.code} already exists (ID: {store.id})")

    warehouse = db.session.query(Warehouse).filter_by(store_id=store.id, name="Main Kitchen").first()
    if not warehouse:
        warehouse = Warehouse(store_id=store.id, owner_id=owner_id, name="Main Kitchen")
        db.session.add(warehouse)
        db.session.flush()
        click.echo(f"PASS Created warehouse {warehouse.name} (ID: {warehouse.id})")

    demo_ingredients = [
        ("Flour", "FLR-001", "dry goods", "kg", 5_000),
        ("Whole Milk", "MLK-001", "dairy", "l", 2_000),
    ]
    for name, code, category, unit, min_stock_milli in demo_ingredients:
        ingredient = db.session.query(Ingredient).filter_by(store_id=store.id, ingredient_code=code).first()
        if ingredient:
            continue
        ingredient = Ingredient(
            store_id=store.id,
            owner_id=owner_id,
            warehouse_id=warehouse.id,
            name=name,
            ingredient_code=code,
            category=category,
            unit=unit,
            min_stock_milli=min_stock_milli,
        )
        db.session.add(ingredient)
        db.session.flush()
        click.echo(f"PASS Created ingredient {name} (ID: {ingredient.id})")

    db.session.commit()
    click.echo("PASS Demo data ready.")


@ledger_group.command('verify')
@click.option('--store-code', default=None, help='Limit the check to one store')
@click.option('--owner-id', type=int, default=None, help='Owner of --store-code')
@with_appcontext
def verify(store_code, owner_id):
    """Replay the ledger against stock balances."""
    store_id = None
    if store_code:
        if owner_id is None:
            raise click.UsageError("--owner-id is required with --store-code")
        try:
            store_id = resolve_store(store_code, owner_id).id
        except NotFoundError as e:
            raise click.ClickException(str(e))

    mismatches = verify_ledger(store_id)
    if not mismatches:
        click.echo("PASS Ledger and balances agree.")
        return

    for m in mismatches:
        click.echo(
            f"FAIL {m['balance_key']}: balance={m['balance_quantity']} ledger={m['ledger_quantity']}"
        )
    click.echo(f"FAIL {len(mismatches)} mismatched key(s).")
    raise SystemExit(1)


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(ledger_group)
