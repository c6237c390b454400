# Overview: Flask CLI command groups for bootstrap, inspection, and maintenance.

# backend/retail/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap/repair:
# - python -m flask system init
#   Idempotent bootstrap: creates tables and default admin/manager/cashier/customer users.
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
#
# Users and catalog:
# - python -m flask users create --name "Ana" --email ana@example.com --password "Password123!" --role manager
# - python -m flask users list
# - python -m flask products create --name "Mug" --price 12.50 --stock 40 --threshold 5 [--sku MUG-01]
# - python -m flask products low-stock
#
# Realtime outbox:
# - python -m flask events dispatch
#   Emit any NEW outbox rows (normally done right after each commit).
# - python -m flask events purge --days 7
#   Delete published outbox rows older than the retention window.
#
# Ledger checks:
# - python -m flask ledger verify [--fix]
#   Check stock non-negativity, stock vs. latest adjustment, and store credit balances vs. ledger.

import click
from flask.cli import with_appcontext
from sqlalchemy import func

from .extensions import db
from .models import Product, StockAdjustment, User
from .models.auth import VALID_ROLES
from .services import event_service, stock_service, store_credit_service
from .services.auth_service import PasswordValidationError, UserExistsError, create_user
from .validation import ValidationError, amount_to_cents

DEFAULT_PASSWORD = "Password123!"

DEFAULT_USERS = (
    ("Administrator", "admin@retail.local", "admin"),
    ("Store Manager", "manager@retail.local", "manager"),
    ("Cashier", "cashier@retail.local", "cashier"),
    ("Demo Customer", "customer@retail.local", "customer"),
)


@click.group('system')
def system_group():
    """System bootstrap and repair commands."""


@system_group.command('init')
@with_appcontext
def init_system():
    """
    Create tables (if missing) and the default users.

    All default passwords are "Password123!". Change them in production.
    """
    click.echo("START Initializing retail core...")
    db.create_all()

    for name, email, role in DEFAULT_USERS:
        existing = db.session.query(User).filter_by(email=email).first()
        if existing:
            click.echo(f"PASS Using existing user: {email} ({existing.role})")
            continue
        create_user(name=name, email=email, password=DEFAULT_PASSWORD, role=role)
        click.echo(f"PASS Created user: {email} ({role})")

    click.echo(f"DONE Default password for new users: {DEFAULT_PASSWORD}")


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


@click.group('users')
def users_group():
    """User management commands."""


@users_group.command('create')
@click.option('--name', prompt=True, help='Display name')
@click.option('--email', prompt=True, help='Email address')
@click.option('--password', prompt=True, hide_input=True, confirmation_prompt=True, help='Password')
@click.option('--role', type=click.Choice(list(VALID_ROLES)), default='customer', show_default=True)
@with_appcontext
def create_user_cli(name, email, password, role):
    """Create a user. Password must meet strength requirements."""
    try:
        user = create_user(name=name, email=email, password=password, role=role)
        click.echo(f"PASS Created user #{user.id}: {user.email} with role '{role}'")
    except PasswordValidationError as e:
        click.echo(f"FAIL Password validation failed: {str(e)}")
        click.echo("Requirements: 8+ chars, uppercase, lowercase, digit, special char")
    except (UserExistsError, ValueError) as e:
        click.echo(f"FAIL Failed to create user: {str(e)}")


@users_group.command('list')
@with_appcontext
def list_users():
    """List users with role, active flag and store credit."""
    users = db.session.query(User).order_by(User.id).all()
    if not users:
        click.echo("No users found. Run 'python -m flask system init' first.")
        return
    for user in users:
        status = "active" if user.is_active else "inactive"
        click.echo(
            f"{user.id:>4}  {user.email:<32} {user.role:<9} {status:<8} "
            f"credit={user.store_credit_cents / 100:.2f}"
        )


@click.group('products')
def products_group():
    """Catalog bootstrap commands."""


@products_group.command('create')
@click.option('--name', prompt=True, help='Product name')
@click.option('--price', prompt=True, help='Selling price, e.g. 12.50')
@click.option('--stock', type=int, default=0, show_default=True, help='Initial stock quantity')
@click.option('--threshold', type=int, default=5, show_default=True, help='Low-stock threshold')
@click.option('--sku', default=None, help='Optional SKU')
@with_appcontext
def create_product_cli(name, price, stock, threshold, sku):
    """Create a product with an initial stock level."""
    try:
        price_cents = amount_to_cents(price, "price")
    except ValidationError as e:
        click.echo(f"FAIL {e}")
        return
    if stock < 0 or threshold < 0:
        click.echo("FAIL stock and threshold cannot be negative")
        return

    product = Product(
        name=name,
        sku=sku,
        price_cents=price_cents,
        stock_quantity=stock,
        low_stock_threshold=threshold,
    )
    db.session.add(product)
    db.session.commit()
    click.echo(f"PASS Created product #{product.id}: {product.name} ({stock} in stock)")


@products_group.command('low-stock')
@with_appcontext
def low_stock_cli():
    """List active products at or below their low-stock threshold."""
    products = stock_service.get_low_stock_products()
    if not products:
        click.echo("PASS No products at or below threshold.")
        return
    for product in products:
        click.echo(f"WARN #{product.id} {product.name}: {product.stock_quantity} (threshold {product.low_stock_threshold})")


@click.group('events')
def events_group():
    """Realtime event outbox commands."""


@events_group.command('dispatch')
@click.option('--limit', type=int, default=500, show_default=True)
@with_appcontext
def dispatch_events_cli(limit):
    """Emit pending outbox events to connected subscribers."""
    emitted = event_service.dispatch_pending_events(limit=limit)
    click.echo(f"Dispatched {emitted} events. {event_service.pending_event_count()} still pending.")


@events_group.command('purge')
@click.option('--days', type=int, default=7, show_default=True)
@with_appcontext
def purge_events_cli(days):
    """Delete published outbox rows older than --days."""
    deleted = event_service.purge_published_events(days=days)
    click.echo(f"Deleted {deleted} published events older than {days} days.")


@click.group('ledger')
def ledger_group():
    """Consistency checks for stock and store credit."""


def _stock_drift() -> list[dict]:
    """Products whose stock differs from their most recent adjustment row."""
    latest = (
        db.session.query(StockAdjustment.product_id, func.max(StockAdjustment.id).label("last_id"))
        .group_by(StockAdjustment.product_id)
        .subquery()
    )
    rows = (
        db.session.query(Product, StockAdjustment)
        .join(latest, latest.c.product_id == Product.id)
        .join(StockAdjustment, StockAdjustment.id == latest.c.last_id)
        .all()
    )
    return [
        {"product_id": p.id, "name": p.name, "stock": p.stock_quantity, "last_adjustment": a.new_quantity}
        for p, a in rows
        if p.stock_quantity != a.new_quantity
    ]


@ledger_group.command('verify')
@click.option('--fix', is_flag=True, help='Rewrite store credit balances from the ledger')
@with_appcontext
def verify_ledger_cli(fix):
    """Report (and optionally repair) ledger inconsistencies."""
    failures = 0

    negative = db.session.query(Product).filter(Product.stock_quantity < 0).all()
    for product in negative:
        failures += 1
        click.echo(f"FAIL #{product.id} {product.name} has negative stock {product.stock_quantity}")

    for drift in _stock_drift():
        click.echo(
            f"WARN #{drift['product_id']} {drift['name']}: stock {drift['stock']} "
            f"but last adjustment recorded {drift['last_adjustment']}"
        )

    for mismatch in store_credit_service.verify_balances(fix=fix):
        failures += 0 if fix else 1
        action = "FIXED" if fix else "FAIL"
        click.echo(
            f"{action} user #{mismatch['user_id']}: balance {mismatch['balance_cents']} "
            f"!= ledger {mismatch['ledger_cents']}"
        )

    if failures:
        raise click.ClickException(f"{failures} ledger problem(s) found")
    click.echo("PASS Ledger consistent.")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(users_group)
    app.cli.add_command(products_group)
    app.cli.add_command(events_group)
    app.cli.add_command(ledger_group)
