# Overview: Flask CLI command groups for bootstrap, user management and ledger audits.

# backend/vendoa/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap:
# - python -m flask system init-db
#   Create all tables (use "flask db upgrade" for migrated deployments).
# - python -m flask system seed-demo
#   Create default users, a few products and a credit customer (idempotent).
#
# User inspection/bootstrap:
# - python -m flask users list
#   List all users with role and active status.
# - python -m flask users create --username admin --password "Password123!" --role admin
#   Create a user (prompts if options are omitted).
#
# Audits (read-only):
# - python -m flask audit stock
#   Compare each product's stock_quantity with the sum of its movements.
# - python -m flask audit credit
#   Replay every customer's credit ledger against the stored balance.

import click
from flask.cli import with_appcontext

from .extensions import db
from .models import Customer, Product, User
from .models.auth import ROLES
from .services import credit_service, products_service, stock_service
from .services.auth_service import create_user, PasswordValidationError


DEMO_PASSWORD = "Password123!"

DEMO_PRODUCTS = [
    # sku, barcode, name, price_cents, cost_cents, stock, min_stock
    ("COF-250", "4800016644290", "Ground Coffee 250g", 1850, 1200, 40, 10),
    ("SUG-1KG", "4800016644306", "White Sugar 1kg", 650, 480, 25, 8),
    ("MLK-1L", "4800016644313", "Fresh Milk 1L", 995, 760, 12, 12),
    ("BRD-LOAF", None, "Sliced Bread", 550, 350, 0, 5),
]


@click.group('system')
def system_group():
    """System bootstrap commands."""


@system_group.command('init-db')
@with_appcontext
def init_db():
    """Create all tables that do not exist yet."""
    db.create_all()
    click.echo("PASS Database tables created")


@system_group.command('seed-demo')
@with_appcontext
def seed_demo():
    """
    Seed default users, demo products and a credit customer.

    Safe to run repeatedly; existing rows are left untouched.
    All demo passwords default to: "Password123!"

    SECURITY: Change passwords immediately in production!
    """
    click.echo("START Seeding demo data...")

    admin = None
    for role in ROLES:
        user = db.session.query(User).filter_by(username=role).first()
        if user:
            click.echo(f"PASS Using existing user: {role}")
        else:
            user = create_user(db.session, role, DEMO_PASSWORD, role, full_name=role.title())
            click.echo(f"PASS Created user: {role} (role {role})")
        if role == "admin":
            admin = user

    for sku, barcode, name, price, cost, stock, min_stock in DEMO_PRODUCTS:
        if db.session.query(Product).filter_by(sku=sku).first():
            click.echo(f"PASS Using existing product: {sku}")
            continue
        products_service.create_product(
            db.session,
            {
                "sku": sku,
                "barcode": barcode,
                "name": name,
                "price_cents": price,
                "cost_cents": cost,
                "stock_quantity": stock,
                "min_stock_level": min_stock,
            },
            user_id=admin.id,
        )
        click.echo(f"PASS Created product: {sku} (stock {stock})")

    if not db.session.query(Customer).filter_by(name="Walk-in Regular").first():
        db.session.add(Customer(name="Walk-in Regular", phone="0917-000-0000", credit_limit_cents=500000))
        db.session.commit()
        click.echo("PASS Created credit customer: Walk-in Regular (limit 5000.00)")

    click.echo("\nDONE Demo data ready.")


@click.group('users')
def users_group():
    """User inspection and bootstrap commands."""


@users_group.command('create')
@click.option('--username', prompt=True, help='Username')
@click.option('--password', prompt=True, hide_input=True, confirmation_prompt=True, help='Password')
@click.option('--role', type=click.Choice(list(ROLES)), prompt=True, help='Role')
@click.option('--full-name', default=None, help='Display name')
@click.option('--email', default=None, help='Email address')
@with_appcontext
def create_user_cli(username, password, role, full_name, email):
    """
    Create a new user.

    Password must be at least 8 characters.
    """
    try:
        create_user(db.session, username, password, role, full_name=full_name, email=email)
        click.echo(f"PASS Created user: {username} with role '{role}'")
        click.echo("SECURITY Password securely hashed with bcrypt")
    except PasswordValidationError as e:
        raise click.ClickException(f"Password validation failed: {e}")
    except ValueError as e:
        raise click.ClickException(str(e))


@users_group.command('list')
@with_appcontext
def list_users():
    """List all users with their roles."""
    users = db.session.query(User).order_by(User.id).all()

    if not users:
        click.echo("No users found.")
        return

    click.echo("\n" + "="*72)
    click.echo(f"{'ID':<5} {'Username':<20} {'Role':<10} {'Active':<8} {'Email'}")
    click.echo("="*72)

    for user in users:
        active_str = "Yes" if user.is_active else "No"
        click.echo(f"{user.id:<5} {user.username:<20} {user.role:<10} {active_str:<8} {user.email or ''}")

    click.echo("="*72 + "\n")


@click.group('audit')
def audit_group():
    """Read-only consistency checks over the stock and credit ledgers."""


@audit_group.command('stock')
@with_appcontext
def audit_stock_cli():
    """Report products whose stock_quantity disagrees with their movement history."""
    mismatches = stock_service.audit_stock(db.session)
    if not mismatches:
        click.echo("PASS Every product matches its movement balance")
        return

    for row in mismatches:
        click.echo(
            f"FAIL Product {row['product_id']} ({row['sku']}): "
            f"stock_quantity={row['stock_quantity']} movement_balance={row['movement_balance']}"
        )
    raise click.ClickException(f"{len(mismatches)} product(s) out of balance")


@audit_group.command('credit')
@with_appcontext
def audit_credit_cli():
    """Replay every customer's credit ledger and report mismatches."""
    results = credit_service.audit_credit(db.session)
    if not results:
        click.echo("PASS Every customer balance replays from its ledger")
        return

    for row in results:
        click.echo(
            f"FAIL Customer {row['customer_id']}: balance={row['credit_balance_cents']} "
            f"replayed={row['replayed_balance_cents']} "
            f"mismatched rows={row['mismatched_transaction_ids']}"
        )
    raise click.ClickException(f"{len(results)} customer ledger(s) out of balance")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(users_group)
    app.cli.add_command(audit_group)
