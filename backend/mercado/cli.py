# Overview: Flask CLI command groups for schema bootstrap, the expiration sweep, and rewards administration.

# backend/mercado/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap/repair:
# - python -m flask system init-db
#   Create any missing tables (use `flask db upgrade` for migrated deployments).
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
#
# Orders:
# - python -m flask orders expire [--limit 500]
#   Cancel unpaid orders past their payment window. Schedule this every minute.
# - python -m flask orders show 42
#   Print an order with its payment and redemption.
#
# Rewards:
# - python -m flask rewards configure --seller-id seller-1 --points-per-peso 0.0286 --minimum-purchase-cents 500000
#   Create or update a seller's program (add --inactive to switch it off).
# - python -m flask rewards add-tier --seller-id seller-1 --name Plata --minimum-purchase-cents 1000000 --multiplier 1.2
#   Create or update a tier.
# - python -m flask rewards audit --user-id buyer-1 --seller-id seller-1
#   Compare a stored points balance with its ledger.

import json
from decimal import Decimal, InvalidOperation

import click
from flask.cli import with_appcontext

from .extensions import db
from .services import expiration_service, loyalty_service, order_service
from .services.errors import MarketplaceError


def _decimal_option(ctx, param, value):
    if value is None:
        return None
    try:
        return Decimal(value)
    except InvalidOperation:
        raise click.BadParameter(f"{value!r} is not a number")


@click.group('system')
def system_group():
    """System bootstrap and repair commands."""


@system_group.command('init-db')
@with_appcontext
def init_db():
    """Create all tables that do not exist yet. Safe to run repeatedly."""
    click.echo("BUILD  Creating missing tables...")
    db.create_all()
    click.echo("PASS Schema ready.")


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


@click.group('orders')
def orders_group():
    """Order inspection and expiration commands."""


@orders_group.command('expire')
@click.option('--limit', type=int, default=None, help='Max orders per run (default: EXPIRATION_SWEEP_BATCH_SIZE)')
@with_appcontext
def expire_orders(limit):
    """
    Cancel placed orders whose payment window closed without a receipt.

    Intended for cron. Safe to run concurrently with the API.
    """
    if limit is not None and limit <= 0:
        raise click.BadParameter("must be positive", param_hint="--limit")
    cancelled = expiration_service.cancel_expired_orders(limit=limit)
    click.echo(f"PASS Cancelled {cancelled} expired orders.")


@orders_group.command('show')
@click.argument('order_id', type=int)
@with_appcontext
def show_order(order_id):
    """Print an order with its payment and redemption as JSON."""
    try:
        order = order_service.get_order(order_id)
    except MarketplaceError as e:
        click.echo(f"FAIL {e}")
        raise SystemExit(1)

    data = order.to_dict()
    data["payment"] = order.payment.to_dict() if order.payment else None
    redemption = loyalty_service.get_redemption(order.id)
    data["redemption"] = redemption.to_dict() if redemption else None
    click.echo(json.dumps(data, indent=2))


@click.group('rewards')
def rewards_group():
    """Seller loyalty program administration."""


@rewards_group.command('configure')
@click.option('--seller-id', required=True)
@click.option('--inactive', is_flag=True, help='Switch the program off')
@click.option('--points-per-peso', default=None, callback=_decimal_option, help='Points per minor currency unit, e.g. 0.0286')
@click.option('--minimum-purchase-cents', type=int, default=None)
@click.option('--point-value-cents', type=int, default=None, help='Override the value of one point')
@click.option('--max-redemption-ratio', default=None, callback=_decimal_option, help='Max share of an order total payable with points')
@with_appcontext
def configure_rewards(seller_id, inactive, points_per_peso, minimum_purchase_cents, point_value_cents, max_redemption_ratio):
    """Create or update a seller's rewards program."""
    try:
        config = loyalty_service.configure_rewards(
            seller_id,
            is_active=not inactive,
            points_per_peso=points_per_peso,
            minimum_purchase_cents=minimum_purchase_cents,
            point_value_cents=point_value_cents,
            max_redemption_ratio=max_redemption_ratio,
        )
    except MarketplaceError as e:
        click.echo(f"FAIL {e}")
        raise SystemExit(1)

    state = "active" if config.is_active else "inactive"
    click.echo(
        f"PASS Rewards for {seller_id} {state}: {config.points_per_peso} pts/unit, "
        f"minimum {config.minimum_purchase_cents}, point value {loyalty_service.point_value_cents(config)} cents"
    )


@rewards_group.command('add-tier')
@click.option('--seller-id', required=True)
@click.option('--name', 'tier_name', required=True)
@click.option('--minimum-purchase-cents', type=int, required=True)
@click.option('--multiplier', default='1.0', show_default=True, callback=_decimal_option)
@click.option('--description', default=None)
@with_appcontext
def add_tier(seller_id, tier_name, minimum_purchase_cents, multiplier, description):
    """Create or update a reward tier."""
    try:
        tier = loyalty_service.upsert_tier(
            seller_id,
            tier_name,
            minimum_purchase_cents=minimum_purchase_cents,
            points_multiplier=multiplier,
            description=description,
        )
    except MarketplaceError as e:
        click.echo(f"FAIL {e}")
        raise SystemExit(1)

    click.echo(f"PASS Tier {tier.tier_name}: >= {tier.minimum_purchase_cents} x{tier.points_multiplier}")


@rewards_group.command('audit')
@click.option('--user-id', required=True)
@click.option('--seller-id', required=True)
@with_appcontext
def audit_balance(user_id, seller_id):
    """Check that a stored balance equals the sum of its ledger."""
    result = loyalty_service.verify_balance(user_id, seller_id)
    if result["matches"]:
        click.echo(f"PASS Balance {result['balance_points']} matches ledger")
    else:
        click.echo(
            f"FAIL Balance {result['balance_points']} != ledger {result['ledger_points']}"
        )
        raise SystemExit(1)


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(orders_group)
    app.cli.add_command(rewards_group)
