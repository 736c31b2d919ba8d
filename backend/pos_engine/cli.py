# Overview: Flask CLI command groups for bootstrap, tax preview and inspection.

# backend/pos_engine/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap/repair:
# - python -m flask system init
#   Idempotent bootstrap: creates tables and the default payment methods.
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
#
# Taxes:
# - python -m flask taxes rules
#   List the active profile and its rules in evaluation order.
# - python -m flask taxes preview --price 100 --qty 2 [--variant-id 3] [--customer-type wholesale]
#   Resolve tax for a one-line cart against the active profile.
#
# Inventory:
# - python -m flask inventory stock 3 [--flows 10]
#   Show on-hand stock for a variant and its latest movements.
# - python -m flask inventory adjust 3 -- -2 --user-id 1 --note "Damaged"
#   Manual stock correction.
#
# Sales:
# - python -m flask sales next-invoice
#   Show the invoice number the next sale would receive.
# - python -m flask sales show 12
#   Print a sale with its lines, payments and returns.

import json
from decimal import Decimal

import click
from flask import current_app
from flask.cli import with_appcontext

from .errors import PosError
from .extensions import db
from .models import PaymentMethod, Variant
from .money import format_money, quantize_money, to_decimal
from .services import build_engine
from .services.tax_service import TAX_MODE_ITEM, TAX_MODES, CartContext, CartLine

DEFAULT_PAYMENT_METHODS = ("Cash", "Card")


def _fail(exc: PosError):
    raise click.ClickException(f"{type(exc).__name__}: {exc.message}")


@click.group('system')
def system_group():
    """System bootstrap and repair commands."""


@system_group.command('init')
@with_appcontext
def init_system():
    """Create missing tables and seed default payment methods."""
    click.echo("START Initializing POS engine...")
    db.create_all()

    created = 0
    for name in DEFAULT_PAYMENT_METHODS:
        if db.session.query(PaymentMethod).filter_by(name=name).first() is None:
            db.session.add(PaymentMethod(name=name, is_active=True))
            created += 1
    db.session.commit()

    click.echo(f"PASS Payment methods created: {created}")
    current_app.logger.info("System init complete")


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

    click.echo("PASS Database reset complete. Run 'python -m flask system init' to seed defaults.")


@click.group('taxes')
def taxes_group():
    """Tax configuration inspection."""


@taxes_group.command('rules')
@with_appcontext
def list_rules():
    """List the active tax profile and its rules."""
    engine = build_engine()
    profile = engine.taxes.active_profile()
    if profile is None:
        click.echo("No active tax profile. Sales are untaxed.")
        return

    click.echo(f"Profile {profile.id}: {profile.name} ({profile.pricing_mode})")
    click.echo("\n" + "=" * 80)
    click.echo(f"{'ID':<5} {'Prio':<6} {'Scope':<10} {'Rate':<10} {'Compound':<10} {'Name'}")
    click.echo("=" * 80)
    for rule in engine.taxes.rules_for_profile(profile.id):
        compound = "Yes" if rule.is_compound else "No"
        click.echo(f"{rule.id:<5} {rule.priority:<6} {rule.scope:<10} {str(rule.rate_percent):<10} {compound:<10} {rule.label()}")
    click.echo("=" * 80 + "\n")


@taxes_group.command('preview')
@click.option('--price', required=True, help='Unit price')
@click.option('--qty', default=1, type=int, help='Quantity')
@click.option('--variant-id', type=int, help='Resolve category and product from this variant')
@click.option('--category-id', type=int, help='Tax category (when no variant is given)')
@click.option('--customer-type', default=None, help='Customer type for rule matching')
@click.option('--mode', type=click.Choice(TAX_MODES), default=TAX_MODE_ITEM, help='Tax mode')
@click.option('--bill-tax-id', 'bill_tax_ids', type=int, multiple=True, help='Rule id for bill mode (repeatable)')
@with_appcontext
def preview_tax(price, qty, variant_id, category_id, customer_type, mode, bill_tax_ids):
    """Resolve tax for a single cart line and print the breakdown."""
    engine = build_engine()
    try:
        unit_price = quantize_money(to_decimal(price))
    except ValueError:
        raise click.BadParameter(f"invalid price: {price}", param_hint="--price")

    product_id = None
    if variant_id is not None:
        variant = db.session.get(Variant, variant_id)
        if variant is None:
            raise click.ClickException(f"Variant {variant_id} not found")
        product_id = variant.product_id
        category_id = variant.product.tax_category_id if variant.product else None

    subtotal = unit_price * qty
    line = CartLine(
        ref=1,
        unit_price=unit_price,
        quantity=qty,
        subtotal=subtotal,
        variant_id=variant_id,
        product_id=product_id,
        tax_category_id=category_id,
    )
    try:
        resolver = engine.taxes.load_resolver(mode, list(bill_tax_ids))
        breakdown = resolver.resolve([line], CartContext(invoice_total=subtotal, customer_type=customer_type))
    except PosError as exc:
        _fail(exc)

    line_tax = breakdown.lines[0]
    click.echo(f"Pricing mode: {breakdown.pricing_mode or 'untaxed'}")
    for applied in line_tax.applied:
        click.echo(f"  {applied.name:<30} {applied.rate_percent:>8}%  base {format_money(applied.base):>12}  tax {applied.amount:>10}")
    click.echo(f"Taxable: {line_tax.taxable_amount}  Tax: {line_tax.tax_amount}  Effective rate: {line_tax.effective_rate}%")
    total = subtotal if breakdown.is_inclusive else subtotal + breakdown.total_tax
    click.echo(f"Total: {format_money(total)}")


@click.group('inventory')
def inventory_group():
    """Stock inspection and correction."""


@inventory_group.command('stock')
@click.argument('variant_id', type=int)
@click.option('--flows', 'flow_limit', default=10, type=int, help='Number of recent movements to show')
@with_appcontext
def show_stock(variant_id, flow_limit):
    """Show on-hand stock and recent movements for a variant."""
    engine = build_engine()
    try:
        on_hand = engine.inventory.get_stock(variant_id)
    except PosError as exc:
        _fail(exc)

    click.echo(f"Variant {variant_id}: {on_hand} on hand")
    for flow in engine.inventory.list_flows(variant_id, limit=flow_limit):
        ref = f"{flow.reference_type}:{flow.reference_id}" if flow.reference_type else "-"
        click.echo(f"  {flow.id:<6} {flow.event_type:<12} {flow.quantity:>+6} -> {flow.balance_after:<6} {ref}")


@inventory_group.command('adjust')
@click.argument('variant_id', type=int)
@click.argument('delta', type=int)
@click.option('--user-id', required=True, type=int, help='Actor performing the correction')
@click.option('--note', default=None, help='Reason for the correction')
@with_appcontext
def adjust_stock(variant_id, delta, user_id, note):
    """Apply a manual stock correction."""
    engine = build_engine()
    try:
        flow = engine.inventory.adjust_stock(variant_id, delta, user_id=user_id, note=note)
    except PosError as exc:
        _fail(exc)
    click.echo(f"PASS Variant {variant_id} now has {flow.balance_after} on hand")


@click.group('sales')
def sales_group():
    """Sale inspection commands."""


@sales_group.command('next-invoice')
@with_appcontext
def next_invoice():
    """Show the next invoice number without allocating it."""
    click.echo(build_engine().invoices.peek_next_invoice_number())


@sales_group.command('show')
@click.argument('sale_id', type=int)
@with_appcontext
def show_sale(sale_id):
    """Print a sale as JSON."""
    engine = build_engine()
    try:
        sale = engine.sales.get_sale(sale_id)
    except PosError as exc:
        _fail(exc)

    data = sale.to_dict(include_items=True)
    data["transactions"] = [txn.to_dict() for txn in sale.transactions]
    data["returns"] = [ret.to_dict() for ret in sale.returns]
    click.echo(json.dumps(data, indent=2, default=lambda v: str(v) if isinstance(v, Decimal) else v))


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(taxes_group)
    app.cli.add_command(inventory_group)
    app.cli.add_command(sales_group)
