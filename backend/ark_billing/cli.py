# Overview: Flask CLI command group for billing bootstrap and maintenance.

# backend/ark_billing/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Use: python -m flask --app ark_billing billing <command> [options]
#
# - python -m flask --app ark_billing billing init-db
#   Create all tables (local SQLite; use `flask db upgrade` for real databases).
# - python -m flask --app ark_billing billing seed-order --first-name Dana --email dana@example.com --price 500.00
#   Create a priced order to invoice against (DEV only).
# - python -m flask --app ark_billing billing check-overdue [--today 2026-11-20]
#   Move SENT/VIEWED payments past their due date to OVERDUE and queue reminders.
# - python -m flask --app ark_billing billing refresh-status 42
#   Pull the provider's invoice status for payment 42 and reconcile.
# - python -m flask --app ark_billing billing replay-webhooks [--limit 50]
#   Reprocess webhook events stuck in FAILED.

import click
from flask.cli import with_appcontext

from .errors import BillingError
from .extensions import db
from .models import Order
from .money import dollars_to_cents
from .services.payment_service import get_lifecycle_manager
from .time_utils import parse_iso_date, utcnow


@click.group('billing')
def billing_group():
    """Payment and invoice lifecycle commands."""


@billing_group.command('init-db')
@with_appcontext
def init_db():
    """Create all billing tables (idempotent)."""
    db.create_all()
    click.echo("PASS Database tables created")


@billing_group.command('seed-order')
@click.option('--first-name', required=True)
@click.option('--last-name', default=None)
@click.option('--email', required=True)
@click.option('--phone', default=None)
@click.option('--price', required=True, help='Final price in dollars, e.g. 500.00')
@click.option('--size', 'dumpster_size', default='20')
@with_appcontext
def seed_order(first_name, last_name, email, phone, price, dumpster_size):
    """Create a priced order for local invoicing."""
    try:
        dollars_to_cents(price)
    except BillingError as e:
        raise click.BadParameter(str(e), param_hint='--price')

    order = Order(
        order_number=f"ORD-{utcnow():%Y%m%d%H%M%S}",
        first_name=first_name,
        last_name=last_name,
        email=email,
        phone=phone,
        dumpster_size=dumpster_size,
        final_price=price,
    )
    db.session.add(order)
    db.session.commit()
    click.echo(f"PASS Created order {order.order_number} (ID: {order.id})")


@billing_group.command('check-overdue')
@click.option('--today', default=None, help='Override the sweep date (YYYY-MM-DD)')
@with_appcontext
def check_overdue(today):
    """Mark past-due invoices OVERDUE."""
    try:
        sweep_date = parse_iso_date(today)
    except ValueError:
        raise click.BadParameter("must be YYYY-MM-DD", param_hint='--today')

    updated = get_lifecycle_manager().check_overdue(sweep_date)
    for payment in updated:
        click.echo(f"  {payment.payment_number}  due {payment.due_date}  balance {payment.balance_due}")
    click.echo(f"Marked {len(updated)} payment(s) OVERDUE.")


@billing_group.command('refresh-status')
@click.argument('payment_id', type=int)
@with_appcontext
def refresh_status(payment_id):
    """Reconcile one payment with its provider invoice."""
    try:
        payment, snapshot = get_lifecycle_manager().refresh_remote_status(payment_id)
    except BillingError as e:
        raise click.ClickException(str(e))

    click.echo(f"{payment.payment_number}: local={payment.status} remote={snapshot.status} "
               f"paid={payment.paid_amount}/{payment.total_amount}")


@billing_group.command('replay-webhooks')
@click.option('--limit', type=int, default=50, show_default=True)
@with_appcontext
def replay_webhooks(limit):
    """Reprocess FAILED webhook events, oldest first."""
    events = get_lifecycle_manager().replay_failed_webhooks(limit=limit)
    for event in events:
        click.echo(f"  {event.source}/{event.event_id} {event.event_type}: {event.status}")
    click.echo(f"Replayed {len(events)} event(s).")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(billing_group)
