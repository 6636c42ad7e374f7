# Overview: Flask CLI command groups for bootstrap, inspection, and maintenance.

# backend/stockledger/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap/repair:
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
#
# Stock inspection/maintenance:
# - python -m flask stock alerts [--min-severity high]
#   Evaluate alerts for every active ingredient (critical first).
# - python -m flask stock mark-expired
#   Flip active batches past their expiry date to "expired" (stock stays counted).
# - python -m flask stock verify-ledger
#   Compare aggregate stock, batch remainders and movement replay; exits 1 on mismatch.
# - python -m flask stock valuation
#   Inventory value at batch cost, per ingredient.
# - python -m flask stock reorder [--lead-time-days 7] [--safety-multiplier 1.5]
#   Purchase suggestions from 30-day consumption, most urgent first.

import click
from flask import current_app
from flask.cli import with_appcontext

from .extensions import db
from .services import build_stock_services
from .services.alert_service import Severity
from .services.ledger_service import DEFAULT_LEAD_TIME_DAYS, DEFAULT_SAFETY_MULTIPLIER
from .services.repository import SqlAlchemyStockRepository


def _services():
    config = current_app.config
    repository = SqlAlchemyStockRepository(
        db.session,
        attempts=int(config.get("STOCK_RETRY_ATTEMPTS", 3)),
        backoff=float(config.get("STOCK_RETRY_BACKOFF", 0.1)),
    )
    return build_stock_services(repository, config)


@click.group('system')
def system_group():
    """System bootstrap and repair commands."""


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


@click.group('stock')
def stock_group():
    """Stock ledger inspection and maintenance."""


@stock_group.command('alerts')
@click.option(
    '--min-severity',
    type=click.Choice([s.value for s in Severity]),
    default=None,
    help='Only show alerts at or above this severity',
)
@with_appcontext
def stock_alerts(min_severity):
    """List current stock alerts (critical first)."""
    alerts = _services().alerts.scan(min_severity=Severity(min_severity) if min_severity else None)

    if not alerts:
        click.echo("No stock alerts.")
        return

    click.echo("\n" + "="*100)
    click.echo(f"{'Severity':<10} {'Type':<16} {'Ingredient':<24} {'Message'}")
    click.echo("="*100)

    for alert in alerts:
        click.echo(
            f"{alert.severity.value:<10} {alert.type.value:<16} {alert.ingredient_name[:24]:<24} {alert.message}"
        )

    click.echo("="*100 + "\n")


@stock_group.command('mark-expired')
@with_appcontext
def stock_mark_expired():
    """Mark active batches past their expiry date as expired."""
    flipped = _services().ledger.mark_expired_batches()
    for batch in flipped:
        click.echo(f"EXPIRED batch {batch.batch_number} (ingredient {batch.ingredient_id}), "
                   f"{batch.remaining_quantity} left since {batch.expiry_date.isoformat()}")
    click.echo(f"Marked {len(flipped)} batch(es) expired.")


@stock_group.command('verify-ledger')
@with_appcontext
def stock_verify_ledger():
    """Check aggregate stock == batch remainders == movement replay."""
    checks = _services().ledger.verify()
    failures = [c for c in checks if not c.ok]

    for check in failures:
        click.echo(
            f"FAIL ingredient {check.ingredient_id} ({check.ingredient_name}): "
            f"stock={check.aggregate} batches={check.batch_total} replay={check.replayed} "
            f"batch mismatches={check.batch_mismatches or 'none'}"
        )

    if failures:
        click.echo(f"{len(failures)} of {len(checks)} ingredient(s) failed the ledger check.")
        raise SystemExit(1)

    click.echo(f"PASS {len(checks)} ingredient(s) consistent.")


@stock_group.command('valuation')
@with_appcontext
def stock_valuation():
    """Inventory value at batch cost."""
    report = _services().ledger.valuation()

    click.echo("\n" + "="*80)
    click.echo(f"{'ID':<5} {'Ingredient':<30} {'Quantity':>14} {'Avg cost':>12} {'Value':>14}")
    click.echo("="*80)

    for row in report["ingredients"]:
        quantity = f"{row['quantity']:.3f} {row['unit']}"
        click.echo(
            f"{row['ingredient_id']:<5} {row['ingredient_name'][:30]:<30} "
            f"{quantity:>14} {row['average_cost_per_unit']:>12.2f} {row['value']:>14.2f}"
        )

    click.echo("="*80)
    click.echo(f"{'Total':<66} {report['total_value']:>13.2f}\n")


@stock_group.command('reorder')
@click.option('--lead-time-days', type=int, default=DEFAULT_LEAD_TIME_DAYS, show_default=True,
              help='Days between ordering and delivery')
@click.option('--safety-multiplier', default=str(DEFAULT_SAFETY_MULTIPLIER), show_default=True,
              help='Safety stock as a multiple of min_stock')
@with_appcontext
def stock_reorder(lead_time_days, safety_multiplier):
    """Suggest purchase quantities from the last 30 days of consumption."""
    suggestions = _services().ledger.reorder_suggestions(lead_time_days, safety_multiplier)

    if not suggestions:
        click.echo("Nothing to reorder.")
        return

    click.echo("\n" + "="*100)
    click.echo(f"{'Urgency':<10} {'Ingredient':<28} {'Stock':>12} {'Per day':>10} {'Order':>14} {'Est. cost':>14}")
    click.echo("="*100)

    for s in suggestions:
        order = f"{s.suggested_quantity:.3f} {s.unit}"
        click.echo(
            f"{s.urgency.value:<10} {s.ingredient_name[:28]:<28} {float(s.current_stock):>12.3f} "
            f"{float(s.daily_consumption):>10.3f} {order:>14} {float(s.estimated_cost):>14.2f}"
        )

    click.echo("="*100 + "\n")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(stock_group)
