# Overview: Flask CLI command groups for edition ledger maintenance and reconciliation.

# backend/edition_ledger/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# Editions:
# - python -m flask editions reassign PRODUCT_ID
#   Resequence a product's edition numbers (1..k over active line items).
# - python -m flask editions set-size PRODUCT_ID 50
#   Configure a limited edition of 50 (use "open" for an open edition) and resequence.
# - python -m flask editions sync-file order.json
#   Sync an exported order JSON file (one order, a list, or {"orders": [...]}).
# - python -m flask editions history LINE_ITEM_ID
#   Show the event trail of one line item.
#
# Reconciliation (read-only):
# - python -m flask editions audit --product-id PRODUCT_ID
# - python -m flask editions audit --order-id ORDER_ID
#   Compare ledger entries with the commerce backend.
# - python -m flask editions sweep
#   Audit every product in the ledger. Exits 1 if anything critical is found.
#
# System:
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).

import json

import click
from flask.cli import with_appcontext

from .errors import EditionOverflow, LedgerError, ValidationError
from .extensions import db
from .services import auditor, ledger_service
from .services.edition_assigner import reassign


SEVERITY_LABELS = {
    auditor.SEVERITY_CRITICAL: "CRIT",
    auditor.SEVERITY_WARNING: "WARN",
    auditor.SEVERITY_INFO: "INFO",
}


def _echo_reports(reports) -> None:
    for report in reports:
        click.echo(
            f"  {SEVERITY_LABELS[report.severity]} [{report.kind}] "
            f"{report.line_item_id or '-'}: {report.description}"
        )


def _echo_overflow(exc: EditionOverflow) -> None:
    click.echo(f"FAIL {exc}", err=True)
    click.echo(f"     Surplus line items: {', '.join(exc.surplus)}", err=True)


@click.group('editions')
def editions_group():
    """Edition numbering and reconciliation commands."""


@editions_group.command('reassign')
@click.argument('product_id')
@with_appcontext
def reassign_cmd(product_id):
    """Resequence edition numbers for PRODUCT_ID."""
    try:
        result = reassign(product_id, source="cli")
    except EditionOverflow as e:
        _echo_overflow(e)
        raise SystemExit(1)
    except LedgerError as e:
        click.echo(f"FAIL {e}", err=True)
        raise SystemExit(1)

    click.echo(
        f"PASS Product {product_id}: {result.active_count} active, "
        f"{len(result.changed)} rows changed"
    )
    for line_item_id, number in result.numbers.items():
        label = f"#{number}" if number is not None else "open"
        click.echo(f"  {line_item_id}: {label}")


@editions_group.command('set-size')
@click.argument('product_id')
@click.argument('size')
@click.option('--title', default=None, help='Product title')
@with_appcontext
def set_size_cmd(product_id, size, title):
    """Set the edition size of PRODUCT_ID (a positive integer or "open")."""
    if size.lower() == "open":
        edition_size = None
    else:
        try:
            edition_size = int(size)
        except ValueError:
            raise click.BadParameter('SIZE must be a positive integer or "open"')

    try:
        result = ledger_service.set_edition_size(product_id, edition_size, title=title, actor="cli")
    except ValidationError as e:
        raise click.BadParameter(str(e))
    except EditionOverflow as e:
        _echo_overflow(e)
        raise SystemExit(1)

    label = "open edition" if edition_size is None else f"edition of {edition_size}"
    click.echo(f"PASS Product {product_id} is now an {label} ({result.active_count} active)")


@editions_group.command('sync-file')
@click.argument('path', type=click.Path(exists=True, dir_okay=False))
@click.option('--skip-editions', is_flag=True, help='Update statuses without resequencing')
@with_appcontext
def sync_file_cmd(path, skip_editions):
    """Sync orders from an exported JSON file."""
    with open(path, encoding="utf-8") as fh:
        data = json.load(fh)

    if isinstance(data, dict) and isinstance(data.get("orders"), list):
        orders = data["orders"]
    elif isinstance(data, dict):
        orders = [data.get("order", data)]
    else:
        orders = data

    failed = 0
    for order in orders:
        try:
            result = ledger_service.sync_order(order, skip_editions=skip_editions, source="cli")
        except ValidationError as e:
            click.echo(f"FAIL {e}", err=True)
            failed += 1
            continue
        click.echo(f"PASS Order {result.order_name or result.order_id}: {len(result.line_items)} line items")
        for overflow in result.overflows:
            _echo_overflow(overflow)
            failed += 1

    if failed:
        raise SystemExit(1)


@editions_group.command('history')
@click.argument('line_item_id')
@with_appcontext
def history_cmd(line_item_id):
    """Show the event trail of LINE_ITEM_ID."""
    try:
        history = ledger_service.get_edition_history(line_item_id)
    except LedgerError as e:
        click.echo(f"FAIL {e}", err=True)
        raise SystemExit(1)

    click.echo(f"LIST {history['event_count']} events for line item {line_item_id}")
    for event in history["events"]:
        number = f" #{event['edition_number']}" if event["edition_number"] is not None else ""
        click.echo(
            f"  {event['created_at']} {event['event_type']}{number} "
            f"({event['status_reason'] or '-'}) via {event['source'] or '-'}"
        )


@editions_group.command('audit')
@click.option('--product-id', default=None, help='Audit one product')
@click.option('--order-id', default=None, help='Audit one order')
@with_appcontext
def audit_cmd(product_id, order_id):
    """Read-only reconciliation of one product or one order."""
    try:
        reports = auditor.audit(product_id=product_id, order_id=order_id)
    except ValidationError as e:
        raise click.UsageError(str(e))

    scope = f"product {product_id}" if product_id else f"order {order_id}"
    if not reports:
        click.echo(f"PASS No discrepancies for {scope}")
        return
    click.echo(f"WARN {len(reports)} discrepancies for {scope}")
    _echo_reports(reports)


@editions_group.command('sweep')
@with_appcontext
def sweep_cmd():
    """Audit every product in the ledger."""
    results = auditor.audit_all()
    critical = 0
    for product_id, reports in results.items():
        if not reports:
            continue
        click.echo(f"PRODUCT {product_id}: {len(reports)} discrepancies")
        _echo_reports(reports)
        critical += sum(1 for r in reports if r.severity == auditor.SEVERITY_CRITICAL)

    click.echo(f"DONE Audited {len(results)} products, {critical} critical")
    if critical:
        raise SystemExit(1)


@click.group('system')
def system_group():
    """Database maintenance commands."""


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


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(editions_group)
    app.cli.add_command(system_group)
