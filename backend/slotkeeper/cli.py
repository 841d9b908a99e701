# Overview: Flask CLI command groups for schema setup, the expiry sweep, and binding maintenance.

# backend/slotkeeper/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to the app factory (PowerShell: $env:FLASK_APP="slotkeeper:create_app").
# - Use: python -m flask <group> <command> [options]
#
# System:
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
#
# Expiry sweep:
# - python -m flask sweep run [--now 2025-01-31T00:00:00Z]
#   Release lapsed slots, expire overdue orders and recompute unit statuses.
#
# Binding maintenance:
# - python -m flask bindings check
#   Report orders whose binding disagrees with their inventory.
# - python -m flask bindings orphans [--release]
#   List slots and units pointing at deleted orders; --release frees them.

import click
from flask.cli import with_appcontext

from .extensions import db
from .services import expiry_service, order_service
from .time_utils import parse_iso_datetime


@click.group('system')
def system_group():
    """Schema commands."""


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


@click.group('sweep')
def sweep_group():
    """Expiry sweep commands."""


@sweep_group.command('run')
@click.option('--now', 'now_text', default=None, help='ISO-8601 clock reading to sweep at (default: server time)')
@with_appcontext
def sweep_run(now_text):
    """
    Run the expiry sweep once.

    Meant for a scheduler (cron, systemd timer); safe to run repeatedly.
    """
    now = None
    if now_text:
        try:
            now = parse_iso_datetime(now_text)
        except ValueError:
            raise click.BadParameter("must be an ISO-8601 datetime", param_hint="--now")

    result = expiry_service.sweep(now=now)
    click.echo(f"Released {len(result.released_slots)} slot binding(s).")
    click.echo(f"Expired {len(result.expired_order_ids)} order(s).")
    click.echo(f"Changed status of {len(result.status_changes)} unit(s).")
    for change in result.status_changes:
        click.echo(f"  unit {change['inventory_id']}: {change['from']} -> {change['to']}")


@click.group('bindings')
def bindings_group():
    """Binding inspection and repair commands."""


@bindings_group.command('check')
@with_appcontext
def bindings_check():
    """Check every order against its inventory. Exits 1 when anything disagrees."""
    problems = order_service.check_all_bindings()
    if not problems:
        click.echo("PASS All bindings are consistent.")
        return

    for item in problems:
        click.echo(f"FAIL order {item['order_id']}:")
        for problem in item["problems"]:
            details = ", ".join(f"{k}={v}" for k, v in problem.items() if k != "problem")
            click.echo(f"  - {problem['problem']}" + (f" ({details})" if details else ""))
    raise SystemExit(1)


@bindings_group.command('orphans')
@click.option('--release', 'do_release', is_flag=True, help='Release the orphaned bindings')
@with_appcontext
def bindings_orphans(do_release):
    """List (or release) bindings whose order no longer exists."""
    orphans = order_service.find_orphaned_bindings()
    if not orphans:
        click.echo("No orphaned bindings.")
        return

    for item in orphans:
        where = f"slot {item['slot_id']}" if item["slot_id"] else "unit link"
        click.echo(f"unit {item['inventory_id']} {where} -> missing order {item['order_id']}")

    if do_release:
        released = order_service.release_orphaned_bindings(actor="cli")
        click.echo(f"PASS Released {len(released)} orphaned binding(s).")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(sweep_group)
    app.cli.add_command(bindings_group)
