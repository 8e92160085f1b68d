# Overview: Flask CLI command groups for running sync, inspecting abandoned records, and maintenance.

# backend/posync/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# Sync:
# - python -m flask sync run [--entity stockout] [--force]
#   Run one sync pass (all entities in dependency order, or one entity plus its dependencies' adds).
# - python -m flask sync status
#   Show per-entity container counts, lock state and last errors.
#
# Abandoned records (mutations dropped after exhausting retries):
# - python -m flask abandoned list [--entity product] [--all]
#   List abandoned records (use --all to include already requeued ones).
# - python -m flask abandoned requeue 12
#   Put abandoned record 12 back into the staging area with fresh retry counters.
#
# Maintenance:
# - python -m flask maintenance cleanup-stale
#   Abandon staged records over the retry cap or older than SYNC_STALE_MAX_AGE_DAYS.
# - python -m flask maintenance purge-abandoned --retention-days 90
#   Delete abandoned records older than the retention window.

import json

import click
from flask.cli import with_appcontext

from .config import SyncPolicy
from .services import maintenance_service, offline_service
from .services.scheduler import get_scheduler
from .validation import ConflictError, NotFoundError, ValidationError


@click.group('sync')
def sync_group():
    """Offline sync commands."""


@sync_group.command('run')
@click.option('--entity', help='Entity to sync (default: all)')
@click.option('--force', is_flag=True, help='Wait out an in-flight pass and run a fresh one')
@with_appcontext
def run_sync_cli(entity, force):
    """
    Run a sync pass now.

    Example:
        flask sync run
        flask sync run --entity stockout --force
    """
    scheduler = get_scheduler()
    try:
        if entity:
            outcome = scheduler.sync_entity(entity, force=force)
        else:
            outcome = scheduler.sync_all(force=force)
    except ValidationError as e:
        raise click.ClickException(str(e))

    click.echo("\n" + "="*80)
    click.echo(f"{'Entity':<12} {'Pass':<9} {'Processed':<10} {'Skipped':<9} {'Errors':<8} {'Abandoned'}")
    click.echo("="*80)
    for name, result in outcome.results.items():
        for label, pass_result in (("adds", result.adds), ("updates", result.updates), ("deletes", result.deletes)):
            click.echo(
                f"{name:<12} {label:<9} {pass_result.processed:<10} {pass_result.skipped:<9} "
                f"{pass_result.errors:<8} {pass_result.abandoned}"
            )
    click.echo("="*80 + "\n")

    if not outcome.success:
        raise click.ClickException(f"Sync failed: {outcome.error}")
    click.echo(f"PASS Sync completed ({outcome.processed} processed, {outcome.errors} errors)")


@sync_group.command('status')
@with_appcontext
def sync_status_cli():
    """Show sync status as JSON."""
    click.echo(json.dumps(get_scheduler().status(), indent=2, default=str))


@click.group('abandoned')
def abandoned_group():
    """Inspect and recover abandoned staged records."""


@abandoned_group.command('list')
@click.option('--entity', help='Filter by entity')
@click.option('--all', 'show_all', is_flag=True, help='Include requeued records')
@with_appcontext
def list_abandoned_cli(entity, show_all):
    """
    List abandoned records.

    Example:
        flask abandoned list
        flask abandoned list --entity stockout --all
    """
    try:
        rows = offline_service.list_abandoned(entity, include_requeued=show_all)
    except ValidationError as e:
        raise click.ClickException(str(e))

    if not rows:
        click.echo("No abandoned records found.")
        return

    click.echo("\n" + "="*110)
    click.echo(f"{'ID':<5} {'Entity':<10} {'Op':<7} {'Key':<40} {'Tries':<6} {'Reason':<12} {'Last error'}")
    click.echo("="*110)
    for row in rows:
        key = row.local_id or row.server_id or "-"
        error = (row.last_error or "-")[:30]
        click.echo(
            f"{row.id:<5} {row.entity:<10} {row.operation:<7} {key:<40} {row.retry_count:<6} "
            f"{row.reason:<12} {error}"
        )
    click.echo("="*110 + "\n")


@abandoned_group.command('requeue')
@click.argument('abandoned_id', type=int)
@with_appcontext
def requeue_abandoned_cli(abandoned_id):
    """Requeue an abandoned record for another round of sync attempts."""
    try:
        record = offline_service.requeue_abandoned(abandoned_id)
    except (NotFoundError, ConflictError) as e:
        raise click.ClickException(str(e))
    click.echo(f"PASS Requeued {record.entity} {record.operation} {record.record_key}")


@click.group('maintenance')
def maintenance_group():
    """Maintenance commands."""


@maintenance_group.command('cleanup-stale')
@with_appcontext
def cleanup_stale_cli():
    """
    Abandon staged records that exceeded the retry cap or went stale.

    Every removed record is kept in abandoned_records.
    """
    from flask import current_app

    count = maintenance_service.cleanup_stale_staged(policy=SyncPolicy.from_config(current_app.config))
    click.echo(f"Abandoned {count} stale staged records.")


@maintenance_group.command('purge-abandoned')
@click.option('--retention-days', type=int, default=90, show_default=True)
@with_appcontext
def purge_abandoned_cli(retention_days):
    """
    Delete old abandoned records.

    Default retention: 90 days.
    """
    deleted = maintenance_service.purge_abandoned_records(retention_days=retention_days)
    click.echo(f"Deleted {deleted} abandoned records older than {retention_days} days.")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(sync_group)
    app.cli.add_command(abandoned_group)
    app.cli.add_command(maintenance_group)
