# Overview: Flask CLI command groups for ESL sync operations, tenants, and maintenance.

# backend/shelfsync/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to shelfsync (PowerShell: $env:FLASK_APP="shelfsync").
# - Use: python -m flask <group> <command> [options]
#
# ESL sync engine:
# - python -m flask esl process-queue [--org-id 1] [--limit 50]
#   Dispatch due sync queue items to the cloud.
# - python -m flask esl reconcile-buttons [--org-id 1] [--minutes 60] [--no-wake]
#   Turn recent button presses into replenishment requests (all active orgs by default).
# - python -m flask esl sync-products --org-id 1 [--product-id 5 --product-id 6]
#   Push unsynced (or the given) products to the cloud as goods.
# - python -m flask esl sync-devices --org-id 1 [--discover]
#   Refresh tag shadows and gateway online state from the cloud.
# - python -m flask esl retry-failed [--id 12] [--org-id 1]
#   Reset failed queue items to pending.
# - python -m flask esl queue-status [--org-id 1]
#   Show queue counts and recent failures.
# - python -m flask esl token-status
#   Show cached cloud token state (never the token itself).
#
# Organization management (MULTI-TENANT):
# - python -m flask orgs list
# - python -m flask orgs create --name "Acme Corp" --code "ACME"
#
# Maintenance:
# - python -m flask maintenance cleanup-sync-queue --retention-days 30
#   Delete success/failed queue items older than the retention window.

import click
from datetime import timedelta
from flask import current_app
from flask.cli import with_appcontext

from .extensions import db
from .errors import SyncError
from .models import Organization, Product, DeviceStatus, Gateway
from .services import (
    device_service,
    event_reconciler,
    gateway_service,
    maintenance_service,
    product_sync_service,
    sync_queue_service,
)
from .services.esl_cloud import get_cloud_client
from .services.token_service import get_default_store_id
from .time_utils import to_utc_z


def _store_id(client, owner_id=None) -> str:
    store_id = get_default_store_id(client, owner_id)
    if not store_id:
        raise click.ClickException("No ESL cloud store configured")
    return store_id


def _echo_errors(errors, limit: int = 10):
    for err in errors[:limit]:
        click.echo(f"   - {err}")
    if len(errors) > limit:
        click.echo(f"   ... and {len(errors) - limit} more")


@click.group('esl')
def esl_group():
    """ESL cloud synchronization commands."""


@esl_group.command('process-queue')
@click.option('--org-id', type=int, help='Only process items of this organization')
@click.option('--limit', type=int, help='Maximum items to process')
@with_appcontext
def process_queue_cli(org_id, limit):
    """Dispatch due sync queue items."""
    client = get_cloud_client(current_app)
    store_id = _store_id(client, org_id) if org_id else None
    summary = sync_queue_service.dispatch(client, store_id=store_id, owner_id=org_id, limit=limit)

    click.echo(
        f"PASS Processed {summary['processed']} item(s): "
        f"{summary['succeeded']} succeeded, {summary['retried']} retrying, "
        f"{summary['failed']} failed, {summary['skipped']} skipped"
    )
    _echo_errors(summary["errors"])


@esl_group.command('reconcile-buttons')
@click.option('--org-id', type=int, help='Organization ID (all active organizations if omitted)')
@click.option('--minutes', type=int, help='Look-back window in minutes')
@click.option('--no-wake', is_flag=True, help='Skip waking MIX firmware tags')
@with_appcontext
def reconcile_buttons_cli(org_id, minutes, no_wake):
    """Create replenishment requests from recent button presses."""
    client = get_cloud_client(current_app)
    window = timedelta(minutes=minutes) if minutes else None

    if org_id is None:
        results = event_reconciler.reconcile_all_tenants(client=client, window=window)
        for owner_id, outcome in results.items():
            if "error" in outcome:
                click.echo(f"FAIL Org {owner_id}: {outcome['error']}")
            else:
                click.echo(
                    f"PASS Org {owner_id}: {outcome['processed']} created, "
                    f"{outcome['skipped']} skipped, {len(outcome['errors'])} error(s)"
                )
        return

    try:
        result = event_reconciler.reconcile_button_events(org_id, window, client=client, wake_tags=not no_wake)
    except SyncError as exc:
        raise click.ClickException(str(exc))
    click.echo(f"PASS Created {result.processed} request(s), skipped {result.skipped} {result.skip_reasons}")
    _echo_errors(result.errors)


@esl_group.command('sync-products')
@click.option('--org-id', type=int, required=True, help='Organization ID')
@click.option('--product-id', 'product_ids', type=int, multiple=True, help='Product ID (repeatable)')
@with_appcontext
def sync_products_cli(org_id, product_ids):
    """Push products to the cloud as goods."""
    client = get_cloud_client(current_app)
    summary = product_sync_service.sync_products(
        org_id,
        list(product_ids) if product_ids else None,
        store_id=_store_id(client, org_id),
        client=client,
    )
    click.echo(f"PASS Synced {summary['processed']} product(s), skipped {summary['skipped']}")
    _echo_errors(summary["errors"])


@esl_group.command('sync-devices')
@click.option('--org-id', type=int, required=True, help='Organization ID')
@click.option('--discover', is_flag=True, help='Create shadows for cloud tags not known locally')
@with_appcontext
def sync_devices_cli(org_id, discover):
    """Refresh tag shadows and gateway state from the cloud."""
    client = get_cloud_client(current_app)
    store_id = _store_id(client, org_id)

    summary = device_service.sync_device_status(org_id, store_id=store_id, client=client, discover=discover)
    click.echo(
        f"PASS Tags: {summary['processed']} updated, {summary['offline']} offline, "
        f"{summary['discovered']} discovered"
    )
    _echo_errors(summary["errors"])

    report = gateway_service.reconcile_gateway_status(org_id, store_id=store_id, client=client)
    online = sum(1 for g in report if g["is_online"])
    click.echo(f"PASS Gateways: {online}/{len(report)} online")


@esl_group.command('retry-failed')
@click.option('--id', 'ids', type=int, multiple=True, help='Queue item ID (repeatable; all failed if omitted)')
@click.option('--org-id', type=int, help='Limit to one organization')
@with_appcontext
def retry_failed_cli(ids, org_id):
    """Reset failed queue items to pending."""
    reset = sync_queue_service.retry_failed(list(ids) if ids else None, owner_id=org_id)
    click.echo(f"PASS Reset {reset} failed item(s) to pending")


@esl_group.command('queue-status')
@click.option('--org-id', type=int, help='Limit to one organization')
@with_appcontext
def queue_status_cli(org_id):
    """Show sync queue counts and recent failures."""
    status = sync_queue_service.get_sync_queue_status(org_id)

    click.echo("\n" + "="*60)
    for name, count in status["counts"].items():
        click.echo(f"{name:<12} {count}")
    click.echo(f"{'total':<12} {status['total']}")
    click.echo("="*60)

    if status["recent_failed"]:
        click.echo("Recent failures:")
        for item in status["recent_failed"]:
            click.echo(
                f"   #{item['id']} {item['entity_type']}:{item['entity_id']} "
                f"{item['operation']} -> {item['last_error']}"
            )
    click.echo("")


@esl_group.command('token-status')
@with_appcontext
def token_status_cli():
    """Show cached cloud token state."""
    status = get_cloud_client(current_app).tokens.status()
    if not status["has_token"]:
        click.echo("No cached token.")
        return
    state = "valid" if status["is_valid"] else "expired"
    click.echo(f"Token {state}; expires {to_utc_z(status['expires_at'])}, refreshed {to_utc_z(status['last_refreshed_at'])}")


@click.group('orgs')
def orgs_group():
    """Organization (tenant) management commands."""


@orgs_group.command('list')
@with_appcontext
def list_orgs():
    """List all organizations."""
    orgs = db.session.query(Organization).order_by(Organization.id).all()

    if not orgs:
        click.echo("No organizations found.")
        return

    click.echo("\n" + "="*80)
    click.echo(f"{'ID':<5} {'Name':<30} {'Code':<15} {'Active':<8} {'Products':<9} {'Tags':<6} {'Gateways'}")
    click.echo("="*80)

    for org in orgs:
        product_count = db.session.query(Product).filter_by(org_id=org.id).count()
        tag_count = db.session.query(DeviceStatus).filter_by(org_id=org.id).count()
        gateway_count = db.session.query(Gateway).filter_by(org_id=org.id).count()
        active_str = "Yes" if org.is_active else "No"

        click.echo(
            f"{org.id:<5} {org.name:<30} {org.code or '-':<15} {active_str:<8} "
            f"{product_count:<9} {tag_count:<6} {gateway_count}"
        )

    click.echo("="*80 + "\n")


@orgs_group.command('create')
@click.option('--name', required=True, help='Organization name')
@click.option('--code', required=True, help='Short code (unique)')
@with_appcontext
def create_org_cli(name, code):
    """Create a new organization (tenant)."""
    existing = db.session.query(Organization).filter_by(code=code).first()
    if existing:
        click.echo(f"FAIL Organization with code '{code}' already exists")
        return

    org = Organization(name=name, code=code, is_active=True)
    db.session.add(org)
    db.session.commit()

    click.echo(f"PASS Created organization: {org.name} (ID: {org.id}, Code: {org.code})")


@click.group('maintenance')
def maintenance_group():
    """Maintenance commands."""


@maintenance_group.command('cleanup-sync-queue')
@click.option('--retention-days', type=int, default=30, show_default=True)
@with_appcontext
def cleanup_sync_queue_cli(retention_days):
    """
    Cleanup finished sync queue items.

    Only success/failed items are deleted; pending and processing items are kept.
    """
    deleted = maintenance_service.cleanup_sync_queue(retention_days=retention_days)
    click.echo(f"Deleted {deleted} sync queue items older than {retention_days} days.")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(esl_group)
    app.cli.add_command(orgs_group)  # Multi-tenant organization management
    app.cli.add_command(maintenance_group)
