"""
CLI Commands for the points ledger.

These commands can be run manually or via cron jobs when the in-process
scheduler is disabled:

# Points expiration (run daily at 1 AM)
0 1 * * * cd /app && flask points expire

# Streak reset (run daily at 0:30)
30 0 * * * cd /app && flask points reset-streaks
"""

import sys
from datetime import datetime, timedelta

import click
from flask.cli import with_appcontext

from ..services.scheduled_tasks import scheduled_tasks_service
from ..services.stats_service import StatsService


@click.group('points')
def points_cli():
    """Loyalty points commands."""
    pass


@points_cli.command('expire')
@click.option('--dry-run', is_flag=True, help='Preview without expiring points')
@with_appcontext
def expire_points(dry_run):
    """
    Expire points that have passed their expiration date.

    Run this daily.
    """
    result = scheduled_tasks_service.expire_points(dry_run=dry_run)

    prefix = '[DRY RUN] ' if dry_run else ''
    click.echo(f"\n{prefix}Points expiration:")
    click.echo(f"  Users processed: {result['users_processed']}")
    click.echo(f"  Entries expired: {result['entries_expired']}")
    click.echo(f"  Points expired: {result['total_points_expired']}")

    if result['errors']:
        click.echo(f"  Errors: {len(result['errors'])}")
        for error in result['errors'][:5]:
            click.echo(f"    - User {error['user_id']} (tenant {error['tenant_id']}): {error['error']}")


@points_cli.command('reset-streaks')
@with_appcontext
def reset_streaks():
    """Zero the streaks of users who skipped a day."""
    result = scheduled_tasks_service.reset_broken_streaks()
    click.echo(f"Streaks reset: {result['users_reset']} users")


@points_cli.command('expiring-report')
@click.option('--tenant-id', required=True, help='Tenant ID')
@click.option('--days', type=int, default=30, help='Days ahead to check (default: 30)')
@with_appcontext
def expiring_report(tenant_id, days):
    """
    Preview points expiring within N days.

    Use this to send warning emails to members.
    """
    result = scheduled_tasks_service.get_expiring_points_report(tenant_id, days=days)

    click.echo(f"\nPoints expiring within {days} days for tenant {tenant_id}:")
    click.echo(f"  Users affected: {result['user_count']}")
    click.echo(f"  Total points: {result['total_points']}")

    if result['users']:
        click.echo("\n  Details:")
        for user in result['users'][:10]:
            click.echo(f"    {user['user_id']}: {user['points']} pts (first on {user['next_expiry']})")


@points_cli.command('stats')
@click.option('--tenant-id', required=True, help='Tenant ID')
@click.option('--days', type=int, default=30, help='Period length in days (default: 30)')
@with_appcontext
def show_stats(tenant_id, days):
    """Show points statistics for a tenant."""
    now = datetime.utcnow()
    stats = StatsService(tenant_id).get_stats(date_from=now - timedelta(days=days), date_to=now)

    members = stats['members']
    points = stats['points']

    click.echo(f"\nPoints stats for tenant {tenant_id} (last {days} days):")
    click.echo(f"  Members: {members['total']} total, {members['active']} active, {members['new']} new")
    click.echo(f"  Average balance: {members['average_balance']}")
    click.echo(f"  Earned: {points['earned']}  Spent: {points['spent']}  Expired: {points['expired']}")
    click.echo(f"  Redemption rate: {points['redemption_rate']}%")

    click.echo("\n  Tier distribution:")
    for tier, count in stats['tier_distribution'].items():
        click.echo(f"    {tier}: {count}")

    if stats['top_sources']:
        click.echo("\n  Top sources:")
        for source in stats['top_sources']:
            click.echo(f"    {source['source']}: {source['points']} pts ({source['count']} entries)")


@points_cli.command('verify')
@click.option('--tenant-id', required=True, help='Tenant ID')
@with_appcontext
def verify_balances(tenant_id):
    """Check every projected balance against the ledger."""
    report = StatsService(tenant_id).verify_balances()

    click.echo(f"Checked {report['checked']} users")

    if report['ok']:
        click.echo("All balances match the ledger")
        return

    for row in report['balance_mismatches']:
        click.echo(
            f"  BALANCE {row['user_id']}: projected {row['points_balance']}, "
            f"ledger {row['ledger_total']}"
        )
    for row in report['backing_mismatches']:
        click.echo(
            f"  BACKING {row['user_id']}: balance {row['points_balance']}, "
            f"open remainders {row['open_remainders']}"
        )
    for row in report['tier_mismatches']:
        click.echo(f"  TIER {row['user_id']}: {row['tier']} (expected {row['expected_tier']})")

    sys.exit(1)


def init_app(app):
    """Register CLI commands with the Flask app."""
    app.cli.add_command(points_cli)
