"""
CLI Commands for the loyalty core.

Provides Flask CLI commands for scheduled tasks and administration.

Usage:
    flask points expire [--dry-run]                  # Expire aged points
    flask points reset-streaks                       # Zero broken streaks
    flask points expiring-report --tenant-id acme    # Preview expiring points
    flask points stats --tenant-id acme              # Points statistics
    flask points verify --tenant-id acme             # Reconcile balances with the ledger
"""
from .points import init_app as init_points_commands


def init_app(app):
    """Register all CLI commands with the Flask app."""
    init_points_commands(app)
