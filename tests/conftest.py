"""
Shared pytest fixtures for the loyalty core tests.

Every test gets a fresh app on an in-memory SQLite database. Fixtures hand
out plain ids rather than ORM objects so tests can open their own
app context and session.
"""
from datetime import datetime, timedelta

import pytest

from loyalty import create_app
from loyalty.extensions import db


@pytest.fixture
def app():
    """Create application for testing."""
    app = create_app('testing')

    with app.app_context():
        db.create_all()

    yield app

    with app.app_context():
        db.session.remove()
        db.drop_all()


@pytest.fixture
def cli_runner(app):
    """Flask CLI runner."""
    return app.test_cli_runner()


@pytest.fixture
def tenant_id():
    return 'tenant-test'


@pytest.fixture
def user_id(app, tenant_id):
    """An enrolled user with a zero balance."""
    from loyalty.services.points_service import PointsService

    with app.app_context():
        PointsService(tenant_id).enroll('user-1')

    return 'user-1'


@pytest.fixture
def other_user_id(app, tenant_id):
    """A second enrolled user in the same tenant."""
    from loyalty.services.points_service import PointsService

    with app.app_context():
        PointsService(tenant_id).enroll('user-2')

    return 'user-2'


@pytest.fixture
def backdate(app):
    """Move a ledger entry's creation and expiry into the past."""
    from loyalty.models import PointsLedger

    def _backdate(entry_id, days_ago: int, expires_in_days: int = None):
        with app.app_context():
            entry = db.session.get(PointsLedger, entry_id)
            entry.created_at = datetime.utcnow() - timedelta(days=days_ago)
            if expires_in_days is not None:
                entry.expires_at = datetime.utcnow() + timedelta(days=expires_in_days)
            db.session.commit()

    return _backdate


@pytest.fixture
def ledger_snapshot(app, tenant_id):
    """Current balance, ledger sum and open remainders for a user."""
    from loyalty.models import BACKING_TYPES, PointsLedger, UserLoyaltyState

    def _snapshot(user_id):
        with app.app_context():
            state = UserLoyaltyState.query.filter_by(tenant_id=tenant_id, user_id=user_id).first()
            entries = PointsLedger.query.filter_by(tenant_id=tenant_id, user_id=user_id).all()
            return {
                'balance': state.points_balance,
                'tier': state.tier,
                'ledger_sum': sum(e.points for e in entries),
                'open_remainders': sum(
                    e.remaining_points or 0
                    for e in entries
                    if e.transaction_type in BACKING_TYPES and not e.is_expired
                ),
                'entry_count': len(entries),
            }

    return _snapshot
