"""
Tests for the points CLI commands, scheduler wiring and health check.
"""
from loyalty.extensions import db
from loyalty.models import PointsLedger, UserLoyaltyState
from loyalty.services.points_service import PointsService
from loyalty.utils.scheduler import get_next_run_times, init_scheduler


class TestPointsCommands:
    """Tests for `flask points ...`."""

    def test_expire(self, app, cli_runner, tenant_id, user_id, backdate):
        with app.app_context():
            entry_id = PointsService(tenant_id).earn_points(user_id, 80, 'order')['transaction_id']
        backdate(entry_id, days_ago=400, expires_in_days=-1)

        result = cli_runner.invoke(args=['points', 'expire'])

        assert result.exit_code == 0
        assert 'Points expired: 80' in result.output

        with app.app_context():
            assert PointsLedger.query.filter_by(transaction_type='expire').count() == 1

    def test_expire_dry_run(self, app, cli_runner, tenant_id, user_id, backdate):
        with app.app_context():
            entry_id = PointsService(tenant_id).earn_points(user_id, 80, 'order')['transaction_id']
        backdate(entry_id, days_ago=400, expires_in_days=-1)

        result = cli_runner.invoke(args=['points', 'expire', '--dry-run'])

        assert result.exit_code == 0
        assert '[DRY RUN]' in result.output

        with app.app_context():
            assert PointsLedger.query.filter_by(transaction_type='expire').count() == 0

    def test_reset_streaks(self, cli_runner, user_id):
        result = cli_runner.invoke(args=['points', 'reset-streaks'])

        assert result.exit_code == 0
        assert 'Streaks reset: 0 users' in result.output

    def test_expiring_report(self, cli_runner, tenant_id, user_id, backdate, app):
        with app.app_context():
            entry_id = PointsService(tenant_id).earn_points(user_id, 25, 'order')['transaction_id']
        backdate(entry_id, days_ago=360, expires_in_days=5)

        result = cli_runner.invoke(args=['points', 'expiring-report', '--tenant-id', tenant_id])

        assert result.exit_code == 0
        assert 'Users affected: 1' in result.output
        assert 'Total points: 25' in result.output

    def test_stats(self, app, cli_runner, tenant_id, user_id):
        with app.app_context():
            PointsService(tenant_id).earn_points(user_id, 300, 'promo')

        result = cli_runner.invoke(args=['points', 'stats', '--tenant-id', tenant_id])

        assert result.exit_code == 0
        assert 'Earned: 300' in result.output
        assert 'promo: 300 pts' in result.output

    def test_verify_ok(self, app, cli_runner, tenant_id, user_id):
        with app.app_context():
            PointsService(tenant_id).earn_points(user_id, 300, 'order')

        result = cli_runner.invoke(args=['points', 'verify', '--tenant-id', tenant_id])

        assert result.exit_code == 0
        assert 'All balances match the ledger' in result.output

    def test_verify_reports_drift(self, app, cli_runner, tenant_id, user_id):
        with app.app_context():
            PointsService(tenant_id).earn_points(user_id, 300, 'order')
            state = UserLoyaltyState.query.filter_by(user_id=user_id).first()
            state.points_balance = 250
            db.session.commit()

        result = cli_runner.invoke(args=['points', 'verify', '--tenant-id', tenant_id])

        assert result.exit_code == 1
        assert 'BALANCE user-1' in result.output


class TestSchedulerAndHealth:
    """Tests for scheduler wiring."""

    def test_scheduler_disabled_in_testing(self, app):
        assert init_scheduler(app) is None
        assert get_next_run_times() == {}

    def test_health(self, app):
        response = app.test_client().get('/health')

        assert response.status_code == 200
        data = response.get_json()
        assert data['status'] == 'healthy'
        assert data['scheduled_jobs'] == {}
