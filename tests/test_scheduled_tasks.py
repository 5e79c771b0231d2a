"""
Tests for ScheduledTasksService.

Covers:
- Points expiration sweep (including idempotency and per-user failures)
- Broken streak reset
- Expiring points report
"""
import pytest
from datetime import date, datetime, timedelta
from unittest.mock import patch

from loyalty.extensions import db
from loyalty.models import PointsLedger, UserLoyaltyState
from loyalty.services.points_service import PointsService
from loyalty.services.scheduled_tasks import ScheduledTasksService
from loyalty.signals import points_expired, tier_changed


class TestExpirePoints:
    """Tests for expire_points."""

    def test_expired_remainder_is_converted(self, app, tenant_id, user_id, backdate, ledger_snapshot):
        """Test a past-due entry with 50 remaining yields Expire(-50)."""
        with app.app_context():
            entry_id = PointsService(tenant_id).earn_points(user_id, 50, 'order')['transaction_id']

        backdate(entry_id, days_ago=400, expires_in_days=-1)

        with app.app_context():
            result = ScheduledTasksService().expire_points()

            assert result['users_processed'] == 1
            assert result['entries_expired'] == 1
            assert result['total_points_expired'] == 50
            assert result['errors'] == []

            source = db.session.get(PointsLedger, entry_id)
            assert source.is_expired is True
            assert source.remaining_points == 0

            expire = PointsLedger.query.filter_by(transaction_type='expire').one()
            assert expire.points == -50
            assert expire.source == 'expiry'
            assert expire.reference_id == str(entry_id)
            assert expire.balance_after == 0

        snapshot = ledger_snapshot(user_id)
        assert snapshot['balance'] == 0
        assert snapshot['balance'] == snapshot['ledger_sum'] == snapshot['open_remainders']

    def test_only_remainder_expires_after_partial_spend(self, app, tenant_id, user_id, backdate, ledger_snapshot):
        with app.app_context():
            service = PointsService(tenant_id)
            old = service.earn_points(user_id, 300, 'order')['transaction_id']
            service.earn_points(user_id, 500, 'order')
            service.spend_points(user_id, 200)

        backdate(old, days_ago=400, expires_in_days=-1)

        with app.app_context():
            result = ScheduledTasksService().expire_points()
            assert result['total_points_expired'] == 100

        snapshot = ledger_snapshot(user_id)
        assert snapshot['balance'] == 500
        assert snapshot['balance'] == snapshot['ledger_sum'] == snapshot['open_remainders']

    def test_second_run_changes_nothing(self, app, tenant_id, user_id, backdate, ledger_snapshot):
        with app.app_context():
            entry_id = PointsService(tenant_id).earn_points(user_id, 50, 'order')['transaction_id']

        backdate(entry_id, days_ago=400, expires_in_days=-1)
        now = datetime.utcnow()

        with app.app_context():
            ScheduledTasksService().expire_points(now=now)
        first = ledger_snapshot(user_id)

        with app.app_context():
            result = ScheduledTasksService().expire_points(now=now)
            assert result['users_processed'] == 0
            assert result['entries_expired'] == 0

        assert ledger_snapshot(user_id) == first

    def test_unexpired_points_untouched(self, app, tenant_id, user_id):
        with app.app_context():
            PointsService(tenant_id).earn_points(user_id, 50, 'order')
            result = ScheduledTasksService().expire_points()

            assert result['entries_expired'] == 0
            assert PointsLedger.query.filter_by(transaction_type='expire').count() == 0

    def test_dry_run_reports_without_changes(self, app, tenant_id, user_id, backdate, ledger_snapshot):
        with app.app_context():
            entry_id = PointsService(tenant_id).earn_points(user_id, 70, 'order')['transaction_id']

        backdate(entry_id, days_ago=400, expires_in_days=-1)

        with app.app_context():
            result = ScheduledTasksService().expire_points(dry_run=True)
            assert result['dry_run'] is True
            assert result['entries_expired'] == 1
            assert result['total_points_expired'] == 70

        assert ledger_snapshot(user_id)['balance'] == 70

    def test_expiry_can_lower_tier_and_signals(self, app, tenant_id, user_id, backdate):
        expired_events = []
        tier_events = []

        with app.app_context():
            entry_id = PointsService(tenant_id).earn_points(user_id, 1000, 'promo')['transaction_id']

        backdate(entry_id, days_ago=400, expires_in_days=-1)

        with app.app_context():
            with points_expired.connected_to(lambda sender, **data: expired_events.append(data)), \
                    tier_changed.connected_to(lambda sender, **data: tier_events.append(data)):
                ScheduledTasksService().expire_points()

            state = UserLoyaltyState.query.filter_by(user_id=user_id).first()
            assert state.tier == 'bronze'

        assert expired_events[0]['amount'] == 1000
        assert tier_events[0]['old_tier'] == 'silver'

    def test_failure_for_one_user_does_not_stop_sweep(self, app, tenant_id, user_id, other_user_id, backdate):
        with app.app_context():
            service = PointsService(tenant_id)
            first = service.earn_points(user_id, 40, 'order')['transaction_id']
            second = service.earn_points(other_user_id, 60, 'order')['transaction_id']

        backdate(first, days_ago=400, expires_in_days=-1)
        backdate(second, days_ago=400, expires_in_days=-1)

        original = PointsService.expire_user_points

        def flaky(self, uid, now=None):
            if uid == user_id:
                raise RuntimeError('row locked by a stuck worker')
            return original(self, uid, now=now)

        with app.app_context():
            with patch.object(PointsService, 'expire_user_points', flaky):
                result = ScheduledTasksService().expire_points()

            assert result['users_processed'] == 1
            assert result['total_points_expired'] == 60
            assert len(result['errors']) == 1
            assert result['errors'][0]['user_id'] == user_id

            assert db.session.get(PointsLedger, first).is_expired is False
            assert db.session.get(PointsLedger, second).is_expired is True

    def test_sweep_covers_all_tenants(self, app, user_id, backdate):
        with app.app_context():
            PointsService('tenant-a').enroll('shared')
            PointsService('tenant-b').enroll('shared')
            a = PointsService('tenant-a').earn_points('shared', 10, 'order')['transaction_id']
            b = PointsService('tenant-b').earn_points('shared', 20, 'order')['transaction_id']

        backdate(a, days_ago=400, expires_in_days=-1)
        backdate(b, days_ago=400, expires_in_days=-1)

        with app.app_context():
            result = ScheduledTasksService().expire_points()
            assert result['users_processed'] == 2
            assert result['total_points_expired'] == 30


class TestResetBrokenStreaks:
    """Tests for reset_broken_streaks."""

    def test_resets_only_broken_streaks(self, app, tenant_id, user_id, other_user_id):
        today = date(2024, 6, 10)

        with app.app_context():
            active = UserLoyaltyState.query.filter_by(user_id=user_id).first()
            active.current_streak = 4
            active.longest_streak = 4
            active.last_activity_date = today - timedelta(days=1)

            lapsed = UserLoyaltyState.query.filter_by(user_id=other_user_id).first()
            lapsed.current_streak = 6
            lapsed.longest_streak = 6
            lapsed.last_activity_date = today - timedelta(days=2)
            db.session.commit()

            result = ScheduledTasksService().reset_broken_streaks(today=today)
            assert result['users_reset'] == 1

            active = UserLoyaltyState.query.filter_by(user_id=user_id).first()
            lapsed = UserLoyaltyState.query.filter_by(user_id=other_user_id).first()
            assert active.current_streak == 4
            assert lapsed.current_streak == 0
            assert lapsed.longest_streak == 6


class TestExpiringPointsReport:
    """Tests for get_expiring_points_report."""

    def test_report_lists_points_inside_window(self, app, tenant_id, user_id, other_user_id, backdate):
        with app.app_context():
            service = PointsService(tenant_id)
            soon = service.earn_points(user_id, 30, 'order')['transaction_id']
            service.earn_points(user_id, 500, 'order')
            later = service.earn_points(other_user_id, 90, 'order')['transaction_id']

        backdate(soon, days_ago=355, expires_in_days=10)
        backdate(later, days_ago=300, expires_in_days=65)

        with app.app_context():
            report = ScheduledTasksService().get_expiring_points_report(tenant_id, days=30)

            assert report['user_count'] == 1
            assert report['total_points'] == 30
            assert report['users'][0]['user_id'] == user_id

    def test_report_other_tenant_empty(self, app, user_id):
        with app.app_context():
            report = ScheduledTasksService().get_expiring_points_report('nobody', days=30)
            assert report['users'] == []
            assert report['total_points'] == 0
