"""
Scheduled Tasks Service for the loyalty core.

Handles automated background jobs:
- Points expiration sweep (per user, idempotent)
- Broken streak reset
- Expiring points report

These tasks can be triggered by:
1. The in-process APScheduler jobs (utils/scheduler.py)
2. Flask CLI commands (for cron jobs)
"""

from datetime import date, datetime, timedelta
from typing import Any, Dict

from flask import current_app
from sqlalchemy import func

from ..extensions import db
from ..models import BACKING_TYPES, PointsLedger, UserLoyaltyState
from .points_service import PointsService, expirable_entries_query


class ScheduledTasksService:
    """
    Service for running scheduled/background tasks.
    """

    # ==================== POINTS EXPIRATION ====================

    def expire_points(self, now: datetime = None, dry_run: bool = False) -> Dict[str, Any]:
        """
        Expire aged points for every user of every tenant.

        Each user is processed in its own locked unit. A failure for one user
        is rolled back, logged and recorded; the sweep moves on.

        Args:
            now: Reference time (defaults to utcnow)
            dry_run: If True, report what would expire without changing anything

        Returns:
            Summary with users_processed, entries_expired,
            total_points_expired and errors
        """
        now = now or datetime.utcnow()

        results = {
            'users_processed': 0,
            'entries_expired': 0,
            'total_points_expired': 0,
            'errors': [],
            'dry_run': dry_run,
            'run_date': now.isoformat()
        }

        if dry_run:
            rows = expirable_entries_query(now).with_entities(
                PointsLedger.tenant_id,
                PointsLedger.user_id,
                func.count(PointsLedger.id),
                func.sum(PointsLedger.remaining_points)
            ).group_by(PointsLedger.tenant_id, PointsLedger.user_id).all()

            for _tenant_id, _user_id, count, points in rows:
                results['users_processed'] += 1
                results['entries_expired'] += int(count or 0)
                results['total_points_expired'] += int(points or 0)
            return results

        candidates = expirable_entries_query(now).with_entities(
            PointsLedger.tenant_id, PointsLedger.user_id
        ).distinct().order_by(PointsLedger.tenant_id, PointsLedger.user_id).all()

        for tenant_id, user_id in candidates:
            try:
                outcome = PointsService(tenant_id).expire_user_points(user_id, now=now)
            except Exception as e:
                current_app.logger.error(
                    f"Points expiration failed for user {user_id} (tenant {tenant_id}): {e}"
                )
                results['errors'].append({
                    'tenant_id': tenant_id,
                    'user_id': user_id,
                    'error': str(e)
                })
                continue

            results['users_processed'] += 1
            results['entries_expired'] += outcome['entries_expired']
            results['total_points_expired'] += outcome['points_expired']

        self._log_scheduled_task('expire_points', results)
        return results

    def get_expiring_points_report(self, tenant_id, days: int = 30) -> Dict[str, Any]:
        """
        Per-user remainders that will expire within the next `days` days.

        Args:
            tenant_id: The tenant to report on
            days: Look-ahead window

        Returns:
            Report with per-user points and earliest expiry
        """
        now = datetime.utcnow()
        cutoff = now + timedelta(days=days)

        rows = db.session.query(
            PointsLedger.user_id,
            func.sum(PointsLedger.remaining_points).label('points'),
            func.min(PointsLedger.expires_at).label('next_expiry')
        ).filter(
            PointsLedger.tenant_id == tenant_id,
            PointsLedger.transaction_type.in_(BACKING_TYPES),
            PointsLedger.is_expired.is_(False),
            PointsLedger.remaining_points > 0,
            PointsLedger.expires_at.isnot(None),
            PointsLedger.expires_at >= now,
            PointsLedger.expires_at <= cutoff
        ).group_by(PointsLedger.user_id).order_by(func.min(PointsLedger.expires_at)).all()

        users = [{
            'user_id': row.user_id,
            'points': int(row.points or 0),
            'next_expiry': row.next_expiry.isoformat() if row.next_expiry else None
        } for row in rows]

        return {
            'tenant_id': tenant_id,
            'days': days,
            'user_count': len(users),
            'total_points': sum(u['points'] for u in users),
            'users': users
        }

    # ==================== STREAKS ====================

    def reset_broken_streaks(self, today: date = None) -> Dict[str, Any]:
        """
        Zero current_streak for users inactive since before yesterday.

        longest_streak and last_activity_date are kept.
        """
        today = today or datetime.utcnow().date()
        yesterday = today - timedelta(days=1)

        count = UserLoyaltyState.query.filter(
            UserLoyaltyState.current_streak > 0,
            UserLoyaltyState.last_activity_date.isnot(None),
            UserLoyaltyState.last_activity_date < yesterday
        ).update({'current_streak': 0}, synchronize_session=False)
        db.session.commit()

        results = {'users_reset': count, 'run_date': today.isoformat()}
        self._log_scheduled_task('reset_broken_streaks', results)
        return results

    # ==================== HELPERS ====================

    def _log_scheduled_task(self, task_name: str, results: Dict):
        """Log scheduled task execution for auditing."""
        summary = {k: v for k, v in results.items() if k != 'errors'}
        if results.get('errors'):
            summary['error_count'] = len(results['errors'])
        current_app.logger.info(f"Scheduled task {task_name} completed: {summary}")


# Singleton instance
scheduled_tasks_service = ScheduledTasksService()
