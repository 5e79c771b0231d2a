"""
Points Statistics Service.

Read-only reporting derived from the ledger and the loyalty projection:
- Member counts and tier distribution
- Points earned/spent/expired in a period, redemption rate
- Top earning sources and a daily timeline
- Projection vs. ledger reconciliation
"""

from datetime import date, datetime, timedelta
from typing import Any, Dict, List, Tuple

from flask import current_app
from sqlalchemy import case, func

from ..extensions import db
from ..models import BACKING_TYPES, PointsLedger, PointsTransactionType, UserLoyaltyState
from .tier_service import get_tier_service


DEFAULT_PERIOD_DAYS = 30
TOP_SOURCES_LIMIT = 5


class StatsService:
    """
    Program-level points statistics.

    Usage:
        service = StatsService(tenant_id)
        stats = service.get_stats(date_from=date(2024, 1, 1), date_to=date(2024, 1, 31))
        report = service.verify_balances()
    """

    def __init__(self, tenant_id):
        self.tenant_id = tenant_id

    # ==================== PERIOD STATISTICS ====================

    def get_stats(self, date_from=None, date_to=None) -> Dict[str, Any]:
        """
        Aggregate statistics for a period.

        Args:
            date_from: Inclusive start (defaults to 30 days ago)
            date_to: Inclusive end; a plain date covers the whole day
                (defaults to now)

        Returns:
            Dict with members, tier_distribution, points, top_sources and
            timeline
        """
        start, end = self._resolve_period(date_from, date_to)

        in_period = (
            PointsLedger.tenant_id == self.tenant_id,
            PointsLedger.created_at >= start,
            PointsLedger.created_at < end,
        )

        # Members
        total_members = UserLoyaltyState.query.filter_by(tenant_id=self.tenant_id).count()
        new_members = UserLoyaltyState.query.filter(
            UserLoyaltyState.tenant_id == self.tenant_id,
            UserLoyaltyState.created_at >= start,
            UserLoyaltyState.created_at < end
        ).count()
        active_members = db.session.query(
            func.count(func.distinct(PointsLedger.user_id))
        ).filter(*in_period).scalar() or 0

        average_balance = db.session.query(
            func.avg(UserLoyaltyState.points_balance)
        ).filter(UserLoyaltyState.tenant_id == self.tenant_id).scalar()

        # Points movements
        earned, spent, expired, adjusted = db.session.query(
            self._sum_where(PointsLedger.transaction_type == PointsTransactionType.EARN.value),
            self._sum_where(PointsLedger.transaction_type == PointsTransactionType.SPEND.value),
            self._sum_where(PointsLedger.transaction_type == PointsTransactionType.EXPIRE.value),
            self._sum_where(PointsLedger.transaction_type == PointsTransactionType.ADJUST.value),
        ).filter(*in_period).one()

        earned = int(earned or 0)
        spent = abs(int(spent or 0))
        redemption_rate = round(spent * 100 / earned, 1) if earned else 0.0

        return {
            'period': {
                'from': start.isoformat(),
                'to': end.isoformat(),
            },
            'members': {
                'total': total_members,
                'active': int(active_members),
                'new': new_members,
                'average_balance': round(float(average_balance or 0), 1),
            },
            'tier_distribution': self.get_tier_distribution(),
            'points': {
                'earned': earned,
                'spent': spent,
                'expired': abs(int(expired or 0)),
                'adjusted': int(adjusted or 0),
                'redemption_rate': redemption_rate,
            },
            'top_sources': self._get_top_sources(in_period),
            'timeline': self._get_timeline(in_period),
        }

    def get_tier_distribution(self) -> Dict[str, int]:
        """Member count per tier code (every configured tier is listed)."""
        distribution = {t.code: 0 for t in get_tier_service().tiers}

        rows = db.session.query(
            UserLoyaltyState.tier, func.count(UserLoyaltyState.id)
        ).filter(
            UserLoyaltyState.tenant_id == self.tenant_id
        ).group_by(UserLoyaltyState.tier).all()

        for tier, count in rows:
            distribution[tier] = count

        return distribution

    # ==================== RECONCILIATION ====================

    def verify_balances(self) -> Dict[str, Any]:
        """
        Compare every projected balance with its ledger.

        Reports users whose points_balance differs from the ledger sum, and
        users whose open remainders do not add up to the balance.
        """
        ledger_sums = dict(db.session.query(
            PointsLedger.user_id, func.sum(PointsLedger.points)
        ).filter(
            PointsLedger.tenant_id == self.tenant_id
        ).group_by(PointsLedger.user_id).all())

        backing_sums = dict(db.session.query(
            PointsLedger.user_id, func.sum(PointsLedger.remaining_points)
        ).filter(
            PointsLedger.tenant_id == self.tenant_id,
            PointsLedger.transaction_type.in_(BACKING_TYPES),
            PointsLedger.is_expired.is_(False),
            PointsLedger.remaining_points > 0
        ).group_by(PointsLedger.user_id).all())

        tiers = get_tier_service()
        balance_mismatches = []
        backing_mismatches = []
        tier_mismatches = []

        states = UserLoyaltyState.query.filter_by(tenant_id=self.tenant_id).all()
        for state in states:
            ledger_total = int(ledger_sums.get(state.user_id) or 0)
            backing_total = int(backing_sums.get(state.user_id) or 0)

            if ledger_total != state.points_balance:
                balance_mismatches.append({
                    'user_id': state.user_id,
                    'points_balance': state.points_balance,
                    'ledger_total': ledger_total,
                    'difference': state.points_balance - ledger_total,
                })

            if backing_total != state.points_balance:
                backing_mismatches.append({
                    'user_id': state.user_id,
                    'points_balance': state.points_balance,
                    'open_remainders': backing_total,
                })

            expected_tier = tiers.get_tier_for_points(state.points_balance).code
            if expected_tier != state.tier:
                tier_mismatches.append({
                    'user_id': state.user_id,
                    'tier': state.tier,
                    'expected_tier': expected_tier,
                })

        if balance_mismatches or tier_mismatches:
            current_app.logger.warning(
                f"Balance verification for tenant {self.tenant_id}: "
                f"{len(balance_mismatches)} balance and {len(tier_mismatches)} tier mismatches"
            )

        return {
            'checked': len(states),
            'ok': not (balance_mismatches or backing_mismatches or tier_mismatches),
            'balance_mismatches': balance_mismatches,
            'backing_mismatches': backing_mismatches,
            'tier_mismatches': tier_mismatches,
        }

    # ==================== HELPERS ====================

    @staticmethod
    def _sum_where(condition):
        return func.coalesce(func.sum(case((condition, PointsLedger.points), else_=0)), 0)

    @staticmethod
    def _resolve_period(date_from, date_to) -> Tuple[datetime, datetime]:
        """Normalize the period to a half-open [start, end) datetime range."""
        now = datetime.utcnow()

        if date_to is None:
            end = now
        elif isinstance(date_to, datetime):
            end = date_to
        else:
            end = datetime.combine(date_to, datetime.min.time()) + timedelta(days=1)

        if date_from is None:
            start = end - timedelta(days=DEFAULT_PERIOD_DAYS)
        elif isinstance(date_from, datetime):
            start = date_from
        else:
            start = datetime.combine(date_from, datetime.min.time())

        return start, end

    def _get_top_sources(self, in_period) -> List[Dict[str, Any]]:
        rows = db.session.query(
            PointsLedger.source,
            func.sum(PointsLedger.points).label('points'),
            func.count(PointsLedger.id).label('entries')
        ).filter(
            *in_period,
            PointsLedger.transaction_type == PointsTransactionType.EARN.value
        ).group_by(PointsLedger.source).order_by(
            func.sum(PointsLedger.points).desc()
        ).limit(TOP_SOURCES_LIMIT).all()

        return [
            {'source': row.source, 'points': int(row.points or 0), 'count': row.entries}
            for row in rows
        ]

    def _get_timeline(self, in_period) -> List[Dict[str, Any]]:
        day = func.date(PointsLedger.created_at)
        rows = db.session.query(
            day.label('day'),
            self._sum_where(PointsLedger.transaction_type == PointsTransactionType.EARN.value).label('earned'),
            self._sum_where(PointsLedger.transaction_type == PointsTransactionType.SPEND.value).label('spent'),
        ).filter(*in_period).group_by(day).order_by(day).all()

        return [{
            'date': row.day.isoformat() if isinstance(row.day, date) else str(row.day),
            'earned': int(row.earned or 0),
            'spent': abs(int(row.spent or 0)),
        } for row in rows]
