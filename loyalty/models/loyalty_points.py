"""
Points ledger models.

The ledger is append-only: every earn, spend, adjustment and expiry is one
PointsLedger row. The only columns that change after insert are
remaining_points and is_expired on rows that back the balance (earn rows and
positive adjustments), which track how much of the credited amount has not
yet been consumed by spends or converted into an expiry.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict

from ..extensions import db


# ==================== Enums ====================

class PointsTransactionType(str, Enum):
    """Types of points transactions."""
    EARN = 'earn'       # Points earned (positive)
    SPEND = 'spend'     # Points spent at checkout (negative)
    ADJUST = 'adjust'   # Manual adjustment by staff (+/-)
    EXPIRE = 'expire'   # Unused remainder aged out (negative)


class PointsSource(str, Enum):
    """Categorical origin of a ledger entry."""
    # Earning
    ORDER = 'order'
    WELCOME_BONUS = 'welcome_bonus'
    FIRST_ORDER = 'first_order'
    REFERRAL = 'referral'
    REFERRAL_BONUS = 'referral_bonus'
    ACHIEVEMENT = 'achievement'
    DAILY_QUEST = 'daily_quest'
    WEEKLY_QUEST = 'weekly_quest'
    MONTHLY_QUEST = 'monthly_quest'
    STREAK_BONUS = 'streak_bonus'
    PROMO = 'promo'
    ADMIN = 'admin'
    BIRTHDAY = 'birthday'

    # Deductions
    PURCHASE = 'purchase'
    REFUND = 'refund'
    EXPIRY = 'expiry'


# Entry types whose remaining_points back the live balance
BACKING_TYPES = (PointsTransactionType.EARN.value, PointsTransactionType.ADJUST.value)

DEFAULT_DESCRIPTIONS = {
    PointsSource.ORDER.value: 'Points for purchase',
    PointsSource.WELCOME_BONUS.value: 'Welcome bonus',
    PointsSource.FIRST_ORDER.value: 'First order bonus',
    PointsSource.REFERRAL.value: 'Friend referral',
    PointsSource.REFERRAL_BONUS.value: 'Referral welcome bonus',
    PointsSource.ACHIEVEMENT.value: 'Achievement reward',
    PointsSource.DAILY_QUEST.value: 'Daily quest',
    PointsSource.WEEKLY_QUEST.value: 'Weekly quest',
    PointsSource.MONTHLY_QUEST.value: 'Monthly quest',
    PointsSource.STREAK_BONUS.value: 'Streak bonus',
    PointsSource.PROMO.value: 'Promotion',
    PointsSource.ADMIN.value: 'Adjustment',
    PointsSource.BIRTHDAY.value: 'Happy birthday!',
    PointsSource.PURCHASE.value: 'Points spent',
    PointsSource.REFUND.value: 'Points refunded',
    PointsSource.EXPIRY.value: 'Points expired',
}


# ==================== Models ====================

class PointsLedger(db.Model):
    """
    Points transaction ledger - the authoritative record of all points changes.

    Design notes:
    - Immutable once created, except remaining_points/is_expired on backing rows
    - points is signed: + for earn/positive adjust, - for spend/expire/negative adjust
    - balance_after is a display snapshot, not authoritative
    - (tenant_id, user_id, created_at) serves FIFO scans and history pages;
      (is_expired, expires_at) serves the expiry sweep
    """
    __tablename__ = 'points_ledger'

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.String(64), nullable=False)
    user_id = db.Column(db.String(64), nullable=False)

    # Transaction details
    transaction_type = db.Column(db.String(20), nullable=False)  # PointsTransactionType
    points = db.Column(db.Integer, nullable=False)
    balance_after = db.Column(db.Integer)

    # Source tracking
    source = db.Column(db.String(50), nullable=False)  # PointsSource
    reference_id = db.Column(db.String(100))  # order id, quest id, ledger id, ...
    reference_type = db.Column(db.String(50))  # order, quest, points_ledger, ...
    description = db.Column(db.String(500))
    metadata_json = db.Column(db.JSON)

    # Expiration tracking (backing rows only)
    expires_at = db.Column(db.DateTime)
    remaining_points = db.Column(db.Integer)
    is_expired = db.Column(db.Boolean, default=False, nullable=False)

    # Admin audit
    admin_id = db.Column(db.String(64))
    admin_reason = db.Column(db.String(500))

    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (
        db.Index('ix_points_ledger_user_created', 'tenant_id', 'user_id', 'created_at'),
        db.Index('ix_points_ledger_user_expires', 'tenant_id', 'user_id', 'expires_at'),
        db.Index('ix_points_ledger_sweep', 'is_expired', 'expires_at'),
        db.Index('ix_points_ledger_type', 'transaction_type'),
        db.CheckConstraint(
            'remaining_points IS NULL OR (remaining_points >= 0 AND remaining_points <= points)',
            name='remaining_within_points'
        ),
    )

    def __repr__(self):
        return f'<PointsLedger {self.id}: {self.points:+d} pts for user {self.user_id}>'

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to dictionary for collaborators."""
        return {
            'id': self.id,
            'user_id': self.user_id,
            'transaction_type': self.transaction_type,
            'points': self.points,
            'balance_after': self.balance_after,
            'source': self.source,
            'reference_id': self.reference_id,
            'reference_type': self.reference_type,
            'description': self.description,
            'expires_at': self.expires_at.isoformat() if self.expires_at else None,
            'remaining_points': self.remaining_points,
            'is_expired': self.is_expired,
            'created_at': self.created_at.isoformat() if self.created_at else None,
        }
