"""
Per-user loyalty projection.
"""
from datetime import datetime
from decimal import Decimal

from ..extensions import db


class UserLoyaltyState(db.Model):
    """
    Materialized view of a user's loyalty standing.

    Design notes:
    - One row per (tenant_id, user_id), created on first loyalty interaction
    - points_balance always equals the sum of the user's ledger points
    - tier is always the tier resolved from points_balance
    - Row is locked (SELECT ... FOR UPDATE) by every balance-affecting operation
    """
    __tablename__ = 'user_loyalty_states'

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.String(64), nullable=False)
    user_id = db.Column(db.String(64), nullable=False)

    # Balance & tier
    points_balance = db.Column(db.Integer, default=0, nullable=False)
    tier = db.Column(db.String(30), nullable=False, default='bronze')

    # Streak tracking
    current_streak = db.Column(db.Integer, default=0, nullable=False)
    longest_streak = db.Column(db.Integer, default=0, nullable=False)
    last_activity_date = db.Column(db.Date)

    # One-time bonuses
    welcome_bonus_granted = db.Column(db.Boolean, default=False, nullable=False)

    # Order aggregates
    total_orders = db.Column(db.Integer, default=0, nullable=False)
    total_spent = db.Column(db.Numeric(14, 2), default=Decimal('0'), nullable=False)
    last_order_at = db.Column(db.DateTime)

    # Timestamps
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        db.UniqueConstraint('tenant_id', 'user_id', name='uq_user_loyalty_states_tenant_user'),
        db.Index('ix_user_loyalty_states_tenant_tier', 'tenant_id', 'tier'),
        db.CheckConstraint('points_balance >= 0', name='balance_not_negative'),
    )

    def __repr__(self):
        return f'<UserLoyaltyState user={self.user_id} pts={self.points_balance} tier={self.tier}>'

    def to_dict(self):
        return {
            'user_id': self.user_id,
            'tenant_id': self.tenant_id,
            'points_balance': self.points_balance,
            'tier': self.tier,
            'current_streak': self.current_streak,
            'longest_streak': self.longest_streak,
            'last_activity_date': self.last_activity_date.isoformat() if self.last_activity_date else None,
            'welcome_bonus_granted': self.welcome_bonus_granted,
            'total_orders': self.total_orders,
            'total_spent': float(self.total_spent or 0),
            'last_order_at': self.last_order_at.isoformat() if self.last_order_at else None,
            'created_at': self.created_at.isoformat() if self.created_at else None,
        }


class ProcessedOrder(db.Model):
    """
    One row per order that went through order earning.

    Written whatever the points outcome (orders under the minimum earn nothing
    but still count), so replaying an order id is always detected.
    """
    __tablename__ = 'processed_orders'

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.String(64), nullable=False)
    user_id = db.Column(db.String(64), nullable=False)
    order_id = db.Column(db.String(100), nullable=False)
    order_amount = db.Column(db.Numeric(14, 2), nullable=False)
    base_points = db.Column(db.Integer, default=0, nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (
        db.UniqueConstraint('tenant_id', 'user_id', 'order_id', name='uq_processed_orders_tenant_user_order'),
    )

    def __repr__(self):
        return f'<ProcessedOrder {self.order_id} user={self.user_id}>'
