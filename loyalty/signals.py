"""
Loyalty signals for external collaborators.

Quest/achievement, referral and notification modules subscribe here instead of
being called directly. Signals are sent after the ledger change is committed;
the sender is the service instance and every payload carries tenant_id and
user_id.

Usage:
    from loyalty.signals import points_earned

    @points_earned.connect
    def on_points_earned(sender, **data):
        quests.track(data['user_id'], data['amount'], data['source'])
"""
import logging

from blinker import Namespace

logger = logging.getLogger(__name__)

_signals = Namespace()

# user_id, tenant_id, amount, source, reference_id, new_balance
points_earned = _signals.signal('points-earned')

# user_id, tenant_id, amount, reference_id, new_balance, monetary_value
points_spent = _signals.signal('points-spent')

# user_id, tenant_id, amount, reason, actor_id, new_balance
points_adjusted = _signals.signal('points-adjusted')

# user_id, tenant_id, amount, new_balance
points_expired = _signals.signal('points-expired')

# user_id, tenant_id, old_tier, new_tier, new_balance
tier_changed = _signals.signal('tier-changed')

# user_id, tenant_id, days, bonus, message
streak_milestone = _signals.signal('streak-milestone')


def send_signal(signal, sender, **data) -> None:
    """
    Send a signal without letting a failing receiver break the caller.

    The ledger change has already been committed when this runs, so receiver
    errors are logged and dropped.
    """
    try:
        signal.send(sender, **data)
    except Exception as e:
        logger.warning(f"Signal '{signal.name}' receiver failed: {e}")
